#!/usr/bin/env python3
"""One-off script: what is on the waitlist right now (slots and entries by status, next checks)."""
import sys
from pathlib import Path

# backend/scripts/ -> backend/
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from sqlalchemy import func

from app.core.constants import ACTIVE_SLOT_STATUSES
from app.db.session import SessionLocal
from app.models.waitlist_entry import WaitlistEntry
from app.models.waitlist_slot import WaitlistSlot


def main():
    db = SessionLocal()
    try:
        print("=== waitlist_slots ===")
        for status, count in db.query(WaitlistSlot.status, func.count(WaitlistSlot.id)).group_by(WaitlistSlot.status):
            print(f"  {status}: {count}")
        active = (
            db.query(WaitlistSlot)
            .filter(WaitlistSlot.status.in_(ACTIVE_SLOT_STATUSES))
            .order_by(WaitlistSlot.next_check_at.asc())
            .limit(15)
            .all()
        )
        for s in active:
            print(
                f"  id={s.id} owner={s.owner_id!r} start={s.slot_start} status={s.status} "
                f"every={s.check_interval_minutes}m next={s.next_check_at}"
            )

        print("\n=== waitlist_entries ===")
        for status, count in db.query(WaitlistEntry.status, func.count(WaitlistEntry.id)).group_by(WaitlistEntry.status):
            print(f"  {status}: {count}")
    finally:
        db.close()


if __name__ == "__main__":
    main()
