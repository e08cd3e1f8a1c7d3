#!/usr/bin/env python3
"""
Clear waitlist state (tokens, entries, slots). Calendar connections are kept.
Run with backend stopped so no timer fires mid-truncate: cd backend && python scripts/clear_waitlist_tables.py
"""
import sys
from pathlib import Path

# backend/scripts/ -> backend/
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from sqlalchemy import text

from app.db.session import engine
from app.db.tables import WAITLIST_TABLE_NAMES


def main():
    tables = ", ".join(WAITLIST_TABLE_NAMES)
    print(f"Connecting to DB and truncating {tables} ...")
    with engine.connect() as conn:
        conn.execute(text(f"TRUNCATE TABLE {tables} RESTART IDENTITY CASCADE"))
        conn.commit()
    print("Done. Waitlist tables are empty.")


if __name__ == "__main__":
    main()
