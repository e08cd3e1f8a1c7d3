#!/usr/bin/env python3
"""
Run one waitlist global check from the shell (expire past slots, purge old rows, expire unanswered
offers) and optionally check one slot right now.

  cd backend && python scripts/run_waitlist_check.py
  cd backend && python scripts/run_waitlist_check.py --slot 42

Timers armed here die with the process; the running backend re-arms them on its next sweep.
"""
import argparse
import json
import logging
import sys
from pathlib import Path

# backend/scripts/ -> backend/
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from apscheduler.schedulers.background import BackgroundScheduler

from app.scheduler.waitlist_scheduler import WaitlistScheduler
from app.services.notify import get_notifier


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__.split("\n\n")[0])
    parser.add_argument("--slot", type=int, default=None, help="Also run one check cycle for this slot id")
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    scheduler = WaitlistScheduler(BackgroundScheduler(timezone="UTC"), get_notifier(), internal=True)
    try:
        if args.slot is not None:
            outcome = scheduler.check_slot(args.slot)
            print(f"slot {args.slot}: {outcome.value}")
        result = scheduler.run_global_check()
        print(json.dumps(result.to_dict(), indent=2))
    finally:
        scheduler.shutdown()
    return 0


if __name__ == "__main__":
    sys.exit(main())
