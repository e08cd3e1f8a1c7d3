#!/usr/bin/env python3
"""
Quick checks so the waitlist backend can start and actually notify people. Run from backend/:
  python scripts/check_backend.py
"""
import os
import sys
from pathlib import Path

# Run from backend/
backend_dir = Path(__file__).resolve().parent.parent
os.chdir(backend_dir)
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))


def main():
    errors = []
    warnings = []

    # 1) .env
    if not (backend_dir / ".env").exists():
        errors.append("backend/.env missing. Copy backend/.env.example and set DATABASE_URL, TOKEN_ENCRYPTION_KEY, etc.")
    else:
        print("OK  .env exists")

    # 2) DB connection
    try:
        from sqlalchemy import text

        from app.db.session import engine

        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        print("OK  Database connection (DATABASE_URL)")
    except Exception as e:
        errors.append(f"Database: {e}")
        print("FAIL Database:", e)

    # 3) Secrets and channels: missing ones do not stop the app, but nothing gets probed / sent
    from app.config import settings

    if not settings.token_encryption_key:
        warnings.append("TOKEN_ENCRYPTION_KEY unset: calendars cannot be connected (no availability probe).")
    if not (settings.twilio_account_sid and settings.twilio_auth_token and settings.twilio_from_number):
        warnings.append("Twilio not configured: waitlist SMS disabled (email only).")
    if not (settings.google_client_id and settings.google_client_secret):
        warnings.append("GOOGLE_CLIENT_ID / GOOGLE_CLIENT_SECRET unset: Google Calendar OAuth disabled.")
    if not settings.waitlist_internal_scheduler and not settings.waitlist_cron_api_key:
        warnings.append("Internal scheduler off and WAITLIST_CRON_API_KEY unset: nothing will run the global check.")

    # 4) App import (catches missing deps, bad imports)
    try:
        from app.main import app  # noqa: F401

        print("OK  App import (app.main)")
    except Exception as e:
        errors.append(f"App import: {e}")
        print("FAIL App import:", e)

    for w in warnings:
        print("WARN", w)
    if errors:
        print("\n---")
        for e in errors:
            print("•", e)
        return 1

    print("\nAll checks passed. Start with: uvicorn app.main:app --host 0.0.0.0 --port 8000")
    return 0


if __name__ == "__main__":
    sys.exit(main())
