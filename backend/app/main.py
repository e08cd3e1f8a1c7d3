"""
FastAPI app entrypoint.

Waitlist monitoring: voice agent / dashboard routes under /waitlist, one WaitlistScheduler per process.
"""
import logging
import os
import threading
from contextlib import asynccontextmanager
from pathlib import Path

from apscheduler.schedulers.background import BackgroundScheduler
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Load .env from backend/ before any app code
load_dotenv(Path(__file__).resolve().parent.parent / ".env")

from app.api.routes import waitlist, waitlist_calendar
from app.config import settings
from app.scheduler.waitlist_scheduler import WaitlistScheduler
from app.services.notify import get_notifier

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    notifier = get_notifier()
    waitlist_scheduler = WaitlistScheduler(BackgroundScheduler(timezone="UTC"), notifier)
    app.state.waitlist_notifier = notifier
    app.state.waitlist_scheduler = waitlist_scheduler

    def startup_background():
        # Rehydrate off the event loop: one DB pass over every monitored slot.
        try:
            waitlist_scheduler.initialize()
        except Exception as e:
            logger.warning("Waitlist scheduler init failed: %s", e, exc_info=True)

    threading.Thread(target=startup_background, daemon=True).start()
    logger.info("Backend ready (internal waitlist scheduler: %s)", waitlist_scheduler.internal)
    yield
    waitlist_scheduler.shutdown()


app = FastAPI(title="Slot Waitlist", version="0.1.0", lifespan=lifespan)

# CORS: dev origins + optional CORS_ORIGINS env (comma-separated) for the production dashboard
_cors_origins = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:5000",
    "http://127.0.0.1:5000",
]
_cors_extra = os.getenv("CORS_ORIGINS", "")
if _cors_extra:
    _cors_origins.extend(o.strip() for o in _cors_extra.split(",") if o.strip())
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(waitlist.router, prefix="/waitlist", tags=["waitlist"])
app.include_router(waitlist_calendar.router, prefix="/waitlist/calendar", tags=["waitlist-calendar"])


@app.get("/", include_in_schema=False)
def root():
    return {"message": "Slot Waitlist API", "docs": "/docs", "health": "/health"}


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}
