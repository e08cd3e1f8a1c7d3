"""
Waitlist scheduler: one APScheduler "date" job per monitored slot, plus a periodic global sweep.

Each fire opens its own session, re-reads the slot, and either reschedules itself (not available),
notifies exactly one claimant (available), or stops (expired, nobody waiting, no probe).
With internal timers off no job is ever armed: the cron-driven sweep runs each due check instead.

Locks:
  - self._lock guards the timer registry (slot id -> (generation, job)) and the global-check flag.
  - one lock per slot serialises a fire against the sweep and manual scheduling. Fires wait on it;
    the sweep never does (a busy slot is skipped and picked up next round).
Neither lock is held across another slot's I/O.
"""
import itertools
import logging
import threading
from collections import defaultdict
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.base import BaseScheduler
from sqlalchemy.orm import Session

from app.config import settings
from app.core.clock import as_utc, utc_now
from app.core.constants import (
    ACTIVE_SLOT_STATUSES,
    CONFIRMATION_TOKEN_TTL,
    GLOBAL_CHECK_INTERVAL_MINUTES,
    RESPONSE_WINDOW,
    SLOT_MONITORING,
    SLOT_RETENTION,
    TOKEN_CONFIRMATION,
    WAITLIST_GLOBAL_CHECK_JOB_ID,
    WAITLIST_SLOT_JOB_PREFIX,
)
from app.core.errors import NotifierError, ProbeError
from app.models.waitlist_slot import WaitlistSlot
from app.services.availability.base import AvailabilityProbe
from app.services.notify.base import Notifier
from app.services.waitlist import entries, slots, tokens

logger = logging.getLogger(__name__)

ProbeResolver = Callable[[Session, str], AvailabilityProbe | None]


class CheckOutcome(str, Enum):
    MISSING = "missing"  # slot row gone
    INACTIVE = "inactive"  # already available or expired
    EXPIRED = "expired"  # start passed; slot and waiters expired now
    IDLE = "idle"  # nobody pending; reverted to pending
    NO_PROBE = "no_probe"
    RESCHEDULED = "rescheduled"
    AVAILABLE = "available"  # slot freed but nobody left to notify
    NOTIFIED = "notified"
    STALE = "stale"  # lost a race (superseded timer or CAS)
    ERROR = "error"


@dataclass
class GlobalCheckResult:
    checked: int = 0
    expired: int = 0
    rearmed: int = 0
    reverted: int = 0
    probed: int = 0  # cron mode: due checks run by the sweep
    notified: int = 0
    stale_notifications: int = 0
    purged_slots: int = 0
    purged_tokens: int = 0
    skipped: int = 0
    ran: bool = True

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _default_session_factory() -> Session:
    from app.db.session import SessionLocal

    return SessionLocal()


def _default_probe_resolver(db: Session, owner_id: str) -> AvailabilityProbe | None:
    from app.services.availability.registry import resolve_probe

    return resolve_probe(db, owner_id)


def slot_job_id(slot_id: int) -> str:
    return f"{WAITLIST_SLOT_JOB_PREFIX}{slot_id}"


class WaitlistScheduler:
    def __init__(
        self,
        scheduler: BaseScheduler,
        notifier: Notifier,
        *,
        session_factory: Callable[[], Session] = _default_session_factory,
        probe_resolver: ProbeResolver = _default_probe_resolver,
        clock: Callable[[], datetime] = utc_now,
        internal: bool | None = None,
    ):
        self._scheduler = scheduler
        self._notifier = notifier
        self._session_factory = session_factory
        self._probe_resolver = probe_resolver
        self._clock = clock
        self.internal = settings.waitlist_internal_scheduler if internal is None else internal
        self._lock = threading.Lock()
        self._timers: dict[int, tuple[int, Any]] = {}
        self._slot_locks: defaultdict[int, threading.Lock] = defaultdict(threading.Lock)
        self._generations = itertools.count(1)
        self._global_check_running = False
        self.initialized = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """Start APScheduler if needed, rehydrate timers from the DB, register the global sweep."""
        if not self.internal:
            logger.info("Waitlist scheduler: internal timers disabled (WAITLIST_INTERNAL_SCHEDULER=false)")
            return
        if not self._scheduler.running:
            self._scheduler.start()
        armed = self.rehydrate()
        self._scheduler.add_job(
            self.run_global_check,
            "interval",
            minutes=GLOBAL_CHECK_INTERVAL_MINUTES,
            id=WAITLIST_GLOBAL_CHECK_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.initialized = True
        logger.info(
            "Waitlist scheduler initialized: %s slot timers, global check every %s min",
            armed,
            GLOBAL_CHECK_INTERVAL_MINUTES,
        )

    def shutdown(self) -> None:
        """Drop every live timer. Persisted slot state is left as-is for the next rehydrate."""
        with self._lock:
            slot_ids = list(self._timers)
            self._timers.clear()
        for slot_id in slot_ids:
            self._remove_job(slot_id)
        try:
            self._scheduler.remove_job(WAITLIST_GLOBAL_CHECK_JOB_ID)
        except JobLookupError:
            pass
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self.initialized = False
        logger.info("Waitlist scheduler stopped (%s timers cleared)", len(slot_ids))

    def rehydrate(self) -> int:
        """
        Arm one timer per pending/monitoring slot that has someone waiting. A persisted next_check_at
        in the past runs immediately; otherwise the earlier of it and now + fresh interval.
        Running it twice leaves the same set armed. Returns how many slots are armed.
        """
        db = self._session_factory()
        try:
            now = self._clock()
            slot_ids = [s.id for s in slots.list_active_slots(db)]
            for slot_id in slot_ids:
                with self._slot_lock(slot_id):
                    slot = slots.get_slot(db, slot_id)
                    if slot is None or slot.status not in ACTIVE_SLOT_STATUSES:
                        continue
                    if entries.count_pending(db, slot_id) == 0:
                        continue
                    run_at = None
                    if slot.next_check_at is not None:
                        persisted = as_utc(slot.next_check_at)
                        interval = slots.compute_check_interval(slot.slot_start, now)
                        run_at = now if persisted <= now else min(persisted, now + timedelta(minutes=interval))
                    self._schedule(db, slot, now, run_at=run_at)
        except Exception:
            logger.exception("Waitlist rehydrate failed")
            db.rollback()
        finally:
            db.close()
        return self.active_timer_count()

    # ------------------------------------------------------------------
    # Timer registry
    # ------------------------------------------------------------------

    def _slot_lock(self, slot_id: int) -> threading.Lock:
        with self._lock:
            return self._slot_locks[slot_id]

    def _remove_job(self, slot_id: int) -> None:
        try:
            self._scheduler.remove_job(slot_job_id(slot_id))
        except JobLookupError:
            pass

    def _arm(self, slot_id: int, run_at: datetime) -> None:
        """Replace whatever timer the slot had with one firing at run_at."""
        with self._lock:
            generation = next(self._generations)
            self._timers.pop(slot_id, None)
            self._remove_job(slot_id)
            job = self._scheduler.add_job(
                self._fire,
                "date",
                run_date=run_at,
                args=[slot_id, generation],
                id=slot_job_id(slot_id),
                replace_existing=True,
                misfire_grace_time=None,
                coalesce=True,
            )
            self._timers[slot_id] = (generation, job)

    def clear_slot_timer(self, slot_id: int) -> bool:
        """Cancel the slot's timer. Returns True if one was armed."""
        with self._lock:
            had_timer = self._timers.pop(slot_id, None) is not None
            self._remove_job(slot_id)
        return had_timer

    def active_timer_count(self) -> int:
        with self._lock:
            return len(self._timers)

    def armed_slot_ids(self) -> list[int]:
        with self._lock:
            return sorted(self._timers)

    def is_armed(self, slot_id: int) -> bool:
        with self._lock:
            return slot_id in self._timers

    def _fire(self, slot_id: int, generation: int) -> CheckOutcome:
        with self._lock:
            current = self._timers.get(slot_id)
            if current is None or current[0] != generation:
                logger.debug("Waitlist slot %s: dropping stale timer (generation %s)", slot_id, generation)
                return CheckOutcome.STALE
            # date jobs are one-shot; APScheduler already dropped it
            del self._timers[slot_id]
        return self.check_slot(slot_id)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _schedule(
        self,
        db: Session,
        slot: WaitlistSlot,
        now: datetime,
        *,
        run_at: datetime | None = None,
    ) -> bool:
        """
        Persist next_check_at and, with internal timers, arm the timer. Without them the cron sweep
        picks the slot up once next_check_at is due. Owners without a probe are not monitored.
        """
        if self._probe_resolver(db, slot.owner_id) is None:
            logger.info("Waitlist slot %s: owner %s has no availability probe; not monitoring", slot.id, slot.owner_id)
            self.clear_slot_timer(slot.id)
            return False
        interval = slots.compute_check_interval(slot.slot_start, now)
        next_check_at = run_at or now + timedelta(minutes=interval)
        if not slots.schedule_next_check(db, slot.id, interval, next_check_at, now=now):
            self.clear_slot_timer(slot.id)
            return False
        if not self.internal:
            return True
        self._arm(slot.id, next_check_at)
        logger.debug("Waitlist slot %s: next check at %s (every %s min)", slot.id, next_check_at.isoformat(), interval)
        return True

    def schedule_slot_check(self, slot_id: int) -> bool:
        """(Re)arm the slot's timer at now + interval. Safe to call repeatedly: one timer per slot."""
        if not self.internal:
            return False
        db = self._session_factory()
        try:
            with self._slot_lock(slot_id):
                slot = slots.get_slot(db, slot_id)
                if slot is None or slot.status not in ACTIVE_SLOT_STATUSES:
                    self.clear_slot_timer(slot_id)
                    return False
                return self._schedule(db, slot, self._clock())
        except Exception:
            logger.exception("Waitlist slot %s: scheduling failed", slot_id)
            db.rollback()
            return False
        finally:
            db.close()

    def ensure_scheduled(self, slot_id: int) -> bool:
        """Arm only if no timer is live for the slot."""
        if self.is_armed(slot_id):
            return True
        return self.schedule_slot_check(slot_id)

    # ------------------------------------------------------------------
    # Per-slot check
    # ------------------------------------------------------------------

    def check_slot(self, slot_id: int) -> CheckOutcome:
        """One check cycle for the slot. Never raises."""
        with self._slot_lock(slot_id):
            return self._run_check(slot_id)

    def _run_check(self, slot_id: int) -> CheckOutcome:
        """check_slot body; caller holds the slot lock."""
        db = self._session_factory()
        try:
            return self._check_slot(db, slot_id)
        except Exception:
            logger.exception("Waitlist slot %s: check failed", slot_id)
            db.rollback()
            return CheckOutcome.ERROR
        finally:
            db.close()

    def _check_slot(self, db: Session, slot_id: int) -> CheckOutcome:
        now = self._clock()
        slot = slots.get_slot(db, slot_id)
        if slot is None:
            self.clear_slot_timer(slot_id)
            return CheckOutcome.MISSING
        if slot.status not in ACTIVE_SLOT_STATUSES:
            self.clear_slot_timer(slot_id)
            return CheckOutcome.INACTIVE

        window_start, window_end = slots.slot_window(slot)
        if window_start < now:
            slots.expire(db, slot_id, now=now)
            self.clear_slot_timer(slot_id)
            return CheckOutcome.EXPIRED

        if entries.count_pending(db, slot_id) == 0:
            self.clear_slot_timer(slot_id)
            slots.revert_to_pending(db, slot_id, now=now)
            logger.info("Waitlist slot %s: nobody waiting; monitoring stopped", slot_id)
            return CheckOutcome.IDLE

        slots.record_check(db, slot_id, now=now)
        owner_id = slot.owner_id
        probe = self._probe_resolver(db, owner_id)
        if probe is None:
            self.clear_slot_timer(slot_id)
            return CheckOutcome.NO_PROBE

        available = False
        try:
            result = probe.check_availability(owner_id, window_start, window_end)
            available = result.is_available
        except ProbeError as e:
            logger.warning("Waitlist slot %s: availability probe failed: %s", slot_id, e)
            db.rollback()
        except Exception:
            logger.exception("Waitlist slot %s: availability probe raised", slot_id)
            db.rollback()

        if not available:
            slot = slots.get_slot(db, slot_id)
            if slot is None or slot.status not in ACTIVE_SLOT_STATUSES:
                self.clear_slot_timer(slot_id)
                return CheckOutcome.STALE
            self._schedule(db, slot, now)
            return CheckOutcome.RESCHEDULED
        return self._notify_claimant(db, slot_id, now)

    def _notify_claimant(self, db: Session, slot_id: int, now: datetime) -> CheckOutcome:
        if not slots.mark_available(db, slot_id, now=now):
            # someone else moved the slot between our read and now
            self.clear_slot_timer(slot_id)
            return CheckOutcome.STALE
        self.clear_slot_timer(slot_id)

        claimant = entries.next_claimant(db, slot_id)
        while claimant is not None:
            if entries.mark_notified(db, claimant.id, now + RESPONSE_WINDOW, now=now):
                break
            claimant = entries.next_claimant(db, slot_id)
        if claimant is None:
            logger.info("Waitlist slot %s is available but nobody is left to notify", slot_id)
            return CheckOutcome.AVAILABLE

        raw_token, _ = tokens.issue(db, claimant.id, TOKEN_CONFIRMATION, CONFIRMATION_TOKEN_TTL, now=now)
        link = tokens.build_waitlist_url(raw_token)
        claimant = entries.get_entry(db, claimant.id)
        slot = slots.get_slot(db, slot_id)
        logger.info("Waitlist slot %s available: notifying entry %s (priority %s)", slot_id, claimant.id, claimant.priority)
        try:
            message_id = self._notifier.send_availability_message(claimant, slot, link)
        except NotifierError as e:
            logger.warning("Waitlist entry %s: availability message not delivered: %s", claimant.id, e)
        except Exception:
            logger.exception("Waitlist entry %s: notifier raised", claimant.id)
        else:
            if message_id:
                entries.set_message_id(db, claimant.id, message_id)
        return CheckOutcome.NOTIFIED

    # ------------------------------------------------------------------
    # Global sweep
    # ------------------------------------------------------------------

    def run_global_check(self) -> GlobalCheckResult:
        """
        Safety net run every GLOBAL_CHECK_INTERVAL_MINUTES (or by cron): expire past slots, re-arm
        slots that lost their timer, stop monitoring empty slots, expire unanswered notifications,
        and purge old slots and expired tokens. Overlapping runs are skipped.
        """
        with self._lock:
            if self._global_check_running:
                logger.info("Waitlist global check already running; skipping")
                return GlobalCheckResult(ran=False)
            self._global_check_running = True

        result = GlobalCheckResult()
        db = self._session_factory()
        try:
            now = self._clock()
            slot_ids = [s.id for s in slots.list_active_slots(db)]
            result.checked = len(slot_ids)
            for slot_id in slot_ids:
                lock = self._slot_lock(slot_id)
                if not lock.acquire(blocking=False):
                    result.skipped += 1
                    continue
                try:
                    self._sweep_slot(db, slot_id, now, result)
                except Exception:
                    logger.exception("Waitlist global check: slot %s failed", slot_id)
                    db.rollback()
                finally:
                    lock.release()

            result.stale_notifications = entries.expire_stale_notifications(db, now=now)
            purged = slots.sweep_expired(db, SLOT_RETENTION, now=now)
            for slot_id in purged:
                self.clear_slot_timer(slot_id)
                with self._lock:
                    self._slot_locks.pop(slot_id, None)
            result.purged_slots = len(purged)
            result.purged_tokens = tokens.sweep_expired(db, now=now)
        except Exception:
            logger.exception("Waitlist global check failed")
            db.rollback()
        finally:
            db.close()
            with self._lock:
                self._global_check_running = False

        logger.info("Waitlist global check: %s", result.to_dict())
        return result

    def _sweep_slot(self, db: Session, slot_id: int, now: datetime, result: GlobalCheckResult) -> None:
        slot = slots.get_slot(db, slot_id)
        if slot is None or slot.status not in ACTIVE_SLOT_STATUSES:
            self.clear_slot_timer(slot_id)
            return
        if as_utc(slot.slot_start) < now:
            if slots.expire(db, slot_id, now=now):
                result.expired += 1
            self.clear_slot_timer(slot_id)
            return
        if entries.count_pending(db, slot_id) == 0:
            had_timer = self.clear_slot_timer(slot_id)
            if slot.status == SLOT_MONITORING or had_timer:
                slots.revert_to_pending(db, slot_id, now=now)
                result.reverted += 1
            return
        if not self.internal:
            # external cron drives the checks: run the ones that are due
            next_check_at = as_utc(slot.next_check_at) if slot.next_check_at is not None else None
            if next_check_at is None or next_check_at <= now:
                result.probed += 1
                if self._run_check(slot_id) == CheckOutcome.NOTIFIED:
                    result.notified += 1
            return
        if not self.is_armed(slot_id) and self._schedule(db, slot, now):
            result.rearmed += 1
