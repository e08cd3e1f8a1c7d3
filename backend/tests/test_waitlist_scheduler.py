"""
WaitlistScheduler: one timer per slot, exactly-once notification, expiry, global sweep, rehydration.

The APScheduler instance is never started, so nothing runs on its own: fire_timer runs a slot's
pending job on demand.
"""
import threading
from datetime import timedelta

from apscheduler.schedulers.background import BackgroundScheduler

from app.core.clock import as_utc
from app.core.constants import (
    ENTRY_EXPIRED,
    ENTRY_NOTIFIED,
    ENTRY_PENDING,
    SLOT_AVAILABLE,
    SLOT_EXPIRED,
    SLOT_MONITORING,
    SLOT_PENDING,
    WAITLIST_GLOBAL_CHECK_JOB_ID,
)
from app.core.errors import ProbeError
from app.db.session import SessionLocal
from app.models.waitlist_slot import WaitlistSlot
from app.models.waitlist_token import WaitlistToken
from app.scheduler.waitlist_scheduler import CheckOutcome, WaitlistScheduler, slot_job_id
from app.services.waitlist import entries, slots

OWNER = "owner-1"


def _join(db, clock, start, phone="+33611111111", owner=OWNER):
    return entries.join(db, owner, start, phone, now=clock())


def _slot(db, slot_id):
    db.expire_all()
    return slots.get_slot(db, slot_id)


def _entry(db, entry_id):
    db.expire_all()
    return entries.get_entry(db, entry_id)


def test_repeated_scheduling_keeps_one_timer(db, clock, waitlist_scheduler):
    result = _join(db, clock, clock() + timedelta(hours=3))
    for _ in range(3):
        assert waitlist_scheduler.schedule_slot_check(result.slot.id)
    assert waitlist_scheduler.active_timer_count() == 1
    assert waitlist_scheduler.armed_slot_ids() == [result.slot.id]
    assert len(waitlist_scheduler._scheduler.get_jobs()) == 1


def test_schedule_persists_next_check(db, clock, waitlist_scheduler):
    result = _join(db, clock, clock() + timedelta(hours=12))
    clock.advance(minutes=1)
    waitlist_scheduler.schedule_slot_check(result.slot.id)
    slot = _slot(db, result.slot.id)
    assert slot.status == SLOT_MONITORING
    assert as_utc(slot.updated_at) == clock()
    assert slot.check_interval_minutes == 10
    assert as_utc(slot.next_check_at) == clock() + timedelta(minutes=10)
    job = waitlist_scheduler._scheduler.get_job(slot_job_id(result.slot.id))
    assert job.trigger.run_date == clock() + timedelta(minutes=10)


def test_first_in_line_is_the_only_one_notified(db, clock, probe, notifier, waitlist_scheduler, fire_timer):
    """A (priority 1) and B (priority 2) wait; the slot frees up; only A is offered it."""
    start = clock() + timedelta(hours=3)
    a = _join(db, clock, start)
    b = _join(db, clock, start, phone="+33622222222")
    waitlist_scheduler.schedule_slot_check(a.slot.id)
    probe.available = True

    assert fire_timer(a.slot.id) == CheckOutcome.NOTIFIED

    assert _slot(db, a.slot.id).status == SLOT_AVAILABLE
    entry_a = _entry(db, a.entry.id)
    assert entry_a.status == ENTRY_NOTIFIED
    assert as_utc(entry_a.response_deadline) == clock() + timedelta(minutes=30)
    assert entry_a.message_id == f"SMavail{a.entry.id}"
    assert _entry(db, b.entry.id).status == ENTRY_PENDING
    assert [(e, s) for e, s, _ in notifier.availabilities] == [(a.entry.id, a.slot.id)]
    assert notifier.availabilities[0][2].startswith("https://waitlist.test/waitlist/wl_")
    assert db.query(WaitlistToken).filter(WaitlistToken.entry_id == a.entry.id, WaitlistToken.purpose == "confirmation").count() == 1
    assert not waitlist_scheduler.is_armed(a.slot.id)

    # Any later check sees a terminal slot and does nothing
    assert waitlist_scheduler.check_slot(a.slot.id) == CheckOutcome.INACTIVE
    assert len(notifier.availabilities) == 1


def test_concurrent_checks_notify_exactly_once(db, clock, probe, notifier, waitlist_scheduler):
    result = _join(db, clock, clock() + timedelta(hours=3))
    _join(db, clock, clock() + timedelta(hours=3), phone="+33622222222")
    probe.available = True
    outcomes = []

    def run():
        outcomes.append(waitlist_scheduler.check_slot(result.slot.id))

    threads = [threading.Thread(target=run) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(o.value for o in outcomes) == [CheckOutcome.INACTIVE.value, CheckOutcome.NOTIFIED.value]
    assert len(notifier.availabilities) == 1
    db.expire_all()
    notified = [e for e in entries.list_by_slot(db, result.slot.id) if e.status == ENTRY_NOTIFIED]
    assert len(notified) == 1


def test_unavailable_slot_is_rescheduled(db, clock, probe, waitlist_scheduler, fire_timer):
    start = clock() + timedelta(hours=3)
    result = _join(db, clock, start)
    waitlist_scheduler.schedule_slot_check(result.slot.id)
    clock.advance(minutes=3)

    assert fire_timer(result.slot.id) == CheckOutcome.RESCHEDULED

    assert probe.calls == [(OWNER, start, start + timedelta(hours=1))]
    slot = _slot(db, result.slot.id)
    assert slot.status == SLOT_MONITORING
    assert as_utc(slot.last_check_at) == clock()
    assert as_utc(slot.next_check_at) == clock() + timedelta(minutes=3)
    assert waitlist_scheduler.active_timer_count() == 1


def test_probe_errors_mean_not_available(db, clock, probe, notifier, waitlist_scheduler, fire_timer):
    """ProbeError and unexpected exceptions both reschedule; nobody is notified."""
    result = _join(db, clock, clock() + timedelta(hours=3))
    waitlist_scheduler.schedule_slot_check(result.slot.id)

    probe.error = ProbeError("calendar unreachable")
    assert fire_timer(result.slot.id) == CheckOutcome.RESCHEDULED
    probe.error = RuntimeError("boom")
    assert fire_timer(result.slot.id) == CheckOutcome.RESCHEDULED

    assert notifier.availabilities == []
    assert _entry(db, result.entry.id).status == ENTRY_PENDING
    assert waitlist_scheduler.is_armed(result.slot.id)


def test_past_slot_expires_when_checked(db, clock, probe, waitlist_scheduler, fire_timer):
    result = _join(db, clock, clock() + timedelta(hours=1))
    waitlist_scheduler.schedule_slot_check(result.slot.id)
    clock.advance(hours=2)

    assert fire_timer(result.slot.id) == CheckOutcome.EXPIRED

    assert _slot(db, result.slot.id).status == SLOT_EXPIRED
    assert _entry(db, result.entry.id).status == ENTRY_EXPIRED
    assert probe.calls == []
    assert waitlist_scheduler.active_timer_count() == 0


def test_slot_with_nobody_waiting_stops_monitoring(db, clock, probe, waitlist_scheduler, fire_timer):
    result = _join(db, clock, clock() + timedelta(hours=3))
    waitlist_scheduler.schedule_slot_check(result.slot.id)
    entries.cancel(db, result.entry.id, now=clock())

    assert fire_timer(result.slot.id) == CheckOutcome.IDLE

    slot = _slot(db, result.slot.id)
    assert slot.status == SLOT_PENDING
    assert slot.next_check_at is None
    assert probe.calls == []
    assert not waitlist_scheduler.is_armed(result.slot.id)


def test_owner_without_probe_is_not_monitored(db, clock, probe_owners, waitlist_scheduler):
    """join still marks the slot monitoring; it just never gets a timer until the owner connects a calendar."""
    probe_owners.clear()
    result = _join(db, clock, clock() + timedelta(hours=3))
    assert not waitlist_scheduler.schedule_slot_check(result.slot.id)
    assert waitlist_scheduler.active_timer_count() == 0
    slot = _slot(db, result.slot.id)
    assert slot.status == SLOT_MONITORING
    assert waitlist_scheduler._scheduler.get_jobs() == []


def test_superseded_timer_fire_is_dropped(db, clock, probe, waitlist_scheduler):
    result = _join(db, clock, clock() + timedelta(hours=3))
    waitlist_scheduler.schedule_slot_check(result.slot.id)
    old_job = waitlist_scheduler._scheduler.get_job(slot_job_id(result.slot.id))
    old_args = list(old_job.args)
    waitlist_scheduler.schedule_slot_check(result.slot.id)

    assert old_job.func(*old_args) == CheckOutcome.STALE
    assert probe.calls == []
    assert waitlist_scheduler.is_armed(result.slot.id)


def test_notifier_failure_does_not_undo_notification(db, clock, probe, notifier, waitlist_scheduler):
    result = _join(db, clock, clock() + timedelta(hours=3))
    probe.available = True
    notifier.fail = True

    assert waitlist_scheduler.check_slot(result.slot.id) == CheckOutcome.NOTIFIED

    entry = _entry(db, result.entry.id)
    assert entry.status == ENTRY_NOTIFIED
    assert entry.message_id is None
    assert _slot(db, result.slot.id).status == SLOT_AVAILABLE


def test_available_slot_without_waiters_reports_available(db, clock, probe, notifier, waitlist_scheduler):
    """If the only waiter leaves between the pending count and the CAS, the slot frees silently."""
    result = _join(db, clock, clock() + timedelta(hours=3))
    probe.available = True
    original = probe.check_availability

    def cancel_then_answer(owner_id, start, end):
        session = SessionLocal()
        try:
            entries.cancel(session, result.entry.id, now=clock())
        finally:
            session.close()
        return original(owner_id, start, end)

    probe.check_availability = cancel_then_answer
    assert waitlist_scheduler.check_slot(result.slot.id) == CheckOutcome.AVAILABLE
    assert notifier.availabilities == []
    assert _slot(db, result.slot.id).status == SLOT_AVAILABLE


def test_global_check_arms_nothing_for_empty_slot(db, clock, waitlist_scheduler):
    """Slot 3h out, nobody waiting: the sweep leaves it pending and unarmed."""
    slot = slots.find_or_create(db, OWNER, clock() + timedelta(hours=3), now=clock())

    result = waitlist_scheduler.run_global_check()

    assert result.checked == 1
    assert result.rearmed == 0
    assert result.reverted == 0
    assert waitlist_scheduler.active_timer_count() == 0
    assert _slot(db, slot.id).status == SLOT_PENDING


def test_global_check_rearms_lost_timers_and_expires_past_slots(db, clock, waitlist_scheduler):
    waiting = _join(db, clock, clock() + timedelta(hours=5))
    soon = _join(db, clock, clock() + timedelta(hours=1), phone="+33622222222")
    clock.advance(hours=2)

    result = waitlist_scheduler.run_global_check()

    assert result.checked == 2
    assert result.expired == 1
    assert result.rearmed == 1
    assert waitlist_scheduler.armed_slot_ids() == [waiting.slot.id]
    assert _slot(db, soon.slot.id).status == SLOT_EXPIRED
    assert _entry(db, soon.entry.id).status == ENTRY_EXPIRED


def test_global_check_reverts_empty_monitoring_slots_and_expires_stale_offers(db, clock, waitlist_scheduler):
    result = _join(db, clock, clock() + timedelta(hours=5))
    assert entries.mark_notified(db, result.entry.id, clock() + timedelta(minutes=30), now=clock())
    clock.advance(minutes=31)

    sweep = waitlist_scheduler.run_global_check()

    assert sweep.reverted == 1
    assert sweep.stale_notifications == 1
    assert _slot(db, result.slot.id).status == SLOT_PENDING
    assert _entry(db, result.entry.id).status == ENTRY_EXPIRED


def test_global_check_skips_busy_slots_and_overlapping_runs(db, clock, waitlist_scheduler):
    result = _join(db, clock, clock() + timedelta(hours=5))
    lock = waitlist_scheduler._slot_lock(result.slot.id)
    with lock:
        sweep = waitlist_scheduler.run_global_check()
    assert sweep.skipped == 1
    assert sweep.rearmed == 0

    waitlist_scheduler._global_check_running = True
    assert waitlist_scheduler.run_global_check().ran is False
    waitlist_scheduler._global_check_running = False


def test_global_check_purges_old_slots_and_tokens(db, clock, waitlist_scheduler):
    result = _join(db, clock, clock() + timedelta(hours=1))
    slot_id = result.slot.id
    clock.advance(days=8)

    sweep = waitlist_scheduler.run_global_check()

    assert sweep.expired == 1
    assert sweep.purged_slots == 1
    assert _slot(db, slot_id) is None
    assert db.query(WaitlistToken).count() == 0


def test_rehydrate_twice_arms_the_same_slots(db, clock, waitlist_scheduler):
    a = _join(db, clock, clock() + timedelta(hours=3))
    b = _join(db, clock, clock() + timedelta(days=2), phone="+33622222222")
    slots.find_or_create(db, OWNER, clock() + timedelta(hours=10), now=clock())  # nobody waiting

    assert waitlist_scheduler.rehydrate() == 2
    first = waitlist_scheduler.armed_slot_ids()
    assert waitlist_scheduler.rehydrate() == 2
    assert waitlist_scheduler.armed_slot_ids() == first == sorted([a.slot.id, b.slot.id])
    assert len(waitlist_scheduler._scheduler.get_jobs()) == 2


def test_rehydrate_runs_overdue_checks_immediately(db, clock, waitlist_scheduler):
    """A next_check_at that passed while the process was down means check now."""
    result = _join(db, clock, clock() + timedelta(hours=3))
    clock.advance(minutes=20)

    waitlist_scheduler.rehydrate()

    job = waitlist_scheduler._scheduler.get_job(slot_job_id(result.slot.id))
    assert job.trigger.run_date == clock()


def test_shutdown_clears_timers_but_keeps_state(db, clock, waitlist_scheduler):
    result = _join(db, clock, clock() + timedelta(hours=3))
    waitlist_scheduler.schedule_slot_check(result.slot.id)

    waitlist_scheduler.shutdown()

    assert waitlist_scheduler.active_timer_count() == 0
    assert waitlist_scheduler._scheduler.get_jobs() == []
    slot = _slot(db, result.slot.id)
    assert slot.status == SLOT_MONITORING
    assert slot.next_check_at is not None


def test_initialize_registers_global_check(probe, notifier, clock):
    aps = BackgroundScheduler(timezone="UTC")
    ws = WaitlistScheduler(
        aps,
        notifier,
        session_factory=SessionLocal,
        probe_resolver=lambda _db, _owner: probe,
        clock=clock,
        internal=True,
    )
    try:
        ws.initialize()
        assert aps.running
        assert ws.initialized
        assert aps.get_job(WAITLIST_GLOBAL_CHECK_JOB_ID) is not None
    finally:
        ws.shutdown()
    assert not aps.running


def test_initialize_does_nothing_when_internal_timers_are_off(notifier):
    aps = BackgroundScheduler(timezone="UTC")
    ws = WaitlistScheduler(aps, notifier, session_factory=SessionLocal, internal=False)
    ws.initialize()
    assert not aps.running
    assert not ws.initialized
    assert not ws.schedule_slot_check(1)


def _cron_scheduler(probe, notifier, clock):
    return WaitlistScheduler(
        BackgroundScheduler(timezone="UTC"),
        notifier,
        session_factory=SessionLocal,
        probe_resolver=lambda _db, _owner: probe,
        clock=clock,
        internal=False,
    )


def test_cron_sweep_runs_due_checks_and_notifies(db, clock, probe, notifier):
    """Without internal timers each sweep checks the slots that are due, and never arms a job."""
    ws = _cron_scheduler(probe, notifier, clock)
    ws.initialize()
    result = _join(db, clock, clock() + timedelta(hours=3))
    try:
        first = ws.run_global_check()
        assert first.probed == 0
        assert probe.calls == []

        clock.advance(minutes=4)
        second = ws.run_global_check()
        assert second.probed == 1
        assert len(probe.calls) == 1
        assert ws.active_timer_count() == 0
        assert ws._scheduler.get_jobs() == []
        slot = _slot(db, result.slot.id)
        assert slot.status == SLOT_MONITORING
        assert as_utc(slot.next_check_at) == clock() + timedelta(minutes=3)

        probe.available = True
        clock.advance(minutes=4)
        third = ws.run_global_check()
        assert third.notified == 1
        assert _slot(db, result.slot.id).status == SLOT_AVAILABLE
        assert _entry(db, result.entry.id).status == ENTRY_NOTIFIED
        assert [n[0] for n in notifier.availabilities] == [result.entry.id]
        assert ws._scheduler.get_jobs() == []
    finally:
        ws.shutdown()


def test_cron_sweep_checks_slot_without_persisted_next_check(db, clock, probe, notifier):
    ws = _cron_scheduler(probe, notifier, clock)
    result = _join(db, clock, clock() + timedelta(hours=3))
    db.query(WaitlistSlot).filter(WaitlistSlot.id == result.slot.id).update({WaitlistSlot.next_check_at: None})
    db.commit()
    try:
        assert ws.run_global_check().probed == 1
        assert len(probe.calls) == 1
        assert ws.active_timer_count() == 0
    finally:
        ws.shutdown()
