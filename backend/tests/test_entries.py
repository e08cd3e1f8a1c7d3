"""
Entry queue: join, priority order, registration / claim confirmation, cancel, stats.
"""
from datetime import timedelta

import pytest

from app.core.constants import (
    CONFIRMATION_TOKEN_TTL,
    ENTRY_CANCELLED,
    ENTRY_CONFIRMED,
    ENTRY_EXPIRED,
    ENTRY_NOTIFIED,
    ENTRY_PENDING,
    SLOT_MONITORING,
    TOKEN_CONFIRMATION,
)
from app.core.errors import InvalidToken, NotFound, ValidationError
from app.models.waitlist_token import WaitlistToken
from app.services.waitlist import entries, slots, tokens

OWNER = "owner-1"


def test_join_queues_entry_and_starts_monitoring(db, clock, notifier):
    """First join creates the slot, a pending entry at priority 1, a registration link, and sends it."""
    start = clock() + timedelta(hours=3)
    result = entries.join(
        db,
        OWNER,
        start,
        "06 11 11 11 11",
        first_name="Ada",
        email="ada@example.com",
        party_size=4,
        label="Chez Test",
        notifier=notifier,
        now=clock(),
    )
    assert result.entry.status == ENTRY_PENDING
    assert result.entry.priority == 1
    assert result.entry.phone == "+33611111111"
    assert result.entry.party_size == 4
    assert result.slot.status == SLOT_MONITORING
    assert result.slot.label == "Chez Test"
    assert result.waitlist_url == f"https://waitlist.test/waitlist/{result.token}"
    assert notifier.joins == [(result.entry.id, result.waitlist_url)]
    assert result.entry.message_id == f"SMjoin{result.entry.id}"


def test_priorities_follow_join_order(db, clock):
    """Priorities are strictly increasing; next_claimant is the minimum pending one."""
    start = clock() + timedelta(hours=3)
    a = entries.join(db, OWNER, start, "+33611111111", now=clock())
    b = entries.join(db, OWNER, start + timedelta(minutes=10), "+33622222222", now=clock())
    c = entries.join(db, OWNER, start - timedelta(minutes=15), "+33633333333", now=clock())
    assert a.slot.id == b.slot.id == c.slot.id
    assert [a.entry.priority, b.entry.priority, c.entry.priority] == [1, 2, 3]

    assert entries.next_claimant(db, a.slot.id).id == a.entry.id
    entries.cancel(db, a.entry.id, now=clock())
    assert entries.next_claimant(db, a.slot.id).id == b.entry.id


def test_priority_is_not_reused_after_cancellation(db, clock):
    start = clock() + timedelta(hours=3)
    a = entries.join(db, OWNER, start, "+33611111111", now=clock())
    entries.cancel(db, a.entry.id, now=clock())
    b = entries.join(db, OWNER, start, "+33622222222", now=clock())
    assert b.entry.priority == 2


def test_duplicate_joins_are_independent_entries(db, clock):
    start = clock() + timedelta(hours=3)
    first = entries.join(db, OWNER, start, "+33611111111", now=clock())
    second = entries.join(db, OWNER, start, "+33611111111", now=clock())
    assert first.entry.id != second.entry.id
    assert entries.count_pending(db, first.slot.id) == 2


def test_join_survives_notifier_failure(db, clock, notifier):
    """A failed SMS is logged; the entry and its token are kept."""
    notifier.fail = True
    result = entries.join(db, OWNER, clock() + timedelta(hours=3), "+33611111111", notifier=notifier, now=clock())
    assert result.entry.status == ENTRY_PENDING
    assert result.entry.message_id is None
    assert tokens.resolve(db, result.token, now=clock()).entry.id == result.entry.id


@pytest.mark.parametrize("phone", ["", "abc", "12345", "+1"])
def test_join_rejects_bad_phone(db, clock, phone):
    with pytest.raises(ValidationError):
        entries.join(db, OWNER, clock() + timedelta(hours=3), phone, now=clock())


def test_normalize_phone_formats():
    assert entries.normalize_phone("+33 6 12 34 56 78") == "+33612345678"
    assert entries.normalize_phone("06.12.34.56.78") == "+33612345678"
    assert entries.normalize_phone("33612345678") == "+33612345678"
    assert entries.normalize_phone("0612345678", country_code="+32") == "+32612345678"


def test_join_rejects_bad_email_and_party_size(db, clock):
    with pytest.raises(ValidationError):
        entries.join(db, OWNER, clock() + timedelta(hours=3), "+33611111111", email="not-an-email", now=clock())
    with pytest.raises(ValidationError):
        entries.join(db, OWNER, clock() + timedelta(hours=3), "+33611111111", party_size=0, now=clock())


def test_confirm_registration_updates_contact_and_burns_token(db, clock):
    start = clock() + timedelta(hours=3)
    result = entries.join(db, OWNER, start, "+33611111111", now=clock())
    alternatives = [start + timedelta(hours=1), start + timedelta(days=1)]
    entry = entries.confirm_registration(
        db,
        result.token,
        first_name="Grace",
        last_name="Hopper",
        phone="0622222222",
        email="grace@example.com",
        selected_slots=alternatives,
        now=clock(),
    )
    assert entry.first_name == "Grace"
    assert entry.phone == "+33622222222"
    assert entry.alternative_times == [a.isoformat() for a in alternatives]
    with pytest.raises(InvalidToken):
        entries.confirm_registration(db, result.token, first_name="X", last_name="", phone="+33611111111", now=clock())


def _notify(db, clock, result):
    deadline = clock() + timedelta(minutes=30)
    assert entries.mark_notified(db, result.entry.id, deadline, now=clock())
    raw, _ = tokens.issue(db, result.entry.id, TOKEN_CONFIRMATION, CONFIRMATION_TOKEN_TTL, now=clock())
    return raw


def test_confirm_claim_within_deadline(db, clock):
    result = entries.join(db, OWNER, clock() + timedelta(hours=3), "+33611111111", now=clock())
    raw = _notify(db, clock, result)
    clock.advance(minutes=10)
    entry = entries.confirm_claim(db, raw, now=clock())
    assert entry.status == ENTRY_CONFIRMED
    with pytest.raises(InvalidToken):
        entries.confirm_claim(db, raw, now=clock())


def test_confirm_claim_rejects_registration_token(db, clock):
    result = entries.join(db, OWNER, clock() + timedelta(hours=3), "+33611111111", now=clock())
    with pytest.raises(InvalidToken):
        entries.confirm_claim(db, result.token, now=clock())


def test_mark_notified_is_compare_and_set(db, clock):
    result = entries.join(db, OWNER, clock() + timedelta(hours=3), "+33611111111", now=clock())
    deadline = clock() + timedelta(minutes=30)
    assert entries.mark_notified(db, result.entry.id, deadline, now=clock())
    assert not entries.mark_notified(db, result.entry.id, deadline, now=clock())
    db.expire_all()
    assert entries.get_entry(db, result.entry.id).status == ENTRY_NOTIFIED


def test_expire_stale_notifications(db, clock):
    result = entries.join(db, OWNER, clock() + timedelta(hours=3), "+33611111111", now=clock())
    _notify(db, clock, result)
    assert entries.expire_stale_notifications(db, now=clock() + timedelta(minutes=10)) == 0
    assert entries.expire_stale_notifications(db, now=clock() + timedelta(minutes=31)) == 1
    db.expire_all()
    assert entries.get_entry(db, result.entry.id).status == ENTRY_EXPIRED


def test_cancel_and_mark_expired_are_idempotent(db, clock):
    result = entries.join(db, OWNER, clock() + timedelta(hours=3), "+33611111111", now=clock())
    assert entries.cancel(db, result.entry.id, now=clock()).status == ENTRY_CANCELLED
    assert entries.cancel(db, result.entry.id, now=clock()).status == ENTRY_CANCELLED
    assert entries.mark_expired(db, result.entry.id, now=clock()).status == ENTRY_CANCELLED
    with pytest.raises(NotFound):
        entries.cancel(db, 9999)
    with pytest.raises(NotFound):
        entries.mark_expired(db, 9999)


def test_delete_entry_removes_its_tokens(db, clock):
    result = entries.join(db, OWNER, clock() + timedelta(hours=3), "+33611111111", now=clock())
    entry_id = result.entry.id
    entries.delete_entry(db, entry_id)
    assert db.query(WaitlistToken).count() == 0
    with pytest.raises(NotFound):
        entries.get_entry(db, entry_id)


def test_stats_and_conversion_rate(db, clock):
    """3 entries, 1 confirmed -> 33.3%; another owner's entries are not counted."""
    start = clock() + timedelta(hours=3)
    a = entries.join(db, OWNER, start, "+33611111111", now=clock())
    entries.join(db, OWNER, start, "+33622222222", now=clock())
    entries.join(db, OWNER, start + timedelta(days=1), "+33633333333", now=clock())
    entries.join(db, "owner-2", start, "+33644444444", now=clock())
    raw = _notify(db, clock, a)
    entries.confirm_claim(db, raw, now=clock())

    stats = entries.get_stats(db, OWNER)
    assert stats == {
        "total_entries": 3,
        "pending_entries": 2,
        "confirmed_entries": 1,
        "active_slots": 2,
        "conversion_rate": 33.3,
    }
    assert entries.get_stats(db, "nobody")["conversion_rate"] == 0.0


def test_list_reads_are_owner_scoped(db, clock):
    start = clock() + timedelta(hours=3)
    a = entries.join(db, OWNER, start, "+33611111111", now=clock())
    entries.join(db, "owner-2", start, "+33622222222", now=clock())
    assert [e.id for e in entries.list_by_owner(db, OWNER)] == [a.entry.id]
    assert [s.id for s in slots.list_slots_by_owner(db, OWNER)] == [a.slot.id]
    data = entries.entry_to_dict(a.entry, include_slot=True)
    assert data["slot"]["id"] == a.slot.id
    assert data["status"] == ENTRY_PENDING
