from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from backend.app.models import AlertEvent, AlertState
from backend.app.ops.alert_rules import (
    RULES_VERSION,
    WEBHOOK_FAILURES_KEY,
    WebhookFailureCounts,
    webhook_failures_rule,
)
from backend.app.ops.schema import StoredAlertState
from backend.app.services import alert_state_service


NOW = datetime(2026, 2, 10, 12, 0, tzinfo=timezone.utc)


def _tick(db, count: int, now: datetime):
    previous = alert_state_service.load_alert_states(db)
    alert = webhook_failures_rule(WebhookFailureCounts(count=count), now, previous)
    result = alert_state_service.evaluate(db, [alert], previous, now=now, rules_version=RULES_VERSION)
    db.commit()
    return result


def _event_count(db) -> int:
    return db.execute(select(func.count()).select_from(AlertEvent)).scalar_one()


def test_first_firing_emits_transition_and_event(sqlite_session):
    result = _tick(sqlite_session, 4, NOW)

    assert len(result.transitions) == 1
    transition = result.transitions[0]
    assert (transition.from_state, transition.to_state) == ("ok", "firing")
    assert WEBHOOK_FAILURES_KEY in result.event_ids_by_key
    assert _event_count(sqlite_session) == 1

    state = alert_state_service.load_alert_states(sqlite_session)[WEBHOOK_FAILURES_KEY]
    assert state.state == "firing"
    assert state.started_at == NOW


def test_started_at_preserved_while_firing_then_cleared(sqlite_session):
    _tick(sqlite_session, 4, NOW)
    second = _tick(sqlite_session, 6, NOW + timedelta(minutes=5))

    assert second.transitions == []
    assert _event_count(sqlite_session) == 1
    state = alert_state_service.load_alert_states(sqlite_session)[WEBHOOK_FAILURES_KEY]
    assert state.started_at == NOW
    assert state.last_seen_at == NOW + timedelta(minutes=5)

    third = _tick(sqlite_session, 0, NOW + timedelta(minutes=10))

    assert [(t.from_state, t.to_state) for t in third.transitions] == [("firing", "ok")]
    state = alert_state_service.load_alert_states(sqlite_session)[WEBHOOK_FAILURES_KEY]
    assert state.state == "ok"
    assert state.started_at is None
    assert state.last_seen_at == NOW + timedelta(minutes=5)
    assert _event_count(sqlite_session) == 2


def test_ok_to_ok_writes_state_but_no_event(sqlite_session):
    result = _tick(sqlite_session, 0, NOW)

    assert result.transitions == []
    assert _event_count(sqlite_session) == 0
    assert sqlite_session.get(AlertState, WEBHOOK_FAILURES_KEY).state == "ok"


def test_evaluate_keeps_notification_metadata(sqlite_session):
    _tick(sqlite_session, 4, NOW)
    assert alert_state_service.update_notification_meta(
        sqlite_session, WEBHOOK_FAILURES_KEY, last_notified_at=NOW, payload_hash="abc"
    )
    sqlite_session.commit()

    _tick(sqlite_session, 5, NOW + timedelta(minutes=1))

    state = alert_state_service.load_alert_states(sqlite_session)[WEBHOOK_FAILURES_KEY]
    assert state.last_notified_at == NOW
    assert state.last_payload_hash == "abc"


def test_notification_meta_never_moves_backwards(sqlite_session):
    _tick(sqlite_session, 4, NOW)
    alert_state_service.update_notification_meta(
        sqlite_session, WEBHOOK_FAILURES_KEY, last_notified_at=NOW, payload_hash="new"
    )
    moved = alert_state_service.update_notification_meta(
        sqlite_session, WEBHOOK_FAILURES_KEY, last_notified_at=NOW - timedelta(minutes=5), payload_hash="old"
    )
    sqlite_session.commit()

    state = alert_state_service.load_alert_states(sqlite_session)[WEBHOOK_FAILURES_KEY]
    assert moved is False
    assert state.last_payload_hash == "new"


def test_failed_state_read_is_treated_as_all_ok(sqlite_session, monkeypatch):
    def _boom(*args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("db down"))

    monkeypatch.setattr(sqlite_session, "execute", _boom)

    assert alert_state_service.load_alert_states(sqlite_session) == {}


def test_unsupported_dialect_upsert_raises(sqlite_session, monkeypatch):
    bind = SimpleNamespace(dialect=SimpleNamespace(name="mysql"))
    monkeypatch.setattr(sqlite_session, "get_bind", lambda *args, **kwargs: bind)
    alert = webhook_failures_rule(WebhookFailureCounts(count=4), NOW)

    with pytest.raises(RuntimeError, match="mysql"):
        alert_state_service.evaluate(sqlite_session, [alert], {}, now=NOW, rules_version=RULES_VERSION)


def test_payload_hash_is_stable_and_sensitive_to_summary():
    alert = webhook_failures_rule(WebhookFailureCounts(count=3), NOW)
    same = webhook_failures_rule(WebhookFailureCounts(count=3), NOW + timedelta(minutes=1))
    changed = webhook_failures_rule(WebhookFailureCounts(count=4), NOW)

    assert alert_state_service.hash_alert_payload(alert) == alert_state_service.hash_alert_payload(same)
    assert alert_state_service.hash_alert_payload(alert) != alert_state_service.hash_alert_payload(changed)


def test_recent_events_are_listed_newest_first(sqlite_session):
    _tick(sqlite_session, 4, NOW - timedelta(minutes=20))
    _tick(sqlite_session, 0, NOW - timedelta(minutes=10))

    events = alert_state_service.list_recent_alert_events(sqlite_session, now=NOW)

    assert [event["state"] for event in events] == ["ok", "firing"]
    assert events[0]["rules_version"] == RULES_VERSION
    assert events[0]["window_label"] == "15m"


def test_previous_state_from_memory_is_used_for_diff(sqlite_session):
    previous = {WEBHOOK_FAILURES_KEY: StoredAlertState(key=WEBHOOK_FAILURES_KEY, state="firing", started_at=NOW)}
    alert = webhook_failures_rule(WebhookFailureCounts(count=0), NOW, previous)

    result = alert_state_service.evaluate(sqlite_session, [alert], previous, now=NOW, rules_version=RULES_VERSION)

    assert [(t.from_state, t.to_state) for t in result.transitions] == [("firing", "ok")]
