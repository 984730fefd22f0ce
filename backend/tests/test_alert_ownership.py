from datetime import datetime, timedelta, timezone

from backend.app.services import alert_ownership_service


NOW = datetime(2026, 2, 10, 12, 0, tzinfo=timezone.utc)
KEY = "ops_alert_webhook_failures_spike"


def test_claim_shows_in_map_until_ttl(sqlite_session):
    claimed = alert_ownership_service.claim_alert(
        sqlite_session,
        alert_key=KEY,
        window_label="15m",
        actor_user_id="ops-1",
        now=NOW,
        event_id="evt-1",
        note="looking at https://dash.example.test/x",
    )
    sqlite_session.commit()

    assert claimed["note"] == "looking at [url-redacted]"
    current = alert_ownership_service.get_ownership_map(sqlite_session, window_label="15m", now=NOW + timedelta(minutes=5))
    assert current[KEY]["claimed_by_user_id"] == "ops-1"
    assert current[KEY]["event_id"] == "evt-1"

    expired = alert_ownership_service.get_ownership_map(sqlite_session, window_label="15m", now=NOW + timedelta(minutes=31))
    assert expired == {}
    assert alert_ownership_service.get_ownership_map(sqlite_session, window_label="24h", now=NOW) == {}


def test_only_the_claimer_can_release(sqlite_session):
    alert_ownership_service.claim_alert(sqlite_session, alert_key=KEY, window_label="15m", actor_user_id="ops-1", now=NOW)

    assert alert_ownership_service.release_alert(
        sqlite_session, alert_key=KEY, window_label="15m", actor_user_id="ops-2", now=NOW
    ) is False
    assert alert_ownership_service.release_alert(
        sqlite_session, alert_key=KEY, window_label="15m", actor_user_id="ops-1", now=NOW
    ) is True
    assert alert_ownership_service.release_alert(
        sqlite_session, alert_key=KEY, window_label="15m", actor_user_id="ops-1", now=NOW
    ) is False
    sqlite_session.commit()

    assert alert_ownership_service.get_ownership_map(sqlite_session, window_label="15m", now=NOW) == {}


def test_reclaim_replaces_previous_owner(sqlite_session):
    alert_ownership_service.claim_alert(sqlite_session, alert_key=KEY, window_label="15m", actor_user_id="ops-1", now=NOW)
    alert_ownership_service.claim_alert(
        sqlite_session, alert_key=KEY, window_label="15m", actor_user_id="ops-2", now=NOW + timedelta(minutes=1)
    )
    sqlite_session.commit()

    current = alert_ownership_service.get_ownership_map(sqlite_session, window_label="15m", now=NOW + timedelta(minutes=2))
    assert current[KEY]["claimed_by_user_id"] == "ops-2"


def test_snooze_until_and_unsnooze(sqlite_session):
    snoozed = alert_ownership_service.snooze_alert(
        sqlite_session, alert_key=KEY, window_label="15m", minutes=60, actor_user_id="ops-1", now=NOW, reason="  deploy  "
    )
    sqlite_session.commit()

    assert snoozed["reason"] == "deploy"
    assert snoozed["until_at"] == (NOW + timedelta(minutes=60)).isoformat()
    assert KEY in alert_ownership_service.get_snooze_map(sqlite_session, window_label="15m", now=NOW + timedelta(minutes=59))
    assert alert_ownership_service.get_snooze_map(sqlite_session, window_label="15m", now=NOW + timedelta(minutes=61)) == {}

    alert_ownership_service.unsnooze_alert(sqlite_session, alert_key=KEY, window_label="15m")
    sqlite_session.commit()

    assert alert_ownership_service.get_snooze_map(sqlite_session, window_label="15m", now=NOW) == {}
