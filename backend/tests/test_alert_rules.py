from datetime import datetime, timedelta, timezone

from backend.app.ops.alert_rules import (
    PORTAL_ERRORS_KEY,
    RAG_RED_KEY,
    RATE_LIMIT_KEY,
    WEBHOOK_FAILURES_KEY,
    AlertInputs,
    RateLimitCounts,
    WebhookFailureCounts,
    build_ops_alerts,
    build_test_alert,
    portal_errors_rule,
    rate_limit_rule,
    webhook_failures_rule,
)
from backend.app.ops.rag import compute_rag_status
from backend.app.ops.schema import SignalWindow, StoredAlertState


NOW = datetime(2026, 2, 10, 12, 0, tzinfo=timezone.utc)


def _rag(metrics):
    return compute_rag_status(metrics, SignalWindow(minutes=15, from_ts=NOW - timedelta(minutes=15), to_ts=NOW))


def test_quiet_window_has_no_firing_alerts():
    model = build_ops_alerts(AlertInputs(rag=_rag({})), now=NOW)

    assert model.firing_count == 0
    assert model.headline == "No alerts firing (last 15m)"
    assert [alert.key for alert in model.alerts] == [
        RAG_RED_KEY,
        WEBHOOK_FAILURES_KEY,
        PORTAL_ERRORS_KEY,
        RATE_LIMIT_KEY,
    ]
    assert all(alert.started_at is None for alert in model.alerts)


def test_missing_rag_skips_rag_rule():
    model = build_ops_alerts(AlertInputs(rag=None), now=NOW)

    assert model.get(RAG_RED_KEY) is None
    assert len(model.alerts) == 3


def test_webhook_failures_fire_on_count_or_repeats():
    assert webhook_failures_rule(WebhookFailureCounts(count=2, repeats=0), NOW).state == "ok"
    assert webhook_failures_rule(WebhookFailureCounts(count=3, repeats=0), NOW).state == "firing"
    assert webhook_failures_rule(WebhookFailureCounts(count=2, repeats=2), NOW).state == "firing"

    medium = webhook_failures_rule(WebhookFailureCounts(count=3), NOW)
    high = webhook_failures_rule(WebhookFailureCounts(count=5), NOW)
    assert medium.severity == "medium"
    assert high.severity == "high"
    assert high.summary == "Webhook failures spike (5 failures, 0 repeats)"


def test_portal_errors_thresholds():
    assert portal_errors_rule(4, NOW).state == "ok"
    assert portal_errors_rule(5, NOW).severity == "medium"
    assert portal_errors_rule(10, NOW).severity == "high"


def test_rate_limit_fires_on_critical_route_even_below_threshold():
    counts = RateLimitCounts(hits=2, top_routes=({"route": "/api/ops/system-status", "count": 2},))

    alert = rate_limit_rule(counts, NOW)

    assert alert.state == "firing"
    assert alert.summary.endswith("on critical routes)")
    assert rate_limit_rule(RateLimitCounts(hits=19), NOW).state == "ok"
    assert rate_limit_rule(RateLimitCounts(hits=20), NOW).state == "firing"


def test_started_at_carried_while_firing_and_cleared_when_ok():
    earlier = NOW - timedelta(minutes=45)
    last_state = {
        WEBHOOK_FAILURES_KEY: StoredAlertState(
            key=WEBHOOK_FAILURES_KEY,
            state="firing",
            started_at=earlier,
            last_seen_at=NOW - timedelta(minutes=15),
        )
    }

    still_firing = webhook_failures_rule(WebhookFailureCounts(count=4), NOW, last_state)
    recovered = webhook_failures_rule(WebhookFailureCounts(count=0), NOW, last_state)

    assert still_firing.started_at == earlier
    assert still_firing.last_seen_at == NOW
    assert recovered.started_at is None
    assert recovered.last_seen_at == NOW - timedelta(minutes=15)


def test_headline_counts_firing_alerts():
    model = build_ops_alerts(
        AlertInputs(rag=_rag({}), webhook_failures=WebhookFailureCounts(count=3), portal_errors=6),
        now=NOW,
    )

    assert model.firing_count == 2
    assert model.headline.startswith("2 alerts firing")


def test_alert_actions_link_back_to_ops_pages():
    alert = webhook_failures_rule(WebhookFailureCounts(count=3), NOW)
    hrefs = [action["href"] for action in alert.actions]

    assert hrefs[0].startswith("/app/ops/webhooks?")
    assert "from=ops_alerts" in hrefs[0]
    assert hrefs[1].startswith("/app/ops/incidents?")


def test_test_alert_is_low_and_firing():
    alert = build_test_alert(NOW, actor_user_id="ops-1")

    assert alert.severity == "low"
    assert alert.state == "firing"
    assert alert.signals["test"] is True
