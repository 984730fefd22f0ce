from datetime import datetime, timedelta, timezone

from backend.app.ops.alert_rules import RAG_RED_KEY, AlertInputs, build_ops_alerts
from backend.app.ops.rag import (
    build_rag_status,
    classify,
    compute_rag_status,
    compute_score,
    derive_direction,
    parse_activity,
    sample_signals,
)
from backend.app.ops.schema import SignalEvent, SignalWindow


NOW = datetime(2026, 2, 10, 12, 0, tzinfo=timezone.utc)


def _window(minutes: int = 15) -> SignalWindow:
    return SignalWindow(minutes=minutes, from_ts=NOW - timedelta(minutes=minutes), to_ts=NOW)


def test_classify_is_monotonic_in_count():
    rank = {"green": 0, "amber": 1, "red": 2}
    previous = -1
    for count in range(0, 20):
        current = rank[classify(count, 10, 3)]
        assert current >= previous
        previous = current


def test_classify_bands():
    assert classify(0, 5, 1) == "green"
    assert classify(1, 5, 1) == "amber"
    assert classify(4, 5, 1) == "amber"
    assert classify(5, 5, 1) == "red"


def test_all_zero_metrics_are_all_clear():
    status = compute_rag_status({}, _window())

    assert status.overall == "green"
    assert status.status == "green"
    assert status.headline == "All clear"
    assert status.top_issues == []
    assert set(status.signals) == {"webhook_failures", "webhook_errors", "portal_errors", "checkout_errors", "rate_limits"}


def test_webhook_failures_spike_is_red_and_top_issue():
    status = compute_rag_status({"webhook_failures": 6, "portal_errors": 3}, _window())

    assert status.overall == "red"
    assert status.signals["webhook_failures"].state == "red"
    assert status.signals["portal_errors"].state == "amber"
    assert status.top_issues[0].key == "webhook_failures"
    assert status.top_issues[1].key == "portal_errors"
    assert status.headline == "Webhook failures (6) in last 15m"


def test_red_rag_fires_rag_red_alert():
    status = compute_rag_status({"webhook_failures": 6}, _window())

    model = build_ops_alerts(AlertInputs(rag=status), now=NOW)
    alert = model.get(RAG_RED_KEY)

    assert alert is not None
    assert alert.state == "firing"
    assert alert.severity == "high"
    assert alert.signals["top_issue"] == "webhook_failures"


def test_rate_limits_never_red():
    status = compute_rag_status({"rate_limits": 10_000}, _window())

    assert status.signals["rate_limits"].state == "amber"
    assert status.overall == "amber"


def test_unknown_metric_keys_are_ignored():
    status = compute_rag_status({"something_else": 99}, _window())

    assert "something_else" not in status.signals
    assert status.overall == "green"


def test_top_issues_ordering_breaks_ties_by_count_then_key():
    status = compute_rag_status({"checkout_errors": 2, "webhook_errors": 2, "portal_errors": 4}, _window())

    assert [issue.key for issue in status.top_issues] == ["portal_errors", "checkout_errors", "webhook_errors"]


def test_parse_activity_maps_types_and_falls_back_to_type_suffix():
    portal = parse_activity("monetisation.billing_portal_error", NOW, '{"code": "PORTAL_DOWN", "requestId": "req_1"}')
    checkout = parse_activity("monetisation.checkout_redirect_blocked", NOW, "not json")
    other = parse_activity("monetisation.checkout_success", NOW, None)

    assert portal.key == "portal_errors"
    assert portal.code == "PORTAL_DOWN"
    assert portal.request_id == "req_1"
    assert checkout.key == "checkout_errors"
    assert checkout.code == "checkout_redirect_blocked"
    assert other is None


def test_build_rag_status_counts_only_events_inside_window():
    events = [
        SignalEvent(key="webhook_errors", at=NOW - timedelta(minutes=2), code="E1", surface="webhook"),
        SignalEvent(key="webhook_errors", at=NOW - timedelta(minutes=5), code="E1", surface="webhook"),
        SignalEvent(key="webhook_errors", at=NOW - timedelta(hours=3), code="E2", surface="webhook"),
    ]

    status = build_rag_status(events, now=NOW)

    assert status.signals["webhook_errors"].count == 2
    assert status.signals["webhook_errors"].state == "amber"
    assert status.signals["webhook_errors"].top_codes[0] == {"code": "E1", "count": 2}
    assert status.trend["bucket_minutes"] == 15
    assert len(status.trend["buckets"]) == 96
    assert status.top_repeats["codes"][0]["code"] == "E1"


def test_sample_signals_zero_fill_and_keep_window_ends():
    window = _window()
    events = [
        SignalEvent(key="portal_errors", at=window.from_ts),
        SignalEvent(key="portal_errors", at=NOW),
        SignalEvent(key="portal_errors", at=NOW + timedelta(seconds=1)),
        SignalEvent(key="not_a_signal", at=NOW),
    ]

    samples = sample_signals(events, window)

    assert samples["portal_errors"].count == 2
    assert samples["portal_errors"].window == window
    assert samples["webhook_failures"].count == 0
    assert "not_a_signal" not in samples


def test_trend_buckets_count_an_edge_event_once():
    edge = NOW - timedelta(hours=1)
    events = [
        SignalEvent(key="webhook_failures", at=edge, code="E1"),
        SignalEvent(key="webhook_failures", at=NOW, code="E1"),
    ]

    buckets = build_rag_status(events, now=NOW).trend["buckets"]
    by_start = {bucket["at"]: bucket["score"] for bucket in buckets}

    assert by_start[edge.isoformat()] < 100
    assert by_start[(edge - timedelta(minutes=15)).isoformat()] == 100
    assert buckets[-1]["score"] < 100
    assert sum(1 for bucket in buckets if bucket["score"] < 100) == 2


def test_top_repeats_mask_emails_and_urls():
    events = [
        SignalEvent(key="portal_errors", at=NOW - timedelta(minutes=1), code="ops@example.com", surface="portal"),
        SignalEvent(key="portal_errors", at=NOW - timedelta(minutes=1), code="https://evil.example/x", surface="portal"),
    ]

    status = build_rag_status(events, now=NOW, trend_hours=0)
    codes = [item["code"] for item in status.top_repeats["codes"]]

    assert status.trend is None
    assert all("example" not in code for code in codes)


def test_score_and_direction():
    assert compute_score("green", 0) == 100
    assert compute_score("red", 10_000) == 0
    improving = [{"score": 40}] * 4 + [{"score": 90}] * 4
    worsening = [{"score": 90}] * 4 + [{"score": 40}] * 4
    flat = [{"score": 90}] * 4 + [{"score": 93}] * 4

    assert derive_direction(improving) == "improving"
    assert derive_direction(worsening) == "worsening"
    assert derive_direction(flat) == "stable"
    assert derive_direction([{"score": 10}]) == "stable"
