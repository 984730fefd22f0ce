from datetime import datetime, timedelta, timezone

from backend.app.ops.case_reason import (
    build_case_reason_source,
    coerce_case_reason_sources,
    merge_case_reason_sources,
    resolve_case_reason,
)


NOW = datetime(2026, 2, 10, 12, 0, tzinfo=timezone.utc)


def _source(code, minutes_ago, *, count=1, primary="ops_alerts"):
    return build_case_reason_source(
        code=code,
        count=count,
        last_seen_at=NOW - timedelta(minutes=minutes_ago),
        primary_source=primary,
        window_label="15m",
    )


def test_precedence_beats_recency():
    sources = [
        _source("PORTAL_ERROR", 1, count=9, primary="portal"),
        _source("WEBHOOK_FAILURE", 12, count=3, primary="webhooks"),
    ]

    reason, merged = resolve_case_reason(sources, now=NOW, window_label="15m")

    assert reason.code == "WEBHOOK_FAILURE"
    assert reason.detail == "Webhook failures: 3 in last 15m"
    assert reason.primary_source == "webhooks"
    assert [source.code for source in merged] == ["PORTAL_ERROR", "WEBHOOK_FAILURE"]


def test_sources_outside_window_never_fall_back():
    sources = [_source("ALERT_FIRING", 120), _source("RATE_LIMIT", 90, primary="rate_limit")]

    reason, merged = resolve_case_reason(
        sources, now=NOW, window_from=NOW - timedelta(minutes=15), window_label="15m"
    )

    assert reason.code == "UNKNOWN"
    assert reason.detail == "No recent signals"
    assert len(merged) == 2


def test_window_keeps_only_recent_sources():
    sources = [_source("ALERT_FIRING", 120), _source("PORTAL_ERROR", 5, primary="portal")]

    reason, _ = resolve_case_reason(sources, now=NOW, window_from=NOW - timedelta(minutes=15))

    assert reason.code == "PORTAL_ERROR"


def test_no_sources_is_unknown():
    reason, merged = resolve_case_reason([], now=NOW)

    assert reason.code == "UNKNOWN"
    assert reason.primary_source == "unknown"
    assert merged == []


def test_merge_sums_counts_and_keeps_latest_timestamp():
    merged = merge_case_reason_sources(
        [
            _source("WEBHOOK_FAILURE", 10, count=2, primary="webhooks"),
            _source("WEBHOOK_FAILURE", 3, count=4, primary="webhooks"),
            _source("WEBHOOK_FAILURE", 1, count=1, primary="billing"),
        ]
    )

    by_primary = {source.primary_source: source for source in merged}
    assert by_primary["webhooks"].count == 6
    assert by_primary["webhooks"].last_seen_at == NOW - timedelta(minutes=3)
    assert merged[0].primary_source == "billing"


def test_coerce_drops_malformed_items_and_reads_camel_case():
    raw = [
        {"code": "RATE_LIMIT", "lastSeenAt": "2026-02-10T11:55:00Z", "count": 3, "primarySource": "rate_limit"},
        {"code": "NOT_A_CODE", "lastSeenAt": "2026-02-10T11:55:00Z"},
        {"code": "PORTAL_ERROR", "lastSeenAt": "yesterday"},
        {"code": "PORTAL_ERROR"},
        "ALERT_FIRING",
        {"code": "MANUAL", "last_seen_at": "2026-02-10T11:00:00+00:00", "count": -2, "title": "  "},
    ]

    sources = coerce_case_reason_sources(raw)

    assert [source.code for source in sources] == ["RATE_LIMIT", "MANUAL"]
    assert sources[0].count == 3
    assert sources[0].primary_source == "rate_limit"
    assert sources[0].last_seen_at == NOW - timedelta(minutes=5)
    assert sources[1].count == 1
    assert sources[1].title == "Manual update"
    assert sources[1].primary_source == "unknown"


def test_coerce_non_list_is_empty():
    assert coerce_case_reason_sources({"code": "MANUAL"}) == []
    assert coerce_case_reason_sources(None) == []
