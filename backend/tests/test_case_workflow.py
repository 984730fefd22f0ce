from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from backend.app.db import SessionLocal
from backend.app.errors import BadRequestError, CaseConflictError, ForbiddenError, NotFoundError
from backend.app.ops.schema import AlertTransition, OpsActor
from backend.app.services import case_workflow_service


NOW = datetime(2026, 2, 10, 12, 0, tzinfo=timezone.utc)
ALICE = OpsActor(user_id="ops-alice")
BOB = OpsActor(user_id="ops-bob")
ADMIN = OpsActor(user_id="ops-admin", is_admin=True)
VIEWER = OpsActor(user_id="viewer", is_ops=False)


def _seed_case(db, request_id=None):
    request_id = request_id or f"req_{uuid4().hex[:12]}"
    case_workflow_service.get_or_create_case(db, request_id, now=NOW, actor_user_id="seed")
    db.commit()
    return request_id


def _actions(db, request_id):
    return [entry["action"] for entry in case_workflow_service.list_case_audit(db, request_id)]


def test_get_or_create_is_idempotent_and_audited(sqlite_session):
    request_id = _seed_case(sqlite_session)

    again = case_workflow_service.get_or_create_case(sqlite_session, request_id, now=NOW + timedelta(minutes=1))
    sqlite_session.commit()

    assert again.status == "open"
    assert again.priority == "medium"
    assert _actions(sqlite_session, request_id) == ["CREATE"]


def test_request_id_is_validated_before_any_write(sqlite_session):
    with pytest.raises(BadRequestError):
        case_workflow_service.get_or_create_case(sqlite_session, "   ", now=NOW)
    with pytest.raises(BadRequestError):
        case_workflow_service.get_or_create_case(sqlite_session, "x" * 121, now=NOW)


def test_claim_sets_owner_and_claimed_at(sqlite_session):
    request_id = _seed_case(sqlite_session)

    row = case_workflow_service.claim_case(sqlite_session, request_id, actor=ALICE, now=NOW)
    sqlite_session.commit()

    assert row.assigned_to_user_id == ALICE.user_id
    assert row.claimed_at is not None
    assert _actions(sqlite_session, request_id)[0] == "CLAIM"


def test_reclaim_by_owner_keeps_claimed_at(sqlite_session):
    request_id = _seed_case(sqlite_session)
    first = case_workflow_service.claim_case(sqlite_session, request_id, actor=ALICE, now=NOW)
    sqlite_session.commit()
    claimed_at = first.claimed_at

    again = case_workflow_service.claim_case(sqlite_session, request_id, actor=ALICE, now=NOW + timedelta(minutes=5))
    sqlite_session.commit()

    assert again.claimed_at == claimed_at


def test_concurrent_claims_have_exactly_one_winner(sqlite_engine):
    first = SessionLocal()
    second = SessionLocal()
    try:
        request_id = _seed_case(first)
        # both operators have read the unowned case before either claims
        assert case_workflow_service.get_case(first, request_id).assigned_to_user_id is None
        assert case_workflow_service.get_case(second, request_id).assigned_to_user_id is None

        case_workflow_service.claim_case(first, request_id, actor=ALICE, now=NOW)
        first.commit()

        with pytest.raises(CaseConflictError) as excinfo:
            case_workflow_service.claim_case(second, request_id, actor=BOB, now=NOW)
        second.rollback()

        assert excinfo.value.status_code == 409
        assert excinfo.value.code == "CASE_CONFLICT"
        assert excinfo.value.meta["assigned_to_user_id"] == ALICE.user_id
        assert excinfo.value.meta["claimed_at"] is not None

        winner = case_workflow_service.get_case(second, request_id)
        assert winner.assigned_to_user_id == ALICE.user_id
    finally:
        first.close()
        second.close()


def test_claim_of_owned_case_conflicts_for_non_admin(sqlite_session):
    request_id = _seed_case(sqlite_session)
    case_workflow_service.claim_case(sqlite_session, request_id, actor=ALICE, now=NOW)
    sqlite_session.commit()

    with pytest.raises(CaseConflictError) as excinfo:
        case_workflow_service.claim_case(sqlite_session, request_id, actor=BOB, now=NOW)

    assert excinfo.value.assigned_to_user_id == ALICE.user_id


def test_admin_can_take_over_a_claim(sqlite_session):
    request_id = _seed_case(sqlite_session)
    case_workflow_service.claim_case(sqlite_session, request_id, actor=ALICE, now=NOW)
    sqlite_session.commit()

    row = case_workflow_service.claim_case(sqlite_session, request_id, actor=ADMIN, now=NOW + timedelta(minutes=1))
    sqlite_session.commit()

    assert row.assigned_to_user_id == ADMIN.user_id


def test_non_ops_actor_is_forbidden(sqlite_session):
    request_id = _seed_case(sqlite_session)

    with pytest.raises(ForbiddenError):
        case_workflow_service.claim_case(sqlite_session, request_id, actor=VIEWER, now=NOW)


def test_assign_is_admin_only(sqlite_session):
    request_id = _seed_case(sqlite_session)

    with pytest.raises(ForbiddenError):
        case_workflow_service.assign_case(
            sqlite_session, request_id, assigned_to_user_id=BOB.user_id, actor=ALICE, now=NOW
        )

    row = case_workflow_service.assign_case(
        sqlite_session, request_id, assigned_to_user_id=BOB.user_id, actor=ADMIN, now=NOW
    )
    sqlite_session.commit()

    assert row.assigned_to_user_id == BOB.user_id
    assert _actions(sqlite_session, request_id)[0] == "ASSIGN"


def test_release_own_claim_keeps_status(sqlite_session):
    request_id = _seed_case(sqlite_session)
    case_workflow_service.claim_case(sqlite_session, request_id, actor=ALICE, now=NOW)
    case_workflow_service.update_case_status(sqlite_session, request_id, status="in_progress", actor=ALICE, now=NOW)
    sqlite_session.commit()

    with pytest.raises(CaseConflictError):
        case_workflow_service.release_case(sqlite_session, request_id, actor=BOB, now=NOW)

    row = case_workflow_service.release_case(sqlite_session, request_id, actor=ALICE, now=NOW + timedelta(minutes=1))
    sqlite_session.commit()

    assert row.assigned_to_user_id is None
    assert row.claimed_at is None
    assert row.status == "in_progress"


def test_release_unknown_case_is_not_found(sqlite_session):
    with pytest.raises(NotFoundError):
        case_workflow_service.release_case(sqlite_session, "req_missing", actor=ALICE, now=NOW)


def test_status_changes_on_someone_elses_case_conflict(sqlite_session):
    request_id = _seed_case(sqlite_session)
    case_workflow_service.claim_case(sqlite_session, request_id, actor=ALICE, now=NOW)
    sqlite_session.commit()

    with pytest.raises(CaseConflictError):
        case_workflow_service.update_case_status(sqlite_session, request_id, status="resolved", actor=BOB, now=NOW)


def test_resolved_and_closed_set_timestamps(sqlite_session):
    request_id = _seed_case(sqlite_session)

    resolved = case_workflow_service.update_case_status(
        sqlite_session, request_id, status="resolved", actor=ALICE, now=NOW, priority="high"
    )
    sqlite_session.commit()
    assert resolved.resolved_at is not None
    assert resolved.priority == "high"

    with pytest.raises(ForbiddenError):
        case_workflow_service.update_case_status(sqlite_session, request_id, status="closed", actor=ALICE, now=NOW)

    closed = case_workflow_service.update_case_status(sqlite_session, request_id, status="closed", actor=ADMIN, now=NOW)
    sqlite_session.commit()
    assert closed.closed_at is not None


def test_closed_is_terminal_for_non_admins(sqlite_session):
    request_id = _seed_case(sqlite_session)
    case_workflow_service.update_case_status(sqlite_session, request_id, status="closed", actor=ADMIN, now=NOW)
    sqlite_session.commit()

    with pytest.raises(ForbiddenError):
        case_workflow_service.update_case_status(sqlite_session, request_id, status="open", actor=ALICE, now=NOW)
    with pytest.raises(ForbiddenError):
        case_workflow_service.update_case_priority(sqlite_session, request_id, priority="low", actor=ALICE, now=NOW)

    reopened = case_workflow_service.update_case_status(sqlite_session, request_id, status="open", actor=ADMIN, now=NOW)
    assert reopened.status == "open"


def test_invalid_status_and_priority_are_rejected(sqlite_session):
    request_id = _seed_case(sqlite_session)

    with pytest.raises(BadRequestError):
        case_workflow_service.update_case_status(sqlite_session, request_id, status="done", actor=ALICE, now=NOW)
    with pytest.raises(BadRequestError):
        case_workflow_service.update_case_priority(sqlite_session, request_id, priority="urgent", actor=ALICE, now=NOW)


def test_priority_update_is_audited(sqlite_session):
    request_id = _seed_case(sqlite_session)

    row = case_workflow_service.update_case_priority(sqlite_session, request_id, priority="low", actor=ALICE, now=NOW)
    sqlite_session.commit()

    assert row.priority == "low"
    audit = case_workflow_service.list_case_audit(sqlite_session, request_id)
    assert audit[0]["action"] == "SET_PRIORITY"
    assert audit[0]["meta"] == {"from": "medium", "to": "low"}


def test_sla_targets_by_priority():
    created = NOW - timedelta(minutes=90)

    high = case_workflow_service.compute_case_sla("high", created, NOW)
    medium = case_workflow_service.compute_case_sla("medium", created, NOW)

    assert high["breached"] is True
    assert high["remaining_seconds"] == 30 * 60
    assert medium["breached"] is False
    assert medium["target_seconds"] == 4 * 3600
    assert case_workflow_service.compute_case_sla("low", None, NOW) is None


def test_list_cases_filters_by_assignee(sqlite_session):
    mine = _seed_case(sqlite_session)
    unassigned = _seed_case(sqlite_session)
    case_workflow_service.claim_case(sqlite_session, mine, actor=ALICE, now=NOW)
    sqlite_session.commit()

    for_me = case_workflow_service.list_cases(sqlite_session, now=NOW, assigned="me", actor_user_id=ALICE.user_id)
    open_pool = case_workflow_service.list_cases(sqlite_session, now=NOW, assigned="unassigned")

    assert [item["request_id"] for item in for_me] == [mine]
    assert unassigned in [item["request_id"] for item in open_pool]
    assert mine not in [item["request_id"] for item in open_pool]
    assert for_me[0]["sla"]["target_seconds"] == 4 * 3600


def test_firing_transitions_open_hourly_alert_cases(sqlite_session):
    transitions = [
        AlertTransition(key="ops_alert_rag_red", from_state="ok", to_state="firing", severity="high", summary="RAG red"),
        AlertTransition(key="ops_alert_portal_errors_spike", from_state="firing", to_state="ok", severity="medium", summary="ok"),
    ]

    opened = case_workflow_service.open_cases_for_transitions(sqlite_session, transitions, now=NOW)
    again = case_workflow_service.open_cases_for_transitions(sqlite_session, transitions, now=NOW + timedelta(minutes=10))
    sqlite_session.commit()

    assert opened == ["alert:ops_alert_rag_red:2026021012"]
    assert again == opened
    row = case_workflow_service.get_case(sqlite_session, opened[0])
    assert row.priority == "high"
    assert _actions(sqlite_session, opened[0]) == ["CREATE"]


def test_notes_open_the_case_on_first_touch_and_are_masked(sqlite_session):
    request_id = f"req_{uuid4().hex[:12]}"

    row = case_workflow_service.update_case_notes(
        sqlite_session,
        request_id,
        actor=ALICE,
        now=NOW,
        notes="Called payer@example.com,\nsee https://dash.example.test/x",
        outcome_code="escalated",
    )
    sqlite_session.commit()

    assert row.status == "open"
    assert row.notes == "Called [email-redacted],\nsee [url-redacted]"
    assert row.outcome_code == "escalated"
    assert row.notes_updated_by == ALICE.user_id
    assert sorted(_actions(sqlite_session, request_id)) == ["CREATE", "SET_NOTES"]
    [set_notes] = [
        entry for entry in case_workflow_service.list_case_audit(sqlite_session, request_id) if entry["action"] == "SET_NOTES"
    ]
    assert set_notes["meta"]["outcome_to"] == "escalated"


def test_unchanged_notes_are_not_audited_and_empty_string_clears(sqlite_session):
    request_id = _seed_case(sqlite_session)
    case_workflow_service.update_case_notes(sqlite_session, request_id, actor=ALICE, now=NOW, notes="checked ledger")
    case_workflow_service.update_case_notes(sqlite_session, request_id, actor=BOB, now=NOW, notes="  checked ledger ")
    sqlite_session.commit()
    assert _actions(sqlite_session, request_id).count("SET_NOTES") == 1

    cleared = case_workflow_service.update_case_notes(sqlite_session, request_id, actor=ALICE, now=NOW, notes="")
    sqlite_session.commit()
    assert cleared.notes is None


def test_notes_reject_unknown_outcome_and_closed_cases(sqlite_session):
    request_id = _seed_case(sqlite_session)
    with pytest.raises(BadRequestError):
        case_workflow_service.update_case_notes(sqlite_session, request_id, actor=ALICE, now=NOW, outcome_code="shrug")

    case_workflow_service.update_case_status(sqlite_session, request_id, status="closed", actor=ADMIN, now=NOW)
    sqlite_session.commit()
    with pytest.raises(ForbiddenError):
        case_workflow_service.update_case_notes(sqlite_session, request_id, actor=ALICE, now=NOW, notes="late")


def test_evidence_is_appended_and_audited(sqlite_session):
    request_id = f"req_{uuid4().hex[:12]}"

    link = case_workflow_service.add_case_evidence(
        sqlite_session,
        request_id,
        actor=ALICE,
        now=NOW,
        evidence_type="link",
        body="https://dash.example.test/runs/42 from ops@example.com",
        meta={"contact": "ops@example.com"},
    )
    case_workflow_service.add_case_evidence(
        sqlite_session, request_id, actor=BOB, now=NOW + timedelta(minutes=1), evidence_type="decision", body="refund"
    )
    sqlite_session.commit()

    assert link.body == "https://dash.example.test/runs/42 from [email-redacted]"
    assert link.meta == {"contact": "[email-redacted]"}
    items = case_workflow_service.list_case_evidence(sqlite_session, request_id)
    assert [item["type"] for item in items] == ["decision", "link"]
    assert sorted(_actions(sqlite_session, request_id)) == ["ADD_EVIDENCE", "ADD_EVIDENCE", "CREATE"]


def test_evidence_requires_known_type_and_body(sqlite_session):
    request_id = _seed_case(sqlite_session)

    with pytest.raises(BadRequestError) as bad_type:
        case_workflow_service.add_case_evidence(
            sqlite_session, request_id, actor=ALICE, now=NOW, evidence_type="video", body="x"
        )
    with pytest.raises(BadRequestError) as blank:
        case_workflow_service.add_case_evidence(
            sqlite_session, request_id, actor=ALICE, now=NOW, evidence_type="note", body="   "
        )

    assert bad_type.value.code == "INVALID_EVIDENCE_TYPE"
    assert blank.value.code == "MISSING_EVIDENCE_BODY"


def test_reason_sources_come_from_notes_and_evidence(sqlite_session):
    request_id = _seed_case(sqlite_session)
    assert case_workflow_service.case_reason_sources(sqlite_session, request_id) == []
    assert case_workflow_service.case_reason_sources(sqlite_session, "req_missing") == []

    case_workflow_service.update_case_notes(sqlite_session, request_id, actor=ALICE, now=NOW, notes="looked")
    case_workflow_service.add_case_evidence(
        sqlite_session, request_id, actor=ALICE, now=NOW + timedelta(minutes=2), evidence_type="note", body="more"
    )
    sqlite_session.commit()

    [manual] = case_workflow_service.case_reason_sources(sqlite_session, request_id)
    assert manual.code == "MANUAL"
    assert manual.count == 2
    assert manual.last_seen_at == NOW + timedelta(minutes=2)
