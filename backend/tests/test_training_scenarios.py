from datetime import datetime, timezone

import pytest

from backend.app.errors import BadRequestError, ForbiddenError, NotFoundError
from backend.app.models import AlertEvent
from backend.app.ops.case_reason import resolve_case_reason
from backend.app.ops.schema import OpsActor
from backend.app.request_id import set_request_id
from backend.app.services import case_workflow_service, training_service


NOW = datetime(2026, 2, 10, 12, 0, tzinfo=timezone.utc)
ALICE = OpsActor(user_id="ops-alice")
BOB = OpsActor(user_id="ops-bob")
VIEWER = OpsActor(user_id="viewer", is_ops=False)


def test_scenario_records_event_and_links_case(sqlite_session):
    scenario = training_service.create_training_scenario(
        sqlite_session,
        actor=ALICE,
        now=NOW,
        scenario_type="alerts_test",
        request_id="req_training_1",
        meta={"trainer": "lead@example.com"},
    )
    sqlite_session.commit()

    event = sqlite_session.get(AlertEvent, scenario.event_id)
    assert event is not None
    assert scenario.request_id == "req_training_1"
    assert scenario.meta == {"trainer": "[email-redacted]"}

    case = case_workflow_service.get_case(sqlite_session, "req_training_1")
    assert case.priority == "low"
    actions = [entry["action"] for entry in case_workflow_service.list_case_audit(sqlite_session, "req_training_1")]
    assert sorted(actions) == ["CREATE", "LINK_TRAINING"]


def test_training_outranks_manual_until_deactivated(sqlite_session):
    case_workflow_service.update_case_notes(
        sqlite_session, "req_training_2", actor=ALICE, now=NOW, notes="walking through the drill"
    )
    scenario = training_service.create_training_scenario(
        sqlite_session, actor=ALICE, now=NOW, scenario_type="mixed_basic", request_id="req_training_2"
    )
    sqlite_session.commit()

    sources = case_workflow_service.case_reason_sources(sqlite_session, "req_training_2")
    assert sorted(source.code for source in sources) == ["MANUAL", "TRAINING"]
    reason, _ = resolve_case_reason(sources, now=NOW)
    assert reason.code == "TRAINING"
    assert reason.primary_source == "training"

    training_service.deactivate_scenario(sqlite_session, scenario.id, actor=BOB)
    sqlite_session.commit()

    sources = case_workflow_service.case_reason_sources(sqlite_session, "req_training_2")
    reason, _ = resolve_case_reason(sources, now=NOW)
    assert reason.code == "MANUAL"


def test_scenario_falls_back_to_current_request_id(sqlite_session):
    set_request_id("req_from_header")
    try:
        scenario = training_service.create_training_scenario(
            sqlite_session, actor=ALICE, now=NOW, scenario_type="alerts_test"
        )
        sqlite_session.commit()
    finally:
        set_request_id(None)

    assert scenario.request_id == "req_from_header"
    assert case_workflow_service.get_case(sqlite_session, "req_from_header") is not None


def test_scenario_validation(sqlite_session):
    with pytest.raises(ForbiddenError):
        training_service.create_training_scenario(
            sqlite_session, actor=VIEWER, now=NOW, scenario_type="alerts_test", request_id="req_x"
        )
    with pytest.raises(BadRequestError) as bad_type:
        training_service.create_training_scenario(
            sqlite_session, actor=ALICE, now=NOW, scenario_type="fire_drill", request_id="req_x"
        )
    assert bad_type.value.code == "INVALID_SCENARIO_TYPE"

    set_request_id(None)
    with pytest.raises(BadRequestError) as missing:
        training_service.create_training_scenario(sqlite_session, actor=ALICE, now=NOW, scenario_type="alerts_test")
    assert missing.value.code == "MISSING_REQUEST_ID"

    with pytest.raises(NotFoundError):
        training_service.deactivate_scenario(sqlite_session, "nope", actor=ALICE)


def test_list_filters_by_creator_and_activity(sqlite_session):
    mine = training_service.create_training_scenario(
        sqlite_session, actor=ALICE, now=NOW, scenario_type="alerts_test", request_id="req_list_1"
    )
    training_service.create_training_scenario(
        sqlite_session, actor=BOB, now=NOW, scenario_type="mixed_basic", request_id="req_list_2"
    )
    training_service.deactivate_scenario(sqlite_session, mine.id, actor=ALICE)
    sqlite_session.commit()

    assert training_service.list_training_scenarios(sqlite_session, created_by=ALICE.user_id) == []
    everything = training_service.list_training_scenarios(sqlite_session, created_by=ALICE.user_id, active_only=False)
    assert [item["id"] for item in everything] == [mine.id]
    assert everything[0]["is_active"] is False
    bobs = training_service.list_training_scenarios(sqlite_session, scenario_type="mixed_basic")
    assert [item["created_by"] for item in bobs] == [BOB.user_id]
