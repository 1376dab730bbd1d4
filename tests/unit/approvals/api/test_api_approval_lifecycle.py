from fastapi.testclient import TestClient

from src.api.main import app
from src.api.routers.approvals import get_entry_source
from tests.factories import hours

_EMPLOYEE = {"X-Actor-Id": "usr_emp_1", "X-Actor-Role": "employee"}
_EMPLOYEE_2 = {"X-Actor-Id": "usr_emp_2", "X-Actor-Role": "employee"}
_LEAD = {
    "X-Actor-Id": "usr_lead_1",
    "X-Actor-Role": "lead",
    "X-Actor-Scope-Roles": "prj_apollo:LEAD",
}
_MANAGER = {
    "X-Actor-Id": "usr_mgr_1",
    "X-Actor-Role": "manager",
    "X-Actor-Scope-Roles": "prj_apollo:MANAGER,prj_zeus:MANAGER",
}
_MANAGEMENT = {"X-Actor-Id": "usr_mgmt_1", "X-Actor-Role": "management"}


def _submit_payload(**overrides) -> dict:
    payload = {
        "owner_id": "usr_emp_1",
        "owner_role": "employee",
        "period_start": "2026-03-02",
        "period_end": "2026-03-08",
        "scope_hours": [
            {"scope_id": "prj_apollo", "total_hours": "32", "billable_hours": "30"},
            {"scope_id": "prj_zeus", "total_hours": "8", "billable_hours": "0"},
        ],
    }
    payload.update(overrides)
    return payload


def _submit(
    client: TestClient, submission_id: str = "ts_1", headers: dict = _EMPLOYEE, **overrides
) -> dict:
    response = client.post(
        f"/timesheets/submissions/{submission_id}/submit",
        json=_submit_payload(**overrides),
        headers=headers,
    )
    assert response.status_code == 201
    return response.json()


def _decide(client: TestClient, record_id: str, headers: dict, action: dict, **extra):
    return client.post(
        f"/timesheets/approvals/{record_id}/decision",
        json={"action": action, **extra},
        headers=headers,
    )


def test_submission_fans_out_records_per_scope():
    with TestClient(app) as client:
        body = _submit(client)
        status = client.get("/timesheets/submissions/ts_1", headers=_EMPLOYEE)

    assert body["submission_id"] == "ts_1"
    assert body["revision"] == 1
    assert len(body["record_ids"]) == 2
    assert status.status_code == 200
    status_body = status.json()
    assert [record["scope_id"] for record in status_body["records"]] == ["prj_apollo", "prj_zeus"]
    assert {record["overall_state"] for record in status_body["records"]} == {"PENDING_LEAD"}
    assert status_body["resubmission_required"] is False
    assert status_body["editable_by_owner"] is False


def test_submission_reads_hours_from_entry_source_when_omitted():
    get_entry_source().put(submission_id="ts_src", scope_hours=[hours("prj_apollo", "16")])

    with TestClient(app) as client:
        body = _submit(client, "ts_src", scope_hours=None)
        record = client.get(f"/timesheets/approvals/{body['record_ids'][0]}", headers=_EMPLOYEE)

    assert record.json()["total_hours"] == "16"


def test_full_chain_freezes_record_and_records_history():
    with TestClient(app) as client:
        record_id = _submit(client)["record_ids"][0]
        lead = _decide(client, record_id, _LEAD, {"kind": "APPROVE", "tier": "LEAD"})
        mgr = _decide(
            client,
            record_id,
            _MANAGER,
            {"kind": "APPROVE", "tier": "MANAGER"},
            expected_revision=1,
        )
        frozen = _decide(client, record_id, _MANAGEMENT, {"kind": "FREEZE"})
        history = client.get(f"/timesheets/approvals/{record_id}/history", headers=_EMPLOYEE)
        after = _decide(
            client, record_id, _MANAGER, {"kind": "REJECT", "tier": "MANAGER", "reason": "x"}
        )

    assert lead.json()["new_state"] == "PENDING_MANAGER"
    assert mgr.json()["new_state"] == "PENDING_MANAGEMENT"
    assert frozen.status_code == 200
    assert frozen.json()["new_state"] == "FROZEN"
    assert frozen.json()["record"]["frozen_at"] is not None
    assert [event["event_type"] for event in history.json()["events"]] == [
        "SUBMITTED",
        "APPROVED",
        "APPROVED",
        "APPROVED",
    ]
    assert after.status_code == 409
    assert after.json()["detail"].startswith("RECORD_FROZEN")


def test_manager_bypass_and_lead_conflict():
    with TestClient(app) as client:
        record_id = _submit(client)["record_ids"][0]
        bypass = _decide(client, record_id, _MANAGER, {"kind": "APPROVE", "tier": "MANAGER"})
        late_lead = _decide(client, record_id, _LEAD, {"kind": "APPROVE", "tier": "LEAD"})

    assert bypass.status_code == 200
    assert bypass.json()["record"]["lead_bypassed"] is True
    assert bypass.json()["record"]["lead_tier"]["status"] == "NOT_REQUIRED"
    assert late_lead.status_code == 409


def test_rejection_then_resubmission_creates_new_revision():
    with TestClient(app) as client:
        first = _submit(client)
        rejected = _decide(
            client,
            first["record_ids"][0],
            _LEAD,
            {"kind": "REJECT", "tier": "LEAD", "reason": "  missing ticket refs  "},
        )
        status = client.get("/timesheets/submissions/ts_1", headers=_EMPLOYEE).json()
        second = _submit(client)
        stale = _decide(client, first["record_ids"][1], _LEAD, {"kind": "APPROVE", "tier": "LEAD"})
        after = client.get("/timesheets/submissions/ts_1", headers=_EMPLOYEE).json()

    assert rejected.json()["new_state"] == "LEAD_REJECTED"
    assert rejected.json()["record"]["lead_tier"]["reason"] == "missing ticket refs"
    assert status["resubmission_required"] is True
    assert status["editable_by_owner"] is True
    assert second["revision"] == 2
    assert set(second["record_ids"]).isdisjoint(first["record_ids"])
    assert stale.status_code == 409
    assert stale.json()["detail"].startswith("STALE_REVISION")
    assert sorted(after["prior_revision_record_ids"]) == sorted(first["record_ids"])
    assert after["resubmission_required"] is False


def test_resubmission_while_under_review_is_conflict():
    with TestClient(app) as client:
        _submit(client)
        response = client.post(
            "/timesheets/submissions/ts_1/submit", json=_submit_payload(), headers=_EMPLOYEE
        )

    assert response.status_code == 409
    assert response.json()["detail"].startswith("SUBMISSION_UNDER_REVIEW")


def test_bulk_decision_reports_per_item_outcomes_in_order():
    with TestClient(app) as client:
        record_ids = _submit(client)["record_ids"]
        response = client.post(
            "/timesheets/approvals/bulk-decision",
            json={
                "record_ids": [record_ids[1], "apr_missing", record_ids[0]],
                "action": {"kind": "APPROVE", "tier": "MANAGER"},
            },
            headers=_MANAGER,
        )

    body = response.json()
    assert response.status_code == 200
    assert [outcome["record_id"] for outcome in body["outcomes"]] == [
        record_ids[1],
        "apr_missing",
        record_ids[0],
    ]
    assert [outcome["ok"] for outcome in body["outcomes"]] == [True, False, True]
    assert body["outcomes"][1]["error"]["code"] == "NOT_FOUND"
    assert body["succeeded"] == 2
    assert body["failed"] == 1


def test_bulk_decision_with_frozen_pending_and_rejected_records():
    apollo_only = [{"scope_id": "prj_apollo", "total_hours": "8", "billable_hours": "8"}]
    with TestClient(app) as client:
        frozen = _submit(client, scope_hours=apollo_only)["record_ids"][0]
        rejected = _submit(
            client, "ts_2", headers=_EMPLOYEE_2, owner_id="usr_emp_2", scope_hours=apollo_only
        )["record_ids"][0]
        pending = _submit(
            client,
            "ts_3",
            headers={"X-Actor-Id": "usr_emp_3", "X-Actor-Role": "employee"},
            owner_id="usr_emp_3",
            scope_hours=apollo_only,
        )["record_ids"][0]
        _decide(client, frozen, _LEAD, {"kind": "APPROVE", "tier": "LEAD"})
        _decide(client, frozen, _MANAGER, {"kind": "APPROVE", "tier": "MANAGER"})
        _decide(client, frozen, _MANAGEMENT, {"kind": "FREEZE"})
        _decide(client, rejected, _LEAD, {"kind": "REJECT", "tier": "LEAD", "reason": "typo"})
        response = client.post(
            "/timesheets/approvals/bulk-decision",
            json={
                "record_ids": [frozen, pending, rejected],
                "action": {"kind": "APPROVE", "tier": "MANAGER"},
            },
            headers=_MANAGER,
        )

    body = response.json()
    assert response.status_code == 200
    assert [outcome["ok"] for outcome in body["outcomes"]] == [False, True, False]
    assert body["outcomes"][0]["error"]["code"] == "CONFLICT"
    assert body["outcomes"][0]["error"]["message"].startswith("RECORD_FROZEN")
    assert body["outcomes"][1]["new_state"] == "PENDING_MANAGEMENT"
    assert body["outcomes"][2]["error"]["message"].startswith("RESUBMISSION_REQUIRED")
    assert (body["succeeded"], body["failed"]) == (1, 2)



def test_reviews_and_group_decision_for_manager_view():
    with TestClient(app) as client:
        _submit(client)
        _submit(client, "ts_2", headers=_EMPLOYEE_2, owner_id="usr_emp_2")
        reviews = client.get(
            "/timesheets/reviews",
            params={"view": "MANAGER", "period_start": "2026-03-01", "period_end": "2026-03-31"},
            headers=_MANAGER,
        )
        decided = client.post(
            "/timesheets/reviews/groups/prj_apollo/decision",
            json={
                "view": "MANAGER",
                "period_start": "2026-03-02",
                "period_end": "2026-03-08",
                "action": {"kind": "APPROVE", "tier": "MANAGER"},
            },
            headers=_MANAGER,
        )

    assert reviews.status_code == 200
    groups = reviews.json()["groups"]
    assert [group["scope_id"] for group in groups] == ["prj_apollo", "prj_zeus"]
    apollo = groups[0]
    assert len(apollo["buckets"]["bypass_eligible"]) == 2
    assert apollo["aggregates"]["pending_count"] == 2
    assert apollo["aggregates"]["total_hours"] == "64"
    assert decided.status_code == 200
    assert [outcome["ok"] for outcome in decided.json()["outcomes"]] == [True, True]


def test_submit_requires_matching_identity():
    with TestClient(app) as client:
        anonymous = client.post("/timesheets/submissions/ts_1/submit", json=_submit_payload())
        other = client.post(
            "/timesheets/submissions/ts_1/submit",
            json=_submit_payload(),
            headers={"X-Actor-Id": "usr_emp_9", "X-Actor-Role": "employee"},
        )
        wrong_role = client.post(
            "/timesheets/submissions/ts_1/submit",
            json=_submit_payload(),
            headers={"X-Actor-Id": "usr_emp_1", "X-Actor-Role": "lead"},
        )

    assert anonymous.status_code == 401
    assert anonymous.json()["detail"] == "ACTOR_IDENTITY_REQUIRED"
    assert other.status_code == 403
    assert other.json()["detail"] == "SUBMISSION_OWNER_MISMATCH"
    assert wrong_role.status_code == 403
    assert wrong_role.json()["detail"] == "SUBMISSION_ROLE_MISMATCH"


def test_unknown_resources_return_not_found():
    with TestClient(app) as client:
        record = client.get("/timesheets/approvals/apr_missing", headers=_EMPLOYEE)
        history = client.get("/timesheets/approvals/apr_missing/history", headers=_EMPLOYEE)
        submission = client.get("/timesheets/submissions/ts_missing", headers=_EMPLOYEE)

    assert record.status_code == 404
    assert history.status_code == 404
    assert submission.status_code == 404
    assert submission.json()["detail"].startswith("SUBMISSION_NOT_FOUND")


def test_reads_are_denied_to_callers_outside_the_chain():
    stranger = {"X-Actor-Id": "usr_emp_9", "X-Actor-Role": "employee"}
    with TestClient(app) as client:
        record_id = _submit(client)["record_ids"][0]
        record = client.get(f"/timesheets/approvals/{record_id}", headers=stranger)
        history = client.get(f"/timesheets/approvals/{record_id}/history", headers=stranger)
        submission = client.get("/timesheets/submissions/ts_1", headers=stranger)
        reviewer = client.get(f"/timesheets/approvals/{record_id}", headers=_LEAD)

    assert record.status_code == 403
    assert record.json()["detail"] == "RECORD_NOT_VISIBLE"
    assert history.status_code == 403
    assert submission.status_code == 403
    assert submission.json()["detail"] == "SUBMISSION_NOT_VISIBLE"
    assert reviewer.status_code == 200
    assert reviewer.json()["owner_id"] == "usr_emp_1"



def test_unauthorized_decision_and_invalid_action_payloads():
    with TestClient(app) as client:
        record_id = _submit(client)["record_ids"][0]
        denied = _decide(client, record_id, _EMPLOYEE, {"kind": "APPROVE", "tier": "LEAD"})
        no_reason = _decide(
            client, record_id, _LEAD, {"kind": "REJECT", "tier": "LEAD", "reason": "   "}
        )
        unknown_kind = _decide(client, record_id, _LEAD, {"kind": "ESCALATE", "tier": "LEAD"})

    assert denied.status_code == 403
    assert no_reason.status_code == 422
    assert unknown_kind.status_code == 422
