from decimal import Decimal

import pytest

from src.core.approvals.errors import (
    ApprovalConflictError,
    ApprovalDeniedError,
    ApprovalNotFoundError,
    ApprovalValidationError,
)
from src.core.approvals.models import OverallState, ReviewerView, TierStatus
from src.core.approvals.service import ApprovalService
from src.core.approvals.side_effects import SideEffectPublisher
from src.infrastructure.approvals import (
    InMemoryApprovalRecordStore,
    InMemoryAuditSink,
    InMemoryNotificationOutbox,
)
from tests.factories import (
    OTHER_SCOPE,
    PERIOD_END,
    PERIOD_START,
    SCOPE,
    approve,
    build_harness,
    employee,
    freeze,
    hours,
    lead,
    management,
    manager,
    reject,
    submission,
)


def test_submit_creates_one_pending_record_per_logged_scope(harness):
    response = harness.service.submit_for_review(
        submission=submission(),
        scope_hours=[hours(SCOPE, "30", "20"), hours(OTHER_SCOPE, "10"), hours("prj_idle", "0")],
    )

    assert response.revision == 1
    records = [harness.service.get_record(record_id=rid) for rid in response.record_ids]
    assert sorted(record.scope_id for record in records) == [SCOPE, OTHER_SCOPE]
    assert {record.overall_state for record in records} == {OverallState.PENDING_LEAD}
    apollo = next(record for record in records if record.scope_id == SCOPE)
    assert apollo.total_hours == Decimal("30")
    assert apollo.billable_hours == Decimal("20")


def test_submit_merges_duplicate_scope_hours(harness):
    record_ids = harness.submit(scope_hours=[hours(SCOPE, "8", "8"), hours(SCOPE, "4", "0")])

    record = harness.service.get_record(record_id=record_ids[0])
    assert len(record_ids) == 1
    assert record.total_hours == Decimal("12")
    assert record.billable_hours == Decimal("8")


def test_submit_reads_entry_source_when_hours_omitted(harness):
    harness.entry_source.put(submission_id="ts_src", scope_hours=[hours(OTHER_SCOPE, "16")])

    response = harness.service.submit_for_review(submission=submission("ts_src"))

    record = harness.service.get_record(record_id=response.record_ids[0])
    assert record.scope_id == OTHER_SCOPE


def test_submit_without_logged_hours_is_invalid(harness):
    with pytest.raises(ApprovalValidationError) as exc:
        harness.submit(scope_hours=[hours(SCOPE, "0")])
    assert exc.value.code == "NO_LOGGED_HOURS"
    assert harness.store.get_submission(submission_id="ts_1") is None


def test_submit_rejects_billable_above_total(harness):
    with pytest.raises(ApprovalValidationError) as exc:
        harness.submit(scope_hours=[hours(SCOPE, "4", "5")])
    assert exc.value.code == "BILLABLE_EXCEEDS_TOTAL"


def test_submit_rejects_inverted_period(harness):
    with pytest.raises(ApprovalValidationError) as exc:
        harness.submit(period_start=PERIOD_END, period_end=PERIOD_START)
    assert exc.value.code == "INVALID_PERIOD"


def test_management_submission_is_frozen_on_creation(harness):
    record_id = harness.submit_one(owner_id="usr_mgmt_1", owner_role="management")

    record = harness.service.get_record(record_id=record_id)
    assert record.overall_state == OverallState.FROZEN
    assert record.frozen_at is not None
    assert record.management_tier.actor_id == "usr_mgmt_1"
    history = harness.service.get_record_history(record_id=record_id).events
    assert [(event.event_type, event.to_status) for event in history] == [
        ("SUBMITTED", TierStatus.APPROVED)
    ]


def test_manager_submission_starts_at_management(harness):
    record_id = harness.submit_one(owner_id="usr_mgr_9", owner_role="manager")

    assert (
        harness.service.get_record(record_id=record_id).overall_state
        == OverallState.PENDING_MANAGEMENT
    )


def test_full_chain_emits_events_attempts_and_notifications(harness):
    record_id = harness.submit_one()

    harness.service.decide(record_id=record_id, actor=lead(), action=approve("LEAD"))
    harness.service.decide(record_id=record_id, actor=manager(), action=approve("MANAGER"))
    result = harness.service.decide(
        record_id=record_id, actor=management(), action=approve("MANAGEMENT")
    )

    assert result.ok
    assert result.new_state == OverallState.FROZEN
    history = harness.service.get_record_history(record_id=record_id).events
    assert [event.event_type for event in history] == [
        "SUBMITTED",
        "APPROVED",
        "APPROVED",
        "APPROVED",
    ]
    assert [event.event_type for event in harness.audit_sink.events] == [
        event.event_type for event in history
    ]
    assert [attempt.outcome for attempt in harness.audit_sink.attempts] == ["SUCCEEDED"] * 3
    assert [message.new_state for message in harness.outbox.messages] == [
        OverallState.PENDING_LEAD,
        OverallState.PENDING_MANAGER,
        OverallState.PENDING_MANAGEMENT,
        OverallState.FROZEN,
    ]


def test_bypass_appends_a_single_manager_approval_event(harness):
    record_id = harness.submit_one()

    result = harness.service.decide(record_id=record_id, actor=manager(), action=approve("MANAGER"))

    assert result.record.lead_bypassed
    history = harness.service.get_record_history(record_id=record_id).events
    assert [(event.event_type, event.tier.value) for event in history] == [
        ("SUBMITTED", "LEAD"),
        ("APPROVED", "MANAGER"),
    ]
    assert history[1].lead_bypassed
    assert history[1].actor_id == "usr_mgr_1"
    assert not history[0].lead_bypassed
    assert len(harness.audit_sink.events) == 2


def test_refused_decision_is_audited_and_not_applied(harness):
    record_id = harness.submit_one()

    with pytest.raises(ApprovalDeniedError):
        harness.service.decide(record_id=record_id, actor=lead(OTHER_SCOPE), action=approve("LEAD"))

    attempt = harness.audit_sink.attempts[-1]
    assert attempt.outcome == "DENIED"
    assert attempt.error_code == "TIER_NOT_AUTHORIZED"
    assert (
        harness.service.get_record(record_id=record_id).overall_state == OverallState.PENDING_LEAD
    )


def test_unknown_record_is_not_found(harness):
    with pytest.raises(ApprovalNotFoundError) as exc:
        harness.service.decide(record_id="apr_missing", actor=lead(), action=approve("LEAD"))
    assert exc.value.code == "APPROVAL_RECORD_NOT_FOUND"
    assert harness.audit_sink.attempts[-1].outcome == "NOT_FOUND"

    with pytest.raises(ApprovalNotFoundError):
        harness.service.get_record_history(record_id="apr_missing")


def test_reads_are_limited_to_owner_and_chain_reviewers(harness):
    record_id = harness.submit_one()

    assert harness.service.get_record(record_id=record_id, viewer=employee()).record_id == record_id
    assert harness.service.get_record(record_id=record_id, viewer=lead()).record_id == record_id
    assert harness.service.get_record(record_id=record_id, viewer=management()).scope_id == SCOPE
    assert harness.service.get_submission_status(submission_id="ts_1", viewer=manager()).records

    with pytest.raises(ApprovalDeniedError) as exc:
        harness.service.get_record(record_id=record_id, viewer=employee("usr_emp_9"))
    assert exc.value.code == "RECORD_NOT_VISIBLE"
    with pytest.raises(ApprovalDeniedError):
        harness.service.get_record_history(record_id=record_id, viewer=lead(OTHER_SCOPE))
    with pytest.raises(ApprovalDeniedError) as exc:
        harness.service.get_submission_status(
            submission_id="ts_1", viewer=employee("usr_emp_9")
        )
    assert exc.value.code == "SUBMISSION_NOT_VISIBLE"



def test_expected_revision_mismatch_conflicts(harness):
    record_id = harness.submit_one()

    with pytest.raises(ApprovalConflictError) as exc:
        harness.service.decide(
            record_id=record_id, actor=lead(), action=approve("LEAD"), expected_revision=2
        )
    assert exc.value.code == "STALE_REVISION"


def test_expected_revision_can_be_required():
    harness = build_harness(require_expected_revision=True)
    record_id = harness.submit_one()

    with pytest.raises(ApprovalConflictError):
        harness.service.decide(record_id=record_id, actor=lead(), action=approve("LEAD"))

    result = harness.service.decide(
        record_id=record_id, actor=lead(), action=approve("LEAD"), expected_revision=1
    )
    assert result.new_state == OverallState.PENDING_MANAGER


def test_resubmission_is_refused_while_under_review(harness):
    harness.submit_one()

    with pytest.raises(ApprovalConflictError) as exc:
        harness.submit()
    assert exc.value.code == "SUBMISSION_UNDER_REVIEW"


def test_resubmission_by_other_owner_is_denied(harness):
    record_id = harness.submit_one()
    harness.service.decide(record_id=record_id, actor=lead(), action=reject("LEAD"))

    with pytest.raises(ApprovalDeniedError):
        harness.submit(owner_id="usr_emp_2")


def test_resubmission_creates_new_revision_and_keeps_old_records(harness):
    old_ids = harness.submit(scope_hours=[hours(SCOPE, "20"), hours(OTHER_SCOPE, "20")])
    apollo_id, zeus_id = old_ids
    harness.service.decide(record_id=apollo_id, actor=lead(), action=reject("LEAD", "typo"))

    status = harness.service.get_submission_status(submission_id="ts_1")
    assert status.resubmission_required
    assert status.editable_by_owner

    new_ids = harness.submit(scope_hours=[hours(SCOPE, "18"), hours(OTHER_SCOPE, "20")])

    assert set(new_ids).isdisjoint(old_ids)
    old_apollo = harness.service.get_record(record_id=apollo_id)
    assert old_apollo.overall_state == OverallState.LEAD_REJECTED
    assert old_apollo.lead_tier.reason == "typo"

    status = harness.service.get_submission_status(submission_id="ts_1")
    assert status.submission.revision == 2
    assert sorted(status.prior_revision_record_ids) == sorted(old_ids)
    assert {record.revision for record in status.records} == {2}
    assert not status.resubmission_required
    assert not status.editable_by_owner

    with pytest.raises(ApprovalConflictError) as exc:
        harness.service.decide(record_id=zeus_id, actor=lead(OTHER_SCOPE), action=approve("LEAD"))
    assert exc.value.code == "STALE_REVISION"


def test_resubmission_keeps_owner_role_snapshot(harness):
    record_id = harness.submit_one()
    harness.service.decide(record_id=record_id, actor=lead(), action=reject("LEAD"))

    new_id = harness.submit_one(owner_role="lead")

    record = harness.service.get_record(record_id=new_id)
    assert record.owner_role_at_submission.value == "employee"
    assert record.overall_state == OverallState.PENDING_LEAD


def test_submission_status_for_unknown_submission(harness):
    with pytest.raises(ApprovalNotFoundError):
        harness.service.get_submission_status(submission_id="ts_none")


def test_lost_conditional_write_surfaces_conflict_without_side_effects():
    class _LosingStore(InMemoryApprovalRecordStore):
        def transition_record(self, **kwargs):
            return False

    store = _LosingStore()
    audit_sink = InMemoryAuditSink()
    outbox = InMemoryNotificationOutbox()
    service = ApprovalService(
        store=store,
        side_effects=SideEffectPublisher(audit_sink=audit_sink, notifier=outbox),
    )
    record_id = service.submit_for_review(
        submission=submission(), scope_hours=[hours()]
    ).record_ids[0]

    with pytest.raises(ApprovalConflictError) as exc:
        service.decide(record_id=record_id, actor=lead(), action=approve("LEAD"))
    assert exc.value.code == "CONCURRENT_MODIFICATION"
    assert [event.event_type for event in store.list_events(record_id=record_id)] == ["SUBMITTED"]
    assert [event.event_type for event in audit_sink.events] == ["SUBMITTED"]
    assert len(outbox.messages) == 1
    assert audit_sink.attempts[-1].outcome == "CONFLICT"


def test_bulk_decision_keeps_input_order_and_isolates_failures(harness):
    first = harness.submit_one("ts_1")
    second = harness.submit_one("ts_2", owner_id="usr_emp_2")
    harness.service.decide(record_id=second, actor=lead(), action=reject("LEAD"))

    response = harness.service.decide_bulk(
        record_ids=[second, "apr_missing", first],
        actor=lead(),
        action=approve("LEAD"),
    )

    assert [outcome.record_id for outcome in response.outcomes] == [second, "apr_missing", first]
    assert [outcome.ok for outcome in response.outcomes] == [False, False, True]
    assert response.outcomes[0].error.code == "CONFLICT"
    assert response.outcomes[1].error.code == "NOT_FOUND"
    assert response.outcomes[2].new_state == OverallState.PENDING_MANAGER
    assert (response.succeeded, response.failed) == (1, 2)


def test_bulk_batch_with_frozen_pending_and_rejected_records(harness):
    frozen = harness.submit_one("ts_1")
    pending = harness.submit_one("ts_2", owner_id="usr_emp_2")
    rejected = harness.submit_one("ts_3", owner_id="usr_emp_3")
    harness.service.decide(record_id=frozen, actor=lead(), action=approve("LEAD"))
    harness.service.decide(record_id=frozen, actor=manager(), action=approve("MANAGER"))
    harness.service.decide(record_id=frozen, actor=management(), action=freeze())
    harness.service.decide(record_id=rejected, actor=lead(), action=reject("LEAD"))

    response = harness.service.decide_bulk(
        record_ids=[frozen, pending, rejected],
        actor=manager(),
        action=approve("MANAGER"),
    )

    assert [outcome.ok for outcome in response.outcomes] == [False, True, False]
    assert response.outcomes[0].error.code == "CONFLICT"
    assert response.outcomes[0].error.message.startswith("RECORD_FROZEN")
    assert response.outcomes[1].new_state == OverallState.PENDING_MANAGEMENT
    assert response.outcomes[2].error.code == "CONFLICT"
    assert response.outcomes[2].error.message.startswith("RESUBMISSION_REQUIRED")
    assert (response.succeeded, response.failed) == (1, 2)
    assert harness.service.get_record(record_id=frozen).overall_state == OverallState.FROZEN
    assert harness.service.get_record(record_id=rejected).overall_state == (
        OverallState.LEAD_REJECTED
    )



def test_bulk_decision_runs_sequentially_with_single_worker():
    harness = build_harness(bulk_max_workers=1)
    record_ids = [harness.submit_one(f"ts_{i}", owner_id=f"usr_emp_{i}") for i in range(3)]

    response = harness.service.decide_bulk(
        record_ids=record_ids,
        actor=manager(),
        action=approve("MANAGER"),
        expected_revisions={record_id: 1 for record_id in record_ids},
    )

    assert response.succeeded == 3
    assert all(
        harness.service.get_record(record_id=rid).lead_bypassed for rid in record_ids
    )


def test_group_decision_approves_pending_records_and_skips_others(harness):
    pending_ids = [harness.submit_one(f"ts_{i}", owner_id=f"usr_emp_{i}") for i in range(2)]
    done_id = harness.submit_one("ts_done", owner_id="usr_emp_9")
    harness.service.decide(record_id=done_id, actor=lead(), action=approve("LEAD"))

    response = harness.service.decide_group(
        scope_id=SCOPE,
        actor=lead(),
        view=ReviewerView.LEAD,
        period_start=PERIOD_START,
        period_end=PERIOD_END,
        action=approve("LEAD"),
    )

    assert sorted(outcome.record_id for outcome in response.outcomes) == sorted(pending_ids)
    assert all(outcome.ok for outcome in response.outcomes)
    assert response.skipped == [done_id]


def test_group_decision_rejects_action_for_other_tier(harness):
    harness.submit_one()

    with pytest.raises(ApprovalValidationError) as exc:
        harness.service.decide_group(
            scope_id=SCOPE,
            actor=lead(),
            view=ReviewerView.LEAD,
            period_start=PERIOD_START,
            period_end=PERIOD_END,
            action=approve("MANAGER"),
        )
    assert exc.value.code == "ACTION_TIER_MISMATCH"


def test_group_decision_for_invisible_scope_is_not_found(harness):
    harness.submit_one()

    with pytest.raises(ApprovalNotFoundError):
        harness.service.decide_group(
            scope_id=SCOPE,
            actor=lead(OTHER_SCOPE),
            view=ReviewerView.LEAD,
            period_start=PERIOD_START,
            period_end=PERIOD_END,
            action=approve("LEAD"),
        )
