import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional

from src.core.approvals.collaborators import SubmissionEntrySource
from src.core.approvals.errors import (
    ApprovalConflictError,
    ApprovalDeniedError,
    ApprovalError,
    ApprovalNotFoundError,
    ApprovalValidationError,
)
from src.core.approvals.models import (
    REJECTED_STATES,
    TIER_ORDER,
    Actor,
    ApprovalAction,
    ApprovalRecord,
    BulkDecisionOutcome,
    BulkDecisionResponse,
    DecisionError,
    DecisionResult,
    GroupDecisionResponse,
    NotificationMessage,
    RecordHistoryResponse,
    ReviewerView,
    ScopeHours,
    Submission,
    SubmissionRecord,
    SubmissionStatusResponse,
    SubmitForReviewResponse,
    Tier,
    TierStatus,
    TransitionAttempt,
    TransitionEvent,
    TransitionOutcome,
    action_tier,
)
from src.core.approvals.repository import ApprovalRecordQuery, ApprovalRecordStore
from src.core.approvals.requirements import (
    can_read_record,
    derive_overall_state,
    initial_tier_states,
)
from src.core.approvals.side_effects import SideEffectPublisher
from src.core.approvals.transitions import TransitionPlan, evaluate_transition
from src.core.approvals.visibility import VIEW_TIER, VisibilityFilter

logger = logging.getLogger(__name__)

_OUTCOME_BY_ERROR: dict[type[ApprovalError], TransitionOutcome] = {
    ApprovalNotFoundError: "NOT_FOUND",
    ApprovalDeniedError: "DENIED",
    ApprovalConflictError: "CONFLICT",
    ApprovalValidationError: "INVALID",
}


class ApprovalService:
    def __init__(
        self,
        *,
        store: ApprovalRecordStore,
        entry_source: Optional[SubmissionEntrySource] = None,
        side_effects: Optional[SideEffectPublisher] = None,
        visibility: Optional[VisibilityFilter] = None,
        require_expected_revision: bool = False,
        bulk_max_workers: int = 4,
    ) -> None:
        self._store = store
        self._entry_source = entry_source
        self._side_effects = side_effects or SideEffectPublisher()
        self._visibility = visibility or VisibilityFilter(store=store)
        self._require_expected_revision = require_expected_revision
        self._bulk_max_workers = max(1, bulk_max_workers)

    def submit_for_review(
        self,
        *,
        submission: Submission,
        scope_hours: Optional[list[ScopeHours]] = None,
    ) -> SubmitForReviewResponse:
        if submission.period_end < submission.period_start:
            raise ApprovalValidationError("INVALID_PERIOD: period_end precedes period_start")
        logged = self._logged_scope_hours(submission.submission_id, scope_hours)

        now = _utc_now()
        existing = self._store.get_submission(submission_id=submission.submission_id)
        if existing is None:
            revision = 1
            owner_role = submission.owner_role
            expected_revision: Optional[int] = None
        else:
            self._validate_resubmission(existing=existing, submission=submission)
            revision = existing.revision + 1
            owner_role = existing.owner_role_at_submission
            expected_revision = existing.revision

        submission_record = SubmissionRecord(
            submission_id=submission.submission_id,
            owner_id=submission.owner_id,
            owner_role_at_submission=owner_role,
            period_start=submission.period_start,
            period_end=submission.period_end,
            revision=revision,
            submitted_at=now,
        )
        records = [
            self._new_record(submission_record, hours=hours, now=now) for hours in logged
        ]
        events = [self._submitted_event(record, now=now) for record in records]

        created = self._store.create_revision(
            submission=submission_record,
            records=records,
            events=events,
            expected_revision=expected_revision,
        )
        if not created:
            raise ApprovalConflictError("STALE_REVISION: submission changed concurrently")

        self._side_effects.emit_events(events)
        for record in records:
            self._side_effects.notify(
                NotificationMessage(
                    record_id=record.record_id,
                    new_state=record.overall_state,
                    owner_id=record.owner_id,
                    actor_id=record.owner_id,
                )
            )
        logger.info(
            "Submission sent for review. SubmissionID=%s Revision=%s Records=%s",
            submission.submission_id,
            revision,
            len(records),
        )
        return SubmitForReviewResponse(
            submission_id=submission.submission_id,
            revision=revision,
            record_ids=[record.record_id for record in records],
        )

    def decide(
        self,
        *,
        record_id: str,
        actor: Actor,
        action: ApprovalAction,
        expected_revision: Optional[int] = None,
    ) -> DecisionResult:
        try:
            result = self._decide(
                record_id=record_id,
                actor=actor,
                action=action,
                expected_revision=expected_revision,
            )
        except ApprovalError as exc:
            outcome = _OUTCOME_BY_ERROR.get(type(exc), "INVALID")
            self._emit_attempt(record_id, actor, action, outcome=outcome, error_code=exc.code)
            log = logger.warning if outcome == "CONFLICT" else logger.info
            log(
                "Approval decision refused. RecordID=%s Actor=%s Outcome=%s Reason=%s",
                record_id,
                actor.actor_id,
                outcome,
                exc,
            )
            raise
        self._emit_attempt(record_id, actor, action, outcome="SUCCEEDED", error_code=None)
        return result

    def decide_bulk(
        self,
        *,
        record_ids: list[str],
        actor: Actor,
        action: ApprovalAction,
        expected_revisions: Optional[dict[str, int]] = None,
    ) -> BulkDecisionResponse:
        revisions = expected_revisions or {}

        def _decide_one(record_id: str) -> BulkDecisionOutcome:
            try:
                result = self.decide(
                    record_id=record_id,
                    actor=actor,
                    action=action,
                    expected_revision=revisions.get(record_id),
                )
            except ApprovalError as exc:
                return BulkDecisionOutcome(
                    record_id=record_id,
                    ok=False,
                    error=DecisionError(code=exc.category, message=str(exc)),
                )
            except Exception as exc:
                logger.exception("Bulk decision item failed. RecordID=%s", record_id)
                return BulkDecisionOutcome(
                    record_id=record_id,
                    ok=False,
                    error=DecisionError(code="ERROR", message=type(exc).__name__),
                )
            return BulkDecisionOutcome(record_id=record_id, ok=True, new_state=result.new_state)

        workers = min(self._bulk_max_workers, len(record_ids))
        if workers <= 1:
            outcomes = [_decide_one(record_id) for record_id in record_ids]
        else:
            with ThreadPoolExecutor(max_workers=workers) as pool:
                outcomes = list(pool.map(_decide_one, record_ids))

        succeeded = sum(1 for outcome in outcomes if outcome.ok)
        logger.info(
            "Bulk approval decision finished. Actor=%s Items=%s Succeeded=%s",
            actor.actor_id,
            len(outcomes),
            succeeded,
        )
        return BulkDecisionResponse(
            outcomes=outcomes,
            succeeded=succeeded,
            failed=len(outcomes) - succeeded,
        )

    def decide_group(
        self,
        *,
        scope_id: str,
        actor: Actor,
        view: ReviewerView,
        period_start: date,
        period_end: date,
        action: ApprovalAction,
    ) -> GroupDecisionResponse:
        tier = VIEW_TIER[view]
        if action_tier(action) != tier:
            raise ApprovalValidationError(
                f"ACTION_TIER_MISMATCH: {view.value} view decides the {tier.value} tier"
            )
        group = self._visibility.visible_group(
            viewer=actor,
            view=view,
            scope_id=scope_id,
            period_start=period_start,
            period_end=period_end,
        )
        if group is None:
            raise ApprovalNotFoundError("REVIEW_GROUP_NOT_FOUND")

        targets: list[ApprovalRecord] = []
        skipped: list[str] = []
        for records in group.buckets.values():
            for record in records:
                if (
                    record.tier_state(tier).status == TierStatus.PENDING
                    and record.overall_state not in REJECTED_STATES
                ):
                    targets.append(record)
                else:
                    skipped.append(record.record_id)

        outcomes: list[BulkDecisionOutcome] = []
        if targets:
            outcomes = self.decide_bulk(
                record_ids=[record.record_id for record in targets],
                actor=actor,
                action=action,
                expected_revisions={record.record_id: record.revision for record in targets},
            ).outcomes
        return GroupDecisionResponse(scope_id=scope_id, outcomes=outcomes, skipped=skipped)

    def get_record(self, *, record_id: str, viewer: Optional[Actor] = None) -> ApprovalRecord:
        record = self._store.get_record(record_id=record_id)
        if record is None:
            raise ApprovalNotFoundError("APPROVAL_RECORD_NOT_FOUND")
        if viewer is not None and not can_read_record(viewer, record):
            raise ApprovalDeniedError("RECORD_NOT_VISIBLE")
        return record

    def get_record_history(
        self, *, record_id: str, viewer: Optional[Actor] = None
    ) -> RecordHistoryResponse:
        self.get_record(record_id=record_id, viewer=viewer)
        events = self._store.list_events(record_id=record_id)
        return RecordHistoryResponse(record_id=record_id, events=events)

    def get_submission_status(
        self, *, submission_id: str, viewer: Optional[Actor] = None
    ) -> SubmissionStatusResponse:
        submission = self._store.get_submission(submission_id=submission_id)
        if submission is None:
            raise ApprovalNotFoundError("SUBMISSION_NOT_FOUND")
        all_records = self._store.list_records(
            ApprovalRecordQuery(submission_id=submission_id, latest_only=False)
        )
        current = [record for record in all_records if record.revision == submission.revision]
        if (
            viewer is not None
            and viewer.actor_id != submission.owner_id
            and not any(can_read_record(viewer, record) for record in current)
        ):
            raise ApprovalDeniedError("SUBMISSION_NOT_VISIBLE")
        prior = [
            record.record_id for record in all_records if record.revision < submission.revision
        ]
        resubmission_required = any(record.overall_state in REJECTED_STATES for record in current)
        return SubmissionStatusResponse(
            submission=submission,
            records=sorted(current, key=lambda record: record.scope_id),
            prior_revision_record_ids=prior,
            resubmission_required=resubmission_required,
            editable_by_owner=resubmission_required or not current,
        )

    def _decide(
        self,
        *,
        record_id: str,
        actor: Actor,
        action: ApprovalAction,
        expected_revision: Optional[int],
    ) -> DecisionResult:
        record = self._store.get_record(record_id=record_id)
        if record is None:
            raise ApprovalNotFoundError("APPROVAL_RECORD_NOT_FOUND")
        self._validate_expected_revision(record, expected_revision)

        submission = self._store.get_submission(submission_id=record.submission_id)
        if submission is not None and submission.revision != record.revision:
            raise ApprovalConflictError(
                f"STALE_REVISION: revision {record.revision} superseded by {submission.revision}"
            )

        now = _utc_now()
        plan = evaluate_transition(record, actor, action, now=now)
        events = [self._transition_event(plan, actor=actor, now=now)]
        applied = self._store.transition_record(
            record=plan.record,
            events=events,
            expected_revision=record.revision,
            expected_state=record.overall_state,
        )
        if not applied:
            raise ApprovalConflictError("CONCURRENT_MODIFICATION: record changed since it was read")

        if plan.bypassed:
            logger.info(
                "Lead review bypassed. RecordID=%s Actor=%s", record_id, actor.actor_id
            )
        logger.info(
            "Approval transition applied. RecordID=%s Tier=%s State=%s Actor=%s",
            record_id,
            action_tier(action).value,
            plan.new_state.value,
            actor.actor_id,
        )
        self._side_effects.emit_events(events)
        self._side_effects.notify(
            NotificationMessage(
                record_id=record_id,
                new_state=plan.new_state,
                owner_id=plan.record.owner_id,
                actor_id=actor.actor_id,
            )
        )
        return DecisionResult(record_id=record_id, new_state=plan.new_state, record=plan.record)

    def _validate_expected_revision(
        self, record: ApprovalRecord, expected_revision: Optional[int]
    ) -> None:
        if expected_revision is None and self._require_expected_revision:
            raise ApprovalConflictError("STALE_REVISION: expected_revision is required")
        if expected_revision is not None and expected_revision != record.revision:
            raise ApprovalConflictError("STALE_REVISION: expected_revision mismatch")

    def _validate_resubmission(
        self, *, existing: SubmissionRecord, submission: Submission
    ) -> None:
        if existing.owner_id != submission.owner_id:
            raise ApprovalDeniedError("SUBMISSION_OWNER_MISMATCH")
        if (existing.period_start, existing.period_end) != (
            submission.period_start,
            submission.period_end,
        ):
            raise ApprovalValidationError("SUBMISSION_PERIOD_MISMATCH")
        current = self._store.list_records(
            ApprovalRecordQuery(submission_id=existing.submission_id, latest_only=True)
        )
        if current and not any(record.overall_state in REJECTED_STATES for record in current):
            raise ApprovalConflictError("SUBMISSION_UNDER_REVIEW: no rejected record to resubmit")

    def _logged_scope_hours(
        self, submission_id: str, scope_hours: Optional[list[ScopeHours]]
    ) -> list[ScopeHours]:
        if scope_hours is None:
            if self._entry_source is None:
                raise ApprovalValidationError("NO_LOGGED_HOURS: no entry source configured")
            scope_hours = self._entry_source.scope_hours(submission_id=submission_id)

        merged: dict[str, ScopeHours] = {}
        for hours in scope_hours:
            if hours.billable_hours > hours.total_hours:
                raise ApprovalValidationError(
                    f"BILLABLE_EXCEEDS_TOTAL: scope {hours.scope_id}"
                )
            previous = merged.get(hours.scope_id)
            if previous is not None:
                hours = ScopeHours(
                    scope_id=hours.scope_id,
                    total_hours=previous.total_hours + hours.total_hours,
                    billable_hours=previous.billable_hours + hours.billable_hours,
                )
            merged[hours.scope_id] = hours

        logged = [hours for hours in merged.values() if hours.total_hours > Decimal("0")]
        if not logged:
            raise ApprovalValidationError("NO_LOGGED_HOURS")
        return sorted(logged, key=lambda hours: hours.scope_id)

    def _new_record(
        self, submission: SubmissionRecord, *, hours: ScopeHours, now: datetime
    ) -> ApprovalRecord:
        states = initial_tier_states(
            submission.owner_role_at_submission, owner_id=submission.owner_id, now=now
        )
        overall_state = derive_overall_state(
            states[Tier.LEAD], states[Tier.MANAGER], states[Tier.MANAGEMENT]
        )
        return ApprovalRecord(
            record_id=f"apr_{uuid.uuid4().hex[:12]}",
            submission_id=submission.submission_id,
            scope_id=hours.scope_id,
            owner_id=submission.owner_id,
            owner_role_at_submission=submission.owner_role_at_submission,
            revision=submission.revision,
            period_start=submission.period_start,
            period_end=submission.period_end,
            lead_tier=states[Tier.LEAD],
            manager_tier=states[Tier.MANAGER],
            management_tier=states[Tier.MANAGEMENT],
            overall_state=overall_state,
            frozen_at=now if states[Tier.MANAGEMENT].status == TierStatus.APPROVED else None,
            total_hours=hours.total_hours,
            billable_hours=hours.billable_hours,
            created_at=now,
            updated_at=now,
        )

    def _submitted_event(self, record: ApprovalRecord, *, now: datetime) -> TransitionEvent:
        tier = next(
            tier
            for tier in TIER_ORDER
            if record.tier_state(tier).status != TierStatus.NOT_REQUIRED
        )
        return TransitionEvent(
            event_id=f"ate_{uuid.uuid4().hex[:12]}",
            record_id=record.record_id,
            submission_id=record.submission_id,
            revision=record.revision,
            event_type="SUBMITTED",
            tier=tier,
            from_status=None,
            to_status=record.tier_state(tier).status,
            actor_id=record.owner_id,
            actor_role=record.owner_role_at_submission,
            at=now,
        )

    def _transition_event(
        self,
        plan: TransitionPlan,
        *,
        actor: Actor,
        now: datetime,
    ) -> TransitionEvent:
        change = plan.change
        return TransitionEvent(
            event_id=f"ate_{uuid.uuid4().hex[:12]}",
            record_id=plan.record.record_id,
            submission_id=plan.record.submission_id,
            revision=plan.record.revision,
            event_type=change.event_type,
            tier=change.tier,
            from_status=change.from_status,
            to_status=change.to_status,
            actor_id=actor.actor_id,
            actor_role=actor.system_role,
            reason=change.reason,
            lead_bypassed=change.lead_bypassed,
            at=now,
        )

    def _emit_attempt(
        self,
        record_id: str,
        actor: Actor,
        action: ApprovalAction,
        *,
        outcome: TransitionOutcome,
        error_code: Optional[str],
    ) -> None:
        self._side_effects.emit_attempt(
            TransitionAttempt(
                attempt_id=f"ata_{uuid.uuid4().hex[:12]}",
                record_id=record_id,
                actor_id=actor.actor_id,
                actor_role=actor.system_role,
                action=action.kind,
                tier=action_tier(action),
                outcome=outcome,
                error_code=error_code,
                at=_utc_now(),
            )
        )


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
