from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


class SystemRole(str, Enum):
    EMPLOYEE = "employee"
    LEAD = "lead"
    MANAGER = "manager"
    MANAGEMENT = "management"
    SUPER_ADMIN = "super_admin"


class ScopeRole(str, Enum):
    LEAD = "LEAD"
    MANAGER = "MANAGER"
    SECONDARY_MANAGER = "SECONDARY_MANAGER"


class Tier(str, Enum):
    LEAD = "LEAD"
    MANAGER = "MANAGER"
    MANAGEMENT = "MANAGEMENT"


TIER_ORDER: tuple[Tier, ...] = (Tier.LEAD, Tier.MANAGER, Tier.MANAGEMENT)


class TierStatus(str, Enum):
    NOT_REQUIRED = "NOT_REQUIRED"
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


CLEARED_STATUSES = frozenset({TierStatus.APPROVED, TierStatus.NOT_REQUIRED})


class OverallState(str, Enum):
    PENDING_LEAD = "PENDING_LEAD"
    PENDING_MANAGER = "PENDING_MANAGER"
    PENDING_MANAGEMENT = "PENDING_MANAGEMENT"
    LEAD_REJECTED = "LEAD_REJECTED"
    MANAGER_REJECTED = "MANAGER_REJECTED"
    MANAGEMENT_REJECTED = "MANAGEMENT_REJECTED"
    FROZEN = "FROZEN"


PENDING_STATE_BY_TIER: dict[Tier, OverallState] = {
    Tier.LEAD: OverallState.PENDING_LEAD,
    Tier.MANAGER: OverallState.PENDING_MANAGER,
    Tier.MANAGEMENT: OverallState.PENDING_MANAGEMENT,
}

REJECTED_STATE_BY_TIER: dict[Tier, OverallState] = {
    Tier.LEAD: OverallState.LEAD_REJECTED,
    Tier.MANAGER: OverallState.MANAGER_REJECTED,
    Tier.MANAGEMENT: OverallState.MANAGEMENT_REJECTED,
}

REJECTED_STATES = frozenset(REJECTED_STATE_BY_TIER.values())


class ReviewerView(str, Enum):
    LEAD = "LEAD"
    MANAGER = "MANAGER"
    MANAGEMENT = "MANAGEMENT"


TransitionOutcome = Literal["SUCCEEDED", "DENIED", "CONFLICT", "INVALID", "NOT_FOUND"]
TransitionEventType = Literal["SUBMITTED", "APPROVED", "REJECTED"]
VisibilitySortKey = Literal["period", "scope", "pending_count"]
SortOrder = Literal["asc", "desc"]


class Actor(BaseModel):
    actor_id: str = Field(description="Resolved caller identifier.", examples=["usr_lead_1"])
    system_role: SystemRole = Field(description="Organization-wide role.", examples=["lead"])
    scope_roles: Dict[str, List[ScopeRole]] = Field(
        default_factory=dict,
        description="Scope-local roles keyed by scope id.",
        examples=[{"prj_apollo": ["LEAD"]}],
    )

    def holds_scope_role(self, scope_id: str, roles: frozenset[ScopeRole]) -> bool:
        return any(role in roles for role in self.scope_roles.get(scope_id, []))

    def scopes_with(self, roles: frozenset[ScopeRole]) -> set[str]:
        return {
            scope_id
            for scope_id, held in self.scope_roles.items()
            if any(role in roles for role in held)
        }


class TierState(BaseModel):
    status: TierStatus = Field(description="Tier status.", examples=["PENDING"])
    actor_id: Optional[str] = Field(
        default=None, description="Actor that moved the tier out of PENDING.", examples=["usr_1"]
    )
    at: Optional[datetime] = Field(
        default=None,
        description="Timestamp of the last tier change.",
        examples=["2026-03-02T09:00:00+00:00"],
    )
    reason: Optional[str] = Field(
        default=None, description="Rejection reason.", examples=["missing description"]
    )


class ScopeHours(BaseModel):
    scope_id: str = Field(description="Allocation scope identifier.", examples=["prj_apollo"])
    total_hours: Decimal = Field(ge=0, description="Logged hours for the scope.", examples=["40"])
    billable_hours: Decimal = Field(
        default=Decimal("0"), ge=0, description="Billable share of logged hours.", examples=["32"]
    )


class Submission(BaseModel):
    submission_id: str = Field(description="Submission identifier.", examples=["ts_2026w10_u1"])
    owner_id: str = Field(description="Owning user identifier.", examples=["usr_emp_1"])
    owner_role: SystemRole = Field(
        description="Owner system role at the time of submission.", examples=["employee"]
    )
    period_start: date = Field(description="First day of the period.", examples=["2026-03-02"])
    period_end: date = Field(description="Last day of the period.", examples=["2026-03-08"])


class SubmissionRecord(BaseModel):
    submission_id: str = Field(description="Internal submission identifier.", examples=["ts_1"])
    owner_id: str = Field(description="Internal owner identifier.", examples=["usr_emp_1"])
    owner_role_at_submission: SystemRole = Field(
        description="Immutable owner role snapshot.", examples=["employee"]
    )
    period_start: date = Field(description="Internal period start.", examples=["2026-03-02"])
    period_end: date = Field(description="Internal period end.", examples=["2026-03-08"])
    revision: int = Field(ge=1, description="Current submission revision.", examples=[1])
    submitted_at: datetime = Field(
        description="Timestamp of the latest submission.",
        examples=["2026-03-09T08:00:00+00:00"],
    )


class ApprovalRecord(BaseModel):
    record_id: str = Field(description="Approval record identifier.", examples=["apr_1a2b3c"])
    submission_id: str = Field(description="Owning submission.", examples=["ts_1"])
    scope_id: str = Field(description="Allocation scope.", examples=["prj_apollo"])
    owner_id: str = Field(description="Submission owner.", examples=["usr_emp_1"])
    owner_role_at_submission: SystemRole = Field(
        description="Immutable owner role snapshot.", examples=["employee"]
    )
    revision: int = Field(ge=1, description="Submission revision of this record.", examples=[1])
    period_start: date = Field(description="Period start.", examples=["2026-03-02"])
    period_end: date = Field(description="Period end.", examples=["2026-03-08"])
    lead_tier: TierState
    manager_tier: TierState
    management_tier: TierState
    overall_state: OverallState = Field(description="Derived record state.", examples=["FROZEN"])
    lead_bypassed: bool = Field(
        default=False, description="Manager approved while lead review was pending."
    )
    frozen_at: Optional[datetime] = Field(default=None, description="Terminal freeze timestamp.")
    total_hours: Decimal = Field(default=Decimal("0"), description="Scope hours snapshot.")
    billable_hours: Decimal = Field(default=Decimal("0"), description="Billable hours snapshot.")
    created_at: datetime = Field(description="Record creation timestamp.")
    updated_at: datetime = Field(description="Last transition timestamp.")

    def tier_state(self, tier: Tier) -> TierState:
        if tier == Tier.LEAD:
            return self.lead_tier
        if tier == Tier.MANAGER:
            return self.manager_tier
        return self.management_tier

    def with_tier(self, tier: Tier, state: TierState) -> "ApprovalRecord":
        field = {
            Tier.LEAD: "lead_tier",
            Tier.MANAGER: "manager_tier",
            Tier.MANAGEMENT: "management_tier",
        }[tier]
        return self.model_copy(update={field: state})


class TransitionEvent(BaseModel):
    event_id: str = Field(description="Transition event identifier.", examples=["ate_abc123"])
    record_id: str = Field(description="Approval record identifier.", examples=["apr_1a2b3c"])
    submission_id: str = Field(description="Owning submission.", examples=["ts_1"])
    revision: int = Field(description="Record revision.", examples=[1])
    event_type: TransitionEventType = Field(description="Event type.", examples=["APPROVED"])
    tier: Tier = Field(description="Tier that changed.", examples=["LEAD"])
    from_status: Optional[TierStatus] = Field(default=None, description="Status before.")
    to_status: TierStatus = Field(description="Status after.", examples=["APPROVED"])
    actor_id: str = Field(description="Acting user.", examples=["usr_lead_1"])
    actor_role: SystemRole = Field(description="Acting user's system role.", examples=["lead"])
    reason: Optional[str] = Field(default=None, description="Rejection reason.")
    lead_bypassed: bool = Field(
        default=False, description="True when this approval skipped the pending lead tier."
    )
    at: datetime = Field(description="Event timestamp.")


class TransitionAttempt(BaseModel):
    attempt_id: str = Field(description="Attempt identifier.", examples=["ata_abc123"])
    record_id: str = Field(description="Targeted record.", examples=["apr_1a2b3c"])
    actor_id: str = Field(description="Acting user.", examples=["usr_mgr_1"])
    actor_role: SystemRole = Field(description="Acting user's system role.", examples=["manager"])
    action: str = Field(description="Action kind.", examples=["APPROVE"])
    tier: Optional[Tier] = Field(default=None, description="Targeted tier.")
    outcome: TransitionOutcome = Field(description="Attempt outcome.", examples=["CONFLICT"])
    error_code: Optional[str] = Field(default=None, description="Failure code.")
    at: datetime = Field(description="Attempt timestamp.")


class NotificationMessage(BaseModel):
    record_id: str = Field(description="Transitioned record.", examples=["apr_1a2b3c"])
    new_state: OverallState = Field(description="State after transition.", examples=["FROZEN"])
    owner_id: str = Field(description="Submission owner.", examples=["usr_emp_1"])
    actor_id: str = Field(description="Acting user.", examples=["usr_mgmt_1"])


class ApproveAction(BaseModel):
    kind: Literal["APPROVE"] = "APPROVE"
    tier: Tier = Field(description="Tier to approve.", examples=["LEAD"])


class RejectAction(BaseModel):
    kind: Literal["REJECT"] = "REJECT"
    tier: Tier = Field(description="Tier to reject.", examples=["LEAD"])
    reason: Optional[str] = Field(
        default=None, description="Mandatory rejection reason.", examples=["missing description"]
    )


class FreezeAction(BaseModel):
    kind: Literal["FREEZE"] = "FREEZE"


ApprovalAction = Annotated[
    Union[ApproveAction, RejectAction, FreezeAction], Field(discriminator="kind")
]


def action_tier(action: Union[ApproveAction, RejectAction, FreezeAction]) -> Tier:
    if isinstance(action, FreezeAction):
        return Tier.MANAGEMENT
    return action.tier


class SubmitForReviewRequest(BaseModel):
    owner_id: str = Field(description="Submission owner.", examples=["usr_emp_1"])
    owner_role: SystemRole = Field(description="Owner system role.", examples=["employee"])
    period_start: date = Field(description="Period start.", examples=["2026-03-02"])
    period_end: date = Field(description="Period end.", examples=["2026-03-08"])
    scope_hours: Optional[List[ScopeHours]] = Field(
        default=None,
        description="Per-scope hours; when omitted the entry source supplies them.",
        examples=[[{"scope_id": "prj_apollo", "total_hours": "40", "billable_hours": "32"}]],
    )


class SubmitForReviewResponse(BaseModel):
    submission_id: str = Field(description="Submission identifier.", examples=["ts_1"])
    revision: int = Field(description="Revision created by this submit.", examples=[1])
    record_ids: List[str] = Field(description="Created approval records.")


class DecisionRequest(BaseModel):
    action: ApprovalAction
    expected_revision: Optional[int] = Field(
        default=None, description="Optimistic concurrency check against record revision."
    )


class DecisionResult(BaseModel):
    record_id: str = Field(description="Transitioned record.", examples=["apr_1a2b3c"])
    ok: bool = Field(default=True, description="Always true for a successful decision.")
    new_state: OverallState = Field(description="State after the transition.")
    record: ApprovalRecord


class BulkDecisionRequest(BaseModel):
    record_ids: List[str] = Field(min_length=1, description="Records to decide.")
    action: ApprovalAction
    expected_revisions: Optional[Dict[str, int]] = Field(
        default=None, description="Optional per-record revision checks."
    )


class DecisionError(BaseModel):
    code: str = Field(description="Error category.", examples=["CONFLICT"])
    message: str = Field(description="Error message.", examples=["RECORD_FROZEN"])


class BulkDecisionOutcome(BaseModel):
    record_id: str = Field(description="Record identifier.", examples=["apr_1a2b3c"])
    ok: bool = Field(description="Whether the item transitioned.")
    new_state: Optional[OverallState] = Field(default=None, description="State after success.")
    error: Optional[DecisionError] = Field(default=None, description="Per-item failure.")


class BulkDecisionResponse(BaseModel):
    outcomes: List[BulkDecisionOutcome]
    succeeded: int = Field(description="Number of applied items.")
    failed: int = Field(description="Number of failed items.")


class GroupDecisionRequest(BaseModel):
    view: ReviewerView = Field(description="Reviewer perspective.", examples=["MANAGER"])
    period_start: date = Field(description="Group period start.", examples=["2026-03-02"])
    period_end: date = Field(description="Group period end.", examples=["2026-03-08"])
    action: ApprovalAction


class GroupDecisionResponse(BaseModel):
    scope_id: str = Field(description="Decided scope.", examples=["prj_apollo"])
    outcomes: List[BulkDecisionOutcome]
    skipped: List[str] = Field(
        default_factory=list, description="Visible records not awaiting this tier."
    )


class SubmissionStatusResponse(BaseModel):
    submission: SubmissionRecord
    records: List[ApprovalRecord] = Field(description="Records of the current revision.")
    prior_revision_record_ids: List[str] = Field(default_factory=list)
    resubmission_required: bool
    editable_by_owner: bool


class RecordHistoryResponse(BaseModel):
    record_id: str
    events: List[TransitionEvent]


class GroupAggregates(BaseModel):
    record_count: int = 0
    pending_count: int = 0
    approved_count: int = 0
    rejected_count: int = 0
    total_hours: Decimal = Decimal("0")
    billable_hours: Decimal = Decimal("0")
    last_rejection_reason: Optional[str] = None
    last_rejected_by: Optional[str] = None


class ScopePeriodGroup(BaseModel):
    scope_id: str = Field(description="Scope of the group.", examples=["prj_apollo"])
    period_start: date
    period_end: date
    buckets: Dict[str, List[ApprovalRecord]] = Field(
        description="Records partitioned for the reviewer perspective."
    )
    aggregates: GroupAggregates


class VisibleRecordsResponse(BaseModel):
    viewer_id: str
    view: ReviewerView
    period_start: date
    period_end: date
    groups: List[ScopePeriodGroup]
    next_cursor: Optional[str] = None
