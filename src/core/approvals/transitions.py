"""
Pure transition validation for tiered approval records.

``evaluate_transition`` never touches storage. It takes the record as last
read, the resolved actor and the requested action, and either returns the
fully patched record with the single tier change it made, or raises one of the
approval errors. The service applies the plan with a conditional write, so
a plan computed from a stale read simply loses the race.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from src.core.approvals.errors import (
    ApprovalConflictError,
    ApprovalDeniedError,
    ApprovalValidationError,
)
from src.core.approvals.models import (
    CLEARED_STATUSES,
    REJECTED_STATES,
    TIER_ORDER,
    Actor,
    ApprovalRecord,
    ApproveAction,
    FreezeAction,
    OverallState,
    RejectAction,
    Tier,
    TierState,
    TierStatus,
    TransitionEventType,
    action_tier,
)
from src.core.approvals.requirements import (
    TierRequirement,
    derive_record_state,
    frozen_invariant_holds,
    is_authorized,
    requirement_for,
    tier_is_bypassable,
)

ActionType = Union[ApproveAction, RejectAction, FreezeAction]


@dataclass(frozen=True)
class TierChange:
    tier: Tier
    from_status: TierStatus
    to_status: TierStatus
    event_type: TransitionEventType
    reason: Optional[str] = None
    lead_bypassed: bool = False


@dataclass(frozen=True)
class TransitionPlan:
    record: ApprovalRecord
    change: TierChange

    @property
    def bypassed(self) -> bool:
        return self.change.lead_bypassed

    @property
    def new_state(self) -> OverallState:
        return self.record.overall_state


def evaluate_transition(
    record: ApprovalRecord,
    actor: Actor,
    action: ActionType,
    *,
    now: datetime,
) -> TransitionPlan:
    if record.overall_state == OverallState.FROZEN:
        raise ApprovalConflictError("RECORD_FROZEN")
    if record.overall_state in REJECTED_STATES:
        raise ApprovalConflictError(
            f"RESUBMISSION_REQUIRED: record is {record.overall_state.value}"
        )

    tier = action_tier(action)
    _validate_action(record, action, tier)

    if not is_authorized(actor, tier, record.scope_id):
        raise ApprovalDeniedError(
            f"TIER_NOT_AUTHORIZED: {actor.system_role.value} cannot act on {tier.value} "
            f"for scope {record.scope_id}"
        )

    current = record.tier_state(tier)
    if current.status != TierStatus.PENDING:
        raise ApprovalConflictError(f"TIER_NOT_PENDING: {tier.value} is {current.status.value}")

    via_bypass = _check_upstream(record, tier)

    if isinstance(action, RejectAction):
        plan = _reject(record, actor, tier, reason=action.reason.strip(), now=now)
    else:
        plan = _approve(record, actor, tier, via_bypass=via_bypass, now=now)

    if not frozen_invariant_holds(plan.record):
        raise ApprovalConflictError("FROZEN_INVARIANT_VIOLATION")
    return plan


def _validate_action(record: ApprovalRecord, action: ActionType, tier: Tier) -> None:
    if isinstance(action, RejectAction) and not (action.reason or "").strip():
        raise ApprovalValidationError("REJECTION_REASON_REQUIRED")
    requirement = requirement_for(record.owner_role_at_submission, tier)
    if requirement == TierRequirement.NOT_REQUIRED:
        raise ApprovalValidationError(
            f"TIER_NOT_REQUIRED: {tier.value} is not part of the chain for "
            f"{record.owner_role_at_submission.value} submissions"
        )


def _check_upstream(record: ApprovalRecord, tier: Tier) -> bool:
    """Return True when the action is only legal through the lead bypass."""
    earlier = TIER_ORDER[: TIER_ORDER.index(tier)]
    blocking = [t for t in earlier if record.tier_state(t).status not in CLEARED_STATUSES]
    if not blocking:
        return False
    if (
        tier == Tier.MANAGER
        and blocking == [Tier.LEAD]
        and record.lead_tier.status == TierStatus.PENDING
        and tier_is_bypassable(record.owner_role_at_submission, Tier.LEAD)
    ):
        return True
    first = blocking[0]
    raise ApprovalConflictError(
        f"UPSTREAM_TIER_NOT_CLEARED: {first.value} is {record.tier_state(first).status.value}"
    )


def _approve(
    record: ApprovalRecord,
    actor: Actor,
    tier: Tier,
    *,
    via_bypass: bool,
    now: datetime,
) -> TransitionPlan:
    patched = record
    if via_bypass:
        # the skipped lead tier is recorded on the manager approval, not as its own event
        patched = patched.with_tier(
            Tier.LEAD,
            TierState(status=TierStatus.NOT_REQUIRED, actor_id=actor.actor_id, at=now),
        )
        patched = patched.model_copy(update={"lead_bypassed": True})

    patched = patched.with_tier(
        tier, TierState(status=TierStatus.APPROVED, actor_id=actor.actor_id, at=now)
    )
    change = TierChange(
        tier=tier,
        from_status=TierStatus.PENDING,
        to_status=TierStatus.APPROVED,
        event_type="APPROVED",
        lead_bypassed=via_bypass,
    )

    update: dict = {"updated_at": now}
    if tier == Tier.MANAGEMENT:
        update["frozen_at"] = now
    patched = patched.model_copy(update=update)
    patched = patched.model_copy(update={"overall_state": derive_record_state(patched)})
    return TransitionPlan(record=patched, change=change)


def _reject(
    record: ApprovalRecord,
    actor: Actor,
    tier: Tier,
    *,
    reason: str,
    now: datetime,
) -> TransitionPlan:
    patched = record.with_tier(
        tier,
        TierState(status=TierStatus.REJECTED, actor_id=actor.actor_id, at=now, reason=reason),
    )
    # downstream tiers are moot until the owner resubmits
    for later in TIER_ORDER[TIER_ORDER.index(tier) + 1 :]:
        if patched.tier_state(later).status != TierStatus.NOT_REQUIRED:
            patched = patched.with_tier(later, TierState(status=TierStatus.PENDING))

    patched = patched.model_copy(update={"updated_at": now})
    patched = patched.model_copy(update={"overall_state": derive_record_state(patched)})
    change = TierChange(
        tier=tier,
        from_status=TierStatus.PENDING,
        to_status=TierStatus.REJECTED,
        event_type="REJECTED",
        reason=reason,
    )
    return TransitionPlan(record=patched, change=change)
