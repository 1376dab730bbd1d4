"""Canonical role tables shared by record creation, validation and visibility."""

from datetime import datetime
from enum import Enum

from src.core.approvals.models import (
    CLEARED_STATUSES,
    PENDING_STATE_BY_TIER,
    REJECTED_STATE_BY_TIER,
    TIER_ORDER,
    Actor,
    ApprovalRecord,
    OverallState,
    ScopeRole,
    SystemRole,
    Tier,
    TierState,
    TierStatus,
)


class TierRequirement(str, Enum):
    REQUIRED = "REQUIRED"
    SOFT = "SOFT"
    NOT_REQUIRED = "NOT_REQUIRED"
    AUTO_APPROVED = "AUTO_APPROVED"


_R = TierRequirement

TIER_REQUIREMENTS: dict[SystemRole, dict[Tier, TierRequirement]] = {
    SystemRole.EMPLOYEE: {
        Tier.LEAD: _R.SOFT,
        Tier.MANAGER: _R.REQUIRED,
        Tier.MANAGEMENT: _R.REQUIRED,
    },
    SystemRole.LEAD: {
        Tier.LEAD: _R.NOT_REQUIRED,
        Tier.MANAGER: _R.REQUIRED,
        Tier.MANAGEMENT: _R.REQUIRED,
    },
    SystemRole.MANAGER: {
        Tier.LEAD: _R.NOT_REQUIRED,
        Tier.MANAGER: _R.NOT_REQUIRED,
        Tier.MANAGEMENT: _R.REQUIRED,
    },
    SystemRole.MANAGEMENT: {
        Tier.LEAD: _R.NOT_REQUIRED,
        Tier.MANAGER: _R.NOT_REQUIRED,
        Tier.MANAGEMENT: _R.AUTO_APPROVED,
    },
    SystemRole.SUPER_ADMIN: {
        Tier.LEAD: _R.NOT_REQUIRED,
        Tier.MANAGER: _R.NOT_REQUIRED,
        Tier.MANAGEMENT: _R.AUTO_APPROVED,
    },
}

# tier -> (system roles authorized everywhere, scope roles authorized on the record's scope)
TIER_AUTHORITY: dict[Tier, tuple[frozenset[SystemRole], frozenset[ScopeRole]]] = {
    Tier.LEAD: (frozenset(), frozenset({ScopeRole.LEAD})),
    Tier.MANAGER: (
        frozenset({SystemRole.SUPER_ADMIN}),
        frozenset({ScopeRole.MANAGER, ScopeRole.SECONDARY_MANAGER}),
    ),
    Tier.MANAGEMENT: (
        frozenset({SystemRole.MANAGEMENT, SystemRole.SUPER_ADMIN}),
        frozenset(),
    ),
}


def requirement_for(owner_role: SystemRole, tier: Tier) -> TierRequirement:
    return TIER_REQUIREMENTS[owner_role][tier]


def tier_is_required(owner_role: SystemRole, tier: Tier) -> bool:
    return requirement_for(owner_role, tier) != TierRequirement.NOT_REQUIRED


def tier_is_bypassable(owner_role: SystemRole, tier: Tier) -> bool:
    return requirement_for(owner_role, tier) == TierRequirement.SOFT


def is_authorized(actor: Actor, tier: Tier, scope_id: str) -> bool:
    system_roles, scope_roles = TIER_AUTHORITY[tier]
    if actor.system_role in system_roles:
        return True
    return bool(scope_roles) and actor.holds_scope_role(scope_id, scope_roles)


def has_global_authority(actor: Actor, tier: Tier) -> bool:
    system_roles, _ = TIER_AUTHORITY[tier]
    return actor.system_role in system_roles


def scopes_with_authority(actor: Actor, tier: Tier) -> set[str]:
    _, scope_roles = TIER_AUTHORITY[tier]
    return actor.scopes_with(scope_roles)


def initial_tier_states(
    owner_role: SystemRole, *, owner_id: str, now: datetime
) -> dict[Tier, TierState]:
    states: dict[Tier, TierState] = {}
    for tier in TIER_ORDER:
        requirement = requirement_for(owner_role, tier)
        if requirement == TierRequirement.NOT_REQUIRED:
            states[tier] = TierState(status=TierStatus.NOT_REQUIRED)
        elif requirement == TierRequirement.AUTO_APPROVED:
            states[tier] = TierState(status=TierStatus.APPROVED, actor_id=owner_id, at=now)
        else:
            states[tier] = TierState(status=TierStatus.PENDING)
    return states


def derive_overall_state(
    lead: TierState, manager: TierState, management: TierState
) -> OverallState:
    tiers = ((Tier.LEAD, lead), (Tier.MANAGER, manager), (Tier.MANAGEMENT, management))
    for tier, state in tiers:
        if state.status == TierStatus.REJECTED:
            return REJECTED_STATE_BY_TIER[tier]
    if management.status == TierStatus.APPROVED and all(
        state.status in CLEARED_STATUSES for _, state in tiers
    ):
        return OverallState.FROZEN
    for tier, state in tiers:
        if state.status == TierStatus.PENDING:
            return PENDING_STATE_BY_TIER[tier]
    raise ValueError("UNREACHABLE_TIER_COMBINATION")


def derive_record_state(record: ApprovalRecord) -> OverallState:
    return derive_overall_state(record.lead_tier, record.manager_tier, record.management_tier)


def frozen_invariant_holds(record: ApprovalRecord) -> bool:
    cleared = (
        record.management_tier.status == TierStatus.APPROVED
        and record.lead_tier.status in CLEARED_STATUSES
        and record.manager_tier.status in CLEARED_STATUSES
    )
    return (record.frozen_at is not None) == cleared


def can_read_record(actor: Actor, record: ApprovalRecord) -> bool:
    """Owners always see their records; reviewers need authority over a tier in the chain."""
    if actor.actor_id == record.owner_id:
        return True
    return any(
        tier_is_required(record.owner_role_at_submission, tier)
        and is_authorized(actor, tier, record.scope_id)
        for tier in TIER_ORDER
    )
