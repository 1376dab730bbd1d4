"""
Role-scoped read views over approval records.

Each reviewer perspective selects records with one store query (scope,
owner-role and period filters pushed down), then partitions them in a
single pass into ``(scope, period)`` groups with per-group aggregates.
Reads take no locks; a record may change right after it is returned, and
``ApprovalService.decide`` re-validates at write time.
"""

from collections import defaultdict
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Optional

from src.core.approvals.errors import ApprovalDeniedError, ApprovalValidationError
from src.core.approvals.models import (
    CLEARED_STATUSES,
    TIER_ORDER,
    Actor,
    ApprovalRecord,
    GroupAggregates,
    ReviewerView,
    ScopePeriodGroup,
    SortOrder,
    SystemRole,
    Tier,
    TierState,
    TierStatus,
    VisibilitySortKey,
    VisibleRecordsResponse,
)
from src.core.approvals.repository import ApprovalRecordQuery, ApprovalRecordStore
from src.core.approvals.requirements import has_global_authority, scopes_with_authority

VIEW_TIER: dict[ReviewerView, Tier] = {
    ReviewerView.LEAD: Tier.LEAD,
    ReviewerView.MANAGER: Tier.MANAGER,
    ReviewerView.MANAGEMENT: Tier.MANAGEMENT,
}

_REVIEWED_STATUSES = frozenset({TierStatus.PENDING, TierStatus.APPROVED, TierStatus.REJECTED})
_MANAGEMENT_STATUSES = frozenset({TierStatus.PENDING, TierStatus.APPROVED})
_UPSTREAM_OWNER_ROLES = frozenset({SystemRole.EMPLOYEE, SystemRole.LEAD})

GroupKey = tuple[str, date, date]


def _lead_bucket(record: ApprovalRecord) -> Optional[str]:
    if record.lead_tier.status in _REVIEWED_STATUSES:
        return "lead_review"
    return None


def _manager_bucket(record: ApprovalRecord) -> Optional[str]:
    if record.manager_tier.status not in _REVIEWED_STATUSES:
        return None
    lead_status = record.lead_tier.status
    if lead_status in CLEARED_STATUSES:
        return "lead_approved"
    if lead_status == TierStatus.PENDING:
        return "bypass_eligible"
    return "lead_rejected"


def _management_bucket(record: ApprovalRecord) -> Optional[str]:
    if record.management_tier.status not in _MANAGEMENT_STATUSES:
        return None
    if record.lead_tier.status not in CLEARED_STATUSES:
        return None
    if record.manager_tier.status not in CLEARED_STATUSES:
        return None
    if record.owner_role_at_submission in _UPSTREAM_OWNER_ROLES:
        return "manager_approved"
    return "direct"


_BUCKETS: dict[ReviewerView, tuple[tuple[str, ...], Callable[[ApprovalRecord], Optional[str]]]] = {
    ReviewerView.LEAD: (("lead_review",), _lead_bucket),
    ReviewerView.MANAGER: (("lead_approved", "bypass_eligible", "lead_rejected"), _manager_bucket),
    ReviewerView.MANAGEMENT: (("manager_approved", "direct"), _management_bucket),
}


class VisibilityFilter:
    def __init__(self, *, store: ApprovalRecordStore, max_limit: int = 200) -> None:
        self._store = store
        self._max_limit = max_limit

    def list_visible(
        self,
        *,
        viewer: Actor,
        view: ReviewerView,
        period_start: date,
        period_end: date,
        sort_by: VisibilitySortKey = "period",
        sort_order: SortOrder = "asc",
        limit: int = 50,
        cursor: Optional[str] = None,
    ) -> VisibleRecordsResponse:
        if period_end < period_start:
            raise ApprovalValidationError("INVALID_PERIOD: period_end precedes period_start")
        if limit < 1 or limit > self._max_limit:
            raise ApprovalValidationError(f"INVALID_LIMIT: must be between 1 and {self._max_limit}")

        groups = self._collect_groups(
            viewer=viewer,
            view=view,
            period_start=period_start,
            period_end=period_end,
            scope_id=None,
        )
        groups = _sort_groups(groups, sort_by=sort_by, sort_order=sort_order)

        if cursor:
            keys = [_group_cursor(group) for group in groups]
            if cursor not in keys:
                raise ApprovalValidationError("INVALID_CURSOR: no visible group matches")
            groups = groups[keys.index(cursor) + 1 :]

        page = groups[:limit]
        next_cursor = _group_cursor(page[-1]) if len(groups) > limit else None
        return VisibleRecordsResponse(
            viewer_id=viewer.actor_id,
            view=view,
            period_start=period_start,
            period_end=period_end,
            groups=page,
            next_cursor=next_cursor,
        )

    def visible_group(
        self,
        *,
        viewer: Actor,
        view: ReviewerView,
        scope_id: str,
        period_start: date,
        period_end: date,
    ) -> Optional[ScopePeriodGroup]:
        groups = self._collect_groups(
            viewer=viewer,
            view=view,
            period_start=period_start,
            period_end=period_end,
            scope_id=scope_id,
        )
        for group in groups:
            if (group.period_start, group.period_end) == (period_start, period_end):
                return group
        return None

    def _collect_groups(
        self,
        *,
        viewer: Actor,
        view: ReviewerView,
        period_start: date,
        period_end: date,
        scope_id: Optional[str],
    ) -> list[ScopePeriodGroup]:
        query = self._query_for(
            viewer=viewer,
            view=view,
            period_start=period_start,
            period_end=period_end,
        )
        if query is None:
            return []
        if scope_id is not None:
            if query.scope_ids is not None and scope_id not in query.scope_ids:
                return []
            query = ApprovalRecordQuery(
                scope_ids=frozenset({scope_id}),
                owner_roles=query.owner_roles,
                period_start=query.period_start,
                period_end=query.period_end,
            )

        bucket_names, classify = _BUCKETS[view]
        tier = VIEW_TIER[view]
        grouped: dict[GroupKey, dict[str, list[ApprovalRecord]]] = defaultdict(
            lambda: {name: [] for name in bucket_names}
        )
        for record in self._store.list_records(query):
            bucket = classify(record)
            if bucket is None:
                continue
            key = (record.scope_id, record.period_start, record.period_end)
            grouped[key][bucket].append(record)

        groups: list[ScopePeriodGroup] = []
        for (group_scope, group_start, group_end), buckets in grouped.items():
            for records in buckets.values():
                records.sort(key=lambda item: (item.owner_id, item.record_id))
            groups.append(
                ScopePeriodGroup(
                    scope_id=group_scope,
                    period_start=group_start,
                    period_end=group_end,
                    buckets=buckets,
                    aggregates=_aggregate(buckets, tier),
                )
            )
        return groups

    def _query_for(
        self,
        *,
        viewer: Actor,
        view: ReviewerView,
        period_start: date,
        period_end: date,
    ) -> Optional[ApprovalRecordQuery]:
        tier = VIEW_TIER[view]
        if view == ReviewerView.MANAGEMENT:
            if not has_global_authority(viewer, tier):
                raise ApprovalDeniedError(
                    f"VIEW_NOT_AUTHORIZED: {viewer.system_role.value} cannot use MANAGEMENT view"
                )
            return ApprovalRecordQuery(period_start=period_start, period_end=period_end)

        owner_roles = (
            frozenset({SystemRole.EMPLOYEE})
            if view == ReviewerView.LEAD
            else _UPSTREAM_OWNER_ROLES
        )
        if has_global_authority(viewer, tier):
            scope_ids = None
        else:
            scopes = scopes_with_authority(viewer, tier)
            if not scopes:
                return None
            scope_ids = frozenset(scopes)
        return ApprovalRecordQuery(
            scope_ids=scope_ids,
            owner_roles=owner_roles,
            period_start=period_start,
            period_end=period_end,
        )


def _aggregate(buckets: dict[str, list[ApprovalRecord]], tier: Tier) -> GroupAggregates:
    aggregates = GroupAggregates()
    total = Decimal("0")
    billable = Decimal("0")
    last_rejection: Optional[TierState] = None
    last_rejected_at: Optional[datetime] = None
    for records in buckets.values():
        for record in records:
            aggregates.record_count += 1
            total += record.total_hours
            billable += record.billable_hours
            rejection = _rejection(record)
            if rejection is not None:
                aggregates.rejected_count += 1
                rejected_at = rejection.at or record.updated_at
                if last_rejected_at is None or rejected_at >= last_rejected_at:
                    last_rejection, last_rejected_at = rejection, rejected_at
            elif record.tier_state(tier).status == TierStatus.PENDING:
                aggregates.pending_count += 1
            elif record.tier_state(tier).status in CLEARED_STATUSES:
                aggregates.approved_count += 1
    aggregates.total_hours = total
    aggregates.billable_hours = billable
    if last_rejection is not None:
        aggregates.last_rejection_reason = last_rejection.reason
        aggregates.last_rejected_by = last_rejection.actor_id
    return aggregates


def _rejection(record: ApprovalRecord) -> Optional[TierState]:
    for tier in TIER_ORDER:
        state = record.tier_state(tier)
        if state.status == TierStatus.REJECTED:
            return state
    return None


def _group_cursor(group: ScopePeriodGroup) -> str:
    return f"{group.scope_id}|{group.period_start.isoformat()}|{group.period_end.isoformat()}"


def _sort_groups(
    groups: list[ScopePeriodGroup],
    *,
    sort_by: VisibilitySortKey,
    sort_order: SortOrder,
) -> list[ScopePeriodGroup]:
    def _key(group: ScopePeriodGroup) -> tuple:
        if sort_by == "scope":
            return (group.scope_id, group.period_start, group.period_end)
        if sort_by == "pending_count":
            return (group.aggregates.pending_count, group.scope_id, group.period_start)
        return (group.period_start, group.period_end, group.scope_id)

    return sorted(groups, key=_key, reverse=sort_order == "desc")
