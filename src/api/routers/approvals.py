from datetime import date
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status

from src.api.identity import resolve_actor
from src.api.routers.approval_http_errors import raise_approval_http_exception
from src.api.routers.approvals_config import (
    build_side_effect_publisher,
    build_store,
    group_decisions_enabled,
    bulk_max_workers,
    require_expected_revision,
    visibility_max_limit,
)
from src.core.approvals import ApprovalError, ApprovalService, VisibilityFilter
from src.core.approvals.models import (
    Actor,
    ApprovalRecord,
    BulkDecisionRequest,
    BulkDecisionResponse,
    DecisionRequest,
    DecisionResult,
    GroupDecisionRequest,
    GroupDecisionResponse,
    RecordHistoryResponse,
    ReviewerView,
    SortOrder,
    Submission,
    SubmissionStatusResponse,
    SubmitForReviewRequest,
    SubmitForReviewResponse,
    VisibilitySortKey,
    VisibleRecordsResponse,
)
from src.core.approvals.repository import ApprovalRecordStore
from src.infrastructure.approvals import InMemorySubmissionEntrySource

router = APIRouter(tags=["Timesheet Approvals"])

_STORE: Optional[ApprovalRecordStore] = None
_ENTRY_SOURCE = InMemorySubmissionEntrySource()
_SERVICE: Optional[ApprovalService] = None
_VISIBILITY: Optional[VisibilityFilter] = None


def _get_store() -> ApprovalRecordStore:
    global _STORE
    if _STORE is None:
        try:
            _STORE = build_store()
        except RuntimeError as exc:
            detail = str(exc)
            if detail != "APPROVAL_POSTGRES_DSN_REQUIRED":
                detail = "APPROVAL_POSTGRES_CONNECTION_FAILED"
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail
            ) from exc
    return _STORE


def get_visibility_filter() -> VisibilityFilter:
    global _VISIBILITY
    if _VISIBILITY is None:
        _VISIBILITY = VisibilityFilter(store=_get_store(), max_limit=visibility_max_limit())
    return _VISIBILITY


def get_approval_service() -> ApprovalService:
    global _SERVICE
    if _SERVICE is None:
        _SERVICE = ApprovalService(
            store=_get_store(),
            entry_source=_ENTRY_SOURCE,
            side_effects=build_side_effect_publisher(),
            visibility=get_visibility_filter(),
            require_expected_revision=require_expected_revision(),
            bulk_max_workers=bulk_max_workers(),
        )
    return _SERVICE


def reset_approval_service_for_tests() -> None:
    global _STORE
    global _ENTRY_SOURCE
    global _SERVICE
    global _VISIBILITY
    _STORE = None
    _ENTRY_SOURCE = InMemorySubmissionEntrySource()
    _SERVICE = None
    _VISIBILITY = None


def get_entry_source() -> InMemorySubmissionEntrySource:
    return _ENTRY_SOURCE


def _assert_group_decisions_enabled() -> None:
    if not group_decisions_enabled():
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="APPROVAL_GROUP_DECISIONS_DISABLED",
        )


_RECORD_ID = Path(description="Approval record identifier.", examples=["apr_1a2b3c4d5e6f"])
_SUBMISSION_ID = Path(description="Timesheet submission identifier.", examples=["ts_2026w10_u1"])


@router.post(
    "/timesheets/submissions/{submission_id}/submit",
    response_model=SubmitForReviewResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Submit Timesheet for Review",
    description=(
        "Creates one approval record per scope with logged hours. A resubmission after a "
        "rejection creates a new revision; records of earlier revisions are kept unchanged."
    ),
)
def submit_for_review(
    submission_id: Annotated[str, _SUBMISSION_ID],
    payload: SubmitForReviewRequest,
    actor: Annotated[Actor, Depends(resolve_actor)],
    service: Annotated[ApprovalService, Depends(get_approval_service)],
) -> SubmitForReviewResponse:
    if payload.owner_id != actor.actor_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="SUBMISSION_OWNER_MISMATCH"
        )
    if payload.owner_role != actor.system_role:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="SUBMISSION_ROLE_MISMATCH"
        )
    submission = Submission(
        submission_id=submission_id,
        owner_id=payload.owner_id,
        owner_role=payload.owner_role,
        period_start=payload.period_start,
        period_end=payload.period_end,
    )
    try:
        return service.submit_for_review(submission=submission, scope_hours=payload.scope_hours)
    except ApprovalError as exc:
        raise_approval_http_exception(exc)


@router.get(
    "/timesheets/submissions/{submission_id}",
    response_model=SubmissionStatusResponse,
    status_code=status.HTTP_200_OK,
    summary="Get Submission Review Status",
    description="Returns current-revision records and whether the owner must resubmit.",
)
def get_submission_status(
    submission_id: Annotated[str, _SUBMISSION_ID],
    actor: Annotated[Actor, Depends(resolve_actor)],
    service: Annotated[ApprovalService, Depends(get_approval_service)],
) -> SubmissionStatusResponse:
    try:
        return service.get_submission_status(submission_id=submission_id, viewer=actor)
    except ApprovalError as exc:
        raise_approval_http_exception(exc)


@router.get(
    "/timesheets/approvals/{record_id}",
    response_model=ApprovalRecord,
    status_code=status.HTTP_200_OK,
    summary="Get Approval Record",
    description="Returns per-tier statuses, derived state and hours snapshot for one record.",
)
def get_approval_record(
    record_id: Annotated[str, _RECORD_ID],
    actor: Annotated[Actor, Depends(resolve_actor)],
    service: Annotated[ApprovalService, Depends(get_approval_service)],
) -> ApprovalRecord:
    try:
        return service.get_record(record_id=record_id, viewer=actor)
    except ApprovalError as exc:
        raise_approval_http_exception(exc)


@router.get(
    "/timesheets/approvals/{record_id}/history",
    response_model=RecordHistoryResponse,
    status_code=status.HTTP_200_OK,
    summary="Get Approval Record History",
    description="Returns the ordered transition events committed for the record.",
)
def get_approval_record_history(
    record_id: Annotated[str, _RECORD_ID],
    actor: Annotated[Actor, Depends(resolve_actor)],
    service: Annotated[ApprovalService, Depends(get_approval_service)],
) -> RecordHistoryResponse:
    try:
        return service.get_record_history(record_id=record_id, viewer=actor)
    except ApprovalError as exc:
        raise_approval_http_exception(exc)


@router.post(
    "/timesheets/approvals/bulk-decision",
    response_model=BulkDecisionResponse,
    status_code=status.HTTP_200_OK,
    summary="Decide Many Approval Records",
    description=(
        "Applies one action to each record independently. Per-item failures are reported "
        "in input order and never abort the batch."
    ),
)
def decide_bulk(
    payload: BulkDecisionRequest,
    actor: Annotated[Actor, Depends(resolve_actor)],
    service: Annotated[ApprovalService, Depends(get_approval_service)],
) -> BulkDecisionResponse:
    return service.decide_bulk(
        record_ids=payload.record_ids,
        actor=actor,
        action=payload.action,
        expected_revisions=payload.expected_revisions,
    )


@router.post(
    "/timesheets/approvals/{record_id}/decision",
    response_model=DecisionResult,
    status_code=status.HTTP_200_OK,
    summary="Decide Approval Record",
    description=(
        "Approves, rejects or freezes one tier. The write is conditional on the record's "
        "revision and state read at validation time."
    ),
)
def decide(
    record_id: Annotated[str, _RECORD_ID],
    payload: DecisionRequest,
    actor: Annotated[Actor, Depends(resolve_actor)],
    service: Annotated[ApprovalService, Depends(get_approval_service)],
) -> DecisionResult:
    try:
        return service.decide(
            record_id=record_id,
            actor=actor,
            action=payload.action,
            expected_revision=payload.expected_revision,
        )
    except ApprovalError as exc:
        raise_approval_http_exception(exc)


@router.get(
    "/timesheets/reviews",
    response_model=VisibleRecordsResponse,
    status_code=status.HTTP_200_OK,
    summary="List Reviewable Records",
    description="Returns records visible to the caller, grouped per scope and period.",
)
def list_reviews(
    view: Annotated[ReviewerView, Query(description="Reviewer perspective.", examples=["MANAGER"])],
    period_start: Annotated[date, Query(description="Window start.", examples=["2026-03-02"])],
    period_end: Annotated[date, Query(description="Window end.", examples=["2026-03-08"])],
    actor: Annotated[Actor, Depends(resolve_actor)],
    visibility: Annotated[VisibilityFilter, Depends(get_visibility_filter)],
    sort_by: Annotated[
        VisibilitySortKey, Query(description="Group sort key.", examples=["period"])
    ] = "period",
    sort_order: Annotated[
        SortOrder, Query(description="Sort direction.", examples=["asc"])
    ] = "asc",
    limit: Annotated[int, Query(description="Page size in groups.", examples=[50])] = 50,
    cursor: Annotated[
        Optional[str],
        Query(
            description="Cursor from a previous page.",
            examples=["prj_apollo|2026-03-02|2026-03-08"],
        ),
    ] = None,
) -> VisibleRecordsResponse:
    try:
        return visibility.list_visible(
            viewer=actor,
            view=view,
            period_start=period_start,
            period_end=period_end,
            sort_by=sort_by,
            sort_order=sort_order,
            limit=limit,
            cursor=cursor,
        )
    except ApprovalError as exc:
        raise_approval_http_exception(exc)


@router.post(
    "/timesheets/reviews/groups/{scope_id}/decision",
    response_model=GroupDecisionResponse,
    status_code=status.HTTP_200_OK,
    summary="Decide Review Group",
    description="Applies one action to every pending record of a visible scope and period group.",
)
def decide_group(
    scope_id: Annotated[str, Path(description="Scope of the group.", examples=["prj_apollo"])],
    payload: GroupDecisionRequest,
    actor: Annotated[Actor, Depends(resolve_actor)],
    service: Annotated[ApprovalService, Depends(get_approval_service)],
) -> GroupDecisionResponse:
    _assert_group_decisions_enabled()
    try:
        return service.decide_group(
            scope_id=scope_id,
            actor=actor,
            view=payload.view,
            period_start=payload.period_start,
            period_end=payload.period_end,
            action=payload.action,
        )
    except ApprovalError as exc:
        raise_approval_http_exception(exc)
