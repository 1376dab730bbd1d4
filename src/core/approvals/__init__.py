from src.core.approvals.errors import (
    ApprovalConflictError,
    ApprovalDeniedError,
    ApprovalError,
    ApprovalNotFoundError,
    ApprovalValidationError,
)
from src.core.approvals.models import (
    Actor,
    ApprovalAction,
    ApprovalRecord,
    ApproveAction,
    FreezeAction,
    OverallState,
    RejectAction,
    ReviewerView,
    ScopeHours,
    ScopeRole,
    Submission,
    SystemRole,
    Tier,
    TierStatus,
    TransitionEvent,
)
from src.core.approvals.repository import ApprovalRecordQuery, ApprovalRecordStore
from src.core.approvals.service import ApprovalService
from src.core.approvals.side_effects import SideEffectPublisher
from src.core.approvals.visibility import VisibilityFilter

__all__ = [
    "Actor",
    "ApprovalAction",
    "ApprovalConflictError",
    "ApprovalDeniedError",
    "ApprovalError",
    "ApprovalNotFoundError",
    "ApprovalRecord",
    "ApprovalRecordQuery",
    "ApprovalRecordStore",
    "ApprovalService",
    "ApprovalValidationError",
    "ApproveAction",
    "FreezeAction",
    "OverallState",
    "RejectAction",
    "ReviewerView",
    "ScopeHours",
    "ScopeRole",
    "SideEffectPublisher",
    "Submission",
    "SystemRole",
    "Tier",
    "TierStatus",
    "TransitionEvent",
    "VisibilityFilter",
]
