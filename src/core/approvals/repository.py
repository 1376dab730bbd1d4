from dataclasses import dataclass
from datetime import date
from typing import Optional, Protocol

from src.core.approvals.models import (
    ApprovalRecord,
    OverallState,
    SubmissionRecord,
    SystemRole,
    TransitionEvent,
)


@dataclass(frozen=True)
class ApprovalRecordQuery:
    scope_ids: Optional[frozenset[str]] = None
    owner_roles: Optional[frozenset[SystemRole]] = None
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    submission_id: Optional[str] = None
    latest_only: bool = True


class ApprovalRecordStore(Protocol):
    def get_submission(self, *, submission_id: str) -> Optional[SubmissionRecord]: ...

    def create_revision(
        self,
        *,
        submission: SubmissionRecord,
        records: list[ApprovalRecord],
        events: list[TransitionEvent],
        expected_revision: Optional[int],
    ) -> bool: ...

    def get_record(self, *, record_id: str) -> Optional[ApprovalRecord]: ...

    def list_records(self, query: ApprovalRecordQuery) -> list[ApprovalRecord]: ...

    def transition_record(
        self,
        *,
        record: ApprovalRecord,
        events: list[TransitionEvent],
        expected_revision: int,
        expected_state: OverallState,
    ) -> bool: ...

    def list_events(self, *, record_id: str) -> list[TransitionEvent]: ...
