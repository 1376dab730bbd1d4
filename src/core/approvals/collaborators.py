from typing import Protocol

from src.core.approvals.models import (
    NotificationMessage,
    ScopeHours,
    TransitionAttempt,
    TransitionEvent,
)


class SubmissionEntrySource(Protocol):
    def scope_hours(self, *, submission_id: str) -> list[ScopeHours]: ...


class AuditSink(Protocol):
    def record_event(self, event: TransitionEvent) -> None: ...

    def record_attempt(self, attempt: TransitionAttempt) -> None: ...


class NotificationDispatcher(Protocol):
    def dispatch(self, message: NotificationMessage) -> None: ...
