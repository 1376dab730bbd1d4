import logging
from concurrent.futures import Executor
from typing import Callable, Optional

from src.core.approvals.collaborators import AuditSink, NotificationDispatcher
from src.core.approvals.models import NotificationMessage, TransitionAttempt, TransitionEvent

logger = logging.getLogger(__name__)


class SideEffectPublisher:
    """Fire-and-forget fan-out of audit entries and notifications.

    A committed transition is never undone by a failing sink: every callback
    runs behind a catch-all that logs the failure and moves on. With an
    executor the caller does not wait for delivery at all.
    """

    def __init__(
        self,
        *,
        audit_sink: Optional[AuditSink] = None,
        notifier: Optional[NotificationDispatcher] = None,
        executor: Optional[Executor] = None,
    ) -> None:
        self._audit_sink = audit_sink
        self._notifier = notifier
        self._executor = executor

    def emit_events(self, events: list[TransitionEvent]) -> None:
        if self._audit_sink is None:
            return
        sink = self._audit_sink
        for event in events:
            self._submit("audit.event", lambda event=event: sink.record_event(event))

    def emit_attempt(self, attempt: TransitionAttempt) -> None:
        if self._audit_sink is None:
            return
        sink = self._audit_sink
        self._submit("audit.attempt", lambda: sink.record_attempt(attempt))

    def notify(self, message: NotificationMessage) -> None:
        if self._notifier is None:
            return
        notifier = self._notifier
        self._submit("notification", lambda: notifier.dispatch(message))

    def _submit(self, kind: str, callback: Callable[[], None]) -> None:
        if self._executor is None:
            _run_guarded(kind, callback)
            return
        try:
            self._executor.submit(_run_guarded, kind, callback)
        except RuntimeError:
            logger.exception("Side effect executor unavailable. Kind=%s", kind)


def _run_guarded(kind: str, callback: Callable[[], None]) -> None:
    try:
        callback()
    except Exception:
        logger.exception("Side effect failed. Kind=%s", kind)
