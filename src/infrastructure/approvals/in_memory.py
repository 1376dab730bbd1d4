import logging
from copy import deepcopy
from threading import Lock
from typing import Optional

from src.core.approvals.models import (
    ApprovalRecord,
    NotificationMessage,
    OverallState,
    ScopeHours,
    SubmissionRecord,
    TransitionAttempt,
    TransitionEvent,
)
from src.core.approvals.repository import ApprovalRecordQuery, ApprovalRecordStore

logger = logging.getLogger(__name__)


class InMemoryApprovalRecordStore(ApprovalRecordStore):
    def __init__(self) -> None:
        self._lock = Lock()
        self._submissions: dict[str, SubmissionRecord] = {}
        self._records: dict[str, ApprovalRecord] = {}
        self._record_keys: set[tuple[str, int, str]] = set()
        self._events: dict[str, list[TransitionEvent]] = {}

    def get_submission(self, *, submission_id: str) -> Optional[SubmissionRecord]:
        with self._lock:
            submission = self._submissions.get(submission_id)
            return deepcopy(submission) if submission is not None else None

    def create_revision(
        self,
        *,
        submission: SubmissionRecord,
        records: list[ApprovalRecord],
        events: list[TransitionEvent],
        expected_revision: Optional[int],
    ) -> bool:
        with self._lock:
            existing = self._submissions.get(submission.submission_id)
            current_revision = existing.revision if existing is not None else None
            if current_revision != expected_revision:
                return False
            keys = {(r.submission_id, r.revision, r.scope_id) for r in records}
            if keys & self._record_keys or len(keys) != len(records):
                return False
            self._submissions[submission.submission_id] = deepcopy(submission)
            for record in records:
                self._records[record.record_id] = deepcopy(record)
            self._record_keys |= keys
            for event in events:
                self._events.setdefault(event.record_id, []).append(deepcopy(event))
            return True

    def get_record(self, *, record_id: str) -> Optional[ApprovalRecord]:
        with self._lock:
            record = self._records.get(record_id)
            return deepcopy(record) if record is not None else None

    def list_records(self, query: ApprovalRecordQuery) -> list[ApprovalRecord]:
        with self._lock:
            rows = [
                deepcopy(record)
                for record in self._records.values()
                if self._matches(record, query)
            ]
        rows.sort(key=lambda record: (record.period_start, record.scope_id, record.record_id))
        return rows

    def transition_record(
        self,
        *,
        record: ApprovalRecord,
        events: list[TransitionEvent],
        expected_revision: int,
        expected_state: OverallState,
    ) -> bool:
        with self._lock:
            current = self._records.get(record.record_id)
            if current is None:
                return False
            if current.revision != expected_revision or current.overall_state != expected_state:
                return False
            submission = self._submissions.get(current.submission_id)
            if submission is not None and submission.revision != current.revision:
                return False
            self._records[record.record_id] = deepcopy(record)
            self._events.setdefault(record.record_id, []).extend(deepcopy(events))
            return True

    def list_events(self, *, record_id: str) -> list[TransitionEvent]:
        with self._lock:
            return deepcopy(self._events.get(record_id, []))

    def _matches(self, record: ApprovalRecord, query: ApprovalRecordQuery) -> bool:
        if query.submission_id is not None and record.submission_id != query.submission_id:
            return False
        if query.scope_ids is not None and record.scope_id not in query.scope_ids:
            return False
        owner_roles = query.owner_roles
        if owner_roles is not None and record.owner_role_at_submission not in owner_roles:
            return False
        if query.period_start is not None and record.period_end < query.period_start:
            return False
        if query.period_end is not None and record.period_start > query.period_end:
            return False
        if query.latest_only:
            submission = self._submissions.get(record.submission_id)
            if submission is None or submission.revision != record.revision:
                return False
        return True


class InMemorySubmissionEntrySource:
    def __init__(self, entries: Optional[dict[str, list[ScopeHours]]] = None) -> None:
        self._lock = Lock()
        self._entries: dict[str, list[ScopeHours]] = deepcopy(entries or {})

    def put(self, *, submission_id: str, scope_hours: list[ScopeHours]) -> None:
        with self._lock:
            self._entries[submission_id] = deepcopy(scope_hours)

    def scope_hours(self, *, submission_id: str) -> list[ScopeHours]:
        with self._lock:
            return deepcopy(self._entries.get(submission_id, []))


class InMemoryAuditSink:
    def __init__(self) -> None:
        self._lock = Lock()
        self.events: list[TransitionEvent] = []
        self.attempts: list[TransitionAttempt] = []

    def record_event(self, event: TransitionEvent) -> None:
        with self._lock:
            self.events.append(event)

    def record_attempt(self, attempt: TransitionAttempt) -> None:
        with self._lock:
            self.attempts.append(attempt)


class InMemoryNotificationOutbox:
    def __init__(self) -> None:
        self._lock = Lock()
        self.messages: list[NotificationMessage] = []

    def dispatch(self, message: NotificationMessage) -> None:
        with self._lock:
            self.messages.append(message)


class LoggingNotificationDispatcher:
    def dispatch(self, message: NotificationMessage) -> None:
        logger.info(
            "Approval notification. RecordID=%s State=%s Owner=%s Actor=%s",
            message.record_id,
            message.new_state.value,
            message.owner_id,
            message.actor_id,
        )


class LoggingAuditSink:
    def record_event(self, event: TransitionEvent) -> None:
        logger.info(
            "Approval audit event. RecordID=%s Type=%s Tier=%s To=%s Actor=%s",
            event.record_id,
            event.event_type,
            event.tier.value,
            event.to_status.value,
            event.actor_id,
        )

    def record_attempt(self, attempt: TransitionAttempt) -> None:
        logger.info(
            "Approval audit attempt. RecordID=%s Action=%s Outcome=%s Code=%s Actor=%s",
            attempt.record_id,
            attempt.action,
            attempt.outcome,
            attempt.error_code,
            attempt.actor_id,
        )
