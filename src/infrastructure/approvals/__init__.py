from src.infrastructure.approvals.in_memory import (
    InMemoryApprovalRecordStore,
    InMemoryAuditSink,
    InMemoryNotificationOutbox,
    InMemorySubmissionEntrySource,
    LoggingAuditSink,
    LoggingNotificationDispatcher,
)
from src.infrastructure.approvals.postgres import PostgresApprovalRecordStore

__all__ = [
    "InMemoryApprovalRecordStore",
    "InMemoryAuditSink",
    "InMemoryNotificationOutbox",
    "InMemorySubmissionEntrySource",
    "LoggingAuditSink",
    "LoggingNotificationDispatcher",
    "PostgresApprovalRecordStore",
]
