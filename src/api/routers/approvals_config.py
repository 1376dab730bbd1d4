import os
import warnings
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, cast

from src.core.approvals.repository import ApprovalRecordStore
from src.core.approvals.side_effects import SideEffectPublisher
from src.infrastructure.approvals import (
    InMemoryApprovalRecordStore,
    LoggingAuditSink,
    LoggingNotificationDispatcher,
    PostgresApprovalRecordStore,
)


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int, *, minimum: int = 0) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        parsed = int(value.strip())
    except ValueError:
        return default
    return parsed if parsed >= minimum else default


def approval_store_backend_name() -> str:
    backend = os.getenv("APPROVAL_STORE_BACKEND", "IN_MEMORY").strip().upper()
    if backend == "POSTGRES":
        return "POSTGRES"
    warnings.warn(
        ("APPROVAL_STORE_BACKEND legacy runtime backend (IN_MEMORY) is deprecated; use POSTGRES."),
        DeprecationWarning,
        stacklevel=2,
    )
    return "IN_MEMORY"


def approval_postgres_dsn() -> str:
    return os.getenv("APPROVAL_POSTGRES_DSN", "").strip()


def require_expected_revision() -> bool:
    return _env_flag("APPROVAL_REQUIRE_EXPECTED_REVISION", False)


def bulk_max_workers() -> int:
    return _env_int("APPROVAL_BULK_MAX_WORKERS", 4, minimum=1)


def side_effect_workers() -> int:
    return _env_int("APPROVAL_SIDE_EFFECT_WORKERS", 2)


def group_decisions_enabled() -> bool:
    return _env_flag("APPROVAL_GROUP_DECISIONS_ENABLED", True)


def visibility_max_limit() -> int:
    return _env_int("APPROVAL_VISIBILITY_MAX_LIMIT", 200, minimum=1)


def _postgres_connection_exception_types() -> tuple[type[BaseException], ...]:
    types: list[type[BaseException]] = [
        ConnectionError,
        OSError,
        TimeoutError,
        TypeError,
        ValueError,
    ]
    try:
        import psycopg
    except ImportError:
        pass
    else:
        types.append(psycopg.Error)
    return tuple(types)


def build_store() -> ApprovalRecordStore:
    backend = approval_store_backend_name()
    if backend == "POSTGRES":
        dsn = approval_postgres_dsn()
        if not dsn:
            raise RuntimeError("APPROVAL_POSTGRES_DSN_REQUIRED")
        try:
            return cast(ApprovalRecordStore, PostgresApprovalRecordStore(dsn=dsn))
        except RuntimeError:
            raise
        except _postgres_connection_exception_types() as exc:
            raise RuntimeError("APPROVAL_POSTGRES_CONNECTION_FAILED") from exc
    return cast(ApprovalRecordStore, InMemoryApprovalRecordStore())


def build_side_effect_publisher() -> SideEffectPublisher:
    workers = side_effect_workers()
    executor: Optional[ThreadPoolExecutor] = None
    if workers > 0:
        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="approval-effects")
    return SideEffectPublisher(
        audit_sink=LoggingAuditSink(),
        notifier=LoggingNotificationDispatcher(),
        executor=executor,
    )
