import json
from contextlib import closing
from datetime import date, datetime
from decimal import Decimal
from importlib.util import find_spec
from typing import Any, Optional

from src.core.approvals.models import (
    ApprovalRecord,
    OverallState,
    SubmissionRecord,
    SystemRole,
    TierState,
    TransitionEvent,
)
from src.core.approvals.repository import ApprovalRecordQuery
from src.infrastructure.postgres_migrations import apply_postgres_migrations

_RECORD_COLUMNS = """
    r.record_id,
    r.submission_id,
    r.scope_id,
    r.owner_id,
    r.owner_role_at_submission,
    r.revision,
    r.period_start,
    r.period_end,
    r.lead_tier_json,
    r.manager_tier_json,
    r.management_tier_json,
    r.overall_state,
    r.lead_bypassed,
    r.frozen_at,
    r.total_hours,
    r.billable_hours,
    r.created_at,
    r.updated_at
"""


class PostgresApprovalRecordStore:
    def __init__(self, *, dsn: str) -> None:
        if not dsn:
            raise RuntimeError("APPROVAL_POSTGRES_DSN_REQUIRED")
        if find_spec("psycopg") is None:
            raise RuntimeError("APPROVAL_POSTGRES_DRIVER_MISSING")
        self._dsn = dsn
        self._init_db()

    def get_submission(self, *, submission_id: str) -> Optional[SubmissionRecord]:
        query = """
            SELECT
                submission_id,
                owner_id,
                owner_role_at_submission,
                period_start,
                period_end,
                revision,
                submitted_at
            FROM approval_submissions
            WHERE submission_id = %s
        """
        with closing(self._connect()) as connection:
            row = connection.execute(query, (submission_id,)).fetchone()
        return _to_submission(row)

    def create_revision(
        self,
        *,
        submission: SubmissionRecord,
        records: list[ApprovalRecord],
        events: list[TransitionEvent],
        expected_revision: Optional[int],
    ) -> bool:
        with closing(self._connect()) as connection:
            if expected_revision is None:
                cursor = connection.execute(
                    """
                    INSERT INTO approval_submissions (
                        submission_id,
                        owner_id,
                        owner_role_at_submission,
                        period_start,
                        period_end,
                        revision,
                        submitted_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (submission_id) DO NOTHING
                    """,
                    (
                        submission.submission_id,
                        submission.owner_id,
                        submission.owner_role_at_submission.value,
                        submission.period_start.isoformat(),
                        submission.period_end.isoformat(),
                        submission.revision,
                        submission.submitted_at.isoformat(),
                    ),
                )
            else:
                cursor = connection.execute(
                    """
                    UPDATE approval_submissions
                    SET revision = %s, submitted_at = %s
                    WHERE submission_id = %s AND revision = %s
                    """,
                    (
                        submission.revision,
                        submission.submitted_at.isoformat(),
                        submission.submission_id,
                        expected_revision,
                    ),
                )
            if cursor.rowcount != 1:
                connection.rollback()
                return False
            for record in records:
                self._insert_record(connection=connection, record=record)
            for event in events:
                self._insert_event(connection=connection, event=event)
            connection.commit()
        return True

    def get_record(self, *, record_id: str) -> Optional[ApprovalRecord]:
        query = f"""
            SELECT {_RECORD_COLUMNS}
            FROM approval_records r
            WHERE r.record_id = %s
        """
        with closing(self._connect()) as connection:
            row = connection.execute(query, (record_id,)).fetchone()
        return _to_record(row)

    def list_records(self, query: ApprovalRecordQuery) -> list[ApprovalRecord]:
        where_clauses = []
        args: list[Any] = []
        if query.submission_id is not None:
            where_clauses.append("r.submission_id = %s")
            args.append(query.submission_id)
        if query.scope_ids is not None:
            where_clauses.append("r.scope_id = ANY(%s)")
            args.append(sorted(query.scope_ids))
        if query.owner_roles is not None:
            where_clauses.append("r.owner_role_at_submission = ANY(%s)")
            args.append(sorted(role.value for role in query.owner_roles))
        if query.period_start is not None:
            where_clauses.append("r.period_end >= %s")
            args.append(query.period_start.isoformat())
        if query.period_end is not None:
            where_clauses.append("r.period_start <= %s")
            args.append(query.period_end.isoformat())
        join_sql = (
            "JOIN approval_submissions s"
            " ON s.submission_id = r.submission_id AND s.revision = r.revision"
            if query.latest_only
            else ""
        )
        where_sql = f"WHERE {' AND '.join(where_clauses)}" if where_clauses else ""
        sql = f"""
            SELECT {_RECORD_COLUMNS}
            FROM approval_records r
            {join_sql}
            {where_sql}
            ORDER BY r.period_start ASC, r.scope_id ASC, r.record_id ASC
        """
        with closing(self._connect()) as connection:
            rows = connection.execute(sql, tuple(args)).fetchall()
        return [_to_record(row) for row in rows]

    def transition_record(
        self,
        *,
        record: ApprovalRecord,
        events: list[TransitionEvent],
        expected_revision: int,
        expected_state: OverallState,
    ) -> bool:
        query = """
            UPDATE approval_records
            SET
                lead_tier_json = %s,
                manager_tier_json = %s,
                management_tier_json = %s,
                overall_state = %s,
                lead_bypassed = %s,
                frozen_at = %s,
                updated_at = %s
            WHERE record_id = %s AND revision = %s AND overall_state = %s
              AND EXISTS (
                  SELECT 1 FROM approval_submissions s
                  WHERE s.submission_id = approval_records.submission_id
                    AND s.revision = approval_records.revision
              )
        """
        with closing(self._connect()) as connection:
            cursor = connection.execute(
                query,
                (
                    _tier_json(record.lead_tier),
                    _tier_json(record.manager_tier),
                    _tier_json(record.management_tier),
                    record.overall_state.value,
                    record.lead_bypassed,
                    _optional_iso(record.frozen_at),
                    record.updated_at.isoformat(),
                    record.record_id,
                    expected_revision,
                    expected_state.value,
                ),
            )
            if cursor.rowcount != 1:
                connection.rollback()
                return False
            for event in events:
                self._insert_event(connection=connection, event=event)
            connection.commit()
        return True

    def list_events(self, *, record_id: str) -> list[TransitionEvent]:
        query = """
            SELECT
                event_id,
                record_id,
                submission_id,
                revision,
                event_type,
                tier,
                from_status,
                to_status,
                actor_id,
                actor_role,
                reason,
                lead_bypassed,
                occurred_at
            FROM approval_transition_events
            WHERE record_id = %s
            ORDER BY event_seq ASC
        """
        with closing(self._connect()) as connection:
            rows = connection.execute(query, (record_id,)).fetchall()
        return [_to_event(row) for row in rows]

    def _connect(self):
        psycopg, dict_row = _import_psycopg()
        return psycopg.connect(self._dsn, row_factory=dict_row)

    def _init_db(self) -> None:
        with closing(self._connect()) as connection:
            apply_postgres_migrations(connection=connection, namespace="approvals")

    def _insert_record(self, *, connection, record: ApprovalRecord) -> None:
        query = """
            INSERT INTO approval_records (
                record_id,
                submission_id,
                scope_id,
                owner_id,
                owner_role_at_submission,
                revision,
                period_start,
                period_end,
                lead_tier_json,
                manager_tier_json,
                management_tier_json,
                overall_state,
                lead_bypassed,
                frozen_at,
                total_hours,
                billable_hours,
                created_at,
                updated_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        """
        connection.execute(
            query,
            (
                record.record_id,
                record.submission_id,
                record.scope_id,
                record.owner_id,
                record.owner_role_at_submission.value,
                record.revision,
                record.period_start.isoformat(),
                record.period_end.isoformat(),
                _tier_json(record.lead_tier),
                _tier_json(record.manager_tier),
                _tier_json(record.management_tier),
                record.overall_state.value,
                record.lead_bypassed,
                _optional_iso(record.frozen_at),
                str(record.total_hours),
                str(record.billable_hours),
                record.created_at.isoformat(),
                record.updated_at.isoformat(),
            ),
        )

    def _insert_event(self, *, connection, event: TransitionEvent) -> None:
        query = """
            INSERT INTO approval_transition_events (
                event_id,
                record_id,
                submission_id,
                revision,
                event_type,
                tier,
                from_status,
                to_status,
                actor_id,
                actor_role,
                reason,
                lead_bypassed,
                occurred_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        """
        connection.execute(
            query,
            (
                event.event_id,
                event.record_id,
                event.submission_id,
                event.revision,
                event.event_type,
                event.tier.value,
                event.from_status.value if event.from_status is not None else None,
                event.to_status.value,
                event.actor_id,
                event.actor_role.value,
                event.reason,
                event.lead_bypassed,
                event.at.isoformat(),
            ),
        )


def _import_psycopg():
    import psycopg
    from psycopg.rows import dict_row

    return psycopg, dict_row


def _optional_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat()


def _optional_datetime(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _tier_json(state: TierState) -> str:
    return json.dumps(state.model_dump(mode="json"), separators=(",", ":"), sort_keys=True)


def _to_tier(value: str) -> TierState:
    return TierState.model_validate(json.loads(value))


def _to_submission(row) -> Optional[SubmissionRecord]:
    if row is None:
        return None
    return SubmissionRecord(
        submission_id=row["submission_id"],
        owner_id=row["owner_id"],
        owner_role_at_submission=SystemRole(row["owner_role_at_submission"]),
        period_start=date.fromisoformat(row["period_start"]),
        period_end=date.fromisoformat(row["period_end"]),
        revision=int(row["revision"]),
        submitted_at=datetime.fromisoformat(row["submitted_at"]),
    )


def _to_record(row) -> Optional[ApprovalRecord]:
    if row is None:
        return None
    return ApprovalRecord(
        record_id=row["record_id"],
        submission_id=row["submission_id"],
        scope_id=row["scope_id"],
        owner_id=row["owner_id"],
        owner_role_at_submission=SystemRole(row["owner_role_at_submission"]),
        revision=int(row["revision"]),
        period_start=date.fromisoformat(row["period_start"]),
        period_end=date.fromisoformat(row["period_end"]),
        lead_tier=_to_tier(row["lead_tier_json"]),
        manager_tier=_to_tier(row["manager_tier_json"]),
        management_tier=_to_tier(row["management_tier_json"]),
        overall_state=OverallState(row["overall_state"]),
        lead_bypassed=bool(row["lead_bypassed"]),
        frozen_at=_optional_datetime(row["frozen_at"]),
        total_hours=Decimal(row["total_hours"]),
        billable_hours=Decimal(row["billable_hours"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


def _to_event(row) -> TransitionEvent:
    return TransitionEvent(
        event_id=row["event_id"],
        record_id=row["record_id"],
        submission_id=row["submission_id"],
        revision=int(row["revision"]),
        event_type=row["event_type"],
        tier=row["tier"],
        from_status=row["from_status"],
        to_status=row["to_status"],
        actor_id=row["actor_id"],
        actor_role=SystemRole(row["actor_role"]),
        reason=row["reason"],
        lead_bypassed=bool(row["lead_bypassed"]),
        at=datetime.fromisoformat(row["occurred_at"]),
    )
