from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

_MIGRATIONS_ROOT = Path(__file__).with_name("postgres_migrations")


@dataclass(frozen=True)
class PostgresMigration:
    version: str
    sql_path: Path
    checksum: str


@dataclass(frozen=True)
class MigrationStatus:
    namespace: str
    applied: tuple[str, ...]
    pending: tuple[str, ...]


def apply_postgres_migrations(*, connection: Any, namespace: str) -> list[str]:
    """Apply forward-only migrations for ``namespace`` under an advisory lock.

    Returns the versions applied by this call. A checksum drift on an already
    applied version aborts the run before any new statement executes.
    """
    lock_key = _migration_lock_key(namespace=namespace)
    connection.execute("SELECT pg_advisory_lock(%s::bigint)", (lock_key,))
    try:
        return _apply_migrations_locked(connection=connection, namespace=namespace)
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.execute("SELECT pg_advisory_unlock(%s::bigint)", (lock_key,))


def postgres_migration_status(*, connection: Any, namespace: str) -> MigrationStatus:
    """Report applied and pending versions without writing to the database."""
    migrations = load_postgres_migrations(namespace=namespace)
    if _migrations_table_exists(connection=connection):
        applied = _applied_checksums(connection=connection, namespace=namespace)
    else:
        applied = {}
    _verify_checksums(namespace=namespace, migrations=migrations, applied=applied)
    return MigrationStatus(
        namespace=namespace,
        applied=tuple(m.version for m in migrations if m.version in applied),
        pending=tuple(m.version for m in migrations if m.version not in applied),
    )


def load_postgres_migrations(*, namespace: str) -> list[PostgresMigration]:
    namespace_path = _MIGRATIONS_ROOT / namespace
    if not namespace_path.exists():
        raise RuntimeError(f"POSTGRES_MIGRATIONS_NAMESPACE_NOT_FOUND:{namespace}")
    migrations: list[PostgresMigration] = []
    for sql_path in sorted(namespace_path.glob("*.sql")):
        sql = sql_path.read_text(encoding="utf-8")
        migrations.append(
            PostgresMigration(
                version=sql_path.stem.split("_", maxsplit=1)[0],
                sql_path=sql_path,
                checksum=hashlib.sha256(sql.encode("utf-8")).hexdigest(),
            )
        )
    return migrations


def _apply_migrations_locked(*, connection: Any, namespace: str) -> list[str]:
    migrations = load_postgres_migrations(namespace=namespace)
    _ensure_migrations_table(connection=connection)
    applied = _applied_checksums(connection=connection, namespace=namespace)
    _verify_checksums(namespace=namespace, migrations=migrations, applied=applied)

    newly_applied: list[str] = []
    for migration in migrations:
        if migration.version in applied:
            continue
        _execute_sql_statements(
            connection=connection,
            sql=migration.sql_path.read_text(encoding="utf-8"),
        )
        connection.execute(
            """
            INSERT INTO schema_migrations (
                version,
                namespace,
                checksum,
                applied_at
            ) VALUES (%s, %s, %s, %s)
            """,
            (
                f"{namespace}:{migration.version}",
                namespace,
                migration.checksum,
                datetime.now(timezone.utc).isoformat(),
            ),
        )
        newly_applied.append(migration.version)
    connection.commit()
    return newly_applied


def _ensure_migrations_table(*, connection: Any) -> None:
    connection.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            namespace TEXT NOT NULL,
            checksum TEXT NOT NULL,
            applied_at TEXT NOT NULL
        )
        """
    )


def _migrations_table_exists(*, connection: Any) -> bool:
    row = connection.execute(
        "SELECT to_regclass(%s) AS table_name", ("schema_migrations",)
    ).fetchone()
    return row is not None and row["table_name"] is not None


def _applied_checksums(*, connection: Any, namespace: str) -> dict[str, str]:
    rows = connection.execute(
        """
        SELECT version, checksum
        FROM schema_migrations
        WHERE namespace = %s
        ORDER BY version ASC
        """,
        (namespace,),
    ).fetchall()
    prefix = f"{namespace}:"
    applied: dict[str, str] = {}
    for row in rows:
        version = str(row["version"]).removeprefix(prefix)
        checksum = str(row["checksum"])
        if applied.get(version, checksum) != checksum:
            raise RuntimeError(f"POSTGRES_MIGRATION_CHECKSUM_MISMATCH:{namespace}:{version}")
        applied[version] = checksum
    return applied


def _verify_checksums(
    *, namespace: str, migrations: list[PostgresMigration], applied: dict[str, str]
) -> None:
    for migration in migrations:
        existing = applied.get(migration.version)
        if existing is not None and existing != migration.checksum:
            raise RuntimeError(
                f"POSTGRES_MIGRATION_CHECKSUM_MISMATCH:{namespace}:{migration.version}"
            )


def _execute_sql_statements(*, connection: Any, sql: str) -> None:
    for statement in sql.split(";"):
        normalized = statement.strip()
        if normalized:
            connection.execute(normalized)


def _migration_lock_key(*, namespace: str) -> int:
    digest = hashlib.sha256(namespace.encode("utf-8")).digest()[:8]
    return int.from_bytes(digest, byteorder="big", signed=True)
