import argparse
import os
import sys
from importlib.util import find_spec
from pathlib import Path

_REPO_ROOT = Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

_NAMESPACE = "approvals"


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Apply forward-only PostgreSQL migrations for the approval record store."
    )
    parser.add_argument(
        "--dsn",
        default=os.getenv("APPROVAL_POSTGRES_DSN", "").strip(),
        help="PostgreSQL DSN for approval store migrations.",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Report pending migrations without applying them; exit 1 when any are pending.",
    )
    args = parser.parse_args()

    if not args.dsn:
        raise RuntimeError(f"POSTGRES_MIGRATION_DSN_REQUIRED:{_NAMESPACE}")
    if find_spec("psycopg") is None:
        raise RuntimeError("POSTGRES_MIGRATION_DRIVER_MISSING")
    import psycopg
    from psycopg.rows import dict_row

    from src.infrastructure.postgres_migrations import (
        apply_postgres_migrations,
        postgres_migration_status,
    )

    with psycopg.connect(args.dsn, row_factory=dict_row) as connection:
        if args.check:
            status = postgres_migration_status(connection=connection, namespace=_NAMESPACE)
            print(
                f"namespace={status.namespace} applied={','.join(status.applied) or '-'} "
                f"pending={','.join(status.pending) or '-'}"
            )
            return 1 if status.pending else 0
        applied = apply_postgres_migrations(connection=connection, namespace=_NAMESPACE)
    print(f"Applied migrations for namespace={_NAMESPACE} versions={','.join(applied) or '-'}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
