from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

import psycopg
from psycopg import sql

from link_sentinel_core.db import ensure_schema, validate_schema


@dataclass(frozen=True)
class Migration:
    version: str
    path: Path


def _migrations_dir() -> Path:
    return Path(__file__).resolve().parent / "sql"


def discover_migrations() -> list[Migration]:
    return [Migration(version=path.stem, path=path) for path in sorted(_migrations_dir().glob("*.sql"))]


def _use_schema(conn: psycopg.Connection, schema: str) -> None:
    ensure_schema(conn, schema)
    conn.execute(sql.SQL("set search_path to {}").format(sql.Identifier(validate_schema(schema))))


def _ensure_migrations_table(conn: psycopg.Connection) -> None:
    conn.execute(
        """
        create table if not exists schema_migrations (
          version text primary key,
          applied_at timestamptz not null default now()
        )
        """
    )


def _applied_versions(conn: psycopg.Connection) -> set[str]:
    rows = conn.execute("select version from schema_migrations").fetchall()
    return {r[0] for r in rows}


def apply_migrations(
    dsn: str,
    *,
    schema: str = "public",
    migrations: Iterable[Migration] | None = None,
) -> list[str]:
    """
    Creates the ledger, scan-state, lease, cache and reference document tables.

    Idempotent: recorded versions are skipped and every statement uses
    IF NOT EXISTS / ON CONFLICT so a half-applied file can be re-run.
    """
    if migrations is None:
        migrations = discover_migrations()

    applied: list[str] = []
    with psycopg.connect(dsn) as conn:
        conn.execute("set timezone to 'UTC'")
        _use_schema(conn, schema)
        _ensure_migrations_table(conn)
        done = _applied_versions(conn)

        for mig in migrations:
            if mig.version in done:
                continue
            conn.execute(mig.path.read_text(encoding="utf-8"))
            conn.execute("insert into schema_migrations(version) values (%s)", (mig.version,))
            conn.commit()
            applied.append(mig.version)

    return applied
