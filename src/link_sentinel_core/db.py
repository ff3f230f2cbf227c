from __future__ import annotations

import re
from collections.abc import Iterator
from contextlib import contextmanager

import psycopg
from psycopg import sql

from link_sentinel_core.config import Settings

_SCHEMA_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def validate_schema(schema: str) -> str:
    if not _SCHEMA_RE.match(schema or ""):
        raise ValueError(f"Invalid Postgres schema name: {schema!r}")
    return schema


def ensure_schema(conn: psycopg.Connection, schema: str) -> None:
    conn.execute(sql.SQL("create schema if not exists {}").format(sql.Identifier(validate_schema(schema))))
    conn.commit()


@contextmanager
def connect(dsn: str, *, schema: str = "public") -> Iterator[psycopg.Connection]:
    # Timestamps are compared against now() in lease and cache expiry; keep the session in UTC.
    options = f"-c search_path={validate_schema(schema)} -c timezone=UTC"
    with psycopg.connect(dsn, options=options) as conn:
        yield conn


@contextmanager
def connect_from_settings(settings: Settings) -> Iterator[psycopg.Connection]:
    if not settings.pg_dsn:
        raise ValueError("Missing Postgres config: set PG_DSN")
    with connect(settings.pg_dsn, schema=settings.pg_schema) as conn:
        yield conn
