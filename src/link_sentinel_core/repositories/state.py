from __future__ import annotations

import psycopg

from link_sentinel_core.models import ScanState


class ScanStateRepository:
    """
    Postgres-backed scan session (a single row) and named advisory leases.
    """

    def __init__(self, conn: psycopg.Connection):
        self._conn = conn

    def load_scan_state(self) -> ScanState:
        row = self._conn.execute(
            """
            select active, total, processed, cursor_id, batch_size, progress_interval,
                   token, started_at, last_started, last_finished
            from scan_state
            where id=1
            """
        ).fetchone()
        self._conn.commit()
        if not row:
            return ScanState()
        return ScanState(
            active=row[0],
            total=row[1],
            processed=row[2],
            cursor_id=row[3],
            batch_size=row[4],
            progress_interval=row[5],
            token=row[6],
            started_at=row[7],
            last_started=row[8],
            last_finished=row[9],
        )

    def save_scan_state(self, state: ScanState) -> None:
        self._conn.execute(
            """
            insert into scan_state (
              id, active, total, processed, cursor_id, batch_size, progress_interval,
              token, started_at, last_started, last_finished
            ) values (1, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            on conflict (id) do update set
              active = excluded.active,
              total = excluded.total,
              processed = excluded.processed,
              cursor_id = excluded.cursor_id,
              batch_size = excluded.batch_size,
              progress_interval = excluded.progress_interval,
              token = excluded.token,
              started_at = excluded.started_at,
              last_started = excluded.last_started,
              last_finished = excluded.last_finished
            """,
            (
                state.active,
                state.total,
                state.processed,
                state.cursor_id,
                state.batch_size,
                state.progress_interval,
                state.token,
                state.started_at,
                state.last_started,
                state.last_finished,
            ),
        )
        self._conn.commit()

    def save_scan_progress(self, processed: int) -> None:
        self._conn.execute("update scan_state set processed=%s where id=1", (processed,))
        self._conn.commit()

    def acquire_lease(self, name: str, token: str, ttl_s: int) -> bool:
        row = self._conn.execute(
            """
            insert into leases (name, token, expires_at)
            values (%s, %s, now() + %s * interval '1 second')
            on conflict (name) do update set
              token = excluded.token,
              expires_at = excluded.expires_at
            where leases.expires_at <= now()
            returning token
            """,
            (name, token, ttl_s),
        ).fetchone()
        self._conn.commit()
        return bool(row) and row[0] == token

    def refresh_lease(self, name: str, token: str, ttl_s: int) -> None:
        self._conn.execute(
            """
            insert into leases (name, token, expires_at)
            values (%s, %s, now() + %s * interval '1 second')
            on conflict (name) do update set
              token = excluded.token,
              expires_at = excluded.expires_at
            """,
            (name, token, ttl_s),
        )
        self._conn.commit()

    def get_lease(self, name: str) -> str | None:
        row = self._conn.execute(
            "select token from leases where name=%s and expires_at > now()",
            (name,),
        ).fetchone()
        self._conn.commit()
        return row[0] if row else None

    def release_lease(self, name: str) -> None:
        self._conn.execute("delete from leases where name=%s", (name,))
        self._conn.commit()
