from __future__ import annotations

import json

import psycopg

from link_sentinel_core.models import RedirectResolution


class ResolveCacheRepository:
    def __init__(self, conn: psycopg.Connection):
        self._conn = conn

    def get(self, key: str) -> RedirectResolution | None:
        row = self._conn.execute(
            "select payload from resolve_cache where url_hash=%s and expires_at > now()",
            (key,),
        ).fetchone()
        self._conn.commit()
        if not row:
            return None
        payload = row[0]
        if isinstance(payload, str):
            payload = json.loads(payload)
        return RedirectResolution.from_json(payload)

    def set(self, key: str, value: RedirectResolution, ttl_s: int) -> None:
        if ttl_s <= 0:
            return
        self._conn.execute(
            """
            insert into resolve_cache (url_hash, payload, expires_at)
            values (%s, %s::jsonb, now() + %s * interval '1 second')
            on conflict (url_hash) do update set
              payload = excluded.payload,
              expires_at = excluded.expires_at
            """,
            (key, json.dumps(value.to_json()), ttl_s),
        )
        self._conn.commit()

    def purge_expired(self) -> int:
        cur = self._conn.execute("delete from resolve_cache where expires_at <= now()")
        self._conn.commit()
        return cur.rowcount
