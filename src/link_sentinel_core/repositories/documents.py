from __future__ import annotations

import json
import re
from collections.abc import Sequence
from urllib.parse import parse_qs, urlsplit

import psycopg

from link_sentinel_core.errors import PersistenceFailure
from link_sentinel_core.models import Document

# Year, month and day segments a post path may carry in front of its slug.
_DATE_SEGMENT_RE = re.compile(r"^\d{1,4}$")
_MAX_DEPTH = 32


class DocumentRepository:
    """
    Reference DocumentStore over the `documents` / `terms` tables.

    Eligible documents are published ones of the configured types. Documents
    are read fresh on every call, so edits made by the host application are
    never overwritten with a stale body. Only the public taxonomy list and
    term lookups are memoised.
    """

    def __init__(
        self,
        conn: psycopg.Connection,
        *,
        home_url: str,
        eligible_types: Sequence[str] = ("post", "page"),
    ):
        self._conn = conn
        self._home = home_url.rstrip("/")
        self._types = list(eligible_types) or ["post", "page"]
        self._public_taxonomies: list[str] | None = None
        self._term_cache: dict[tuple[str, str], bool] = {}

    def add_document(
        self,
        *,
        body: str,
        doc_type: str = "post",
        status: str = "publish",
        slug: str | None = None,
        parent_id: int | None = None,
        metadata: dict | None = None,
    ) -> int:
        row = self._conn.execute(
            """
            insert into documents (doc_type, status, slug, parent_id, body, metadata_json)
            values (%s, %s, %s, %s, %s, %s::jsonb)
            returning id
            """,
            (doc_type, status, slug, parent_id, body, json.dumps(metadata) if metadata is not None else None),
        ).fetchone()
        self._conn.commit()
        return int(row[0])

    def add_term(self, *, taxonomy: str, slug: str, is_public: bool = True) -> None:
        self._conn.execute(
            """
            insert into terms (taxonomy, slug, is_public)
            values (%s, %s, %s)
            on conflict (taxonomy, slug) do nothing
            """,
            (taxonomy, slug, is_public),
        )
        self._conn.commit()
        self._public_taxonomies = None
        self._term_cache.clear()

    def list_eligible_ids(self, after_id: int, limit: int) -> list[int]:
        rows = self._conn.execute(
            """
            select id from documents
            where status='publish' and doc_type = any(%s) and id > %s
            order by id asc
            limit %s
            """,
            (self._types, after_id, limit),
        ).fetchall()
        self._conn.commit()
        return [int(r[0]) for r in rows]

    def count_eligible(self) -> int:
        row = self._conn.execute(
            "select count(1) from documents where status='publish' and doc_type = any(%s)",
            (self._types,),
        ).fetchone()
        self._conn.commit()
        return int(row[0]) if row else 0

    def get_document(self, document_id: int) -> Document | None:
        row = self._conn.execute(
            """
            select id, body, doc_type, status, slug, parent_id, modified_at, metadata_json
            from documents
            where id=%s
            """,
            (document_id,),
        ).fetchone()
        self._conn.commit()
        if not row:
            return None
        return Document(
            id=row[0],
            body=row[1] or "",
            doc_type=row[2],
            status=row[3],
            slug=row[4],
            parent_id=row[5],
            modified_at=row[6],
            metadata=row[7] or {},
        )

    def commit_body(self, document_id: int, new_body: str) -> None:
        # modified_at is deliberately left alone.
        try:
            cur = self._conn.execute(
                "update documents set body=%s where id=%s",
                (new_body, document_id),
            )
            self._conn.commit()
        except psycopg.Error as e:
            self._conn.rollback()
            raise PersistenceFailure(f"Failed to update document {document_id}: {e}") from e
        if cur.rowcount == 0:
            raise PersistenceFailure(f"Document {document_id} not found")

    def _path(self, doc: Document) -> list[str] | None:
        """
        Slugs from the root ancestor down to `doc`, or None when a slug is
        missing, a parent is gone or the parent chain loops.
        """
        bits: list[str] = []
        seen: set[int] = set()
        current: Document | None = doc
        while current is not None:
            if not current.slug or current.id in seen or len(seen) >= _MAX_DEPTH:
                return None
            seen.add(current.id)
            bits.append(current.slug)
            if not current.parent_id:
                break
            current = self.get_document(current.parent_id)
            if current is None:
                return None
        bits.reverse()
        return bits

    def permalink(self, doc: Document) -> str:
        path = self._path(doc)
        if not path:
            return f"{self._home}/?p={doc.id}"
        if doc.doc_type == "attachment":
            return f"{self._home}/attachment/{doc.slug}/"
        return f"{self._home}/{'/'.join(path)}/"

    def _published_by_id(self, document_id: int) -> Document | None:
        doc = self.get_document(document_id)
        if doc is None or doc.status != "publish":
            return None
        return doc

    def _published_by_path(self, bits: list[str]) -> Document | None:
        """
        The published document whose full slug path is `bits`.

        Posts without a parent also answer to their slug behind year, month
        and day segments.
        """
        rows = self._conn.execute(
            """
            select id from documents
            where slug=%s and status='publish' and doc_type <> 'attachment'
            order by id asc
            """,
            (bits[-1],),
        ).fetchall()
        self._conn.commit()
        dated = len(bits) > 1 and all(_DATE_SEGMENT_RE.match(b) for b in bits[:-1])
        for row in rows:
            doc = self.get_document(int(row[0]))
            if doc is None:
                continue
            if self._path(doc) == bits:
                return doc
            if dated and doc.doc_type == "post" and not doc.parent_id:
                return doc
        return None

    def _attachment_by_slug(self, slug: str) -> Document | None:
        row = self._conn.execute(
            "select id from documents where slug=%s and doc_type='attachment' order by id asc limit 1",
            (slug,),
        ).fetchone()
        self._conn.commit()
        return self.get_document(int(row[0])) if row else None

    def _taxonomies(self) -> list[str]:
        if self._public_taxonomies is None:
            rows = self._conn.execute(
                "select distinct taxonomy from terms where is_public order by taxonomy"
            ).fetchall()
            self._conn.commit()
            self._public_taxonomies = [r[0] for r in rows]
        return self._public_taxonomies

    def _term_exists(self, taxonomy: str, slug: str) -> bool:
        key = (taxonomy, slug)
        if key not in self._term_cache:
            row = self._conn.execute(
                "select 1 from terms where taxonomy=%s and slug=%s",
                (taxonomy, slug),
            ).fetchone()
            self._conn.commit()
            self._term_cache[key] = row is not None
        return self._term_cache[key]

    def resolve_to_canonical_url(self, absolute_url: str) -> str | None:
        """
        Map a same-site URL to its authoritative permalink.

        Lookup order: document id (`?p=` / `?page_id=`, then the full slug
        path through the parent chain), `attachment/<slug>`, public taxonomy
        term slug.
        """
        parts = urlsplit(absolute_url)
        query = parse_qs(parts.query)
        for key in ("p", "page_id"):
            raw = (query.get(key) or [""])[0]
            if raw.isdigit():
                doc = self._published_by_id(int(raw))
                if doc is not None:
                    return self.permalink(doc)

        path = parts.path.strip("/")
        if not path:
            return None
        bits = [b for b in path.split("/") if b]
        slug = bits[-1]

        if bits[0] != "attachment":
            doc = self._published_by_path(bits)
            if doc is not None:
                return self.permalink(doc)

        if len(bits) == 2 and bits[0] == "attachment":
            attachment = self._attachment_by_slug(bits[1])
            if attachment is not None:
                return self.permalink(attachment)

        for taxonomy in self._taxonomies():
            if self._term_exists(taxonomy, slug):
                return f"{self._home}/{taxonomy}/{slug}/"

        return None
