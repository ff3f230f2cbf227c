from __future__ import annotations

from collections.abc import Iterator
from datetime import datetime
from typing import Any

import psycopg

from link_sentinel_core.models import (
    BROKEN_STATUS_THRESHOLD,
    IssuePage,
    IssueView,
    LinkIssue,
    NewIssue,
    ResolutionStatus,
    ResolvedScope,
)
from link_sentinel_core.util import url_fingerprint

_COLUMNS = """
  id, document_id, original_url, url_hash, final_url, http_status,
  status_message, resolution_status, scan_date, resolution_date, resolved_by_actor_id
"""

_BULK_ELIGIBLE = """
  resolution_status = 'pending'
  and coalesce(final_url, '') <> ''
  and (http_status < %(threshold)s or http_status is null)
"""


def _row_to_issue(row: tuple[Any, ...]) -> LinkIssue:
    return LinkIssue(
        id=row[0],
        document_id=row[1],
        original_url=row[2],
        url_fingerprint=row[3],
        final_url=row[4],
        http_status=row[5],
        status_message=row[6],
        resolution_status=ResolutionStatus(row[7]),
        scan_date=row[8],
        resolution_date=row[9],
        resolved_by_actor_id=row[10],
    )


def view_filter(
    view: IssueView,
    *,
    scope: ResolvedScope = ResolvedScope.ALL,
    since: datetime | None = None,
) -> tuple[str, dict[str, Any], str]:
    """
    Where-clause, params and order column for one of the three ledger views.
    """
    params: dict[str, Any] = {"threshold": BROKEN_STATUS_THRESHOLD}
    if view is IssueView.RESOLVED:
        where = "resolution_status = 'resolved'"
        if since is not None and scope is ResolvedScope.CURRENT:
            where += " and resolution_date is not null and resolution_date >= %(since)s"
            params["since"] = since
        elif since is not None and scope is ResolvedScope.PREVIOUS:
            where += " and (resolution_date is null or resolution_date < %(since)s)"
            params["since"] = since
        return where, params, "resolution_date"
    if view is IssueView.PENDING_REDIRECT:
        return (
            "resolution_status = 'pending' and (http_status < %(threshold)s or http_status is null)",
            params,
            "scan_date",
        )
    return "resolution_status = 'pending' and http_status >= %(threshold)s", params, "scan_date"


class LinkIssueRepository:
    def __init__(self, conn: psycopg.Connection):
        self._conn = conn

    def find_existing(self, document_id: int, fingerprint: str, status: ResolutionStatus) -> int | None:
        row = self._conn.execute(
            """
            select id from link_issues
            where document_id=%s and resolution_status=%s and url_hash=%s
            limit 1
            """,
            (document_id, status.value, fingerprint),
        ).fetchone()
        return row[0] if row else None

    def record_issue(self, issue: NewIssue) -> int | None:
        resolved = issue.resolution_status is ResolutionStatus.RESOLVED
        row = self._conn.execute(
            """
            insert into link_issues (
              document_id, original_url, url_hash, final_url, http_status,
              status_message, resolution_status, scan_date, resolution_date,
              resolved_by_actor_id
            ) values (
              %s, %s, %s, %s, %s,
              %s, %s, now(), case when %s then now() else null end,
              %s
            )
            on conflict do nothing
            returning id
            """,
            (
                issue.document_id,
                issue.original_url,
                url_fingerprint(issue.original_url),
                issue.final_url,
                issue.http_status,
                issue.status_message,
                issue.resolution_status.value,
                resolved,
                issue.resolved_by_actor_id,
            ),
        ).fetchone()
        self._conn.commit()
        return row[0] if row else None

    def get_issue(self, issue_id: int) -> LinkIssue | None:
        row = self._conn.execute(
            f"select {_COLUMNS} from link_issues where id=%s",
            (issue_id,),
        ).fetchone()
        return _row_to_issue(row) if row else None

    def mark_resolved(
        self,
        issue_id: int,
        *,
        message: str,
        actor_id: int = 0,
        final_url: str | None = None,
        http_status: int | None = None,
    ) -> bool:
        row = self._conn.execute(
            "select document_id, url_hash from link_issues where id=%s and resolution_status='pending' for update",
            (issue_id,),
        ).fetchone()
        if not row:
            self._conn.rollback()
            return False
        # A newer resolution supersedes the historical one for the same link.
        self._conn.execute(
            """
            delete from link_issues
            where document_id=%s and url_hash=%s and resolution_status='resolved'
            """,
            (row[0], row[1]),
        )
        self._conn.execute(
            """
            update link_issues
            set resolution_status='resolved',
                resolution_date=now(),
                status_message=%s,
                resolved_by_actor_id=%s,
                final_url=coalesce(%s, final_url),
                http_status=coalesce(%s, http_status)
            where id=%s
            """,
            (message, actor_id, final_url, http_status, issue_id),
        )
        self._conn.commit()
        return True

    def mark_pending_redirect(self, issue_id: int, *, final_url: str, http_status: int, message: str) -> bool:
        cur = self._conn.execute(
            """
            update link_issues
            set final_url=%s,
                http_status=%s,
                resolution_status='pending',
                status_message=%s,
                resolution_date=null,
                resolved_by_actor_id=0
            where id=%s and resolution_status='pending'
            """,
            (final_url, http_status, message, issue_id),
        )
        self._conn.commit()
        return cur.rowcount > 0

    def count_pending(self, *, below_400: bool) -> int:
        view = IssueView.PENDING_REDIRECT if below_400 else IssueView.BROKEN
        where, params, _ = view_filter(view)
        row = self._conn.execute(f"select count(id) from link_issues where {where}", params).fetchone()
        return int(row[0]) if row else 0

    def count_bulk_candidates(self) -> int:
        row = self._conn.execute(
            f"select count(id) from link_issues where {_BULK_ELIGIBLE}",
            {"threshold": BROKEN_STATUS_THRESHOLD},
        ).fetchone()
        return int(row[0]) if row else 0

    def list_bulk_candidates(self, after_id: int, limit: int) -> list[LinkIssue]:
        rows = self._conn.execute(
            f"""
            select {_COLUMNS} from link_issues
            where {_BULK_ELIGIBLE} and id > %(after_id)s
            order by id asc
            limit %(limit)s
            """,
            {"threshold": BROKEN_STATUS_THRESHOLD, "after_id": after_id, "limit": limit},
        ).fetchall()
        return [_row_to_issue(r) for r in rows]

    def page_issues(
        self,
        view: IssueView,
        *,
        page: int = 1,
        per_page: int = 20,
        descending: bool = True,
        scope: ResolvedScope = ResolvedScope.ALL,
        since: datetime | None = None,
    ) -> IssuePage:
        page = max(1, page)
        where, params, order_col = view_filter(view, scope=scope, since=since)
        total_row = self._conn.execute(f"select count(id) from link_issues where {where}", params).fetchone()
        direction = "desc" if descending else "asc"
        rows = self._conn.execute(
            f"""
            select {_COLUMNS} from link_issues
            where {where}
            order by {order_col} {direction}, id {direction}
            limit %(limit)s offset %(offset)s
            """,
            {**params, "limit": per_page, "offset": (page - 1) * per_page},
        ).fetchall()
        return IssuePage(
            items=[_row_to_issue(r) for r in rows],
            total=int(total_row[0]) if total_row else 0,
            page=page,
            per_page=per_page,
        )

    def page_resolved(
        self, scope: ResolvedScope = ResolvedScope.ALL, page: int = 1, *, since: datetime | None = None
    ) -> IssuePage:
        return self.page_issues(IssueView.RESOLVED, page=page, scope=scope, since=since)

    def page_unresolved(self, threshold_broken: bool, page: int = 1) -> IssuePage:
        view = IssueView.BROKEN if threshold_broken else IssueView.PENDING_REDIRECT
        return self.page_issues(view, page=page)

    def iter_resolved(self, *, batch: int = 500) -> Iterator[LinkIssue]:
        last_id = 0
        while True:
            rows = self._conn.execute(
                f"""
                select {_COLUMNS} from link_issues
                where resolution_status='resolved' and id > %s
                order by id asc
                limit %s
                """,
                (last_id, batch),
            ).fetchall()
            if not rows:
                return
            for r in rows:
                issue = _row_to_issue(r)
                last_id = issue.id
                yield issue

    def clear_resolved(self) -> int:
        cur = self._conn.execute("delete from link_issues where resolution_status='resolved'")
        self._conn.commit()
        return cur.rowcount
