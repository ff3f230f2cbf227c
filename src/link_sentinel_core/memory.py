from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from link_sentinel_core.errors import PersistenceFailure
from link_sentinel_core.models import (
    BROKEN_STATUS_THRESHOLD,
    Document,
    IssuePage,
    IssueView,
    LinkIssue,
    NewIssue,
    ResolutionStatus,
    ResolvedScope,
    ScanState,
)
from link_sentinel_core.util import Clock, SystemClock, url_fingerprint


class InMemoryDocumentStore:
    """
    Dict-backed DocumentStore. `canonical` maps absolute URLs to their permalinks.
    """

    def __init__(
        self,
        documents: Iterable[Document] = (),
        *,
        canonical: dict[str, str] | None = None,
    ):
        self.documents: dict[int, Document] = {d.id: d for d in documents}
        self.canonical = dict(canonical or {})
        self.commits: list[tuple[int, str]] = []
        self.read_cache_invalidations: list[int] = []

    def list_eligible_ids(self, after_id: int, limit: int) -> list[int]:
        ids = sorted(i for i, d in self.documents.items() if i > after_id and d.status == "publish")
        return ids[:limit]

    def count_eligible(self) -> int:
        return sum(1 for d in self.documents.values() if d.status == "publish")

    def get_document(self, document_id: int) -> Document | None:
        return self.documents.get(document_id)

    def commit_body(self, document_id: int, new_body: str) -> None:
        doc = self.documents.get(document_id)
        if doc is None:
            raise PersistenceFailure(f"Document {document_id} not found")
        self.documents[document_id] = replace(doc, body=new_body)
        self.commits.append((document_id, new_body))
        self.read_cache_invalidations.append(document_id)

    def resolve_to_canonical_url(self, absolute_url: str) -> str | None:
        return self.canonical.get(absolute_url)


def _matches(issue: LinkIssue, view: IssueView, scope: ResolvedScope, since: datetime | None) -> bool:
    if view is IssueView.RESOLVED:
        if issue.resolution_status is not ResolutionStatus.RESOLVED:
            return False
        if since is None or scope is ResolvedScope.ALL:
            return True
        if scope is ResolvedScope.CURRENT:
            return issue.resolution_date is not None and issue.resolution_date >= since
        return issue.resolution_date is None or issue.resolution_date < since
    if issue.resolution_status is not ResolutionStatus.PENDING:
        return False
    if view is IssueView.PENDING_REDIRECT:
        return issue.http_status is None or issue.http_status < BROKEN_STATUS_THRESHOLD
    return issue.http_status is not None and issue.http_status >= BROKEN_STATUS_THRESHOLD


class InMemoryIssueLedger:
    def __init__(self, clock: Clock | None = None):
        self._clock = clock or SystemClock()
        self._rows: dict[int, LinkIssue] = {}
        self._next_id = 1

    def all(self) -> list[LinkIssue]:
        return [self._rows[k] for k in sorted(self._rows)]

    def find_existing(self, document_id: int, fingerprint: str, status: ResolutionStatus) -> int | None:
        for issue in self.all():
            if (
                issue.document_id == document_id
                and issue.url_fingerprint == fingerprint
                and issue.resolution_status is status
            ):
                return issue.id
        return None

    def record_issue(self, issue: NewIssue) -> int | None:
        fingerprint = url_fingerprint(issue.original_url)
        if self.find_existing(issue.document_id, fingerprint, issue.resolution_status) is not None:
            return None
        now = self._clock.now()
        issue_id = self._next_id
        self._next_id += 1
        self._rows[issue_id] = LinkIssue(
            id=issue_id,
            document_id=issue.document_id,
            original_url=issue.original_url,
            url_fingerprint=fingerprint,
            final_url=issue.final_url,
            http_status=issue.http_status,
            status_message=issue.status_message,
            resolution_status=issue.resolution_status,
            scan_date=now,
            resolution_date=now if issue.resolution_status is ResolutionStatus.RESOLVED else None,
            resolved_by_actor_id=issue.resolved_by_actor_id,
        )
        return issue_id

    def get_issue(self, issue_id: int) -> LinkIssue | None:
        return self._rows.get(issue_id)

    def mark_resolved(
        self,
        issue_id: int,
        *,
        message: str,
        actor_id: int = 0,
        final_url: str | None = None,
        http_status: int | None = None,
    ) -> bool:
        issue = self._rows.get(issue_id)
        if issue is None or issue.resolution_status is not ResolutionStatus.PENDING:
            return False
        previous = self.find_existing(issue.document_id, issue.url_fingerprint, ResolutionStatus.RESOLVED)
        if previous is not None:
            del self._rows[previous]
        self._rows[issue_id] = replace(
            issue,
            resolution_status=ResolutionStatus.RESOLVED,
            resolution_date=self._clock.now(),
            status_message=message,
            resolved_by_actor_id=actor_id,
            final_url=final_url if final_url is not None else issue.final_url,
            http_status=http_status if http_status is not None else issue.http_status,
        )
        return True

    def mark_pending_redirect(self, issue_id: int, *, final_url: str, http_status: int, message: str) -> bool:
        issue = self._rows.get(issue_id)
        if issue is None or issue.resolution_status is not ResolutionStatus.PENDING:
            return False
        self._rows[issue_id] = replace(
            issue,
            final_url=final_url,
            http_status=http_status,
            status_message=message,
            resolution_date=None,
            resolved_by_actor_id=0,
        )
        return True

    def count_pending(self, *, below_400: bool) -> int:
        view = IssueView.PENDING_REDIRECT if below_400 else IssueView.BROKEN
        return sum(1 for i in self._rows.values() if _matches(i, view, ResolvedScope.ALL, None))

    def _bulk_eligible(self) -> list[LinkIssue]:
        return [
            i
            for i in self.all()
            if _matches(i, IssueView.PENDING_REDIRECT, ResolvedScope.ALL, None) and i.final_url
        ]

    def count_bulk_candidates(self) -> int:
        return len(self._bulk_eligible())

    def list_bulk_candidates(self, after_id: int, limit: int) -> list[LinkIssue]:
        return [i for i in self._bulk_eligible() if i.id > after_id][:limit]

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
        rows = [i for i in self.all() if _matches(i, view, scope, since)]
        if view is IssueView.RESOLVED:
            rows.sort(key=lambda i: (i.resolution_date or datetime.min.replace(tzinfo=i.scan_date.tzinfo), i.id))
        else:
            rows.sort(key=lambda i: (i.scan_date, i.id))
        if descending:
            rows.reverse()
        start = (page - 1) * per_page
        return IssuePage(items=rows[start : start + per_page], total=len(rows), page=page, per_page=per_page)

    def page_resolved(
        self, scope: ResolvedScope = ResolvedScope.ALL, page: int = 1, *, since: datetime | None = None
    ) -> IssuePage:
        return self.page_issues(IssueView.RESOLVED, page=page, scope=scope, since=since)

    def page_unresolved(self, threshold_broken: bool, page: int = 1) -> IssuePage:
        view = IssueView.BROKEN if threshold_broken else IssueView.PENDING_REDIRECT
        return self.page_issues(view, page=page)

    def iter_resolved(self, *, batch: int = 500) -> Iterator[LinkIssue]:
        for issue in self.all():
            if issue.resolution_status is ResolutionStatus.RESOLVED:
                yield issue

    def clear_resolved(self) -> int:
        doomed = [k for k, i in self._rows.items() if i.resolution_status is ResolutionStatus.RESOLVED]
        for k in doomed:
            del self._rows[k]
        return len(doomed)


@dataclass
class _Lease:
    token: str
    expires_at: datetime


class InMemoryStateStore:
    def __init__(self, clock: Clock | None = None):
        self._clock = clock or SystemClock()
        self._scan = ScanState()
        self._leases: dict[str, _Lease] = {}
        self.progress_writes = 0

    def load_scan_state(self) -> ScanState:
        return self._scan

    def save_scan_state(self, state: ScanState) -> None:
        self._scan = state

    def save_scan_progress(self, processed: int) -> None:
        self.progress_writes += 1
        self._scan = replace(self._scan, processed=processed)

    def _live(self, name: str) -> _Lease | None:
        lease = self._leases.get(name)
        if lease is None:
            return None
        if lease.expires_at <= self._clock.now():
            del self._leases[name]
            return None
        return lease

    def acquire_lease(self, name: str, token: str, ttl_s: int) -> bool:
        if self._live(name) is not None:
            return False
        self._leases[name] = _Lease(token=token, expires_at=self._clock.now() + timedelta(seconds=ttl_s))
        return True

    def refresh_lease(self, name: str, token: str, ttl_s: int) -> None:
        self._leases[name] = _Lease(token=token, expires_at=self._clock.now() + timedelta(seconds=ttl_s))

    def get_lease(self, name: str) -> str | None:
        lease = self._live(name)
        return lease.token if lease else None

    def release_lease(self, name: str) -> None:
        self._leases.pop(name, None)
