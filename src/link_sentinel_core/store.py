from __future__ import annotations

from collections.abc import Iterator, Sequence
from datetime import datetime
from typing import Protocol

from link_sentinel_core.models import (
    Document,
    IssuePage,
    IssueView,
    LinkIssue,
    NewIssue,
    ResolutionStatus,
    ResolvedScope,
    ScanState,
)


class DocumentStore(Protocol):
    """
    Host-provided corpus access.

    `commit_body` must leave modification timestamps untouched, invalidate
    any read cache the store keeps for the document, and raise
    PersistenceFailure when the write does not happen.
    """

    def list_eligible_ids(self, after_id: int, limit: int) -> Sequence[int]: ...
    def count_eligible(self) -> int: ...
    def get_document(self, document_id: int) -> Document | None: ...
    def commit_body(self, document_id: int, new_body: str) -> None: ...
    def resolve_to_canonical_url(self, absolute_url: str) -> str | None: ...


class IssueLedger(Protocol):
    def record_issue(self, issue: NewIssue) -> int | None: ...
    def find_existing(
        self, document_id: int, fingerprint: str, status: ResolutionStatus
    ) -> int | None: ...
    def get_issue(self, issue_id: int) -> LinkIssue | None: ...
    def mark_resolved(
        self,
        issue_id: int,
        *,
        message: str,
        actor_id: int = 0,
        final_url: str | None = None,
        http_status: int | None = None,
    ) -> bool: ...
    def mark_pending_redirect(
        self, issue_id: int, *, final_url: str, http_status: int, message: str
    ) -> bool: ...
    def count_pending(self, *, below_400: bool) -> int: ...
    def count_bulk_candidates(self) -> int: ...
    def list_bulk_candidates(self, after_id: int, limit: int) -> list[LinkIssue]: ...
    def page_issues(
        self,
        view: IssueView,
        *,
        page: int = 1,
        per_page: int = 20,
        descending: bool = True,
        scope: ResolvedScope = ResolvedScope.ALL,
        since: datetime | None = None,
    ) -> IssuePage: ...
    def iter_resolved(self, *, batch: int = 500) -> Iterator[LinkIssue]: ...
    def clear_resolved(self) -> int: ...


class StateStore(Protocol):
    """
    Persisted scan session plus named, time-boxed advisory leases.
    """

    def load_scan_state(self) -> ScanState: ...
    def save_scan_state(self, state: ScanState) -> None: ...
    def save_scan_progress(self, processed: int) -> None: ...

    def acquire_lease(self, name: str, token: str, ttl_s: int) -> bool: ...
    def refresh_lease(self, name: str, token: str, ttl_s: int) -> None: ...
    def get_lease(self, name: str) -> str | None: ...
    def release_lease(self, name: str) -> None: ...
