from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any, Protocol
from urllib.parse import urlsplit

import httpx
import psycopg
from pydantic import BaseModel, Field

from link_sentinel_core.bulk import BulkResolveOrchestrator, BulkStepRequest, resolved_by_message
from link_sentinel_core.config import Settings
from link_sentinel_core.errors import LinkSentinelError, NotFound, PermissionDenied, UpstreamFailure, ValidationError
from link_sentinel_core.locator import SiteHosts, is_absolute_http
from link_sentinel_core.models import (
    BROKEN_STATUS_THRESHOLD,
    Actor,
    IssueView,
    LinkIssue,
    ResolutionStatus,
    ResolvedScope,
)
from link_sentinel_core.resolver import DestinationResolver, ResolverConfig
from link_sentinel_core.rewriter import commit_body, replace_href
from link_sentinel_core.scan import ScanOrchestrator
from link_sentinel_core.store import DocumentStore, IssueLedger, StateStore
from link_sentinel_core.util import Clock, SystemClock

logger = logging.getLogger(__name__)

NONCE_SCAN = "start_scan"
NONCE_RESOLVE_LINK = "resolve_link"
NONCE_RESOLVE_ALL = "resolve_all"
NONCE_CHANGE_LINK = "change_link"
NONCE_CLEAR_RESOLVED = "clear_resolved"


class Envelope(BaseModel):
    success: bool
    status: int = 200
    message: str = ""
    data: dict[str, Any] = Field(default_factory=dict)


class Authorizer(Protocol):
    def can_manage(self, actor: Actor) -> bool: ...
    def verify_nonce(self, nonce: str, action: str) -> bool: ...


def _issue_dict(issue: LinkIssue) -> dict[str, Any]:
    data = dataclasses.asdict(issue)
    data["resolution_status"] = issue.resolution_status.value
    return data


class LinkSentinelService:
    """
    Operation surface for a host application's admin endpoints.

    Every call checks capability and nonce first, then returns an Envelope;
    domain errors become unsuccessful envelopes carrying their status code.
    """

    def __init__(
        self,
        *,
        store: DocumentStore,
        ledger: IssueLedger,
        state: StateStore,
        resolver: DestinationResolver,
        settings: Settings,
        authorizer: Authorizer,
        site: SiteHosts | None = None,
        clock: Clock | None = None,
    ):
        self._store = store
        self._ledger = ledger
        self._resolver = resolver
        self._settings = settings
        self._authorizer = authorizer
        self._site = site or SiteHosts(settings.site_url, tuple(settings.internal_host_list))
        clock = clock or SystemClock()
        self.scans = ScanOrchestrator(
            store=store,
            ledger=ledger,
            state=state,
            resolver=resolver,
            settings=settings,
            site=self._site,
            clock=clock,
        )
        self.bulk = BulkResolveOrchestrator(
            store=store,
            ledger=ledger,
            state=state,
            settings=settings,
            clock=clock,
        )

    def _authorize(self, actor: Actor, nonce: str | None, action: str) -> None:
        if not self._authorizer.can_manage(actor):
            raise PermissionDenied("Permission denied.")
        if not nonce or not self._authorizer.verify_nonce(nonce, action):
            raise PermissionDenied("Invalid request.")

    def _run(self, op: str, fn: Callable[[], Envelope]) -> Envelope:
        try:
            return fn()
        except LinkSentinelError as e:
            logger.info("%s rejected status=%s: %s", op, e.status_code, e.message)
            return Envelope(success=False, status=e.status_code, message=e.message)

    def start_scan(self, actor: Actor, nonce: str | None) -> Envelope:
        def go() -> Envelope:
            self._authorize(actor, nonce, NONCE_SCAN)
            started = self.scans.start()
            return Envelope(success=True, message=started.message, data=dataclasses.asdict(started))

        return self._run("start_scan", go)

    def step_scan(self, actor: Actor, nonce: str | None, token: str) -> Envelope:
        def go() -> Envelope:
            self._authorize(actor, nonce, NONCE_SCAN)
            step = self.scans.step(token)
            return Envelope(success=True, message=step.message, data=dataclasses.asdict(step))

        return self._run("step_scan", go)

    def scan_status(self, actor: Actor, nonce: str | None) -> Envelope:
        def go() -> Envelope:
            self._authorize(actor, nonce, NONCE_SCAN)
            status = self.scans.status()
            return Envelope(success=True, message=status.message, data=dataclasses.asdict(status))

        return self._run("scan_status", go)

    def resolve_one(self, actor: Actor, nonce: str | None, issue_id: int) -> Envelope:
        def go() -> Envelope:
            self._authorize(actor, nonce, NONCE_RESOLVE_LINK)
            if not issue_id:
                raise ValidationError("Invalid request.")
            issue = self._ledger.get_issue(issue_id)
            if issue is None or issue.resolution_status is not ResolutionStatus.PENDING:
                raise NotFound("Record not found or already resolved.")
            if not issue.final_url:
                raise ValidationError("This link does not have a detected URL to resolve to.")
            self._rewrite(issue, issue.final_url)
            self._ledger.mark_resolved(issue.id, message=resolved_by_message(actor), actor_id=actor.id)
            logger.info("resolve_one issue_id=%s actor_id=%s", issue.id, actor.id)
            return Envelope(success=True, message="Link resolved successfully.", data={"id": issue.id})

        return self._run("resolve_one", go)

    def resolve_all_step(self, actor: Actor, nonce: str | None, request: BulkStepRequest) -> Envelope:
        def go() -> Envelope:
            self._authorize(actor, nonce, NONCE_RESOLVE_ALL)
            result = self.bulk.step(request, actor=actor)
            return Envelope(success=True, message=result.message, data=dataclasses.asdict(result))

        return self._run("resolve_all_step", go)

    def change_link(self, actor: Actor, nonce: str | None, issue_id: int, new_url: str) -> Envelope:
        def go() -> Envelope:
            if not self._authorizer.can_manage(actor):
                raise PermissionDenied("Permission denied.")
            candidate = (new_url or "").strip()
            if not issue_id or not nonce or not candidate:
                raise ValidationError("Missing data.")
            if not self._authorizer.verify_nonce(nonce, NONCE_CHANGE_LINK):
                raise PermissionDenied("Invalid nonce.")

            # Relative slugs are kept exactly as typed.
            probe_url = self._site.absolute(candidate) if candidate.startswith("/") else candidate
            if not is_absolute_http(probe_url) or not urlsplit(probe_url).hostname:
                raise ValidationError("Please provide a valid URL or slug.")

            issue = self._ledger.get_issue(issue_id)
            if (
                issue is None
                or issue.resolution_status is not ResolutionStatus.PENDING
                or issue.http_status < BROKEN_STATUS_THRESHOLD
            ):
                raise NotFound("Record not found or not eligible for change.")

            self._resolver.reset_memo()
            try:
                probe = self._resolver.probe(probe_url)
            except UpstreamFailure as e:
                raise UpstreamFailure("Unable to fetch the provided URL. Please try a different link.") from e

            first_hop = probe.first_hop_code or 0
            if 300 <= first_hop < 400:
                self._ledger.mark_pending_redirect(
                    issue.id, final_url=candidate, http_status=first_hop, message="Temporary Redirect"
                )
                return Envelope(
                    success=True,
                    message="The new URL redirects. It has been flagged for review as a pending redirect.",
                    data={"id": issue.id, "http_status": first_hop},
                )
            if probe.status_code >= BROKEN_STATUS_THRESHOLD:
                raise ValidationError(
                    f"The provided URL returned a {probe.status_code} status and cannot be used. "
                    "Please choose a valid link."
                )

            self._rewrite(issue, candidate)
            self._ledger.mark_resolved(
                issue.id,
                message=resolved_by_message(actor, "Updated"),
                actor_id=actor.id,
                final_url=candidate,
                http_status=200,
            )
            logger.info("change_link issue_id=%s actor_id=%s", issue.id, actor.id)
            return Envelope(success=True, message="Link updated successfully.", data={"id": issue.id})

        return self._run("change_link", go)

    def clear_resolved(self, actor: Actor, nonce: str | None) -> Envelope:
        def go() -> Envelope:
            self._authorize(actor, nonce, NONCE_CLEAR_RESOLVED)
            removed = self._ledger.clear_resolved()
            logger.info("clear_resolved removed=%s actor_id=%s", removed, actor.id)
            return Envelope(success=True, message="Resolved links cleared.", data={"removed": removed})

        return self._run("clear_resolved", go)

    def list_issues(
        self,
        actor: Actor,
        view: IssueView,
        *,
        page: int = 1,
        per_page: int = 20,
        descending: bool = True,
        scope: ResolvedScope = ResolvedScope.ALL,
        since: datetime | None = None,
    ) -> Envelope:
        def go() -> Envelope:
            if not self._authorizer.can_manage(actor):
                raise PermissionDenied("Permission denied.")
            result = self._ledger.page_issues(
                view,
                page=page,
                per_page=max(1, per_page),
                descending=descending,
                scope=scope,
                since=since,
            )
            return Envelope(
                success=True,
                data={
                    "items": [_issue_dict(i) for i in result.items],
                    "total": result.total,
                    "page": result.page,
                    "per_page": result.per_page,
                    "pages": result.pages,
                },
            )

        return self._run("list_issues", go)

    def _rewrite(self, issue: LinkIssue, replacement: str) -> bool:
        doc = self._store.get_document(issue.document_id)
        if doc is None or not doc.body:
            return False
        updated = replace_href(doc.body, issue.original_url, replacement)
        if not updated or updated == doc.body:
            return False
        return commit_body(self._store, doc, updated)


def build_postgres_service(
    conn: psycopg.Connection,
    settings: Settings,
    authorizer: Authorizer,
    *,
    client: httpx.Client | None = None,
    clock: Clock | None = None,
) -> LinkSentinelService:
    """
    Wire the service over the Postgres repositories sharing one connection.
    """
    from link_sentinel_core.repositories import (
        DocumentRepository,
        LinkIssueRepository,
        ResolveCacheRepository,
        ScanStateRepository,
    )

    site = SiteHosts(settings.site_url, tuple(settings.internal_host_list))
    store = DocumentRepository(conn, home_url=settings.site_url, eligible_types=settings.eligible_type_list)
    resolver = DestinationResolver(
        site=site,
        config=ResolverConfig.from_settings(settings),
        cache=ResolveCacheRepository(conn),
        canonicalizer=store,
        client=client,
    )
    return LinkSentinelService(
        store=store,
        ledger=LinkIssueRepository(conn),
        state=ScanStateRepository(conn),
        resolver=resolver,
        settings=settings,
        authorizer=authorizer,
        site=site,
        clock=clock,
    )

