from __future__ import annotations

import logging
from dataclasses import dataclass, replace

from link_sentinel_core.config import Settings
from link_sentinel_core.errors import AlreadyRunning, InvalidToken, PersistenceFailure, UpstreamFailure
from link_sentinel_core.locator import SiteHosts, locate_links
from link_sentinel_core.models import NewIssue, Origin, ResolutionStatus, ScanState
from link_sentinel_core.resolver import PERMANENT_REDIRECT_CODES, DestinationResolver
from link_sentinel_core.rewriter import commit_body, replace_href
from link_sentinel_core.store import DocumentStore, IssueLedger, StateStore
from link_sentinel_core.util import Clock, SystemClock, clamp, new_token

logger = logging.getLogger(__name__)

SCAN_LEASE = "scan"

MSG_AUTO_FIXED_PERMANENT = "Auto-fixed (Permanent Redirect)"
MSG_AUTO_FIXED_CANONICAL = "Auto-fixed (Canonicalized)"
MSG_PERMANENT = "Permanent Redirect"
MSG_TEMPORARY = "Temporary Redirect"


@dataclass(frozen=True)
class ScanStart:
    resume: bool
    token: str
    total: int
    processed: int
    batch: int
    message: str


@dataclass(frozen=True)
class ScanStep:
    done: bool
    token: str
    processed: int
    total: int
    batch: int
    last_id: int
    message: str


@dataclass(frozen=True)
class ScanStatus:
    running: bool
    total: int
    processed: int
    remaining: int
    in_progress: int
    token: str
    batch: int
    message: str


@dataclass(frozen=True)
class DocumentScanResult:
    document_id: int
    links: int = 0
    skipped: int = 0
    logged: int = 0
    fixed: int = 0
    committed: bool = False


class ScanOrchestrator:
    """
    Resumable, cursor-based walk over the eligible corpus.

    Each `step` is one bounded time slice; progress lives in the StateStore so
    consecutive slices can run in different requests or processes. A lease
    keeps a single scan in flight and doubles as crash recovery: once it
    expires an abandoned scan is reset by the next `start`.
    """

    def __init__(
        self,
        *,
        store: DocumentStore,
        ledger: IssueLedger,
        state: StateStore,
        resolver: DestinationResolver,
        settings: Settings,
        site: SiteHosts,
        clock: Clock | None = None,
    ):
        self._store = store
        self._ledger = ledger
        self._state = state
        self._resolver = resolver
        self._settings = settings
        self._site = site
        self._clock = clock or SystemClock()

    def reset(self) -> None:
        self._state.release_lease(SCAN_LEASE)
        previous = self._state.load_scan_state()
        self._state.save_scan_state(
            ScanState(
                batch_size=previous.batch_size,
                last_started=previous.last_started,
                last_finished=previous.last_finished,
            )
        )

    def start(self) -> ScanStart:
        state = self._state.load_scan_state()
        lease = self._state.get_lease(SCAN_LEASE)

        if state.active:
            if lease is None:
                logger.info("scan: stale session token=%s reset", state.token)
                self.reset()
                state = self._state.load_scan_state()
            else:
                return ScanStart(
                    resume=True,
                    token=state.token,
                    total=state.total,
                    processed=state.processed,
                    batch=state.batch_size,
                    message="Resuming existing scan.",
                )
        elif lease is not None:
            raise AlreadyRunning("Another scan is starting. Please wait.")

        total = self._store.count_eligible()
        if total == 0:
            return ScanStart(
                resume=False,
                token="",
                total=0,
                processed=0,
                batch=0,
                message="No content found to scan based on your settings.",
            )

        token = new_token()
        if not self._state.acquire_lease(SCAN_LEASE, token, self._settings.scan_lease_ttl_s):
            raise AlreadyRunning("Another scan is already running.")

        now = self._clock.now()
        batch = self._settings.scan_batch_size_bounded
        self._state.save_scan_state(
            replace(
                state,
                active=True,
                total=total,
                processed=0,
                cursor_id=0,
                batch_size=batch,
                progress_interval=self._settings.scan_progress_interval_bounded,
                token=token,
                started_at=now,
                last_started=now,
            )
        )
        logger.info("scan: started token=%s total=%s batch=%s", token, total, batch)
        return ScanStart(
            resume=False,
            token=token,
            total=total,
            processed=0,
            batch=batch,
            message="Scan initialized.",
        )

    def _complete(self, state: ScanState) -> ScanState:
        self._state.release_lease(SCAN_LEASE)
        done = replace(
            state,
            active=False,
            processed=max(0, state.total),
            cursor_id=0,
            token="",
            last_finished=self._clock.now(),
        )
        self._state.save_scan_state(done)
        logger.info("scan: complete total=%s", state.total)
        return done

    def step(self, token: str) -> ScanStep:
        state = self._state.load_scan_state()
        if not state.active or not state.token or token != state.token:
            raise InvalidToken("Invalid scan token.")

        self._state.refresh_lease(SCAN_LEASE, state.token, self._settings.scan_lease_ttl_s)

        batch = max(1, state.batch_size)
        interval = clamp(state.progress_interval or 1, 1, batch)
        budget = self._settings.scan_step_budget_bounded
        min_batch = clamp(self._settings.scan_min_batch, 1, batch)
        started = self._clock.monotonic()
        self._resolver.reset_memo()

        ids = list(self._store.list_eligible_ids(state.cursor_id, batch))
        if not ids:
            done = self._complete(state)
            return ScanStep(
                done=True,
                token="",
                processed=done.processed,
                total=done.total,
                batch=batch,
                last_id=state.cursor_id,
                message="Scan complete.",
            )

        auto_resolve = self._settings.auto_resolve_permanent
        processed_step = 0
        last_id = state.cursor_id
        for document_id in ids:
            try:
                self.process_document(document_id, auto_resolve=auto_resolve)
            except PersistenceFailure:
                logger.warning("scan: document_id=%s not rewritten: write failed", document_id)
            except Exception:  # noqa: BLE001
                logger.exception("scan: document_id=%s failed; skipping", document_id)
            last_id = document_id
            processed_step += 1
            if processed_step % interval == 0:
                self._state.save_scan_progress(min(state.total, state.processed + processed_step))
            if processed_step >= min_batch and (self._clock.monotonic() - started) >= budget:
                break

        processed_total = min(state.total, state.processed + processed_step)
        state = replace(state, cursor_id=last_id, processed=processed_total)
        self._state.save_scan_state(state)

        # A short page only marks the end of the corpus if all of it was consumed.
        done = processed_total >= state.total or (len(ids) < batch and processed_step == len(ids))
        if done:
            state = self._complete(state)
            return ScanStep(
                done=True,
                token="",
                processed=state.processed,
                total=state.total,
                batch=batch,
                last_id=last_id,
                message="Scan complete.",
            )

        logger.debug("scan: step processed=%s/%s last_id=%s", processed_total, state.total, last_id)
        return ScanStep(
            done=False,
            token=state.token,
            processed=processed_total,
            total=state.total,
            batch=batch,
            last_id=last_id,
            message="Batch processed.",
        )

    def status(self) -> ScanStatus:
        state = self._state.load_scan_state()
        total = state.total
        if state.active and total == 0:
            total = self._store.count_eligible()
            state = replace(state, total=total)
            self._state.save_scan_state(state)

        processed = min(state.processed, total) if total > 0 else state.processed
        remaining = max(0, total - processed) if total > 0 else 0
        message = (
            f"Scanning... {processed} of {total} processed" if state.active else "No active scans."
        )
        return ScanStatus(
            running=state.active,
            total=total,
            processed=processed,
            remaining=remaining,
            in_progress=min(state.batch_size, remaining) if state.active else 0,
            token=state.token if state.active else "",
            batch=state.batch_size,
            message=message,
        )

    def process_document(self, document_id: int, *, auto_resolve: bool) -> DocumentScanResult:
        """
        Resolve every candidate link of one document, log findings and apply fixes.

        A link whose destination cannot be resolved is skipped without a log
        entry. The body is committed at most once, and auto-fixes are only
        logged as resolved after that commit succeeded; a failed commit raises
        PersistenceFailure and leaves no resolved entries behind.
        """
        doc = self._store.get_document(document_id)
        if doc is None or not doc.body:
            return DocumentScanResult(document_id=document_id)

        links = locate_links(
            doc.body,
            self._site,
            admin_prefixes=self._settings.admin_prefix_list,
            include_external=self._settings.follow_external_redirects,
        )
        updated = doc.body
        fixes: list[tuple[str, str, int, str]] = []
        skipped = logged = 0

        for url in links:
            try:
                res = self._resolver.resolve(url)
            except UpstreamFailure as e:
                logger.debug("scan: skip url=%s document_id=%s: %s", url, document_id, e)
                skipped += 1
                continue

            status = res.status_code
            first_hop = res.first_hop_code or 0

            if status >= 400:
                if self._log(document_id, url, "", status, res.status_message, ResolutionStatus.PENDING):
                    logged += 1
                continue

            if res.final_url == url or res.origin is Origin.EXTERNAL_SKIPPED:
                continue

            if res.origin is not Origin.CANONICAL and 300 <= first_hop < 400:
                permanent = res.is_permanent and first_hop in PERMANENT_REDIRECT_CODES
                if permanent and auto_resolve and 200 <= status < 400:
                    updated = replace_href(updated, url, res.final_url)
                    fixes.append((url, res.final_url, 301, MSG_AUTO_FIXED_PERMANENT))
                else:
                    message = MSG_PERMANENT if permanent else MSG_TEMPORARY
                    if self._log(document_id, url, res.final_url, first_hop, message, ResolutionStatus.PENDING):
                        logged += 1
                continue

            # Canonical permalink, or the same page reached through a normalised URL.
            if auto_resolve:
                updated = replace_href(updated, url, res.final_url)
                fixes.append((url, res.final_url, 200, MSG_AUTO_FIXED_CANONICAL))

        committed = False
        if updated != doc.body:
            committed = commit_body(self._store, doc, updated)

        for url, final_url, http_status, message in fixes:
            if self._log(document_id, url, final_url, http_status, message, ResolutionStatus.RESOLVED):
                logged += 1

        return DocumentScanResult(
            document_id=document_id,
            links=len(links),
            skipped=skipped,
            logged=logged,
            fixed=len(fixes),
            committed=committed,
        )

    def _log(
        self,
        document_id: int,
        url: str,
        final_url: str,
        http_status: int,
        message: str,
        status: ResolutionStatus,
    ) -> bool:
        issue_id = self._ledger.record_issue(
            NewIssue(
                document_id=document_id,
                original_url=url,
                final_url=final_url,
                http_status=http_status,
                status_message=message,
                resolution_status=status,
            )
        )
        return issue_id is not None
