from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from link_sentinel_core.config import Settings
from link_sentinel_core.errors import (
    AlreadyRunning,
    LinkSentinelError,
    PersistenceFailure,
    SessionExpired,
    UpstreamFailure,
)
from link_sentinel_core.models import SYSTEM_ACTOR, Actor, BulkResolveState, LinkIssue
from link_sentinel_core.rewriter import commit_body, replace_href
from link_sentinel_core.store import DocumentStore, IssueLedger, StateStore
from link_sentinel_core.util import Clock, SystemClock, clamp, new_token

logger = logging.getLogger(__name__)

RESOLVE_ALL_LEASE = "resolve_all"
MIN_BATCH = 1
MAX_BATCH = 50
MAX_DELAY_MS = 5000

# Step errors worth another attempt with a smaller batch; anything else ends the session.
RETRYABLE_ERRORS = (UpstreamFailure, PersistenceFailure)


def resolved_by_message(actor: Actor, verb: str = "Resolved") -> str:
    if actor.is_system or not actor.display_name:
        return f"Manually {verb}"
    return f"Manually {verb} by {actor.display_name}"


def next_batch_hint(batch: int, last_step_seconds: float, budget: float) -> int:
    """
    Proportional batch control: halve after a step that used >= 90% of its
    budget, grow by one after a step that used <= 50%. 0 means "keep".
    """
    if last_step_seconds >= 0.9 * budget and batch > MIN_BATCH:
        return max(MIN_BATCH, batch // 2)
    if 0 < last_step_seconds <= 0.5 * budget and batch < MAX_BATCH:
        return min(MAX_BATCH, batch + 1)
    return 0


@dataclass(frozen=True)
class BulkStepRequest:
    token: str | None = None
    cursor: int = 0
    batch: int = 8
    processed: int = 0
    total: int = 0


@dataclass(frozen=True)
class BulkStepResult:
    done: bool
    token: str
    cursor: int
    processed_step: int
    processed: int
    total: int
    last_step_seconds: float
    step_budget: float
    next_batch: int
    message: str


class BulkResolveOrchestrator:
    """
    Applies every pending redirect that has a known destination, one bounded
    slice at a time. The caller carries the cursor between slices.
    """

    def __init__(
        self,
        *,
        store: DocumentStore,
        ledger: IssueLedger,
        state: StateStore,
        settings: Settings,
        clock: Clock | None = None,
    ):
        self._store = store
        self._ledger = ledger
        self._state = state
        self._settings = settings
        self._clock = clock or SystemClock()

    def _claim(self, token: str | None) -> str:
        ttl = self._settings.resolve_all_lease_ttl_s
        if not token:
            if self._state.get_lease(RESOLVE_ALL_LEASE) is not None:
                raise AlreadyRunning("Another bulk resolve is already running. Please wait for it to finish.")
            token = new_token()
            if not self._state.acquire_lease(RESOLVE_ALL_LEASE, token, ttl):
                raise AlreadyRunning("Another bulk resolve is already running. Please wait for it to finish.")
            logger.info("resolve_all: session started token=%s", token)
            return token
        if self._state.get_lease(RESOLVE_ALL_LEASE) != token:
            raise SessionExpired("Bulk resolve session has expired. Please try again.")
        self._state.refresh_lease(RESOLVE_ALL_LEASE, token, ttl)
        return token

    def _finish(self, *, cursor: int, processed: int, total: int, message: str, started: float) -> BulkStepResult:
        self._state.release_lease(RESOLVE_ALL_LEASE)
        logger.info("resolve_all: done processed=%s total=%s", processed, total)
        return BulkStepResult(
            done=True,
            token="",
            cursor=cursor,
            processed_step=0,
            processed=processed,
            total=total,
            last_step_seconds=round(self._clock.monotonic() - started, 3),
            step_budget=self._settings.resolve_all_step_budget_bounded,
            next_batch=0,
            message=message,
        )

    def step(self, request: BulkStepRequest, *, actor: Actor = SYSTEM_ACTOR) -> BulkStepResult:
        started = self._clock.monotonic()
        budget = self._settings.resolve_all_step_budget_bounded
        batch = clamp(request.batch or self._settings.resolve_all_batch_bounded, MIN_BATCH, MAX_BATCH)
        cursor = max(0, request.cursor)
        processed_so_far = max(0, request.processed)

        token = self._claim(request.token)

        total = max(0, request.total)
        if not total:
            total = self._ledger.count_bulk_candidates()
            if total == 0:
                return self._finish(
                    cursor=cursor,
                    processed=processed_so_far,
                    total=0,
                    message="No pending redirects to resolve.",
                    started=started,
                )

        records = self._ledger.list_bulk_candidates(cursor, batch)
        if not records:
            return self._finish(
                cursor=cursor,
                processed=processed_so_far,
                total=total,
                message="All pending redirects have been resolved.",
                started=started,
            )

        message = resolved_by_message(actor)
        processed_step = 0
        last_id = cursor
        hit_budget = False
        for record in records:
            if record.document_id <= 0:
                last_id = record.id
                continue
            try:
                self._apply(record, message=message, actor=actor)
            except PersistenceFailure:
                logger.warning("resolve_all: issue_id=%s left pending: write failed", record.id)
            else:
                processed_step += 1
            last_id = record.id
            if (self._clock.monotonic() - started) >= budget:
                hit_budget = True
                break

        processed_total = processed_so_far + processed_step
        if total > 0:
            processed_total = min(processed_total, total)
        last_step_seconds = round(self._clock.monotonic() - started, 3)

        done = processed_total >= total or (not hit_budget and len(records) < batch)
        next_batch = 0 if done else next_batch_hint(batch, last_step_seconds, budget)

        if done:
            self._state.release_lease(RESOLVE_ALL_LEASE)
            logger.info("resolve_all: done processed=%s total=%s", processed_total, total)

        return BulkStepResult(
            done=done,
            token="" if done else token,
            cursor=last_id,
            processed_step=processed_step,
            processed=processed_total,
            total=total,
            last_step_seconds=last_step_seconds,
            step_budget=budget,
            next_batch=next_batch,
            message="All pending redirects have been resolved." if done else "Resolving pending redirects...",
        )

    def _apply(self, record: LinkIssue, *, message: str, actor: Actor) -> None:
        # A failed write raises before the record is marked resolved.
        if record.final_url:
            doc = self._store.get_document(record.document_id)
            if doc is not None and doc.body:
                updated = replace_href(doc.body, record.original_url, record.final_url)
                if updated and updated != doc.body:
                    commit_body(self._store, doc, updated)
        self._ledger.mark_resolved(record.id, message=message, actor_id=actor.id)


class BulkResolveSession:
    """
    Caller-side driver for a bulk resolve: carries the session state between
    steps, follows the server's batch hints and backs off on errors.

    Only the first error of a run of failures reaches `notify`; a successful
    step re-arms it.
    """

    def __init__(
        self,
        step: Callable[[BulkStepRequest], BulkStepResult],
        *,
        batch_size: int = 8,
        delay_ms: int = 600,
        notify: Callable[[str], None] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._step = step
        self._base_delay_ms = max(0, delay_ms)
        self._notify = notify
        self._sleep = sleep
        self.state = BulkResolveState(
            batch_size=clamp(batch_size, MIN_BATCH, MAX_BATCH),
            inter_step_delay_ms=self._base_delay_ms,
        )

    def request(self) -> BulkStepRequest:
        s = self.state
        return BulkStepRequest(
            token=s.token,
            cursor=s.cursor_id,
            batch=s.batch_size,
            processed=s.processed,
            total=s.total,
        )

    def apply(self, result: BulkStepResult) -> None:
        s = self.state
        s.error_notified = False
        s.aborted = False
        s.inter_step_delay_ms = self._base_delay_ms
        s.total = result.total
        s.cursor_id = result.cursor
        if result.processed_step > 0:
            s.processed += result.processed_step
        elif result.processed > s.processed:
            s.processed = result.processed
        if s.total > 0:
            s.processed = min(s.processed, s.total)
        if result.token:
            s.token = result.token
        s.last_step_seconds = result.last_step_seconds
        s.done = result.done
        if result.next_batch > 0:
            s.batch_size = clamp(result.next_batch, MIN_BATCH, MAX_BATCH)
            return
        if result.step_budget > 0:
            s.step_budget = result.step_budget
        # No hint from the server: fall back to the caller-side thresholds.
        elapsed = result.last_step_seconds
        if elapsed >= max(4.0, s.step_budget * 0.85):
            s.batch_size = max(MIN_BATCH, s.batch_size // 2)
            s.inter_step_delay_ms = min(MAX_DELAY_MS, self._base_delay_ms + 400)
        elif elapsed <= max(2.0, s.step_budget * 0.5):
            s.batch_size = clamp(s.batch_size + 1, MIN_BATCH, MAX_BATCH)

    def fail(self, message: str) -> None:
        s = self.state
        s.batch_size = max(MIN_BATCH, s.batch_size // 2)
        current = s.inter_step_delay_ms if s.inter_step_delay_ms > 0 else self._base_delay_ms
        s.inter_step_delay_ms = min(MAX_DELAY_MS, current * 2)
        if message and not s.error_notified:
            s.error_notified = True
            if self._notify is not None:
                self._notify(message)
        logger.warning("resolve_all: step failed batch=%s delay_ms=%s: %s", s.batch_size, s.inter_step_delay_ms, message)

    def abort(self) -> None:
        """
        Drop the session after an error a retry cannot clear; the next run
        starts a new one from the beginning.
        """
        s = self.state
        logger.info("resolve_all: session abandoned token=%s cursor=%s", s.token, s.cursor_id)
        s.token = None
        s.cursor_id = 0
        s.processed = 0
        s.total = 0
        s.aborted = True

    def run_once(self) -> bool:
        try:
            result = self._step(self.request())
        except RETRYABLE_ERRORS as e:
            self.fail(e.message)
            return False
        except LinkSentinelError as e:
            self.fail(e.message)
            self.abort()
            return False
        self.apply(result)
        return result.done

    def run(self, *, max_steps: int | None = None) -> BulkResolveState:
        self.state.aborted = False
        steps = 0
        while not self.state.done and not self.state.aborted:
            if max_steps is not None and steps >= max_steps:
                break
            if steps:
                self._sleep(self.state.inter_step_delay_ms / 1000.0)
            self.run_once()
            steps += 1
        return self.state
