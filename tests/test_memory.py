from __future__ import annotations

from datetime import timedelta

from link_sentinel_core.cache import InMemoryResolutionCache
from link_sentinel_core.memory import InMemoryIssueLedger, InMemoryStateStore
from link_sentinel_core.models import IssueView, NewIssue, Origin, RedirectResolution, ResolutionStatus, ResolvedScope

HIT = RedirectResolution(
    final_url="/new/",
    status_code=200,
    status_message="OK",
    first_hop_code=301,
    is_permanent=True,
    origin=Origin.HTTP,
)


def test_cache_entries_expire(clock) -> None:  # noqa: ANN001
    cache = InMemoryResolutionCache(clock)
    cache.set("k", HIT, 60)
    cache.set("skip", HIT, 0)
    assert cache.get("k") == HIT
    assert cache.get("skip") is None

    clock.advance(61)
    assert cache.get("k") is None

    cache.set("a", HIT, 10)
    cache.set("b", HIT, 100)
    clock.advance(11)
    assert cache.purge_expired() == 1
    assert len(cache) == 1


def test_resolution_json_round_trip_keeps_origin() -> None:
    skipped = RedirectResolution("https://x.org", 0, "External skipped", None, False, Origin.EXTERNAL_SKIPPED)
    assert RedirectResolution.from_json(skipped.to_json()) == skipped
    assert skipped.to_json()["origin"] == "external-skipped"


def _pending(doc: int, url: str, status: int = 301, final: str = "/x/") -> NewIssue:
    return NewIssue(document_id=doc, original_url=url, final_url=final, http_status=status, status_message="")


def test_ledger_dedups_pending_per_document_and_url(clock) -> None:  # noqa: ANN001
    ledger = InMemoryIssueLedger(clock)
    first = ledger.record_issue(_pending(1, "/a/"))
    assert first is not None
    assert ledger.record_issue(_pending(1, "/a/")) is None
    assert ledger.record_issue(_pending(2, "/a/")) is not None
    assert len(ledger.all()) == 2


def test_newer_resolution_supersedes_older_one(clock) -> None:  # noqa: ANN001
    ledger = InMemoryIssueLedger(clock)
    old = ledger.record_issue(_pending(1, "/a/"))
    assert ledger.mark_resolved(old, message="first") is True
    assert ledger.mark_resolved(old, message="again") is False

    clock.advance(60)
    new = ledger.record_issue(_pending(1, "/a/"))
    assert ledger.mark_resolved(new, message="second", actor_id=3) is True

    [row] = ledger.all()
    assert row.id == new
    assert row.status_message == "second"
    assert row.resolved_by_actor_id == 3


def test_views_and_scopes(clock) -> None:  # noqa: ANN001
    ledger = InMemoryIssueLedger(clock)
    redirect = ledger.record_issue(_pending(1, "/r/", 302))
    ledger.record_issue(_pending(1, "/b/", 410, final=""))
    early = ledger.record_issue(_pending(2, "/e/"))
    ledger.mark_resolved(early, message="done")

    since = clock.now() + timedelta(seconds=30)
    clock.advance(60)
    ledger.mark_resolved(redirect, message="done")

    assert ledger.count_pending(below_400=False) == 1
    assert ledger.count_pending(below_400=True) == 0
    assert ledger.page_issues(IssueView.RESOLVED).total == 2
    current = ledger.page_issues(IssueView.RESOLVED, scope=ResolvedScope.CURRENT, since=since)
    previous = ledger.page_issues(IssueView.RESOLVED, scope=ResolvedScope.PREVIOUS, since=since)
    assert [i.id for i in current.items] == [redirect]
    assert [i.id for i in previous.items] == [early]
    assert [i.id for i in ledger.iter_resolved()] == [redirect, early]


def test_mark_pending_redirect_only_touches_pending_rows(clock) -> None:  # noqa: ANN001
    ledger = InMemoryIssueLedger(clock)
    broken = ledger.record_issue(_pending(1, "/b/", 404, final=""))
    assert ledger.mark_pending_redirect(broken, final_url="/c/", http_status=302, message="Temporary Redirect")
    issue = ledger.get_issue(broken)
    assert (issue.final_url, issue.http_status, issue.resolution_status) == ("/c/", 302, ResolutionStatus.PENDING)
    ledger.mark_resolved(broken, message="done")
    assert not ledger.mark_pending_redirect(broken, final_url="/d/", http_status=302, message="x")


def test_leases_expire_and_refresh(clock) -> None:  # noqa: ANN001
    state = InMemoryStateStore(clock)
    assert state.acquire_lease("scan", "t1", 10)
    assert not state.acquire_lease("scan", "t2", 10)
    clock.advance(8)
    state.refresh_lease("scan", "t1", 10)
    clock.advance(8)
    assert state.get_lease("scan") == "t1"
    clock.advance(3)
    assert state.get_lease("scan") is None
    assert state.acquire_lease("scan", "t2", 10)
    state.release_lease("scan")
    assert state.get_lease("scan") is None
