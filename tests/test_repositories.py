from __future__ import annotations

import pytest

from link_sentinel_core.errors import PersistenceFailure
from link_sentinel_core.models import IssueView, NewIssue, Origin, RedirectResolution, ResolutionStatus, ScanState
from link_sentinel_core.repositories import (
    DocumentRepository,
    LinkIssueRepository,
    ResolveCacheRepository,
    ScanStateRepository,
)


def _issue(doc: int, url: str, status: int = 301, final: str = "/new/") -> NewIssue:
    return NewIssue(document_id=doc, original_url=url, final_url=final, http_status=status, status_message="Permanent Redirect")


def test_issue_ledger_dedup_views_and_resolution(conn) -> None:  # noqa: ANN001
    issues = LinkIssueRepository(conn)

    redirect = issues.record_issue(_issue(1, "/old/"))
    assert redirect is not None
    assert issues.record_issue(_issue(1, "/old/")) is None
    broken = issues.record_issue(_issue(1, "/gone/", 404, final=""))
    orphan = issues.record_issue(_issue(2, "/x/", 302, final=""))

    assert issues.count_pending(below_400=True) == 2
    assert issues.count_pending(below_400=False) == 1
    assert issues.count_bulk_candidates() == 1
    assert [i.id for i in issues.list_bulk_candidates(0, 10)] == [redirect]
    assert issues.page_issues(IssueView.BROKEN).items[0].id == broken

    assert issues.mark_pending_redirect(orphan, final_url="/y/", http_status=302, message="Temporary Redirect")
    assert issues.count_bulk_candidates() == 2

    assert issues.mark_resolved(redirect, message="Manually Resolved by Ada", actor_id=7)
    assert not issues.mark_resolved(redirect, message="again")
    resolved = issues.get_issue(redirect)
    assert resolved.resolution_status is ResolutionStatus.RESOLVED
    assert resolved.resolution_date is not None
    assert resolved.resolved_by_actor_id == 7

    again = issues.record_issue(_issue(1, "/old/"))
    assert again is not None
    assert issues.mark_resolved(again, message="second", final_url="/newer/", http_status=200)
    assert issues.get_issue(redirect) is None
    assert [i.id for i in issues.iter_resolved(batch=1)] == [again]
    assert issues.get_issue(again).final_url == "/newer/"

    page = issues.page_issues(IssueView.RESOLVED, per_page=1)
    assert (page.total, page.pages) == (1, 1)
    assert issues.clear_resolved() == 1
    assert issues.page_issues(IssueView.RESOLVED).total == 0


def test_scan_state_and_leases(conn) -> None:  # noqa: ANN001
    state = ScanStateRepository(conn)
    assert state.load_scan_state().active is False

    state.save_scan_state(ScanState(active=True, total=10, processed=3, cursor_id=42, batch_size=25, token="tok"))
    state.save_scan_progress(5)
    loaded = state.load_scan_state()
    assert (loaded.active, loaded.total, loaded.processed, loaded.cursor_id, loaded.token) == (True, 10, 5, 42, "tok")

    assert state.acquire_lease("scan", "a", 60)
    assert not state.acquire_lease("scan", "b", 60)
    assert state.get_lease("scan") == "a"
    state.refresh_lease("scan", "a", 60)
    state.release_lease("scan")
    assert state.get_lease("scan") is None

    assert state.acquire_lease("resolve_all", "c", -1)
    assert state.get_lease("resolve_all") is None
    assert state.acquire_lease("resolve_all", "d", 60)
    assert state.get_lease("resolve_all") == "d"


def test_resolve_cache(conn) -> None:  # noqa: ANN001
    cache = ResolveCacheRepository(conn)
    value = RedirectResolution("/new/", 200, "OK", 301, True, Origin.HTTP)

    cache.set("k1", value, 3600)
    cache.set("k0", value, 0)
    assert cache.get("k1") == value
    assert cache.get("k0") is None

    conn.execute("update resolve_cache set expires_at = now() - interval '1 second' where url_hash='k1'")
    conn.commit()
    assert cache.get("k1") is None
    assert cache.purge_expired() == 1


def test_document_repository(conn) -> None:  # noqa: ANN001
    docs = DocumentRepository(conn, home_url="https://example.com/", eligible_types=["post", "page"])
    post = docs.add_document(body='<a href="/old/">x</a>', slug="hello")
    docs.add_document(body="draft", status="draft", slug="draft")
    docs.add_document(body="", doc_type="attachment", status="inherit", slug="photo")
    page = docs.add_document(body="page", doc_type="page", slug="about")
    docs.add_term(taxonomy="category", slug="news")

    assert docs.count_eligible() == 2
    assert docs.list_eligible_ids(0, 10) == [post, page]
    assert docs.list_eligible_ids(post, 10) == [page]

    before = docs.get_document(post)
    docs.commit_body(post, '<a href="/new/">x</a>')
    after = docs.get_document(post)
    assert after.body == '<a href="/new/">x</a>'
    assert after.modified_at == before.modified_at

    with pytest.raises(PersistenceFailure):
        docs.commit_body(999_999, "x")

    assert docs.resolve_to_canonical_url(f"https://example.com/?p={post}") == "https://example.com/hello/"
    assert docs.resolve_to_canonical_url(f"https://example.com/?page_id={page}") == "https://example.com/about/"
    assert docs.resolve_to_canonical_url("https://example.com/2020/01/hello/") == "https://example.com/hello/"
    assert docs.resolve_to_canonical_url("https://example.com/attachment/photo/") == "https://example.com/attachment/photo/"
    assert docs.resolve_to_canonical_url("https://example.com/old-news/news/") == "https://example.com/category/news/"
    assert docs.resolve_to_canonical_url("https://example.com/nothing-here/") is None
    assert docs.resolve_to_canonical_url("https://example.com/") is None


def test_document_repository_matches_full_paths(conn) -> None:  # noqa: ANN001
    docs = DocumentRepository(conn, home_url="https://example.com")
    about = docs.add_document(body="about", doc_type="page", slug="about")
    team = docs.add_document(body="team", doc_type="page", slug="team", parent_id=about)
    docs.add_document(body="hello", slug="hello")

    assert docs.permalink(docs.get_document(team)) == "https://example.com/about/team/"
    assert docs.resolve_to_canonical_url("https://example.com/about/team/") == "https://example.com/about/team/"
    assert docs.resolve_to_canonical_url(f"https://example.com/?page_id={team}") == "https://example.com/about/team/"
    assert docs.resolve_to_canonical_url("https://example.com/team/") is None
    assert docs.resolve_to_canonical_url("https://example.com/x/y/hello/") is None
    assert docs.resolve_to_canonical_url("https://example.com/2020/01/hello/") == "https://example.com/hello/"


def test_document_repository_reads_current_rows(conn) -> None:  # noqa: ANN001
    docs = DocumentRepository(conn, home_url="https://example.com")
    post = docs.add_document(body="first", slug="hello")
    assert docs.get_document(post).body == "first"

    conn.execute("update documents set body='edited elsewhere' where id=%s", (post,))
    conn.commit()

    assert docs.get_document(post).body == "edited elsewhere"


def test_added_term_replaces_a_cached_miss(conn) -> None:  # noqa: ANN001
    docs = DocumentRepository(conn, home_url="https://example.com")
    docs.add_term(taxonomy="category", slug="news")
    assert docs.resolve_to_canonical_url("https://example.com/topic/") is None

    docs.add_term(taxonomy="category", slug="topic")

    assert docs.resolve_to_canonical_url("https://example.com/topic/") == "https://example.com/category/topic/"
