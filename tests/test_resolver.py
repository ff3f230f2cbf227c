from __future__ import annotations

import httpx
import pytest

from link_sentinel_core.cache import InMemoryResolutionCache
from link_sentinel_core.errors import UpstreamFailure
from link_sentinel_core.locator import SiteHosts
from link_sentinel_core.memory import InMemoryDocumentStore
from link_sentinel_core.models import Origin
from link_sentinel_core.resolver import DestinationResolver, ResolverConfig, resolve_location

SITE = SiteHosts("https://example.com")


class Routes:
    def __init__(self, routes: dict[str, tuple[int, str | None]]):
        self.routes = routes
        self.seen: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.seen.append(url)
        assert request.method == "HEAD"
        status, location = self.routes.get(url, (404, None))
        headers = {"location": location} if location else {}
        return httpx.Response(status, headers=headers)


def make_resolver(routes: Routes, **kwargs) -> DestinationResolver:  # noqa: ANN003
    client = httpx.Client(transport=httpx.MockTransport(routes))
    return DestinationResolver(site=SITE, client=client, **kwargs)


def test_follows_internal_permanent_chain() -> None:
    routes = Routes(
        {
            "https://example.com/old/": (301, "/mid/"),
            "https://example.com/mid/": (301, "https://example.com/new/"),
            "https://example.com/new/": (200, None),
        }
    )
    res = make_resolver(routes).resolve("/old/")
    assert res.final_url == "/new/"
    assert res.status_code == 200
    assert res.first_hop_code == 301
    assert res.is_permanent is True
    assert res.origin is Origin.HTTP
    assert res.is_redirect


def test_temporary_first_hop_is_not_permanent() -> None:
    routes = Routes(
        {
            "https://example.com/promo/": (302, "/sale/"),
            "https://example.com/sale/": (200, None),
        }
    )
    res = make_resolver(routes).resolve("https://example.com/promo/")
    assert res.final_url == "/sale/"
    assert res.first_hop_code == 302
    assert res.is_permanent is False


def test_broken_link_reports_status() -> None:
    res = make_resolver(Routes({})).resolve("/gone/")
    assert res.status_code == 404
    assert res.first_hop_code == 404
    assert res.final_url == "/gone/"


def test_hop_limit_reports_last_redirect() -> None:
    routes = Routes(
        {
            "https://example.com/1/": (302, "/2/"),
            "https://example.com/2/": (302, "/3/"),
            "https://example.com/3/": (302, "/4/"),
            "https://example.com/4/": (200, None),
        }
    )
    resolver = make_resolver(routes)
    res = resolver.resolve("/1/")
    assert resolver.requests_issued == 3
    assert res.status_code == 302
    assert res.final_url == "/4/"


def test_memo_and_durable_cache_avoid_repeat_requests() -> None:
    routes = Routes({"https://example.com/old/": (301, "/new/"), "https://example.com/new/": (200, None)})
    cache = InMemoryResolutionCache()
    first = make_resolver(routes, cache=cache)

    a = first.resolve("/old/")
    b = first.resolve("/old/")
    assert a == b
    assert first.requests_issued == 2

    second = make_resolver(routes, cache=cache)
    assert second.resolve("/old/") == a
    assert second.requests_issued == 0


def test_external_links_are_skipped_by_default() -> None:
    routes = Routes({})
    resolver = make_resolver(routes)
    res = resolver.resolve("https://other.org/page")
    assert res.origin is Origin.EXTERNAL_SKIPPED
    assert res.status_code == 0
    assert res.final_url == "https://other.org/page"
    assert routes.seen == []


def test_external_with_zero_hops_only_reads_first_hop() -> None:
    routes = Routes({"https://other.org/page": (301, "https://other.org/moved")})
    resolver = make_resolver(routes, config=ResolverConfig(follow_external=True, external_max_hops=0))
    res = resolver.resolve("https://other.org/page")
    assert routes.seen == ["https://other.org/page"]
    assert res.first_hop_code == 301
    assert res.status_code == 301
    assert res.final_url == "https://other.org/page"


def test_canonical_lookup_short_circuits_network() -> None:
    store = InMemoryDocumentStore(canonical={"https://example.com/?p=5": "https://example.com/hello/"})
    routes = Routes({})
    resolver = make_resolver(routes, canonicalizer=store)
    res = resolver.resolve("/?p=5")
    assert res.origin is Origin.CANONICAL
    assert res.final_url == "/hello/"
    assert res.status_code == 200
    assert res.first_hop_code == 301
    assert routes.seen == []


def test_permalink_equal_to_link_is_still_checked_over_http() -> None:
    store = InMemoryDocumentStore(canonical={"https://example.com/old-page/": "https://example.com/old-page/"})
    routes = Routes(
        {
            "https://example.com/old-page/": (301, "/new-page/"),
            "https://example.com/new-page/": (200, None),
        }
    )
    resolver = make_resolver(routes, canonicalizer=store)
    res = resolver.resolve("/old-page/")
    assert res.origin is Origin.HTTP
    assert res.first_hop_code == 301
    assert res.final_url == "/new-page/"
    assert routes.seen == ["https://example.com/old-page/", "https://example.com/new-page/"]


def test_network_failures_are_not_cached() -> None:
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        raise httpx.ConnectError("connection refused", request=request)

    cache = InMemoryResolutionCache()
    resolver = DestinationResolver(
        site=SITE, cache=cache, client=httpx.Client(transport=httpx.MockTransport(handler))
    )
    with pytest.raises(UpstreamFailure):
        resolver.resolve("/flaky/")
    with pytest.raises(UpstreamFailure):
        resolver.resolve("/flaky/")
    assert calls["n"] == 2
    assert len(cache) == 0


@pytest.mark.parametrize(
    ("current", "location", "expected"),
    [
        ("https://e.com/a/b", "https://x.org/y", "https://x.org/y"),
        ("https://e.com:8443/a/b", "/root", "https://e.com:8443/root"),
        ("https://e.com/a/b", "next", "https://e.com/a/next"),
        ("https://e.com/a/b", "//cdn.e.com/x", "https://cdn.e.com/x"),
    ],
)
def test_resolve_location(current: str, location: str, expected: str) -> None:
    assert resolve_location(current, location) == expected
