from __future__ import annotations

import logging
import posixpath
from dataclasses import dataclass
from typing import Protocol
from urllib.parse import urlsplit

import httpx

from link_sentinel_core import __version__
from link_sentinel_core.cache import ResolutionCache
from link_sentinel_core.config import Settings
from link_sentinel_core.errors import UpstreamFailure
from link_sentinel_core.locator import SiteHosts, is_absolute_http, make_link_relative
from link_sentinel_core.models import Origin, RedirectResolution
from link_sentinel_core.util import url_fingerprint

logger = logging.getLogger(__name__)

PERMANENT_REDIRECT_CODES = frozenset({301, 308})
INTERNAL_MAX_HOPS = 3


class Canonicalizer(Protocol):
    def resolve_to_canonical_url(self, absolute_url: str) -> str | None: ...


@dataclass(frozen=True)
class ResolverConfig:
    follow_external: bool = False
    external_max_hops: int = 3
    internal_timeout_s: float = 1.5
    external_timeout_s: float = 2.0
    cache_ttl_s: int = 24 * 60 * 60
    user_agent: str = f"link-sentinel-core/{__version__}"

    @classmethod
    def from_settings(cls, settings: Settings) -> ResolverConfig:
        return cls(
            follow_external=settings.follow_external_redirects,
            external_max_hops=settings.external_max_hops_bounded,
            internal_timeout_s=settings.internal_timeout_s,
            external_timeout_s=settings.external_timeout_s,
            cache_ttl_s=settings.resolve_cache_ttl_s,
        )


def resolve_location(current_abs: str, location: str) -> str | None:
    """
    Resolve a Location header against the hop that returned it.

    Rooted locations keep the current scheme, host and port; other relative
    locations are joined onto the directory of the current path.
    """
    if is_absolute_http(location):
        return location
    parts = urlsplit(current_abs)
    if not parts.scheme or not parts.netloc:
        return None
    prefix = f"{parts.scheme}://{parts.netloc}"
    if location.startswith("//"):
        return f"{parts.scheme}:{location}"
    if location.startswith("/"):
        return prefix + location
    base = posixpath.dirname(parts.path or "/")
    if not base.endswith("/"):
        base += "/"
    return prefix + "/" + (base + location).lstrip("/")


class DestinationResolver:
    """
    Works out where a link really ends up.

    Results are memoised for the lifetime of the resolver (call `reset_memo`
    between operations) and stored in a durable, time-boxed cache. Network
    failures raise UpstreamFailure and are never cached.
    """

    def __init__(
        self,
        *,
        site: SiteHosts,
        config: ResolverConfig | None = None,
        cache: ResolutionCache | None = None,
        canonicalizer: Canonicalizer | None = None,
        client: httpx.Client | None = None,
    ):
        self._site = site
        self._cfg = config or ResolverConfig()
        self._cache = cache
        self._canonicalizer = canonicalizer
        self._client = client
        self._memo: dict[str, RedirectResolution] = {}
        self.requests_issued = 0

    def reset_memo(self) -> None:
        self._memo.clear()

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def _http(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(headers={"User-Agent": self._cfg.user_agent}, trust_env=False)
        return self._client

    def _store(self, key: str, value: RedirectResolution) -> RedirectResolution:
        self._memo[key] = value
        if self._cache is not None and self._cfg.cache_ttl_s > 0:
            self._cache.set(key, value, self._cfg.cache_ttl_s)
        return value

    def resolve(self, url: str) -> RedirectResolution:
        key = url_fingerprint(url)
        memo = self._memo.get(key)
        if memo is not None:
            return memo
        if self._cache is not None:
            cached = self._cache.get(key)
            if cached is not None:
                self._memo[key] = cached
                return cached

        is_internal = self._site.is_internal(url)

        if not is_internal and not self._cfg.follow_external:
            return self._store(
                key,
                RedirectResolution(
                    final_url=url,
                    status_code=0,
                    status_message="External skipped",
                    first_hop_code=None,
                    is_permanent=False,
                    origin=Origin.EXTERNAL_SKIPPED,
                ),
            )

        if is_internal:
            canonical = self._canonical(url)
            # A permalink equal to the link itself still needs the HTTP walk.
            if canonical is not None and canonical != url:
                return self._store(
                    key,
                    RedirectResolution(
                        final_url=canonical,
                        status_code=200,
                        status_message="Canonical",
                        first_hop_code=301,
                        is_permanent=True,
                        origin=Origin.CANONICAL,
                    ),
                )

        return self._store(key, self._walk(url, is_internal=is_internal))

    def probe(self, url: str) -> RedirectResolution:
        """
        Resolve a candidate replacement URL; relative slugs are taken as internal.
        """
        return self.resolve(url)

    def _canonical(self, url: str) -> str | None:
        if self._canonicalizer is None:
            return None
        absolute = self._site.absolute(url)
        if urlsplit(absolute).hostname != self._site.host:
            return None
        canonical = self._canonicalizer.resolve_to_canonical_url(absolute)
        if not canonical:
            return None
        if self._site.is_internal(canonical):
            return make_link_relative(canonical)
        return canonical

    def _walk(self, url: str, *, is_internal: bool) -> RedirectResolution:
        if is_internal:
            max_hops = INTERNAL_MAX_HOPS
        else:
            max_hops = max(0, min(3, self._cfg.external_max_hops))
        timeout = self._cfg.internal_timeout_s if is_internal else self._cfg.external_timeout_s
        timeout = max(1.0, timeout)

        current_abs = self._site.absolute(url)
        final_abs = current_abs
        first_hop: int | None = None
        status_code = 0
        status_message = ""

        # Zero hops still issues one request to learn the first-hop status.
        for hop in range(max(1, max_hops)):
            response = self._head(current_abs, timeout=timeout)
            code = response.status_code
            status_message = response.reason_phrase or ""
            if first_hop is None:
                first_hop = code

            if 300 <= code < 400 and max_hops > 0:
                location = response.headers.get("location")
                next_abs = resolve_location(current_abs, location) if location else None
                if not next_abs:
                    status_code = code
                    final_abs = current_abs
                    break
                current_abs = next_abs
                final_abs = current_abs
                status_code = code
                logger.debug("redirect hop=%s code=%s url=%s -> %s", hop, code, url, next_abs)
                continue

            status_code = code
            final_abs = current_abs
            break

        final_url = make_link_relative(final_abs) if self._site.is_internal(final_abs) and is_internal else final_abs

        return RedirectResolution(
            final_url=final_url,
            status_code=status_code,
            status_message=status_message,
            first_hop_code=first_hop,
            is_permanent=first_hop in PERMANENT_REDIRECT_CODES,
            origin=Origin.HTTP,
        )

    def _head(self, url: str, *, timeout: float) -> httpx.Response:
        self.requests_issued += 1
        try:
            return self._http().head(
                url,
                follow_redirects=False,
                timeout=timeout,
                headers={"User-Agent": self._cfg.user_agent},
            )
        except (httpx.TimeoutException, httpx.TransportError, httpx.InvalidURL) as e:
            logger.debug("resolve failed url=%s error=%s", url, e)
            raise UpstreamFailure(f"Unable to reach {url}: {e}") from e
