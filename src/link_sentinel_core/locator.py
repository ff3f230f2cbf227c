from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from urllib.parse import SplitResult, urlsplit, urlunsplit

_ANCHOR_HREF_RE = re.compile(r"""<a\b[^>]*\bhref\s*=\s*(["'])(.*?)\1""", re.IGNORECASE | re.DOTALL)
_SCHEME_RE = re.compile(r"^([a-zA-Z][a-zA-Z0-9+.\-]*):")
_WWW_RE = re.compile(r"^www\.", re.IGNORECASE)

DEFAULT_ADMIN_PREFIXES = ("/wp-admin", "/wp-login")

_DEFAULT_PORTS = {"http": 80, "https": 443}


def _normalize_host(host: str | None) -> str:
    return _WWW_RE.sub("", (host or "").lower())


def _default_port(scheme: str | None) -> int | None:
    return _DEFAULT_PORTS.get((scheme or "").lower())


def _safe_port(parts: SplitResult) -> int | None:
    try:
        return parts.port
    except ValueError:
        return None


def url_scheme(url: str) -> str | None:
    m = _SCHEME_RE.match(url)
    return m.group(1).lower() if m else None


def is_absolute_http(url: str) -> bool:
    return url_scheme(url) in {"http", "https"}


def make_link_relative(url: str) -> str:
    """
    Strip scheme, host and port from an absolute URL, keeping path, query and fragment.
    """
    if url.startswith("//"):
        url = "http:" + url
    if not is_absolute_http(url):
        return url
    parts = urlsplit(url)
    return urlunsplit(("", "", parts.path or "/", parts.query, parts.fragment))


@dataclass(frozen=True)
class SiteHosts:
    """
    The site's registered host set: the home URL plus any extra hosts that
    should be treated as the same site (aliases, CDN hostnames, ...).
    """

    home_url: str
    extra_hosts: tuple[str, ...] = field(default_factory=tuple)

    @property
    def scheme(self) -> str:
        return (urlsplit(self.home_url).scheme or "http").lower()

    @property
    def host(self) -> str:
        return urlsplit(self.home_url).hostname or ""

    @property
    def port(self) -> int | None:
        return _safe_port(urlsplit(self.home_url))

    @property
    def origin(self) -> str:
        parts = urlsplit(self.home_url)
        return f"{self.scheme}://{parts.netloc}"

    def absolute(self, url: str) -> str:
        if url.startswith("//"):
            return f"{self.scheme}:{url}"
        if is_absolute_http(url):
            return url
        if not url.startswith("/"):
            url = "/" + url
        return self.origin + url

    def _candidates(self) -> list[str]:
        hosts = [h.strip() for h in self.extra_hosts if h and h.strip()]
        if self.host and self.host not in hosts:
            hosts.append(self.host)
        return hosts

    def is_internal(self, url: str) -> bool:
        if not url:
            return False

        if url.startswith("//"):
            url = f"{self.scheme}:{url}"

        if url.startswith("/"):
            return True

        if not is_absolute_http(url):
            return False

        link = urlsplit(url)
        link_host = link.hostname or ""
        link_scheme = (link.scheme or "").lower()
        link_port = _safe_port(link)

        site_host = self.host
        if not link_host or not site_host:
            return False

        link_norm = _normalize_host(link_host)
        site_norm = _normalize_host(site_host)

        for candidate in self._candidates():
            cparts = urlsplit(candidate)
            if not cparts.hostname:
                cparts = urlsplit("//" + candidate)
            cand_host = cparts.hostname or ""
            cand_scheme = (cparts.scheme or "").lower()
            cand_port = _safe_port(cparts)

            if link_norm != _normalize_host(cand_host):
                continue

            is_primary = _normalize_host(cand_host) == site_norm

            if cand_port is not None and link_port is not None:
                if cand_port != link_port:
                    continue
            elif cand_port is not None and link_port is None:
                default = _default_port(link_scheme or cand_scheme or self.scheme)
                if default is not None and cand_port != default:
                    continue
            elif cand_port is None and link_port is not None and is_primary:
                site_port = self.port if self.port is not None else _default_port(self.scheme)
                if link_port != site_port:
                    continue

            return True

        return False


def extract_candidate_links(body: str) -> set[str]:
    """
    Collect href values from anchor tags.

    Attribute-pattern based: empty values, pure fragments and non-http(s)
    schemes (mailto:, tel:, javascript:, ...) are dropped.
    """
    links: set[str] = set()
    if not body:
        return links
    for m in _ANCHOR_HREF_RE.finditer(body):
        href = m.group(2).strip()
        if not href or href.startswith("#"):
            continue
        scheme = url_scheme(href)
        if scheme and scheme not in {"http", "https"}:
            continue
        links.add(href)
    return links


def is_admin_path(url: str, prefixes: Iterable[str] = DEFAULT_ADMIN_PREFIXES) -> bool:
    if url.startswith("//"):
        url = "http:" + url
    path = urlsplit(url).path
    if not path:
        return False
    if not path.startswith("/"):
        path = "/" + path
    return any(path.startswith(prefix) for prefix in prefixes if prefix)


def locate_links(
    body: str,
    site: SiteHosts,
    *,
    admin_prefixes: Sequence[str] = DEFAULT_ADMIN_PREFIXES,
    include_external: bool = False,
) -> list[str]:
    """
    Link targets of a document body worth resolving, in a stable order.

    External links are only kept when the caller follows external redirects;
    administrative paths are always dropped.
    """
    return sorted(
        url
        for url in extract_candidate_links(body)
        if (include_external or site.is_internal(url)) and not is_admin_path(url, admin_prefixes)
    )
