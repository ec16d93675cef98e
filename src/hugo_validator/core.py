"""
Link crawling: BFS traversal of a rendered site's internal pages, with
verification of internal pages and external link targets.
"""
from __future__ import annotations

import logging
import sys
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Deque, Dict, Iterator, List, Optional, Set, Tuple, Union
from urllib.parse import urlparse

from hugo_validator.config import ValidatorConfig
from hugo_validator.fetch import (
    FetchedPage,
    LinkChecker,
    PageFetcher,
    RequestsLinkChecker,
    RequestsPageFetcher,
)

logger = logging.getLogger(__name__)

CONCURRENT_EXTERNAL_CHECKS = 5

SKIPPED_PREFIXES: Tuple[str, ...] = ("#", "mailto:", "tel:", "javascript:")
EXTERNAL_PREFIXES: Tuple[str, ...] = ("http://", "https://", "//")

START_PATH = "/"

Status = Union[int, str]


@dataclass(slots=True)
class LinkResult:
    """Outcome of checking one link. ``status`` is "error" on network failure."""
    url: str
    status: Status
    found_on: str
    error: Optional[str] = None

    @property
    def is_broken(self) -> bool:
        return self.status == "error" or (isinstance(self.status, int) and self.status >= 400)


@dataclass(slots=True)
class SkippedLink:
    """External link exempted from checking by a skip-domain rule."""
    url: str
    reason: str


@dataclass(slots=True)
class CrawlState:
    """Mutable state of a single crawl."""
    visited: Set[str] = field(default_factory=set)
    frontier: Deque[str] = field(default_factory=lambda: deque([START_PATH]))
    origin_map: Dict[str, str] = field(default_factory=dict)
    broken_internal: List[LinkResult] = field(default_factory=list)
    broken_external: List[LinkResult] = field(default_factory=list)
    skipped_external: List[SkippedLink] = field(default_factory=list)
    visit_order: List[str] = field(default_factory=list)
    # set mirror of frontier for O(1) membership checks
    queued: Set[str] = field(default_factory=lambda: {START_PATH})

    def enqueue(self, path: str, found_on: str) -> bool:
        """Queue ``path`` unless it was already visited or queued."""
        if path in self.visited or path in self.queued:
            return False
        self.frontier.append(path)
        self.queued.add(path)
        self.origin_map[path] = found_on
        return True

    def dequeue(self) -> Optional[str]:
        """Pop the next unvisited path and mark it visited, or None when done."""
        while self.frontier:
            path = self.frontier.popleft()
            self.queued.discard(path)
            if path in self.visited:
                continue
            self.visited.add(path)
            self.visit_order.append(path)
            return path
        return None


@dataclass(slots=True)
class InternalCrawlResult:
    broken_links: List[LinkResult]
    visited_count: int
    visited: List[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.broken_links


@dataclass(slots=True)
class ExternalCrawlResult:
    broken_links: List[LinkResult]
    skipped_links: List[SkippedLink]
    checked_count: int
    checked: List[LinkResult] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.broken_links


def classify_href(href: str) -> Tuple[str, Optional[str]]:
    """
    Classify an href found on a page.

    Returns one of:
        ("skip", None)       fragment-only, mailto:, tel:, javascript:
        ("internal", path)   site-relative path with the fragment removed
        ("external", url)    absolute http(s) URL; "//host" gets "https:"
        ("other", None)      anything else (relative paths, other schemes)
    """
    if href.startswith(SKIPPED_PREFIXES):
        return "skip", None

    if href.startswith("/") and not href.startswith("//"):
        return "internal", href.split("#", 1)[0]

    if href.startswith(EXTERNAL_PREFIXES):
        full_url = f"https:{href}" if href.startswith("//") else href
        return "external", full_url

    return "other", None


def find_skip_reason(url: str, skip_domains: Dict[str, str]) -> Tuple[bool, Optional[str]]:
    """
    Match ``url`` against the skip-domain rules.

    Returns (valid, reason). ``valid`` is False for URLs without a parseable
    hostname; ``reason`` is set when a rule's domain occurs in the hostname.
    """
    try:
        hostname = urlparse(url).hostname
    except ValueError:
        return False, None
    if not hostname:
        return False, None

    for domain, reason in skip_domains.items():
        if domain in hostname:
            return True, reason
    return True, None


def print_scan_line(path: str, status: Optional[Status], new_links: int) -> None:
    """Print single scan result line."""
    status_str = str(status) if status and status != "error" else "ERR"
    sys.stderr.write(f"\n  → {status_str} {path} (+{new_links} links)")
    sys.stderr.flush()


def _page_url(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}{path}"


def _walk_site(
    base_url: str,
    fetcher: PageFetcher,
    state: CrawlState,
    verbose: bool,
) -> Iterator[Tuple[str, FetchedPage]]:
    """
    Breadth-first walk over internal pages, one fetch at a time.

    Yields (path, page) for every page that answered 200, after its internal
    links have been queued. Pages that failed are recorded in
    ``state.broken_internal`` and not parsed.
    """
    while True:
        path = state.dequeue()
        if path is None:
            return

        found_on = state.origin_map.get(path, "start")
        try:
            page = fetcher.fetch(_page_url(base_url, path))
        except Exception as e:  # a failing page must not abort the crawl
            state.broken_internal.append(
                LinkResult(url=path, status="error", found_on=found_on, error=str(e) or type(e).__name__)
            )
            if verbose:
                sys.stderr.write(f"\n  ✗ ERROR {path}: {e}")
            continue

        if page.status != 200:
            state.broken_internal.append(LinkResult(url=path, status=page.status, found_on=found_on))
            if verbose:
                print_scan_line(path, page.status, 0)
            continue

        new_links = 0
        for href in page.links:
            kind, target = classify_href(href)
            if kind == "internal" and state.enqueue(target, path):
                new_links += 1

        if verbose:
            print_scan_line(path, page.status, new_links)

        yield path, page


def crawl_internal_links(
    base_url: str,
    fetcher: Optional[PageFetcher] = None,
    verbose: bool = False,
) -> InternalCrawlResult:
    """
    Crawl every internal page reachable from ``/`` and report broken ones.

    Args:
        base_url: Origin of the running site, e.g. "http://localhost:3000".
        fetcher: Page fetcher; defaults to a ``RequestsPageFetcher``.
        verbose: Whether to print a line per fetched page to stderr.

    Returns:
        Broken pages in discovery order, each with the page it was linked from.
    """
    fetcher = fetcher or RequestsPageFetcher()
    state = CrawlState()

    for _ in _walk_site(base_url, fetcher, state, verbose):
        pass

    if verbose:
        sys.stderr.write("\n\n")

    return InternalCrawlResult(
        broken_links=list(state.broken_internal),
        visited_count=len(state.visited),
        visited=list(state.visit_order),
    )


def _check_one(checker: LinkChecker, url: str, found_on: str) -> LinkResult:
    try:
        return LinkResult(url=url, status=checker.check(url), found_on=found_on)
    except Exception as e:  # any failure of one check must not abort the batch
        return LinkResult(url=url, status="error", found_on=found_on, error=str(e) or type(e).__name__)


def check_external_links(
    links: List[Tuple[str, str]],
    checker: LinkChecker,
    batch_size: int = CONCURRENT_EXTERNAL_CHECKS,
) -> List[LinkResult]:
    """
    Check (url, found_on) pairs in ordered batches of ``batch_size``.

    Checks within a batch run concurrently; a batch completes before the next
    one starts.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")

    results: List[LinkResult] = []
    with ThreadPoolExecutor(max_workers=batch_size) as executor:
        for i in range(0, len(links), batch_size):
            batch = links[i:i + batch_size]
            futures = [executor.submit(_check_one, checker, url, found_on) for url, found_on in batch]
            results.extend(f.result() for f in futures)
    return results


def crawl_external_links(
    base_url: str,
    config: ValidatorConfig,
    fetcher: Optional[PageFetcher] = None,
    checker: Optional[LinkChecker] = None,
    batch_size: int = CONCURRENT_EXTERNAL_CHECKS,
    verbose: bool = False,
) -> ExternalCrawlResult:
    """
    Crawl the site, collect external links and check that they are reachable.

    Links whose hostname contains a configured skip domain are reported as
    skipped and never requested. Absolute links to the site's own domain are
    treated like any other external link.
    """
    fetcher = fetcher or RequestsPageFetcher()
    checker = checker or RequestsLinkChecker()
    skip_domains = dict(config.skip_external_domains)
    state = CrawlState()

    external_links: Dict[str, str] = {}  # url -> found_on
    skipped_urls: Set[str] = set()

    for path, page in _walk_site(base_url, fetcher, state, verbose):
        for href in page.links:
            kind, full_url = classify_href(href)
            if kind != "external":
                continue

            valid, reason = find_skip_reason(full_url, skip_domains)
            if not valid:
                logger.debug("Dropping invalid URL %r on %s", href, path)
                continue

            if reason is not None:
                if full_url not in skipped_urls:
                    skipped_urls.add(full_url)
                    state.skipped_external.append(SkippedLink(url=full_url, reason=reason))
                continue

            external_links.setdefault(full_url, path)

    if verbose:
        sys.stderr.write("\n\n")
        if state.skipped_external:
            sys.stderr.write(f"Skipped {len(state.skipped_external)} external links:\n")
            for skipped in state.skipped_external:
                sys.stderr.write(f"  - {skipped.url} ({skipped.reason})\n")
        sys.stderr.write(f"Found {len(external_links)} external links to check\n")

    results = check_external_links(list(external_links.items()), checker, batch_size)
    state.broken_external.extend(r for r in results if r.is_broken)

    return ExternalCrawlResult(
        broken_links=list(state.broken_external),
        skipped_links=list(state.skipped_external),
        checked_count=len(results),
        checked=results,
    )


def format_broken_links(results: List[LinkResult]) -> str:
    """One line per broken link, as shown in failure output."""
    lines = []
    for r in results:
        error = f", error: {r.error}" if r.error else ""
        lines.append(f"  {r.url} (status: {r.status}{error}) - found on: {r.found_on}")
    return "\n".join(lines)
