"""Tests for the link crawler."""

import threading

import pytest
import requests
from hugo_validator.config import default_config, merge_config
from hugo_validator.core import (
    CrawlState,
    LinkResult,
    SkippedLink,
    check_external_links,
    classify_href,
    crawl_external_links,
    crawl_internal_links,
    find_skip_reason,
    format_broken_links,
)
from hugo_validator.fetch import FetchedPage

BASE_URL = "http://localhost:3000"


class FakeSite:
    """In-memory site: path -> (status, links). Unknown paths are 404."""

    def __init__(self, pages, errors=None):
        self.pages = pages
        self.errors = errors or set()
        self.calls = []

    def fetch(self, url):
        self.calls.append(url)
        path = url[len(BASE_URL):]
        if path in self.errors:
            raise requests.ConnectionError(f"connection refused: {path}")
        status, links = self.pages.get(path, (404, []))
        return FetchedPage(status=status, links=list(links) if status == 200 else [])


class FakeChecker:
    """Answers from a url -> status map; exceptions are raised."""

    def __init__(self, statuses):
        self.statuses = statuses
        self.calls = []
        self._lock = threading.Lock()

    def check(self, url):
        with self._lock:
            self.calls.append(url)
        status = self.statuses.get(url, 200)
        if isinstance(status, Exception):
            raise status
        return status


class TestClassifyHref:
    """Tests for classify_href."""

    @pytest.mark.parametrize("href", ["#top", "mailto:a@b.test", "tel:+4712345678", "javascript:void(0)"])
    def test_skipped(self, href):
        assert classify_href(href) == ("skip", None)

    def test_internal_fragment_stripped(self):
        assert classify_href("/a#x") == ("internal", "/a")
        assert classify_href("/a#y") == ("internal", "/a")

    def test_internal_query_kept(self):
        assert classify_href("/a?x=1") == ("internal", "/a?x=1")

    def test_external(self):
        assert classify_href("https://good.example/page") == ("external", "https://good.example/page")
        assert classify_href("http://good.example") == ("external", "http://good.example")

    def test_protocol_relative(self):
        assert classify_href("//cdn.example/lib.js") == ("external", "https://cdn.example/lib.js")

    def test_relative_and_other(self):
        assert classify_href("posts/hello/") == ("other", None)
        assert classify_href("ftp://files.example") == ("other", None)


class TestFindSkipReason:
    """Tests for find_skip_reason."""

    def test_substring_match(self):
        assert find_skip_reason("https://web.archive.org/x", {"archive.org": "rate-limited"}) == (True, "rate-limited")

    def test_no_match(self):
        assert find_skip_reason("https://good.example", {"archive.org": "rate-limited"}) == (True, None)

    def test_invalid(self):
        assert find_skip_reason("https://", {}) == (False, None)
        assert find_skip_reason("https://[broken", {}) == (False, None)


class TestCrawlState:
    """Tests for frontier bookkeeping."""

    def test_enqueue_once(self):
        state = CrawlState()
        assert state.enqueue("/a", "/") is True
        assert state.enqueue("/a", "/b") is False
        assert list(state.frontier) == ["/", "/a"]
        assert state.origin_map["/a"] == "/"

    def test_visited_not_requeued(self):
        state = CrawlState()
        assert state.dequeue() == "/"
        assert state.enqueue("/", "/a") is False
        assert state.dequeue() is None


class TestCrawlInternalLinks:
    """Tests for crawl_internal_links."""

    def test_broken_page_reported_with_origin(self):
        site = FakeSite({
            "/": (200, ["/about/", "/broken/"]),
            "/about/": (200, ["/"]),
        })
        result = crawl_internal_links(BASE_URL, fetcher=site)

        assert result.broken_links == [LinkResult(url="/broken/", status=404, found_on="/")]
        assert set(result.visited) == {"/", "/about/", "/broken/"}
        assert result.visited_count == 3
        assert result.passed is False

    def test_breadth_first_order(self):
        site = FakeSite({
            "/": (200, ["/a/", "/b/"]),
            "/a/": (200, ["/a/deep/"]),
            "/b/": (200, []),
            "/a/deep/": (200, []),
        })
        result = crawl_internal_links(BASE_URL, fetcher=site)
        assert result.visited == ["/", "/a/", "/b/", "/a/deep/"]
        assert result.passed is True

    def test_each_path_fetched_once(self):
        site = FakeSite({
            "/": (200, ["/a/", "/a/#intro", "/b/", "/a/"]),
            "/a/": (200, ["/", "/b/", "/b/#x"]),
            "/b/": (200, ["/a/", "/"]),
        })
        result = crawl_internal_links(BASE_URL, fetcher=site)
        assert len(site.calls) == result.visited_count == 3
        assert len(set(site.calls)) == len(site.calls)

    def test_fragments_collapse_queries_do_not(self):
        site = FakeSite({
            "/": (200, ["/a#x", "/a#y", "/a?x=1"]),
            "/a": (200, []),
            "/a?x=1": (200, []),
        })
        result = crawl_internal_links(BASE_URL, fetcher=site)
        assert result.visited == ["/", "/a", "/a?x=1"]

    def test_fetch_error_recorded(self):
        site = FakeSite({"/": (200, ["/down/", "/ok/"]), "/ok/": (200, [])}, errors={"/down/"})
        result = crawl_internal_links(BASE_URL, fetcher=site)
        assert len(result.broken_links) == 1
        broken = result.broken_links[0]
        assert broken.url == "/down/"
        assert broken.status == "error"
        assert broken.found_on == "/"
        assert "connection refused" in broken.error
        assert "/ok/" in result.visited

    def test_broken_home_page(self):
        result = crawl_internal_links(BASE_URL, fetcher=FakeSite({}))
        assert result.broken_links == [LinkResult(url="/", status=404, found_on="start")]
        assert result.visited_count == 1

    def test_links_on_broken_pages_not_followed(self):
        site = FakeSite({"/": (200, ["/gone/"]), "/gone/": (500, ["/hidden/"])})
        result = crawl_internal_links(BASE_URL, fetcher=site)
        assert "/hidden/" not in result.visited

    def test_external_links_ignored(self):
        site = FakeSite({"/": (200, ["https://good.example", "//cdn.example/x", "mailto:x@y.test"])})
        result = crawl_internal_links(BASE_URL, fetcher=site)
        assert result.visited == ["/"]

    def test_idempotent(self):
        pages = {"/": (200, ["/a/", "/x/", "/y/"]), "/a/": (200, ["/z/"])}
        first = crawl_internal_links(BASE_URL, fetcher=FakeSite(pages))
        second = crawl_internal_links(BASE_URL, fetcher=FakeSite(pages))
        assert first.broken_links == second.broken_links
        assert [b.url for b in first.broken_links] == ["/x/", "/y/", "/z/"]

    def test_trailing_slash_base_url(self):
        site = FakeSite({"/": (200, [])})
        crawl_internal_links(BASE_URL + "/", fetcher=site)
        assert site.calls == [BASE_URL + "/"]

    def test_unexpected_fetcher_error_recorded(self):
        class FlakyFetcher(FakeSite):
            def fetch(self, url):
                if url.endswith("/bad/"):
                    self.calls.append(url)
                    raise UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte")
                return super().fetch(url)

        site = FlakyFetcher({"/": (200, ["/bad/", "/ok/"]), "/ok/": (200, [])})
        result = crawl_internal_links(BASE_URL, fetcher=site)
        assert [(b.url, b.status, b.found_on) for b in result.broken_links] == [("/bad/", "error", "/")]
        assert "invalid start byte" in result.broken_links[0].error
        assert result.visited == ["/", "/bad/", "/ok/"]


class TestCrawlExternalLinks:
    """Tests for crawl_external_links."""

    def test_broken_external_reported(self):
        site = FakeSite({"/": (200, ["https://good.example", "https://down.example"])})
        checker = FakeChecker({"https://down.example": requests.ConnectionError("connection refused")})
        result = crawl_external_links(BASE_URL, default_config(), fetcher=site, checker=checker)

        assert [b.url for b in result.broken_links] == ["https://down.example"]
        assert result.broken_links[0].status == "error"
        assert result.broken_links[0].found_on == "/"
        assert result.checked_count == 2
        assert result.passed is False

    def test_skip_domain(self):
        config = merge_config(default_config(), {"skipExternalDomains": {"archive.org": "rate-limited"}})
        site = FakeSite({"/": (200, ["https://web.archive.org/x", "https://good.example"])})
        checker = FakeChecker({})
        result = crawl_external_links(BASE_URL, config, fetcher=site, checker=checker)

        assert result.skipped_links == [SkippedLink(url="https://web.archive.org/x", reason="rate-limited")]
        assert "https://web.archive.org/x" not in checker.calls
        assert checker.calls == ["https://good.example"]

    def test_skipped_links_deduplicated(self):
        config = merge_config(default_config(), {"skipExternalDomains": {"archive.org": "rate-limited"}})
        site = FakeSite({
            "/": (200, ["https://web.archive.org/x", "/a/"]),
            "/a/": (200, ["https://web.archive.org/x", "https://archive.org/y"]),
        })
        result = crawl_external_links(BASE_URL, config, fetcher=site, checker=FakeChecker({}))
        assert [s.url for s in result.skipped_links] == ["https://web.archive.org/x", "https://archive.org/y"]

    def test_status_classification(self):
        site = FakeSite({"/": (200, [
            "https://ok.example", "https://moved.example", "https://missing.example", "https://error.example",
        ])})
        checker = FakeChecker({
            "https://moved.example": 301,
            "https://missing.example": 404,
            "https://error.example": 503,
        })
        result = crawl_external_links(BASE_URL, default_config(), fetcher=site, checker=checker)
        assert {b.url for b in result.broken_links} == {"https://missing.example", "https://error.example"}

    def test_deduplicated_first_origin_wins(self):
        site = FakeSite({
            "/": (200, ["/a/", "/b/"]),
            "/a/": (200, ["https://good.example"]),
            "/b/": (200, ["https://good.example"]),
        })
        checker = FakeChecker({"https://good.example": 500})
        result = crawl_external_links(BASE_URL, default_config(), fetcher=site, checker=checker)
        assert checker.calls == ["https://good.example"]
        assert result.broken_links[0].found_on == "/a/"

    def test_protocol_relative_normalized(self):
        site = FakeSite({"/": (200, ["//cdn.example/x"])})
        checker = FakeChecker({})
        crawl_external_links(BASE_URL, default_config(), fetcher=site, checker=checker)
        assert checker.calls == ["https://cdn.example/x"]

    def test_invalid_urls_dropped(self):
        site = FakeSite({"/": (200, ["https://", "http://[oops"])})
        checker = FakeChecker({})
        result = crawl_external_links(BASE_URL, default_config(), fetcher=site, checker=checker)
        assert checker.calls == []
        assert result.checked_count == 0
        assert result.skipped_links == []

    def test_own_domain_stays_external(self):
        config = merge_config(default_config(), {"siteUrl": "https://blog.test"})
        site = FakeSite({"/": (200, ["https://blog.test/about/"])})
        checker = FakeChecker({})
        crawl_external_links(BASE_URL, config, fetcher=site, checker=checker)
        assert checker.calls == ["https://blog.test/about/"]
        assert site.calls == [BASE_URL + "/"]

    def test_broken_pages_silently_passed_over(self):
        site = FakeSite({"/": (200, ["/gone/", "https://good.example"])}, errors={"/gone/"})
        result = crawl_external_links(BASE_URL, default_config(), fetcher=site, checker=FakeChecker({}))
        assert result.broken_links == []
        assert result.checked_count == 1


class TestCheckExternalLinks:
    """Tests for batched external checks."""

    def test_batches_in_order(self):
        links = [(f"https://site{i}.example", "/") for i in range(12)]
        checker = FakeChecker({})
        results = check_external_links(links, checker, batch_size=5)
        assert [r.url for r in results] == [url for url, _ in links]
        assert sorted(checker.calls[:5]) == sorted(url for url, _ in links[:5])
        assert sorted(checker.calls[5:10]) == sorted(url for url, _ in links[5:10])

    def test_batches_run_together_and_in_sequence(self):
        """All checks of a batch are in flight at once; the next batch waits."""
        batch_size = 3
        links = [(f"https://site{i}.example", "/") for i in range(9)]
        batch_of = {url: i // batch_size for i, (url, _) in enumerate(links)}
        barrier = threading.Barrier(batch_size, timeout=5)
        lock = threading.Lock()
        in_flight = set()
        overlaps = []

        class BlockingChecker:
            def check(self, url):
                with lock:
                    overlaps.extend(u for u in in_flight if batch_of[u] != batch_of[url])
                    in_flight.add(url)
                # returns only once the whole batch has started
                barrier.wait()
                with lock:
                    in_flight.discard(url)
                return 200

        results = check_external_links(links, BlockingChecker(), batch_size=batch_size)
        assert [r.status for r in results] == [200] * len(links)
        assert overlaps == []

    def test_one_failure_does_not_abort(self):
        links = [("https://a.example", "/"), ("https://b.example", "/"), ("https://c.example", "/")]
        checker = FakeChecker({"https://b.example": RuntimeError("boom")})
        results = check_external_links(links, checker, batch_size=2)
        assert [r.status for r in results] == [200, "error", 200]
        assert results[1].error == "boom"

    def test_invalid_batch_size(self):
        with pytest.raises(ValueError):
            check_external_links([], FakeChecker({}), batch_size=0)


class TestFormatBrokenLinks:
    def test_format(self):
        text = format_broken_links([
            LinkResult(url="/broken/", status=404, found_on="/"),
            LinkResult(url="https://down.example", status="error", found_on="/about/", error="timeout"),
        ])
        assert text == (
            "  /broken/ (status: 404) - found on: /\n"
            "  https://down.example (status: error, error: timeout) - found on: /about/"
        )
