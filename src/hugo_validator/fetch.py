"""
HTTP access used by the link crawler.

Two capabilities: fetching a site page together with the ``<a href>`` values
it contains, and checking that an external URL answers.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Protocol

import requests
import urllib3
from bs4 import BeautifulSoup, SoupStrainer
from urllib3.exceptions import InsecureRequestWarning

# SoupStrainer to parse only <a> tags (faster link extraction)
LINK_STRAINER = SoupStrainer("a", href=True)

INTERNAL_TIMEOUT = 5.0
EXTERNAL_TIMEOUT = 10.0
DEFAULT_USER_AGENT = "HugoValidator/1.0"


@dataclass(slots=True)
class FetchedPage:
    """HTTP status of a page and the hrefs found on it."""
    status: int
    links: List[str] = field(default_factory=list)


class PageFetcher(Protocol):
    def fetch(self, url: str) -> FetchedPage:
        """Fetch ``url``. Raises ``requests.RequestException`` on network failure."""
        ...


class LinkChecker(Protocol):
    def check(self, url: str) -> int:
        """Return the status ``url`` answers with. Raises on network failure."""
        ...


def extract_links(html: str) -> List[str]:
    """Extract all href values from <a> tags, in document order."""
    soup = BeautifulSoup(html, "lxml", parse_only=LINK_STRAINER)
    return [a["href"] for a in soup.find_all("a", href=True)]


def _new_session(user_agent: str) -> requests.Session:
    session = requests.Session()
    session.headers["User-Agent"] = user_agent
    return session


class RequestsPageFetcher:
    """Fetch site pages with ``requests`` and parse anchors with BeautifulSoup."""

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        timeout: float = INTERNAL_TIMEOUT,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        self.session = session or _new_session(user_agent)
        self.timeout = timeout

    def fetch(self, url: str) -> FetchedPage:
        resp = self.session.get(url, timeout=self.timeout, allow_redirects=True)
        if resp.status_code != 200:
            return FetchedPage(status=resp.status_code)

        # Only parse HTML content
        content_type = (resp.headers.get("content-type") or "").lower()
        if "text/html" not in content_type:
            return FetchedPage(status=resp.status_code)

        return FetchedPage(status=resp.status_code, links=extract_links(resp.text))


class RequestsLinkChecker:
    """
    Reachability check for external URLs.

    Sends HEAD and falls back to GET when the server answers 405. Certificate
    errors are ignored: only reachability is checked.
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        timeout: float = EXTERNAL_TIMEOUT,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        self.session = session or _new_session(user_agent)
        self.timeout = timeout
        urllib3.disable_warnings(InsecureRequestWarning)

    def check(self, url: str) -> int:
        resp = self.session.head(url, timeout=self.timeout, allow_redirects=True, verify=False)
        if resp.status_code != 405:
            return resp.status_code

        # Some servers don't support HEAD
        with self.session.get(
            url, timeout=self.timeout, allow_redirects=True, verify=False, stream=True
        ) as get_resp:
            return get_resp.status_code
