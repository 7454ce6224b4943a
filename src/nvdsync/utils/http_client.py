"""
http_client.py
HTTP access for probes and downloads.

HttpClient is the seam the rest of nvdsync talks to. RequestsHttpClient is the
production implementation; FeedPreprocessingClient wraps any client and runs
JSON feed responses through the CVSS v4.0 preprocessor.
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from email.utils import parsedate_to_datetime
from datetime import datetime, timezone
from typing import Dict, Any, Iterator, Iterable, Optional, List, Mapping
from urllib.parse import urlparse

import requests
from requests.structures import CaseInsensitiveDict

from nvdsync.utils.config import USER_AGENT
from nvdsync.utils.errors import TransportError, HttpStatusError
from nvdsync.utils.json_preprocessor import JsonPreprocessor

logger = logging.getLogger(__name__)


def parse_http_date(value: Optional[str]) -> Optional[datetime]:
    """Parse an RFC 7231 date header into an aware UTC datetime."""
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class HttpResponse:
    """A response whose body is either already in memory or still streaming."""

    def __init__(self, url: str, status_code: int,
                 headers: Optional[Mapping[str, str]] = None,
                 body: Optional[bytes] = None,
                 chunks: Optional[Iterable[bytes]] = None,
                 on_close=None):
        self.url = url
        self.status_code = status_code
        self.headers = CaseInsensitiveDict(headers or {})
        self._body = body
        self._chunks = chunks
        self._on_close = on_close

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def content(self) -> bytes:
        if self._body is None:
            self._body = b"".join(self._chunks or [])
            self._chunks = None
        return self._body

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")

    def json(self) -> Any:
        return json.loads(self.content)

    def iter_content(self, chunk_size: int = 64 * 1024) -> Iterator[bytes]:
        if self._body is not None:
            for offset in range(0, len(self._body), chunk_size):
                yield self._body[offset:offset + chunk_size]
            return
        for chunk in self._chunks or []:
            if chunk:
                yield chunk

    @property
    def content_length(self) -> Optional[int]:
        value = self.headers.get("Content-Length")
        if value is None:
            return None
        try:
            length = int(value)
        except ValueError:
            return None
        return length if length >= 0 else None

    @property
    def content_encoding(self) -> str:
        return self.headers.get("Content-Encoding", "").strip().lower()

    @property
    def is_encoded(self) -> bool:
        """True when the body is served with a content coding such as gzip."""
        return self.content_encoding not in ("", "identity")

    @property
    def content_type(self) -> str:
        return self.headers.get("Content-Type", "")

    @property
    def last_modified(self) -> Optional[datetime]:
        return parse_http_date(self.headers.get("Last-Modified"))

    @property
    def accepts_ranges(self) -> bool:
        return self.headers.get("Accept-Ranges", "").lower() == "bytes"

    def raise_for_status(self) -> None:
        if not self.ok:
            raise HttpStatusError(self.status_code, self.url)

    def close(self) -> None:
        if self._on_close is not None:
            self._on_close()
            self._on_close = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class HttpClient(ABC):
    """Minimal HTTP interface used by probes and the downloader."""

    @abstractmethod
    def head(self, url: str, headers: Optional[Dict[str, str]] = None) -> HttpResponse:
        """Send a HEAD request."""

    @abstractmethod
    def get(self, url: str, headers: Optional[Dict[str, str]] = None,
            params: Optional[Dict[str, Any]] = None, stream: bool = False) -> HttpResponse:
        """Send a GET request. With stream=True the body is read lazily."""

    def close(self) -> None:
        pass


class RequestsHttpClient(HttpClient):
    """HttpClient backed by a requests Session with explicit timeouts."""

    def __init__(self, connect_timeout: float = 30.0, read_timeout: float = 60.0,
                 user_agent: str = USER_AGENT):
        self.timeout = (connect_timeout, read_timeout)
        self.session = requests.Session()
        self.session.headers.update({"User-Agent": user_agent})

    def head(self, url: str, headers: Optional[Dict[str, str]] = None) -> HttpResponse:
        try:
            resp = self.session.head(url, headers=headers, timeout=self.timeout, allow_redirects=True)
        except requests.RequestException as e:
            raise TransportError(f"HEAD {url} failed: {e}", url=url) from e
        return HttpResponse(resp.url or url, resp.status_code, resp.headers, body=b"")

    def get(self, url: str, headers: Optional[Dict[str, str]] = None,
            params: Optional[Dict[str, Any]] = None, stream: bool = False) -> HttpResponse:
        try:
            resp = self.session.get(url, headers=headers, params=params,
                                    timeout=self.timeout, stream=stream)
        except requests.RequestException as e:
            raise TransportError(f"GET {url} failed: {e}", url=url) from e

        if not stream:
            return HttpResponse(resp.url or url, resp.status_code, resp.headers, body=resp.content)

        def chunks() -> Iterator[bytes]:
            try:
                for chunk in resp.iter_content(chunk_size=64 * 1024):
                    yield chunk
            except requests.RequestException as e:
                raise TransportError(f"Reading {url} failed: {e}", url=url) from e

        return HttpResponse(resp.url or url, resp.status_code, resp.headers,
                            chunks=chunks(), on_close=resp.close)

    def close(self) -> None:
        self.session.close()


class FeedPreprocessingClient(HttpClient):
    """
    Wraps an HttpClient and preprocesses JSON bodies served by feed domains.

    Ranged (206) responses and non-JSON bodies such as gzip archives pass
    through untouched, as does all traffic to other hosts.
    """

    def __init__(self, inner: HttpClient, preprocessor: Optional[JsonPreprocessor] = None,
                 feed_domains: Optional[List[str]] = None):
        self.inner = inner
        self.preprocessor = preprocessor or JsonPreprocessor()
        self.feed_domains = [d.lower() for d in (feed_domains or ["nvd.nist.gov"])]
        self._lock = threading.Lock()
        self.stats = {"intercepted": 0, "preprocessed": 0}

    def is_feed_url(self, url: str) -> bool:
        host = (urlparse(url).hostname or "").lower()
        return any(host == domain or host.endswith("." + domain) for domain in self.feed_domains)

    def _is_json(self, response: HttpResponse) -> bool:
        if "json" in response.content_type.lower():
            return True
        path = urlparse(response.url).path.lower()
        return path.endswith(".json")

    def head(self, url: str, headers: Optional[Dict[str, str]] = None) -> HttpResponse:
        return self.inner.head(url, headers=headers)

    def get(self, url: str, headers: Optional[Dict[str, str]] = None,
            params: Optional[Dict[str, Any]] = None, stream: bool = False) -> HttpResponse:
        response = self.inner.get(url, headers=headers, params=params, stream=stream)
        if not self.is_feed_url(url) or response.status_code == 206 or not self._is_json(response):
            return response

        with self._lock:
            self.stats["intercepted"] += 1

        try:
            original = response.content
        finally:
            response.close()

        body = self.preprocessor.preprocess(original)
        if body is original:
            return HttpResponse(response.url, response.status_code, response.headers, body=original)

        with self._lock:
            self.stats["preprocessed"] += 1
        logger.debug(f"Preprocessed feed response from {url}")

        headers_out = CaseInsensitiveDict(response.headers)
        headers_out["Content-Length"] = str(len(body))
        return HttpResponse(response.url, response.status_code, headers_out, body=body)

    def close(self) -> None:
        self.inner.close()

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            return dict(self.stats)
