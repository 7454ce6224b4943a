"""Shared pytest fixtures for all tests."""

import os
import re
import threading
import time
from pathlib import Path

import pytest

from nvdsync.utils.config import Settings
from nvdsync.utils.errors import TransportError
from nvdsync.utils.http_client import HttpClient, HttpResponse

RANGE_PATTERN = re.compile(r"bytes=(\d+)-(\d+)")


class FakeHttpClient(HttpClient):
    """
    In-memory HttpClient serving registered resources.

    Supports HEAD, full GETs and single Range GETs, plus failure injection:
    transport errors per URL, failed chunks per (url, range start) and short
    chunks that return fewer bytes than requested.
    """

    def __init__(self):
        self.resources = {}
        self.transport_errors = set()
        self.failed_chunks = set()
        self.short_chunks = set()
        self.calls = []
        self._lock = threading.Lock()

    def add(self, url, body=b"", status=200, content_type="application/octet-stream",
            accept_ranges=True, last_modified=None, send_length=True, head_status=None,
            content_encoding=None, wire_length=None):
        self.resources[url] = {
            "body": body,
            "status": status,
            "content_type": content_type,
            "accept_ranges": accept_ranges,
            "last_modified": last_modified,
            "send_length": send_length,
            "head_status": head_status,
            "content_encoding": content_encoding,
            "wire_length": wire_length,
        }

    def _record(self, method, url, headers, params=None):
        with self._lock:
            self.calls.append((method, url, dict(headers or {}), dict(params or {})))

    def calls_for(self, method=None):
        return [c for c in self.calls if method is None or c[0] == method]

    def _headers(self, res, length):
        headers = {"Content-Type": res["content_type"]}
        if res["content_encoding"]:
            # bodies are handed out decoded, Content-Length counts wire bytes
            headers["Content-Encoding"] = res["content_encoding"]
            length = res["wire_length"] or max(1, length // 10)
        if res["send_length"]:
            headers["Content-Length"] = str(length)
        if res["accept_ranges"]:
            headers["Accept-Ranges"] = "bytes"
        if res["last_modified"]:
            headers["Last-Modified"] = res["last_modified"]
        return headers

    def head(self, url, headers=None):
        self._record("HEAD", url, headers)
        if url in self.transport_errors:
            raise TransportError(f"connection refused: {url}", url=url)
        res = self.resources.get(url)
        if res is None:
            return HttpResponse(url, 404, {}, body=b"")
        status = res["head_status"] or res["status"]
        return HttpResponse(url, status, self._headers(res, len(res["body"])), body=b"")

    def get(self, url, headers=None, params=None, stream=False):
        self._record("GET", url, headers, params)
        if url in self.transport_errors:
            raise TransportError(f"connection refused: {url}", url=url)
        res = self.resources.get(url)
        if res is None:
            return HttpResponse(url, 404, {}, body=b"")

        body = res["body"]
        match = RANGE_PATTERN.match((headers or {}).get("Range", ""))
        if match and res["accept_ranges"] and res["status"] == 200:
            start, end = int(match.group(1)), int(match.group(2))
            if (url, start) in self.failed_chunks:
                return HttpResponse(url, 500, {}, body=b"")
            part = body[start:end + 1]
            if (url, start) in self.short_chunks:
                part = part[:-1]
            resp_headers = self._headers(res, len(part))
            resp_headers["Content-Range"] = f"bytes {start}-{end}/{len(body)}"
            return HttpResponse(url, 206, resp_headers, body=part)

        return HttpResponse(url, res["status"], self._headers(res, len(body)), body=body)


def make_database(path, size=4096, header=b"H:2,block:4,blockSize:1000"):
    """Write a fake H2 database file of the given size."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = header + b"H2" + bytes(i % 251 for i in range(max(0, size - len(header) - 2)))
    path.write_bytes(payload[:size])
    return path


def age_file(path, seconds):
    """Move a file's modification time into the past."""
    past = time.time() - seconds
    os.utime(path, (past, past))


@pytest.fixture
def fake_client():
    return FakeHttpClient()


@pytest.fixture
def settings(tmp_path):
    """
    Settings rooted in a temporary cache directory with small limits.

    Args:
        tmp_path: pytest tmp_path fixture

    Returns:
        Settings with a 1 KiB minimum database size and 1 KiB chunks
    """
    return Settings(
        cache_dir=tmp_path / "nvd-cache",
        database_url="https://downloads.example.org/odc.mv.db",
        feed_urls=[],
        min_database_size_bytes=1024,
        min_free_disk_bytes=0,
        chunk_size_bytes=1024,
        max_concurrent_downloads=4,
        recent_file_window_seconds=0.0,
    )


@pytest.fixture
def database(settings):
    """A valid database file at the configured path."""
    return make_database(settings.database_path)
