"""
chunked_downloader.py
Parallel downloader for large NVD files.

Large files are split into byte ranges fetched concurrently and merged in
order. A file is only replaced once every chunk has arrived intact; any chunk
failure discards the whole attempt for that file.
"""

import logging
import math
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor, Future, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from nvdsync.utils.config import API_KEY_HEADER, Settings, MB
from nvdsync.utils.errors import NvdSyncError, DownloadError, TransportError
from nvdsync.utils.http_client import HttpClient

ProgressCallback = Callable[[str, int, Optional[int]], None]

COPY_BUFFER = 64 * 1024


@dataclass
class DownloadConfig:
    """Tunables for the chunked downloader."""
    max_concurrent_downloads: int = 4
    chunk_size_bytes: int = 1 * MB
    connect_timeout: float = 30.0
    read_timeout: float = 60.0
    enable_range_requests: bool = True
    recent_file_window_seconds: float = 3600.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "DownloadConfig":
        return cls(
            max_concurrent_downloads=settings.max_concurrent_downloads,
            chunk_size_bytes=settings.chunk_size_bytes,
            connect_timeout=settings.connect_timeout,
            read_timeout=settings.read_timeout,
            recent_file_window_seconds=settings.recent_file_window_seconds,
        )


@dataclass
class DownloadTarget:
    url: str
    destination: Path

    def __post_init__(self):
        self.destination = Path(self.destination)

    @property
    def name(self) -> str:
        return self.destination.name or os.path.basename(urlparse(self.url).path)


@dataclass
class DownloadChunkDescriptor:
    """One byte range of a file, staged in its own temp file."""
    index: int
    start: int
    end: int
    temp_path: Path
    success: bool = False
    bytes_transferred: int = 0
    error: Optional[str] = None

    @property
    def expected_bytes(self) -> int:
        return self.end - self.start + 1


@dataclass
class FileDownloadResult:
    name: str
    success: bool
    bytes_downloaded: int = 0
    skipped: bool = False
    chunked: bool = False
    error: Optional[str] = None


@dataclass
class DownloadOutcome:
    """Summary of one download batch."""
    success: bool
    total_bytes: int = 0
    duration_ms: int = 0
    files_downloaded: int = 0
    files_skipped: int = 0
    errors: List[str] = field(default_factory=list)
    results: List[FileDownloadResult] = field(default_factory=list)

    @property
    def error(self) -> Optional[str]:
        return "; ".join(self.errors) if self.errors else None

    @property
    def average_speed_mbps(self) -> float:
        if self.duration_ms <= 0:
            return 0.0
        megabits = self.total_bytes * 8 / 1024 / 1024
        return megabits / (self.duration_ms / 1000.0)

    def __str__(self) -> str:
        if self.success:
            return (f"Download completed: {self.files_downloaded} files, "
                    f"{self.total_bytes / 1024 / 1024:.1f} MB in {self.duration_ms / 1000.0:.1f}s "
                    f"({self.average_speed_mbps:.1f} Mbps)")
        return f"Download failed: {self.error or 'no files downloaded'}"


def plan_chunks(destination: Path, length: int, chunk_size: int, max_chunks: int) -> List[DownloadChunkDescriptor]:
    """Split [0, length) into at most max_chunks contiguous ranges."""
    count = max(1, min(max_chunks, math.ceil(length / chunk_size)))
    span = length // count
    chunks = []
    for i in range(count):
        start = i * span
        end = length - 1 if i == count - 1 else start + span - 1
        chunks.append(DownloadChunkDescriptor(i, start, end, destination.with_name(f"{destination.name}.chunk.{i}")))
    return chunks


def _unlink_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass


class ChunkedDownloader:
    """Downloads files with concurrent ranged GETs, falling back to a single stream."""

    def __init__(self, client: HttpClient, config: Optional[DownloadConfig] = None,
                 progress_callback: Optional[ProgressCallback] = None):
        self.client = client
        self.config = config or DownloadConfig()
        self.progress_callback = progress_callback
        self.logger = logging.getLogger(__name__)

        workers = self.config.max_concurrent_downloads
        # Separate pools: file tasks block on chunk futures
        self._file_pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="nvd-file")
        self._chunk_pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="nvd-chunk")
        self._batch_pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="nvd-batch")

        self._bytes_lock = threading.Lock()
        self._total_bytes = 0

    @property
    def total_bytes_downloaded(self) -> int:
        with self._bytes_lock:
            return self._total_bytes

    def _add_bytes(self, name: str, amount: int, done: int, total: Optional[int]) -> None:
        with self._bytes_lock:
            self._total_bytes += amount
        if self.progress_callback:
            self.progress_callback(name, done, total)

    def _headers(self, api_key: Optional[str]) -> Dict[str, str]:
        headers = {"Accept-Encoding": "identity"}
        if api_key:
            headers[API_KEY_HEADER] = api_key
        return headers

    def is_recent(self, path: Path) -> bool:
        try:
            age = time.time() - path.stat().st_mtime
        except FileNotFoundError:
            return False
        return age < self.config.recent_file_window_seconds

    def download(self, targets: List[DownloadTarget], api_key: Optional[str] = None) -> "Future[DownloadOutcome]":
        """Download all targets concurrently. Returns a future for the batch outcome."""
        return self._batch_pool.submit(self._run_batch, list(targets), api_key)

    def download_url(self, url: str, destination: Path, api_key: Optional[str] = None) -> "Future[DownloadOutcome]":
        return self.download([DownloadTarget(url, destination)], api_key)

    def _run_batch(self, targets: List[DownloadTarget], api_key: Optional[str]) -> DownloadOutcome:
        started = time.monotonic()
        self.logger.info(f"Starting download of {len(targets)} file(s)")

        futures = {self._file_pool.submit(self.download_file, target, api_key): target for target in targets}
        results = []
        for future in as_completed(futures):
            target = futures[future]
            try:
                results.append(future.result())
            except Exception as e:
                self.logger.error(f"Unexpected failure downloading {target.name}: {e}")
                results.append(FileDownloadResult(target.name, False, error=str(e)))

        errors = [f"{r.name}: {r.error}" for r in results if not r.success]
        outcome = DownloadOutcome(
            success=not errors,
            total_bytes=sum(r.bytes_downloaded for r in results if r.success),
            duration_ms=int((time.monotonic() - started) * 1000),
            files_downloaded=sum(1 for r in results if r.success and not r.skipped),
            files_skipped=sum(1 for r in results if r.skipped),
            errors=errors,
            results=results,
        )
        if outcome.success:
            self.logger.info(str(outcome))
        else:
            self.logger.warning(str(outcome))
        return outcome

    def download_file(self, target: DownloadTarget, api_key: Optional[str] = None) -> FileDownloadResult:
        """Download one file, blocking until it is complete or has failed."""
        dest = target.destination
        if self.is_recent(dest):
            self.logger.info(f"Skipping {target.name}: modified within the last "
                             f"{self.config.recent_file_window_seconds / 3600:.1f}h")
            return FileDownloadResult(target.name, True, skipped=True)

        dest.parent.mkdir(parents=True, exist_ok=True)
        headers = self._headers(api_key)

        try:
            length, ranges = self._probe(target.url, headers)
            chunk_size = self.config.chunk_size_bytes
            if (length is None or length < chunk_size * 2
                    or not self.config.enable_range_requests or not ranges):
                size = self._download_single(target, headers)
                return FileDownloadResult(target.name, True, size)

            size = self._download_chunked(target, length, headers)
            return FileDownloadResult(target.name, True, size, chunked=True)
        except (NvdSyncError, OSError) as e:
            self.logger.warning(f"Download of {target.name} failed: {e}")
            return FileDownloadResult(target.name, False, error=str(e))

    def _probe(self, url: str, headers: Dict[str, str]) -> Tuple[Optional[int], bool]:
        try:
            response = self.client.head(url, headers=headers)
        except TransportError as e:
            self.logger.debug(f"HEAD {url} failed ({e}), using single stream")
            return None, False
        if not response.ok:
            self.logger.debug(f"HEAD {url} returned {response.status_code}, using single stream")
            return None, False
        if response.is_encoded:
            self.logger.debug(f"HEAD {url} reports {response.content_encoding} encoding, using single stream")
            return None, False
        return response.content_length, response.accepts_ranges

    def _download_single(self, target: DownloadTarget, headers: Dict[str, str]) -> int:
        dest = target.destination
        partial = dest.with_name(dest.name + ".partial")
        written = 0
        try:
            with self.client.get(target.url, headers=headers, stream=True) as response:
                if not response.ok:
                    raise DownloadError(f"HTTP {response.status_code} from {target.url}")
                # Content-Length of an encoded body counts wire bytes, not decoded ones
                total = None if response.is_encoded else response.content_length
                with open(partial, "wb") as f:
                    for block in response.iter_content(COPY_BUFFER):
                        f.write(block)
                        written += len(block)
                        self._add_bytes(target.name, len(block), written, total)
                if total is not None and written != total:
                    raise DownloadError(f"Incomplete download of {target.name}: {written}/{total} bytes")
            os.replace(partial, dest)
        except BaseException:
            _unlink_quietly(partial)
            raise
        self.logger.info(f"Downloaded {target.name} ({written / 1024 / 1024:.1f} MB, single stream)")
        return written

    def _download_chunked(self, target: DownloadTarget, length: int, headers: Dict[str, str]) -> int:
        dest = target.destination
        chunks = plan_chunks(dest, length, self.config.chunk_size_bytes, self.config.max_concurrent_downloads)
        self.logger.info(f"Downloading {target.name} ({length / 1024 / 1024:.1f} MB) in {len(chunks)} chunks")

        progress = _SharedProgress(target.name, length, self)
        try:
            futures = [self._chunk_pool.submit(self._download_chunk, target.url, chunk, headers, progress)
                       for chunk in chunks]
            for future in futures:
                future.result()

            failed = [c for c in chunks if not c.success]
            if failed:
                raise DownloadError(f"{len(failed)} of {len(chunks)} chunks failed for {target.name}: "
                                    f"{failed[0].error}")

            self._merge(chunks, dest)
        finally:
            for chunk in chunks:
                _unlink_quietly(chunk.temp_path)

        return length

    def _download_chunk(self, url: str, chunk: DownloadChunkDescriptor,
                        headers: Dict[str, str], progress: "_SharedProgress") -> None:
        range_headers = dict(headers)
        range_headers["Range"] = f"bytes={chunk.start}-{chunk.end}"
        try:
            with self.client.get(url, headers=range_headers, stream=True) as response:
                if response.status_code != 206:
                    raise DownloadError(f"chunk {chunk.index} expected HTTP 206, got {response.status_code}")
                with open(chunk.temp_path, "wb") as f:
                    for block in response.iter_content(COPY_BUFFER):
                        f.write(block)
                        chunk.bytes_transferred += len(block)
                        progress.advance(len(block))
            if chunk.bytes_transferred != chunk.expected_bytes:
                raise DownloadError(f"chunk {chunk.index} size mismatch: "
                                    f"{chunk.bytes_transferred}/{chunk.expected_bytes} bytes")
            chunk.success = True
        except (NvdSyncError, OSError) as e:
            chunk.success = False
            chunk.error = str(e)
            self.logger.debug(f"Chunk {chunk.index} of {url} failed: {e}")

    def _merge(self, chunks: List[DownloadChunkDescriptor], dest: Path) -> None:
        partial = dest.with_name(dest.name + ".partial")
        try:
            with open(partial, "wb") as out:
                for chunk in sorted(chunks, key=lambda c: c.index):
                    with open(chunk.temp_path, "rb") as src:
                        for block in iter(lambda: src.read(COPY_BUFFER), b""):
                            out.write(block)
            os.replace(partial, dest)
        except BaseException:
            _unlink_quietly(partial)
            raise

    def shutdown(self, wait: bool = True) -> None:
        self._batch_pool.shutdown(wait=wait)
        self._file_pool.shutdown(wait=wait)
        self._chunk_pool.shutdown(wait=wait)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()


class _SharedProgress:
    """Byte counter shared by the chunks of one file."""

    def __init__(self, name: str, total: int, downloader: ChunkedDownloader):
        self.name = name
        self.total = total
        self.done = 0
        self._lock = threading.Lock()
        self._downloader = downloader

    def advance(self, amount: int) -> None:
        with self._lock:
            self.done += amount
            done = self.done
        self._downloader._add_bytes(self.name, amount, done, self.total)
