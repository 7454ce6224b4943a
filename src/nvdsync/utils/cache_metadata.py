"""
cache_metadata.py
Persisted cache state (nvd-cache.properties) and the properties file helpers
shared by the marker and checksum records.
"""

import logging
import os
import tempfile
import threading
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)

CURRENT_CACHE_VERSION = "2.0"

KEY_LAST_CHECK = "last.update.check"
KEY_VERSION = "cache.version"
KEY_REMOTE_MODIFIED = "last.remote.modified"
KEY_RECORD_COUNT = "last.record.count"
KEY_THRESHOLD = "update.threshold.percent"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_epoch_millis(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def from_epoch_millis(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)


def read_properties(path: Path) -> Optional[Dict[str, str]]:
    """Read a key=value properties file. Returns None when the file is missing."""
    try:
        raw = Path(path).read_text(encoding="utf-8")
    except FileNotFoundError:
        return None

    props: Dict[str, str] = {}
    for line in raw.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or line.startswith("!"):
            continue
        positions = [p for p in (line.find("="), line.find(":")) if p >= 0]
        if not positions:
            props[line] = ""
            continue
        sep = min(positions)
        props[line[:sep].strip()] = line[sep + 1:].strip()
    return props


def write_properties(path: Path, props: Dict[str, Any], comment: Optional[str] = None) -> None:
    """Write a properties file atomically (temp file in the same directory, then rename)."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    lines = []
    if comment:
        lines.append(f"# {comment}")
    lines.append(f"# {utcnow().strftime('%a %b %d %H:%M:%S UTC %Y')}")
    for key, value in props.items():
        if value is None:
            continue
        lines.append(f"{key}={value}")

    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write("\n".join(lines) + "\n")
        os.replace(tmp_name, path)
    except OSError:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


@dataclass
class CacheMetadata:
    """State recorded after the last successful update or freshness check."""
    last_check_timestamp: datetime
    cache_version: str = CURRENT_CACHE_VERSION
    last_remote_modified: Optional[datetime] = None
    last_record_count: Optional[int] = None
    update_threshold_percent: float = 5.0

    def to_properties(self) -> Dict[str, Any]:
        return {
            KEY_LAST_CHECK: to_epoch_millis(self.last_check_timestamp),
            KEY_VERSION: self.cache_version,
            KEY_REMOTE_MODIFIED: (to_epoch_millis(self.last_remote_modified)
                                  if self.last_remote_modified else None),
            KEY_RECORD_COUNT: self.last_record_count,
            KEY_THRESHOLD: self.update_threshold_percent,
        }

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["last_check_timestamp"] = self.last_check_timestamp.isoformat()
        if self.last_remote_modified:
            data["last_remote_modified"] = self.last_remote_modified.isoformat()
        return data


def _optional_int(props: Dict[str, str], key: str) -> Optional[int]:
    value = props.get(key)
    if value in (None, ""):
        return None
    try:
        return int(value)
    except ValueError:
        logger.debug(f"Ignoring malformed {key}={value!r}")
        return None


class MetadataStore:
    """Reads and writes nvd-cache.properties for one cache directory."""

    def __init__(self, path: Path, default_threshold: float = 5.0):
        self.path = Path(path)
        self.default_threshold = default_threshold
        self._lock = threading.Lock()

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> Optional[CacheMetadata]:
        """Return the stored metadata, or None when missing or unusable."""
        try:
            props = read_properties(self.path)
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Cannot read cache metadata {self.path}: {e}")
            return None
        if not props:
            return None

        last_check = _optional_int(props, KEY_LAST_CHECK)
        version = props.get(KEY_VERSION)
        if last_check is None or not version:
            logger.debug(f"Cache metadata {self.path} is incomplete")
            return None

        remote_modified = _optional_int(props, KEY_REMOTE_MODIFIED)
        threshold = self.default_threshold
        if props.get(KEY_THRESHOLD):
            try:
                threshold = float(props[KEY_THRESHOLD])
            except ValueError:
                logger.debug(f"Ignoring malformed {KEY_THRESHOLD}={props[KEY_THRESHOLD]!r}")

        return CacheMetadata(
            last_check_timestamp=from_epoch_millis(last_check),
            cache_version=version,
            last_remote_modified=from_epoch_millis(remote_modified) if remote_modified is not None else None,
            last_record_count=_optional_int(props, KEY_RECORD_COUNT),
            update_threshold_percent=threshold,
        )

    def save(self, metadata: CacheMetadata) -> CacheMetadata:
        """
        Replace the stored metadata wholesale.

        The last-check timestamp never moves backwards: an older value than the
        one on disk is clamped to the stored instant.
        """
        with self._lock:
            existing = self.load()
            if existing and metadata.last_check_timestamp < existing.last_check_timestamp:
                metadata.last_check_timestamp = existing.last_check_timestamp
            write_properties(self.path, metadata.to_properties(), comment="NVD Cache Metadata")
        logger.debug(f"Saved cache metadata: {metadata.to_dict()}")
        return metadata

    def touch_last_check(self, when: Optional[datetime] = None) -> Optional[CacheMetadata]:
        """Advance only the last-check timestamp, keeping the other fields."""
        when = when or utcnow()
        with self._lock:
            existing = self.load()
            if existing is None:
                return None
            if when > existing.last_check_timestamp:
                existing.last_check_timestamp = when
                write_properties(self.path, existing.to_properties(), comment="NVD Cache Metadata")
        return existing

    def clear(self) -> bool:
        with self._lock:
            try:
                self.path.unlink()
            except FileNotFoundError:
                return False
        logger.info(f"Cleared cache metadata {self.path}")
        return True
