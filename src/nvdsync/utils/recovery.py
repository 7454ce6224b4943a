"""
recovery.py
First-run initialization and self-healing for the NVD cache directory.
"""

import logging
import shutil
from dataclasses import dataclass, asdict
from datetime import datetime
from pathlib import Path
from typing import Dict, Any, List, Optional

from nvdsync.utils.cache_metadata import (
    MetadataStore, read_properties, write_properties, utcnow, to_epoch_millis, CURRENT_CACHE_VERSION,
)
from nvdsync.utils.config import Settings
from nvdsync.utils.errors import ConfigurationError, NvdSyncError
from nvdsync.utils.freshness_probe import RemoteFreshnessProbe
from nvdsync.utils.integrity import IntegrityVerifier

DEFAULT_ESTIMATED_CVE_COUNT = 200_000
PARTIAL_PATTERNS = ("*.partial", "*.tmp", "*.chunk.*")
LOCK_PATTERNS = ("*.lock.db", "*.lck")


@dataclass
class InitializationResult:
    """What first-run initialization found and decided."""
    start_time: datetime
    end_time: Optional[datetime] = None
    success: bool = False
    environment_valid: bool = False
    api_key_configured: bool = False
    database_valid: bool = False
    skipped_download: bool = False
    download_required: bool = False
    estimated_cve_count: int = 0
    error_message: Optional[str] = None

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["start_time"] = self.start_time.isoformat()
        data["end_time"] = self.end_time.isoformat() if self.end_time else None
        return data


def backup_file(path: Path, backup_dir: Path) -> Path:
    """Copy a file into backup_dir under a timestamped name and return the copy's path."""
    backup_dir.mkdir(parents=True, exist_ok=True)
    stamp = utcnow().strftime("%Y%m%dT%H%M%S%fZ")
    target = backup_dir / f"{path.name}.{stamp}.bak"
    shutil.copy2(path, target)
    return target


def remove_matching(directory: Path, patterns, keep=None) -> List[Path]:
    """Delete files matching any pattern, except those for which keep(path) is true."""
    removed = []
    if not directory.is_dir():
        return removed
    for pattern in patterns:
        for path in directory.glob(pattern):
            if path.is_file() and not (keep and keep(path)):
                path.unlink()
                removed.append(path)
    return removed


def _is_empty(path: Path) -> bool:
    return path.stat().st_size == 0


class DatabaseInitializer:
    """Prepares the cache directory and decides whether a full download is needed."""

    def __init__(self, settings: Settings, verifier: IntegrityVerifier,
                 probe: Optional[RemoteFreshnessProbe] = None):
        self.settings = settings
        self.verifier = verifier
        self.probe = probe
        self.marker_path = settings.marker_path
        self.logger = logging.getLogger(__name__)

    def read_marker(self) -> Optional[Dict[str, str]]:
        return read_properties(self.marker_path)

    def is_first_time_setup(self, check_checksum: bool = True) -> bool:
        """
        True when the marker is missing, the database is invalid, or the marker version differs.

        With check_checksum=False the database is only checked for size, header
        and lock file, which avoids hashing the whole file.
        """
        try:
            marker = self.read_marker()
            if marker is None:
                self.logger.info("No initialization marker found, first-time setup required")
                return True

            if not self.verifier.has_valid_database(check_checksum):
                self.logger.info("Database missing or invalid, setup required")
                return True

            version = marker.get("init.version")
            if version != CURRENT_CACHE_VERSION:
                self.logger.info(f"Initialization version changed ({version} -> {CURRENT_CACHE_VERSION})")
                return True
            return False
        except (OSError, UnicodeDecodeError) as e:
            self.logger.warning(f"Cannot determine setup state ({e}), assuming first-time setup")
            return True

    def validate_environment(self) -> None:
        """Ensure the cache directory is writable and has enough free space."""
        cache_dir = self.settings.cache_dir
        try:
            cache_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(f"Cannot create cache directory {cache_dir}: {e}") from e

        probe_file = cache_dir / ".write-test"
        try:
            probe_file.write_text("ok", encoding="utf-8")
            probe_file.unlink()
        except OSError as e:
            raise ConfigurationError(f"Cache directory {cache_dir} is not writable: {e}") from e

        free = shutil.disk_usage(cache_dir).free
        required = self.settings.min_free_disk_bytes
        if free < required:
            raise ConfigurationError(
                f"Insufficient disk space in {cache_dir}: {free / 1024 / 1024:.0f} MB free, "
                f"{required / 1024 / 1024:.0f} MB required"
            )
        self.logger.debug(f"Environment OK: {free / 1024 / 1024:.0f} MB free in {cache_dir}")

    def clear_partial_downloads(self) -> List[Path]:
        removed = remove_matching(self.settings.cache_dir, PARTIAL_PATTERNS)
        db_dir = self.settings.database_path.parent
        if db_dir != self.settings.cache_dir:
            removed += remove_matching(db_dir, PARTIAL_PATTERNS)
        for path in removed:
            self.logger.debug(f"Removed partial download {path.name}")
        return removed

    def estimate_record_count(self) -> int:
        if self.probe is None:
            return DEFAULT_ESTIMATED_CVE_COUNT
        try:
            count = self.probe.remote_record_count(self.settings.api_key if self.settings.has_api_key else None)
        except NvdSyncError as e:
            self.logger.debug(f"Record count estimate unavailable: {e}")
            return DEFAULT_ESTIMATED_CVE_COUNT
        return count or DEFAULT_ESTIMATED_CVE_COUNT

    def initialize(self) -> InitializationResult:
        """
        Run first-time setup.

        ConfigurationError from environment validation propagates; every other
        problem is reported in the result.
        """
        result = InitializationResult(start_time=utcnow())
        self.validate_environment()
        result.environment_valid = True
        result.api_key_configured = self.settings.has_api_key
        if not result.api_key_configured:
            self.logger.warning("No NVD API key configured; downloads will be rate limited")

        try:
            if self.verifier.has_valid_database():
                self.logger.info("Existing database is valid, skipping download")
                result.database_valid = True
                result.skipped_download = True
                result.success = True
                self.mark_initialized(True, result.api_key_configured)
                return result

            db_path = self.verifier.find_database()
            if db_path is not None:
                backup = backup_file(db_path, self.settings.backup_dir)
                self.logger.warning(f"Existing database failed verification, backed up to {backup}")

            self.clear_partial_downloads()
            result.estimated_cve_count = self.estimate_record_count()
            result.download_required = True
            result.success = True
            self.logger.info(f"Full database download required (~{result.estimated_cve_count:,} CVEs)")
        except OSError as e:
            result.error_message = str(e)
            self.logger.error(f"Initialization failed: {e}")
        finally:
            result.end_time = utcnow()
        return result

    def mark_initialized(self, success: bool = True, api_key_used: bool = False) -> None:
        write_properties(self.marker_path, {
            "init.version": CURRENT_CACHE_VERSION,
            "init.time": to_epoch_millis(utcnow()),
            "init.success": str(success).lower(),
            "api.key.used": str(api_key_used).lower(),
        }, comment="NVD Database Initialization Marker")


class RecoveryManager:
    """Returns a broken cache directory to a clean state without losing data."""

    def __init__(self, settings: Settings, verifier: IntegrityVerifier, store: MetadataStore):
        self.settings = settings
        self.verifier = verifier
        self.store = store
        self.logger = logging.getLogger(__name__)

    def attempt_recovery(self) -> bool:
        """
        Back up a corrupt database, then clear metadata, checksum and stale locks.

        Returns True when any action was taken. A valid database is left in place.
        """
        acted = False
        db_path = self.settings.database_path
        try:
            if db_path.is_file():
                report = self.verifier.verify(db_path)
                if not report.valid:
                    backup = backup_file(db_path, self.settings.backup_dir)
                    db_path.unlink()
                    self.logger.warning(f"Moved corrupt database ({report.reason}) to {backup}")
                    acted = True

            if self.store.clear():
                acted = True
            if self.verifier.clear_checksum():
                self.logger.info("Cleared database checksum record")
                acted = True

            # an empty lock file belongs to a live process
            leftovers = (remove_matching(db_path.parent, LOCK_PATTERNS, keep=_is_empty)
                         + remove_matching(db_path.parent, PARTIAL_PATTERNS))
            for path in leftovers:
                self.logger.info(f"Removed leftover file {path.name}")
                acted = True
        except OSError as e:
            self.logger.error(f"Recovery failed: {e}")
            return acted

        if acted:
            self.logger.info("Cache recovery completed")
        else:
            self.logger.debug("Nothing to recover")
        return acted
