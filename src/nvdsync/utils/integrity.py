"""
integrity.py
Checks that the local vulnerability database file is complete and uncorrupted.
"""

import hashlib
import logging
from dataclasses import dataclass, asdict
from datetime import datetime
from pathlib import Path
from typing import Dict, Any, Optional

from nvdsync.utils.cache_metadata import read_properties, write_properties, utcnow, to_epoch_millis
from nvdsync.utils.config import Settings

BUFFER_SIZE = 64 * 1024
DATABASE_SUFFIXES = (".mv.db", ".h2.db")


@dataclass
class IntegrityReport:
    """Outcome of verifying one database file."""
    valid: bool
    reason: str
    path: Optional[str] = None
    size_bytes: int = 0


@dataclass
class ChecksumRecord:
    """Path-bound SHA-256 of the last validated database."""
    database_path: str
    checksum: str
    size_bytes: int
    validated_time: int


@dataclass
class ValidationResult:
    """Result of post-download validation."""
    valid: bool
    database_path: Optional[str] = None
    database_size_bytes: int = 0
    checksum: Optional[str] = None
    error_message: Optional[str] = None
    validated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if self.validated_at:
            data["validated_at"] = self.validated_at.isoformat()
        return data


def database_base_name(path: Path) -> str:
    name = path.name
    for suffix in DATABASE_SUFFIXES:
        if name.endswith(suffix):
            return name[:-len(suffix)]
    return path.stem


class IntegrityVerifier:
    """Validates the database file: size, header, lock state and checksum."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.checksum_path = settings.checksum_path
        self.logger = logging.getLogger(__name__)

    def find_database(self) -> Optional[Path]:
        """Return the configured database path if a file exists there."""
        path = self.settings.database_path
        return path if path.is_file() else None

    def lock_file_for(self, path: Path) -> Path:
        return path.parent / f"{database_base_name(path)}.lock.db"

    def has_stale_lock(self, path: Path) -> bool:
        lock = self.lock_file_for(path)
        try:
            return lock.is_file() and lock.stat().st_size > 0
        except OSError:
            return False

    def compute_checksum(self, path: Path) -> str:
        sha256 = hashlib.sha256()
        with open(path, "rb") as f:
            for block in iter(lambda: f.read(BUFFER_SIZE), b""):
                sha256.update(block)
        return sha256.hexdigest()

    def _has_header(self, path: Path) -> bool:
        with open(path, "rb") as f:
            head = f.read(self.settings.header_scan_bytes)
        return self.settings.header_signature_bytes in head

    def load_checksum(self) -> Optional[ChecksumRecord]:
        try:
            props = read_properties(self.checksum_path)
        except (OSError, UnicodeDecodeError) as e:
            self.logger.warning(f"Cannot read checksum record: {e}")
            return None
        if not props or not props.get("database.path") or not props.get("database.checksum"):
            return None
        try:
            return ChecksumRecord(
                database_path=props["database.path"],
                checksum=props["database.checksum"],
                size_bytes=int(props.get("database.size") or 0),
                validated_time=int(props.get("validated.time") or 0),
            )
        except ValueError:
            self.logger.debug("Ignoring malformed checksum record")
            return None

    def store_checksum(self, path: Path, checksum: Optional[str] = None) -> ChecksumRecord:
        path = Path(path)
        record = ChecksumRecord(
            database_path=str(path.resolve()),
            checksum=checksum or self.compute_checksum(path),
            size_bytes=path.stat().st_size,
            validated_time=to_epoch_millis(utcnow()),
        )
        write_properties(self.checksum_path, {
            "database.path": record.database_path,
            "database.checksum": record.checksum,
            "database.size": record.size_bytes,
            "validated.time": record.validated_time,
        }, comment="NVD Database Checksum")
        return record

    def clear_checksum(self) -> bool:
        try:
            self.checksum_path.unlink()
            return True
        except FileNotFoundError:
            return False

    def verify(self, path: Optional[Path] = None, check_checksum: bool = True) -> IntegrityReport:
        """
        Verify a database file.

        Checks run in order and stop at the first failure: minimum size,
        header signature, stale lock file, stored checksum (when a record for
        this exact path exists).
        """
        path = Path(path) if path else self.settings.database_path
        if not path.is_file():
            return IntegrityReport(False, "database file not found", str(path))

        try:
            size = path.stat().st_size
            if size < self.settings.min_database_size_bytes:
                return IntegrityReport(False, f"database too small ({size} bytes, "
                                              f"minimum {self.settings.min_database_size_bytes})", str(path), size)

            if not self._has_header(path):
                return IntegrityReport(False, "database header signature missing", str(path), size)

            if self.has_stale_lock(path):
                return IntegrityReport(False, f"stale lock file {self.lock_file_for(path).name}", str(path), size)

            record = self.load_checksum() if check_checksum else None
            if record and record.database_path == str(path.resolve()):
                actual = self.compute_checksum(path)
                if actual != record.checksum:
                    return IntegrityReport(False, "checksum mismatch", str(path), size)
        except OSError as e:
            return IntegrityReport(False, f"cannot read database: {e}", str(path))

        return IntegrityReport(True, "ok", str(path), size)

    def has_valid_database(self, check_checksum: bool = True) -> bool:
        report = self.verify(check_checksum=check_checksum)
        if not report.valid:
            self.logger.debug(f"Database not valid: {report.reason}")
        return report.valid

    def validate_after_download(self) -> ValidationResult:
        """Verify a freshly downloaded database and record its checksum."""
        path = self.settings.database_path
        report = self.verify(path, check_checksum=False)
        if not report.valid:
            self.logger.warning(f"Database validation failed: {report.reason}")
            return ValidationResult(False, str(path), report.size_bytes, error_message=report.reason)

        try:
            record = self.store_checksum(path)
        except OSError as e:
            return ValidationResult(False, str(path), report.size_bytes,
                                    error_message=f"cannot record checksum: {e}")

        self.logger.info(f"Database validated: {path} ({report.size_bytes / 1024 / 1024:.1f} MB)")
        return ValidationResult(True, str(path), report.size_bytes, record.checksum, validated_at=utcnow())
