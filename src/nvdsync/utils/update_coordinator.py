"""
update_coordinator.py
Runs one cache update: validity check, download, validation, recovery and a
single retry. Failures end in a degraded state instead of an exception, so a
scan can still proceed with whatever local data exists.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, Future
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Any, List, Optional
from urllib.parse import urlparse

from nvdsync.utils.cache_metadata import CacheMetadata, MetadataStore, utcnow
from nvdsync.utils.cache_oracle import CacheValidityOracle
from nvdsync.utils.chunked_downloader import ChunkedDownloader, DownloadConfig, DownloadOutcome, DownloadTarget
from nvdsync.utils.config import Settings
from nvdsync.utils.errors import ConfigurationError, NvdSyncError
from nvdsync.utils.freshness_probe import RemoteFreshnessProbe
from nvdsync.utils.http_client import HttpClient, RequestsHttpClient, FeedPreprocessingClient
from nvdsync.utils.integrity import IntegrityVerifier, ValidationResult
from nvdsync.utils.recovery import DatabaseInitializer, RecoveryManager

MAX_ATTEMPTS = 2


class UpdateState(Enum):
    CHECKING_VALIDITY = "checking_validity"
    CACHE_HIT = "cache_hit"
    DOWNLOADING = "downloading"
    VALIDATING = "validating"
    VALID = "valid"
    RECOVERING = "recovering"
    RETRYING = "retrying"
    FAILED = "failed"


@dataclass
class UpdateOutcome:
    """Terminal result of a coordinator run."""
    success: bool
    state: UpdateState
    cache_hit: bool = False
    degraded: bool = False
    attempts: int = 0
    error: Optional[str] = None
    transitions: List[UpdateState] = field(default_factory=list)
    download: Optional[DownloadOutcome] = None
    validation: Optional[ValidationResult] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "state": self.state.value,
            "cache_hit": self.cache_hit,
            "degraded": self.degraded,
            "attempts": self.attempts,
            "error": self.error,
            "transitions": [s.value for s in self.transitions],
            "download": str(self.download) if self.download else None,
            "validation": self.validation.to_dict() if self.validation else None,
        }


class ResilientUpdateCoordinator:
    """Owns the update lifecycle for one cache directory."""

    def __init__(self, settings: Settings, oracle: CacheValidityOracle, downloader: ChunkedDownloader,
                 verifier: IntegrityVerifier, initializer: DatabaseInitializer,
                 recovery: RecoveryManager, store: MetadataStore,
                 probe: Optional[RemoteFreshnessProbe] = None):
        self.settings = settings
        self.oracle = oracle
        self.downloader = downloader
        self.verifier = verifier
        self.initializer = initializer
        self.recovery = recovery
        self.store = store
        self.probe = probe
        self.logger = logging.getLogger(__name__)
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="nvd-update")

    def targets(self) -> List[DownloadTarget]:
        """Files fetched by an update: the database (if configured) and the feed archives."""
        targets = []
        if self.settings.database_url:
            targets.append(DownloadTarget(self.settings.database_url, self.settings.database_path))
        for url in self.settings.feed_urls:
            name = Path(urlparse(url).path).name
            if name:
                targets.append(DownloadTarget(url, self.settings.cache_dir / name))
        return targets

    def run_async(self, force: bool = False) -> "Future[UpdateOutcome]":
        return self._executor.submit(self.run, force)

    def run(self, force: bool = False) -> UpdateOutcome:
        """
        Drive the update to a terminal state.

        Only ConfigurationError escapes; every other failure ends in VALID,
        CACHE_HIT or a degraded FAILED outcome.
        """
        outcome = UpdateOutcome(success=False, state=UpdateState.CHECKING_VALIDITY)
        self._enter(outcome, UpdateState.CHECKING_VALIDITY)
        has_credential = self.settings.has_api_key

        first_time = self.initializer.is_first_time_setup(check_checksum=False)
        if not force and not first_time and self.oracle.is_valid(has_credential):
            self._enter(outcome, UpdateState.CACHE_HIT)
            outcome.success = True
            outcome.cache_hit = True
            self.logger.info("Using cached NVD database")
            return outcome

        self._require_database_source()

        reuse_existing = False
        if first_time:
            init = self.initializer.initialize()
            if init.error_message:
                self.logger.warning(f"Initialization reported: {init.error_message}")
            reuse_existing = init.skipped_download

        api_key = self.settings.api_key if has_credential else None
        while outcome.attempts < MAX_ATTEMPTS:
            outcome.attempts += 1
            retry = outcome.attempts > 1

            if not reuse_existing:
                self._enter(outcome, UpdateState.DOWNLOADING)
                download = self._download(api_key)
                outcome.download = download
                if download.files_downloaded == 0 and download.errors:
                    outcome.error = f"download failed: {download.error}"
                    if self._recover_or_fail(outcome):
                        continue
                    return outcome
            reuse_existing = False

            self._enter(outcome, UpdateState.VALIDATING)
            validation = self.verifier.validate_after_download()
            outcome.validation = validation
            if validation.valid:
                self._record_success(include_remote=not retry)
                self._enter(outcome, UpdateState.VALID)
                outcome.success = True
                outcome.error = None
                return outcome

            outcome.error = f"validation failed: {validation.error_message}"
            if not self._recover_or_fail(outcome):
                return outcome

        return outcome

    def _require_database_source(self) -> None:
        """Fail fast when no configured download can produce the missing database file."""
        database_path = self.settings.database_path
        if database_path.exists():
            return
        if any(t.destination == database_path for t in self.targets()):
            return
        raise ConfigurationError(
            f"No download source produces {database_path}; set database_url "
            f"(NVDSYNC_DATABASE_URL) or place the database file there"
        )

    def _download(self, api_key: Optional[str]) -> DownloadOutcome:
        targets = self.targets()
        if not targets:
            return DownloadOutcome(success=False, errors=["no download sources configured"])
        try:
            return self.downloader.download(targets, api_key).result()
        except NvdSyncError as e:
            return DownloadOutcome(success=False, errors=[str(e)])

    def _recover_or_fail(self, outcome: UpdateOutcome) -> bool:
        """Recover and allow a retry, or finish degraded. Returns True to retry."""
        self.logger.warning(f"Update attempt {outcome.attempts} failed: {outcome.error}")
        if outcome.attempts >= MAX_ATTEMPTS:
            self._enter(outcome, UpdateState.FAILED)
            outcome.degraded = True
            self.logger.error(f"NVD update failed after {outcome.attempts} attempts ({outcome.error}); "
                              f"scanning will continue offline with existing local data")
            return False

        self._enter(outcome, UpdateState.RECOVERING)
        if self.recovery.attempt_recovery():
            self.logger.info("Recovery actions taken, retrying update")
        else:
            self.logger.info("Nothing to recover, retrying update")
        self._enter(outcome, UpdateState.RETRYING)
        return True

    def _record_success(self, include_remote: bool) -> None:
        remote_modified = None
        record_count = None
        if include_remote and self.probe is not None:
            api_key = self.settings.api_key if self.settings.has_api_key else None
            try:
                remote_modified = self.probe.remote_last_modified(api_key)
                record_count = self.probe.remote_record_count(api_key)
            except NvdSyncError as e:
                self.logger.debug(f"Remote state unavailable after update: {e}")

        self.store.save(CacheMetadata(
            last_check_timestamp=utcnow(),
            last_remote_modified=remote_modified,
            last_record_count=record_count,
            update_threshold_percent=self.settings.update_threshold_percent,
        ))
        self.initializer.mark_initialized(True, self.settings.has_api_key)

    def _enter(self, outcome: UpdateOutcome, state: UpdateState) -> None:
        outcome.state = state
        outcome.transitions.append(state)
        self.logger.debug(f"Update state -> {state.value}")

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)
        self.downloader.shutdown()


def build_coordinator(settings: Settings, client: Optional[HttpClient] = None,
                      progress_callback=None) -> ResilientUpdateCoordinator:
    """Wire up the production components for one cache directory."""
    base = client or RequestsHttpClient(settings.connect_timeout, settings.read_timeout)
    http = FeedPreprocessingClient(base, feed_domains=settings.feed_domains)
    store = MetadataStore(settings.metadata_path, settings.update_threshold_percent)
    probe = RemoteFreshnessProbe(http, settings.api_url, settings.probe_url)
    verifier = IntegrityVerifier(settings)
    return ResilientUpdateCoordinator(
        settings=settings,
        oracle=CacheValidityOracle(settings, store, probe),
        downloader=ChunkedDownloader(http, DownloadConfig.from_settings(settings), progress_callback),
        verifier=verifier,
        initializer=DatabaseInitializer(settings, verifier, probe),
        recovery=RecoveryManager(settings, verifier, store),
        store=store,
        probe=probe,
    )
