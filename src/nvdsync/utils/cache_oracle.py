"""
cache_oracle.py
Decides whether the local NVD cache can be used or must be refreshed.

The decision is cheap first: metadata, version and the local time window are
checked before any network traffic. Remote checks (last-modified, then record
count) only run when remote validation is enabled, and any failure of those
checks falls back to the local time-window decision.
"""

import logging
from datetime import datetime
from typing import Optional

from nvdsync.utils.cache_metadata import MetadataStore, CacheMetadata, CURRENT_CACHE_VERSION, utcnow
from nvdsync.utils.config import Settings
from nvdsync.utils.errors import NvdSyncError
from nvdsync.utils.freshness_probe import RemoteFreshnessProbe


class CacheValidityOracle:
    """Answers "can the cached database be used?" for one cache directory."""

    def __init__(self, settings: Settings, store: MetadataStore,
                 probe: Optional[RemoteFreshnessProbe] = None, clock=utcnow):
        self.settings = settings
        self.store = store
        self.probe = probe
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    def _local_decision(self, metadata: Optional[CacheMetadata], now: datetime) -> bool:
        if metadata is None:
            self.logger.info("No cache metadata found, update required")
            return False

        if metadata.cache_version != CURRENT_CACHE_VERSION:
            self.logger.info(f"Cache version changed ({metadata.cache_version} -> "
                             f"{CURRENT_CACHE_VERSION}), update required")
            return False

        hours = (now - metadata.last_check_timestamp).total_seconds() / 3600
        if hours >= self.settings.cache_validity_hours:
            self.logger.info(f"Cache expired ({hours:.1f}h >= {self.settings.cache_validity_hours}h), "
                             f"update required")
            return False
        return True

    def is_local_cache_valid(self) -> bool:
        """Metadata, version and time-window checks only; never touches the network."""
        return self._local_decision(self.store.load(), self.clock())

    def is_valid(self, has_credential: bool = False) -> bool:
        """
        Return True when the cached database can be used without refreshing.

        Args:
            has_credential: Whether an NVD API key is configured. Controls the
                minimum re-check interval and whether the key is sent to the probe.
        """
        now = self.clock()
        metadata = self.store.load()
        if not self._local_decision(metadata, now):
            return False

        if not self.settings.remote_validation or self.probe is None:
            self.logger.debug("Remote validation disabled, using local cache decision")
            return True

        minutes = (now - metadata.last_check_timestamp).total_seconds() / 60
        min_interval = (self.settings.min_recheck_minutes if has_credential
                        else self.settings.anonymous_recheck_minutes)
        if minutes < min_interval:
            self.logger.debug(f"Last check {minutes:.0f} min ago (< {min_interval:.0f} min), skipping remote check")
            return True

        api_key = self.settings.api_key if has_credential else None
        try:
            valid = self._remote_decision(metadata, api_key)
        except (NvdSyncError, ValueError, OSError) as e:
            self.logger.warning(f"Remote freshness check failed ({e}), falling back to local cache decision")
            return True

        # None means the remote side gave no answer; the local window still governs
        if valid is None:
            return True
        if valid:
            self.store.touch_last_check(now)
        return valid

    def _remote_decision(self, metadata: CacheMetadata, api_key: Optional[str]) -> Optional[bool]:
        remote_modified = self.probe.remote_last_modified(api_key)
        if remote_modified is None:
            self.logger.info("Remote last-modified unavailable, falling back to local cache decision")
            return None

        stored = metadata.last_remote_modified
        if stored is not None and remote_modified <= stored:
            self.logger.info("Remote data unchanged since last update (timestamp-based cache hit)")
            return True

        if not metadata.last_record_count:
            self.logger.info("Remote data changed and no previous record count, update required")
            return False

        remote_count = self.probe.remote_record_count(api_key)
        if remote_count is None:
            self.logger.info("Remote record count unavailable, falling back to local cache decision")
            return None

        last = metadata.last_record_count
        delta = abs(remote_count - last) * 100.0 / last
        threshold = metadata.update_threshold_percent
        if delta >= threshold:
            self.logger.info(f"Record count changed by {delta:.2f}% ({last} -> {remote_count}), "
                             f"threshold {threshold}%, update required")
            return False

        self.logger.info(f"Record count changed by {delta:.2f}% (< {threshold}%), smart cache hit")
        return True
