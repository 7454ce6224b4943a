"""Tests for the cache validity decision."""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from nvdsync.utils.cache_metadata import CacheMetadata, MetadataStore
from nvdsync.utils.cache_oracle import CacheValidityOracle
from nvdsync.utils.errors import ProbeError
from nvdsync.utils.freshness_probe import RemoteFreshnessProbe

NOW = datetime(2026, 5, 4, 9, 30, 0, tzinfo=timezone.utc)
API_URL = "https://services.nvd.nist.gov/rest/json/cves/2.0"


def _probe(modified=None, count=None):
    probe = MagicMock(spec=RemoteFreshnessProbe)
    probe.remote_last_modified.return_value = modified
    probe.remote_record_count.return_value = count
    return probe


@pytest.fixture
def store(settings):
    return MetadataStore(settings.metadata_path)


def _write(store, hours_ago, remote_modified=None, count=None, threshold=5.0, version="2.0"):
    store.clear()
    store.save(CacheMetadata(
        last_check_timestamp=NOW - timedelta(hours=hours_ago),
        cache_version=version,
        last_remote_modified=remote_modified,
        last_record_count=count,
        update_threshold_percent=threshold,
    ))


def _oracle(settings, store, probe=None, remote=True):
    settings.remote_validation = remote
    return CacheValidityOracle(settings, store, probe, clock=lambda: NOW)


class TestLocalDecision:

    def test_no_metadata_is_invalid(self, settings, store):
        probe = _probe()
        assert _oracle(settings, store, probe).is_valid(True) is False
        probe.remote_last_modified.assert_not_called()

    def test_version_mismatch_is_invalid(self, settings, store):
        _write(store, 1, version="1.0")
        assert _oracle(settings, store, remote=False).is_valid() is False

    def test_expired_window_is_invalid(self, settings, store):
        _write(store, 25)
        assert _oracle(settings, store, remote=False).is_valid() is False

    def test_window_boundary_is_invalid(self, settings, store):
        _write(store, 24)
        assert _oracle(settings, store, remote=False).is_valid() is False

    def test_remote_disabled_fast_path_does_no_io(self, settings, store):
        _write(store, 10)
        before = settings.metadata_path.read_bytes()
        probe = _probe()

        assert _oracle(settings, store, probe, remote=False).is_valid(True) is True
        probe.remote_last_modified.assert_not_called()
        probe.remote_record_count.assert_not_called()
        assert settings.metadata_path.read_bytes() == before

    def test_is_local_cache_valid(self, settings, store):
        _write(store, 2)
        assert _oracle(settings, store, _probe()).is_local_cache_valid() is True


class TestRemoteDecision:

    def test_recent_check_skips_network(self, settings, store):
        _write(store, 0.5)
        probe = _probe()
        assert _oracle(settings, store, probe).is_valid(True) is True
        probe.remote_last_modified.assert_not_called()

    def test_anonymous_interval_is_longer(self, settings, store):
        _write(store, 2)
        probe = _probe(modified=NOW, count=1000)

        assert _oracle(settings, store, probe).is_valid(False) is True
        probe.remote_last_modified.assert_not_called()

        _oracle(settings, store, probe).is_valid(True)
        probe.remote_last_modified.assert_called_once()

    def test_unchanged_timestamp_is_cache_hit(self, settings, store):
        stamp = NOW - timedelta(days=1)
        _write(store, 2, remote_modified=stamp, count=1000)
        probe = _probe(modified=stamp)

        assert _oracle(settings, store, probe).is_valid(True) is True
        probe.remote_record_count.assert_not_called()
        assert store.load().last_check_timestamp == NOW

    def test_changed_without_prior_count_is_invalid(self, settings, store):
        _write(store, 2, remote_modified=NOW - timedelta(days=2))
        probe = _probe(modified=NOW - timedelta(hours=1), count=5000)
        assert _oracle(settings, store, probe).is_valid(True) is False
        probe.remote_record_count.assert_not_called()

    def test_small_change_is_smart_cache_hit(self, settings, store):
        # 1000 -> 1040 is a 4% change, below the 5% threshold
        _write(store, 10, remote_modified=NOW - timedelta(days=2), count=1000)
        probe = _probe(modified=NOW - timedelta(hours=1), count=1040)
        assert _oracle(settings, store, probe).is_valid(True) is True
        assert store.load().last_check_timestamp == NOW

    def test_large_change_requires_update(self, settings, store):
        _write(store, 10, remote_modified=NOW - timedelta(days=2), count=1000)
        probe = _probe(modified=NOW - timedelta(hours=1), count=1060)
        assert _oracle(settings, store, probe).is_valid(True) is False
        assert store.load().last_check_timestamp == NOW - timedelta(hours=10)

    def test_delta_equal_to_threshold_requires_update(self, settings, store):
        _write(store, 10, remote_modified=NOW - timedelta(days=2), count=1000)
        probe = _probe(modified=NOW - timedelta(hours=1), count=950)
        assert _oracle(settings, store, probe).is_valid(True) is False

    def test_probe_failure_falls_back_to_local(self, settings, store):
        _write(store, 10, remote_modified=NOW - timedelta(days=2), count=1000)
        probe = _probe()
        probe.remote_last_modified.side_effect = ProbeError("timeout")
        assert _oracle(settings, store, probe).is_valid(True) is True
        assert store.load().last_check_timestamp == NOW - timedelta(hours=10)

    def test_missing_remote_data_falls_back_to_local(self, settings, store):
        _write(store, 10, remote_modified=NOW - timedelta(days=2), count=1000)
        assert _oracle(settings, store, _probe(modified=None)).is_valid(True) is True
        assert store.load().last_check_timestamp == NOW - timedelta(hours=10)
        _write(store, 10, remote_modified=NOW - timedelta(days=2), count=1000)
        assert _oracle(settings, store, _probe(modified=NOW, count=None)).is_valid(True) is True
        assert store.load().last_check_timestamp == NOW - timedelta(hours=10)

    def test_unanswered_remote_checks_still_expire(self, settings, store):
        _write(store, 0, remote_modified=NOW - timedelta(days=2), count=1000)
        settings.remote_validation = True
        probe = _probe(modified=None)
        results = []
        for hours in (20, 40, 60, 80):
            oracle = CacheValidityOracle(settings, store, probe, clock=lambda h=hours: NOW + timedelta(hours=h))
            results.append(oracle.is_valid(True))
        assert results == [True, False, False, False]
        assert store.load().last_check_timestamp == NOW

    def test_api_key_only_sent_with_credential(self, settings, store):
        settings.api_key = "secret-key"
        stamp = NOW - timedelta(days=1)
        _write(store, 5, remote_modified=stamp, count=10)
        probe = _probe(modified=stamp)

        _oracle(settings, store, probe).is_valid(True)
        probe.remote_last_modified.assert_called_with("secret-key")

        _write(store, 5, remote_modified=stamp, count=10)
        _oracle(settings, store, probe).is_valid(False)
        probe.remote_last_modified.assert_called_with(None)

    def test_works_with_real_probe(self, settings, store, fake_client):
        fake_client.add(API_URL, body=b'{"totalResults": 1010}', content_type="application/json",
                        last_modified="Mon, 04 May 2026 08:00:00 GMT")
        _write(store, 10, remote_modified=NOW - timedelta(days=3), count=1000)
        probe = RemoteFreshnessProbe(fake_client, API_URL)

        assert _oracle(settings, store, probe).is_valid(True) is True
        assert [c[0] for c in fake_client.calls] == ["HEAD", "GET"]


class TestProperties:

    def test_repeated_calls_agree(self, settings, store):
        _write(store, 10, remote_modified=NOW - timedelta(days=2), count=1000)
        oracle = _oracle(settings, store, _probe(modified=NOW - timedelta(hours=1), count=1020))
        assert oracle.is_valid(True) == oracle.is_valid(True)

    @pytest.mark.parametrize("remote_count", [1000, 1010, 1049, 1051, 1200, 900])
    def test_raising_threshold_never_invalidates(self, settings, store, remote_count):
        results = []
        for threshold in (1.0, 5.0, 10.0, 50.0):
            _write(store, 10, remote_modified=NOW - timedelta(days=2), count=1000, threshold=threshold)
            probe = _probe(modified=NOW - timedelta(hours=1), count=remote_count)
            results.append(_oracle(settings, store, probe).is_valid(True))
        assert results == sorted(results)
