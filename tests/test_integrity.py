"""Tests for database integrity verification."""

import hashlib

from conftest import make_database
from nvdsync.utils.cache_metadata import read_properties
from nvdsync.utils.integrity import IntegrityVerifier


class TestVerify:

    def test_valid_database(self, settings, database):
        report = IntegrityVerifier(settings).verify()
        assert report.valid
        assert report.size_bytes == 4096

    def test_missing_database(self, settings):
        verifier = IntegrityVerifier(settings)
        assert verifier.find_database() is None
        assert not verifier.verify().valid
        assert not verifier.has_valid_database()

    def test_too_small(self, settings):
        make_database(settings.database_path, size=512)
        report = IntegrityVerifier(settings).verify()
        assert not report.valid
        assert "too small" in report.reason

    def test_missing_header(self, settings):
        settings.database_path.parent.mkdir(parents=True)
        settings.database_path.write_bytes(b"\x00" * 4096)
        report = IntegrityVerifier(settings).verify()
        assert not report.valid
        assert "header" in report.reason

    def test_header_must_be_near_start(self, settings):
        settings.database_path.parent.mkdir(parents=True)
        settings.database_path.write_bytes(b"\x00" * 40 + b"H2" + b"\x00" * 4000)
        assert not IntegrityVerifier(settings).verify().valid

    def test_stale_lock_file(self, settings, database):
        lock = settings.cache_dir / "odc.lock.db"
        lock.write_bytes(b"locked")
        verifier = IntegrityVerifier(settings)

        assert verifier.lock_file_for(database) == lock
        report = verifier.verify()
        assert not report.valid
        assert "lock" in report.reason

    def test_empty_lock_file_is_ignored(self, settings, database):
        (settings.cache_dir / "odc.lock.db").write_bytes(b"")
        assert IntegrityVerifier(settings).verify().valid

    def test_size_checked_before_header(self, settings):
        settings.database_path.parent.mkdir(parents=True)
        settings.database_path.write_bytes(b"\x00" * 10)
        assert "too small" in IntegrityVerifier(settings).verify().reason


class TestChecksum:

    def test_compute_checksum_streams_whole_file(self, settings):
        path = make_database(settings.database_path, size=200_000)
        expected = hashlib.sha256(path.read_bytes()).hexdigest()
        assert IntegrityVerifier(settings).compute_checksum(path) == expected

    def test_store_and_load_record(self, settings, database):
        verifier = IntegrityVerifier(settings)
        stored = verifier.store_checksum(database)

        props = read_properties(settings.checksum_path)
        assert props["database.path"] == str(database.resolve())
        assert props["database.checksum"] == stored.checksum
        assert props["database.size"] == "4096"
        assert verifier.load_checksum() == stored

    def test_checksum_mismatch_invalidates(self, settings, database):
        verifier = IntegrityVerifier(settings)
        verifier.store_checksum(database)
        with open(database, "r+b") as f:
            f.seek(2000)
            f.write(b"tampered")

        report = verifier.verify()
        assert not report.valid
        assert report.reason == "checksum mismatch"

    def test_record_for_other_path_is_ignored(self, settings, database, tmp_path):
        other = make_database(tmp_path / "elsewhere" / "odc.mv.db", size=2048)
        verifier = IntegrityVerifier(settings)
        verifier.store_checksum(other)
        assert verifier.verify().valid

    def test_clear_checksum(self, settings, database):
        verifier = IntegrityVerifier(settings)
        verifier.store_checksum(database)
        assert verifier.clear_checksum() is True
        assert verifier.clear_checksum() is False
        assert verifier.load_checksum() is None


class TestValidateAfterDownload:

    def test_records_fresh_checksum(self, settings, database):
        verifier = IntegrityVerifier(settings)
        result = verifier.validate_after_download()

        assert result.valid
        assert result.checksum == hashlib.sha256(database.read_bytes()).hexdigest()
        assert verifier.load_checksum().checksum == result.checksum

    def test_replaces_outdated_checksum(self, settings, database):
        verifier = IntegrityVerifier(settings)
        verifier.store_checksum(database)
        make_database(settings.database_path, size=8192)

        result = verifier.validate_after_download()
        assert result.valid
        assert verifier.verify().valid

    def test_invalid_download(self, settings):
        make_database(settings.database_path, size=100)
        result = IntegrityVerifier(settings).validate_after_download()
        assert not result.valid
        assert "too small" in result.error_message
