"""
Unit tests for the flash archiver.

Tests cover:
- Backup ordering, payload sizes and progress events
- Retry of transient errors and fatal transport failures
- Checksum verification before restore
- Session states, cancellation and handle ownership
"""

import pytest

from esp_archiver.archive import Archive, Region
from esp_archiver.archiver import (
    FlashArchiver,
    Session,
    SessionConfig,
    SessionState,
    pending_regions,
)
from esp_archiver.common import (
    ChecksumMismatch,
    Esp_archiverError,
    InvalidRegion,
    SessionCancelled,
    SessionStateError,
    ShortRead,
    TransientIOError,
    TransportUnavailable,
    WriteFailure,
)

from .conftest import FakeTransport, pattern

REGIONS = [
    Region(0x0, 0x3000, "bootloader"),
    Region(0x8000, 0xC00, "partitions"),
    Region(0x10000, 0x4800, "app0"),
]


def backup(transport, config, regions=REGIONS, progress=None):
    archiver = FlashArchiver(transport, config, progress)
    archive = Archive()
    with archiver.connect() as device:
        archiver.backup(regions, archive, device)
    return archiver, archive


class TestBackup:
    """Tests for reading regions into an archive."""

    def test_one_entry_per_region_in_order(self, transport, config):
        """N regions give N entries in request order with full payloads."""
        _, archive = backup(transport, config)
        assert archive.regions == REGIONS
        for entry in archive:
            region = entry.region
            assert len(entry.payload) == region.length
            assert entry.payload == bytes(transport.flash[region.start_address:region.end_address])
            entry.verify()

    def test_reads_in_chunks(self, transport, config):
        """Regions are read chunk by chunk, the last chunk being shorter."""
        backup(transport, config, [Region(0x10000, 0x2800, "app0")])
        assert transport.reads == [(0x10000, 0x1000), (0x11000, 0x1000), (0x12000, 0x800)]

    def test_progress(self, transport, config):
        """Progress is non-decreasing and ends at the total byte count."""
        events = []
        backup(transport, config, progress=events.append)
        total = sum(region.length for region in REGIONS)
        assert events[-1].bytes_transferred == total
        assert all(event.bytes_total == total for event in events)
        transferred = [event.bytes_transferred for event in events]
        assert transferred == sorted(transferred)
        last_per_region = {}
        for event in events:
            last_per_region[event.label] = event.region_transferred
        assert last_per_region == {region.label: region.length for region in REGIONS}

    def test_single_region_progress(self, transport):
        """For a region of length L in chunks of C, the final event reports L."""
        config = SessionConfig(chunk_size=0x300, retry_delay=0)
        events = []
        backup(transport, config, [Region(0x0, 0x1000, "x")], events.append)
        assert len(events) == 6
        assert events[-1].bytes_transferred == 0x1000

    def test_short_read(self, transport, config):
        """A short read fails the backup and leaves no entry for that region."""
        transport.short_read_at = 0x10000 + 0x1800
        with pytest.raises(ShortRead) as excinfo:
            backup(transport, config)
        assert excinfo.value.region.label == "app0"
        assert "app0" in str(excinfo.value)

    def test_short_read_keeps_prior_entries(self, transport, config):
        """Completed regions stay in the destination after a failure."""
        transport.short_read_at = 0x10000
        archiver = FlashArchiver(transport, config)
        archive = Archive()
        with pytest.raises(ShortRead):
            with archiver.connect() as device:
                archiver.backup(REGIONS, archive, device)
        assert archive.labels == ["bootloader", "partitions"]
        assert archiver.session.state == SessionState.FAILED

    def test_short_read_is_not_retried(self, transport, config):
        """Short reads mean protocol desync and are not retried."""
        transport.short_read_at = 0x0
        with pytest.raises(ShortRead):
            backup(transport, config, [Region(0x0, 0x1000, "x")])
        assert len(transport.reads) == 1

    def test_transient_errors_are_retried(self, transport, config):
        """A couple of transient errors still complete the backup."""
        transport.transient_failures = 2
        _, archive = backup(transport, config)
        assert archive.regions == REGIONS
        archive.verify()

    def test_transient_errors_exhaust_retries(self, transport, config):
        """After the configured attempts a transient error is fatal."""
        transport.transient_failures = 3
        with pytest.raises(TransientIOError) as excinfo:
            backup(transport, config)
        assert excinfo.value.region.label == "bootloader"
        assert len(transport.reads) == 3

    def test_timeouts_count_as_transient(self, config):
        """A TimeoutError from the transport is retried like any I/O error."""

        class FlakyTransport(FakeTransport):
            calls = 0

            def read_region(self, handle, address, length):
                self.calls += 1
                if self.calls == 1:
                    raise TimeoutError("serial read timed out")
                return super().read_region(handle, address, length)

        transport = FlakyTransport()
        _, archive = backup(transport, config, [Region(0x0, 0x1000, "x")])
        assert archive.labels == ["x"]

    def test_disconnect_is_fatal(self, transport, config):
        """A disconnect fails at once, naming the region."""
        transport.disconnect_at = 0x8000
        with pytest.raises(TransportUnavailable) as excinfo:
            backup(transport, config)
        assert excinfo.value.region.label == "partitions"
        assert transport.reads[-1] == (0x8000, 0xC00)
        assert transport.closed == 1

    def test_overlapping_regions_rejected(self, transport, config):
        """Overlap is checked before the device is touched."""
        regions = [Region(0x0, 0x2000, "a"), Region(0x1000, 0x2000, "b")]
        with pytest.raises(InvalidRegion):
            backup(transport, config, regions)
        assert transport.reads == []


class TestRestore:
    """Tests for writing an archive back to a device."""

    def test_round_trip(self, transport, config):
        """Restoring a backup onto an erased device reproduces the content."""
        original = bytes(transport.flash)
        _, archive = backup(transport, config)

        target = FakeTransport(content=b"\xff" * len(original))
        archiver = FlashArchiver(target, config)
        with archiver.connect() as device:
            archiver.restore(archive, device)
        for region in REGIONS:
            assert target.flash[region.start_address:region.end_address] == \
                original[region.start_address:region.end_address]
        assert archiver.session.state == SessionState.COMPLETED

    def test_filter(self, transport, config):
        """Only the selected regions are written."""
        _, archive = backup(transport, config)
        target = FakeTransport(content=b"\xff" * len(transport.flash))
        archiver = FlashArchiver(target, config)
        with archiver.connect() as device:
            archiver.restore(archive, device, ["partitions"])
        assert {address for address, _ in target.writes} == {0x8000}

    def test_corrupt_archive_writes_nothing(self, transport, config):
        """One altered byte anywhere means zero device writes."""
        _, archive = backup(transport, config)
        entry = archive.get("app0")
        payload = bytearray(entry.payload)
        payload[0x123] ^= 0x01
        entry.payload = bytes(payload)

        target = FakeTransport(content=b"\xff" * len(transport.flash))
        archiver = FlashArchiver(target, config)
        with pytest.raises(ChecksumMismatch) as excinfo:
            with archiver.connect() as device:
                archiver.restore(archive, device)
        assert excinfo.value.region.label == "app0"
        assert target.writes == []
        assert archiver.session.history[-2:] == [SessionState.VERIFYING, SessionState.FAILED]

    def test_write_failure_keeps_prior_writes(self, transport, config):
        """A rejected write aborts, regions already written stay written."""
        _, archive = backup(transport, config)
        target = FakeTransport(content=b"\xff" * len(transport.flash))
        target.reject_write_at = 0x8000
        archiver = FlashArchiver(target, config)
        with pytest.raises(WriteFailure) as excinfo:
            with archiver.connect() as device:
                archiver.restore(archive, device)
        assert excinfo.value.region.label == "partitions"
        assert target.flash[0x0:0x3000] == transport.flash[0x0:0x3000]
        assert all(address < 0x8000 for address, _ in target.writes)

    def test_transient_write_errors_are_retried(self, transport, config):
        """Writes retry transient errors like reads do."""
        _, archive = backup(transport, config)
        target = FakeTransport(content=b"\xff" * len(transport.flash))
        target.transient_failures = 2
        archiver = FlashArchiver(target, config)
        with archiver.connect() as device:
            archiver.restore(archive, device)
        assert target.flash[0x10000:0x14800] == transport.flash[0x10000:0x14800]

    def test_progress(self, transport, config):
        """Restore reports progress like backup."""
        _, archive = backup(transport, config)
        events = []
        archiver = FlashArchiver(FakeTransport(), config, events.append)
        with archiver.connect() as device:
            archiver.restore(archive, device)
        assert events[-1].bytes_transferred == events[-1].bytes_total == 0x3000 + 0xC00 + 0x4800


class TestSession:
    """Tests for session states and ownership."""

    def test_backup_states(self, transport, config):
        """Backup alternates reading and verifying, then completes."""
        archiver, _ = backup(transport, config, REGIONS[:2])
        assert archiver.session.history == [
            SessionState.IDLE,
            SessionState.READING, SessionState.VERIFYING,
            SessionState.READING, SessionState.VERIFYING,
            SessionState.COMPLETED,
        ]
        assert archiver.session.started_at is not None

    def test_session_runs_once(self):
        """A finished session cannot be started again."""
        session = Session("backup", object(), [])
        with session:
            pass
        assert session.state == SessionState.COMPLETED
        with pytest.raises(SessionStateError):
            with session:
                pass

    def test_handle_is_exclusive(self):
        """Two live sessions cannot share a device handle."""
        handle = object()
        with Session("backup", handle, []):
            with pytest.raises(SessionStateError):
                with Session("restore", handle, []):
                    pass
        with Session("restore", handle, []):
            pass

    def test_cancel_between_regions(self, transport, config):
        """Cancelling keeps only fully completed entries."""
        archive = Archive()

        def cancel_after_first(event):
            if event.label == "bootloader" and event.region_transferred == event.region_total:
                archiver.cancel()

        archiver = FlashArchiver(transport, config, cancel_after_first)
        with pytest.raises(SessionCancelled) as excinfo:
            with archiver.connect() as device:
                archiver.backup(REGIONS, archive, device)
        assert archive.labels == ["bootloader"]
        assert excinfo.value.region.label == "partitions"
        assert archiver.session.state == SessionState.CANCELLED
        assert all(address < 0x8000 for address, _ in transport.reads)

    def test_failure_is_terminal(self, transport, config):
        """Every error ends the session in Failed and is kept on it."""
        transport.disconnect_at = 0x0
        archiver = FlashArchiver(transport, config)
        with pytest.raises(Esp_archiverError):
            with archiver.connect() as device:
                archiver.backup(REGIONS, Archive(), device)
        assert archiver.session.state == SessionState.FAILED
        assert isinstance(archiver.session.error, TransportUnavailable)


class TestConfig:
    """Tests for session configuration."""

    def test_defaults(self):
        """Three attempts and 64KB chunks by default."""
        config = SessionConfig()
        assert config.retry_attempts == 3
        assert config.chunk_size == 0x10000
        assert config.chip == "auto"

    def test_invalid_values(self):
        """Nonsensical values are rejected up front."""
        with pytest.raises(Esp_archiverError):
            SessionConfig(chunk_size=0)
        with pytest.raises(Esp_archiverError):
            SessionConfig(retry_attempts=0)


class TestPendingRegions:
    """Tests for resuming a partial backup."""

    def test_skips_archived(self, transport, config):
        """Regions already archived are skipped."""
        _, archive = backup(transport, config, REGIONS[:1])
        assert pending_regions(REGIONS, archive) == REGIONS[1:]

    def test_mismatched_region(self, transport, config):
        """A label archived with other bounds cannot be resumed."""
        _, archive = backup(transport, config, REGIONS[:1])
        with pytest.raises(InvalidRegion):
            pending_regions([Region(0x0, 0x4000, "bootloader")], archive)


class TestFullDump:
    """The documented workflow: full flash plus app0 in one archive."""

    def test_full_flash_and_app0(self):
        """Both ranges restore byte-identical, in order."""
        flash = pattern(0x1000000)
        source = FakeTransport(content=flash)
        regions = [Region(0x0, 0x1000000, "firmware"), Region(0x10000, 0x640000, "app0")]
        config = SessionConfig(allow_overlap=True, retry_delay=0)

        _, archive = backup(source, config, regions)
        assert archive.labels == ["firmware", "app0"]

        target = FakeTransport(content=b"\xff" * 0x1000000)
        archiver = FlashArchiver(target, config)
        with archiver.connect() as device:
            archiver.restore(archive, device)

        assert bytes(target.flash) == flash
        assert bytes(target.flash[0x10000:0x650000]) == flash[0x10000:0x650000]
        written = [address for address, _ in target.writes]
        assert written[0] == 0x0
        assert written[0x1000000 // 0x10000] == 0x10000
        assert len(written) == (0x1000000 + 0x640000) // 0x10000
