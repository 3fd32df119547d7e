"""
Shared fixtures: an in-memory device standing in for a serial-attached ESP.
"""

import pytest

from esp_archiver.archiver import SessionConfig
from esp_archiver.common import TransientIOError, TransportUnavailable
from esp_archiver.transport import DeviceTransport


def pattern(size, period=251):
    """Bytes whose value depends on the offset, so shifted data is noticed."""
    return (bytes(range(period)) * (size // period + 1))[:size]


class FakeHandle:
    def __init__(self, port, chip):
        self.port = port
        self.chip = chip


class FakeTransport(DeviceTransport):
    """Flash held in a bytearray, with knobs to inject failures."""

    def __init__(self, size=0x20000, content=None):
        self.flash = bytearray(content if content is not None else pattern(size))
        self.reads = []
        self.writes = []
        self.opened = 0
        self.closed = 0
        self.transient_failures = 0
        self.short_read_at = None
        self.disconnect_at = None
        self.reject_write_at = None

    def open(self, port, chip):
        self.opened += 1
        return FakeHandle(port, chip)

    def close(self, handle):
        self.closed += 1

    def _maybe_fail(self, address):
        if self.disconnect_at is not None and address >= self.disconnect_at:
            raise TransportUnavailable("device disconnected")
        if self.transient_failures:
            self.transient_failures -= 1
            raise TransientIOError(f"timeout at 0x{address:08X}")

    def read_region(self, handle, address, length):
        self.reads.append((address, length))
        self._maybe_fail(address)
        data = bytes(self.flash[address:address + length])
        if self.short_read_at is not None and address <= self.short_read_at < address + length:
            data = data[:self.short_read_at - address]
        return data

    def write_region(self, handle, address, data):
        self._maybe_fail(address)
        if self.reject_write_at is not None and address <= self.reject_write_at < address + len(data):
            return False
        self.writes.append((address, len(data)))
        self.flash[address:address + len(data)] = data
        return True


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def config():
    return SessionConfig(port="/dev/ttyFAKE", chip="esp32c3", chunk_size=0x1000, retry_delay=0)
