"""Backup and restore of flash regions over a DeviceTransport.

Regions are transferred one after the other in chunks. Every chunk pushes a
ProgressEvent to the optional progress callback. Each run is tracked by its
own Session, which owns the device handle until the run ends.
"""
import contextlib
import threading
import time
from datetime import datetime

from esp_archiver.archive import ArchiveEntry, validate_regions
from esp_archiver.common import (
    Esp_archiverError,
    InvalidRegion,
    SessionCancelled,
    SessionStateError,
    ShortRead,
    TransientIOError,
    WriteFailure,
)
from esp_archiver.const import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_RETRY_ATTEMPTS,
    DEFAULT_RETRY_DELAY,
    DEFAULT_UPLOAD_BAUD_RATE,
)

BACKUP = "backup"
RESTORE = "restore"


class SessionState:
    IDLE = "Idle"
    READING = "Reading"
    WRITING = "Writing"
    VERIFYING = "Verifying"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"

    TERMINAL = (COMPLETED, FAILED, CANCELLED)


class SessionConfig:
    def __init__(
        self,
        port=None,
        chip="auto",
        baud=DEFAULT_UPLOAD_BAUD_RATE,
        chunk_size=DEFAULT_CHUNK_SIZE,
        retry_attempts=DEFAULT_RETRY_ATTEMPTS,
        retry_delay=DEFAULT_RETRY_DELAY,
        allow_overlap=False,
    ):
        if chunk_size <= 0:
            raise Esp_archiverError(f"Chunk size must be positive, got {chunk_size}")
        if retry_attempts < 1:
            raise Esp_archiverError(f"At least one attempt is needed, got {retry_attempts}")
        self.port = port
        self.chip = chip
        self.baud = baud
        self.chunk_size = chunk_size
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self.allow_overlap = allow_overlap


class ProgressEvent:
    def __init__(self, label, bytes_transferred, bytes_total, region_transferred, region_total):
        self.label = label
        self.bytes_transferred = bytes_transferred
        self.bytes_total = bytes_total
        self.region_transferred = region_transferred
        self.region_total = region_total

    def __repr__(self):
        return (f"ProgressEvent({self.label!r}, {self.bytes_transferred}/{self.bytes_total})")


_claimed_handles = set()
_claimed_lock = threading.Lock()


class Session:
    """State of one backup or restore run.

    A session moves from Idle through Reading/Writing and Verifying to one of
    the terminal states and cannot be started again afterwards.
    """

    def __init__(self, kind, device_handle, regions, progress=None):
        self.kind = kind
        self.device_handle = device_handle
        self.regions = list(regions)
        self.bytes_transferred = 0
        self.bytes_total = sum(region.length for region in self.regions)
        self.started_at = None
        self.state = SessionState.IDLE
        self.history = [SessionState.IDLE]
        self.error = None
        self._progress = progress
        self._cancel = threading.Event()

    @property
    def finished(self):
        return self.state in SessionState.TERMINAL

    @property
    def cancel_requested(self):
        return self._cancel.is_set()

    def cancel(self):
        """Stop the run before its next region starts."""
        self._cancel.set()

    def transition(self, state):
        if self.finished:
            raise SessionStateError(f"Session already ended in state {self.state}")
        self.state = state
        self.history.append(state)

    def check_cancelled(self, region):
        if self.cancel_requested:
            raise SessionCancelled(f"{self.kind.capitalize()} cancelled before {region}", region=region)

    def advance(self, region, size, region_transferred):
        self.bytes_transferred += size
        if self._progress is not None:
            self._progress(ProgressEvent(
                region.label, self.bytes_transferred, self.bytes_total,
                region_transferred, region.length,
            ))

    def __enter__(self):
        if self.state != SessionState.IDLE:
            raise SessionStateError("A session can only run once, start a new one")
        with _claimed_lock:
            if id(self.device_handle) in _claimed_handles:
                raise SessionStateError("The device is already in use by another session")
            _claimed_handles.add(id(self.device_handle))
        self.started_at = datetime.now()
        return self

    def __exit__(self, exc_type, exc, tb):
        with _claimed_lock:
            _claimed_handles.discard(id(self.device_handle))
        if exc is None:
            if not self.finished:
                self.transition(SessionState.COMPLETED)
            return False
        self.error = exc
        if isinstance(exc, SessionCancelled):
            self.state = SessionState.CANCELLED
        else:
            self.state = SessionState.FAILED
        self.history.append(self.state)
        return False


class FlashArchiver:
    def __init__(self, transport, config=None, progress=None):
        self.transport = transport
        self.config = config or SessionConfig()
        self.progress = progress
        self.session = None

    @contextlib.contextmanager
    def connect(self):
        device = self.transport.open(self.config.port, self.config.chip)
        try:
            yield device
        finally:
            self.transport.close(device)

    def cancel(self):
        if self.session is not None:
            self.session.cancel()

    def _new_session(self, kind, device, regions):
        self.session = Session(kind, device, regions, self.progress)
        return self.session

    def _call(self, region, func, *args):
        """Run one transport call, retrying transient errors."""
        attempts = self.config.retry_attempts
        for attempt in range(1, attempts + 1):
            try:
                return func(*args)
            except (TransientIOError, TimeoutError) as err:
                if attempt == attempts:
                    raise TransientIOError(
                        f"{region}: {err} (gave up after {attempts} attempts)",
                        region=region,
                    ) from err
                print(f"{region}: {err}, retrying ({attempt}/{attempts})")
                time.sleep(self.config.retry_delay)
            except Esp_archiverError as err:
                raise type(err)(f"{region}: {err}", region=region) from err

    def _read_region(self, session, device, region):
        payload = bytearray()
        while len(payload) < region.length:
            size = min(self.config.chunk_size, region.length - len(payload))
            address = region.start_address + len(payload)
            data = self._call(region, self.transport.read_region, device, address, size)
            if len(data) != size:
                raise ShortRead(
                    f"{region}: device returned 0x{len(data):X} bytes at "
                    f"0x{address:08X}, expected 0x{size:X}",
                    region=region,
                )
            payload += data
            session.advance(region, size, len(payload))
        return bytes(payload)

    def _write_region(self, session, device, entry):
        region = entry.region
        offset = 0
        while offset < region.length:
            chunk = entry.payload[offset:offset + self.config.chunk_size]
            address = region.start_address + offset
            if self._call(region, self.transport.write_region, device, address, chunk) is False:
                raise WriteFailure(
                    f"{region}: device rejected 0x{len(chunk):X} bytes at 0x{address:08X}",
                    region=region,
                )
            offset += len(chunk)
            session.advance(region, len(chunk), offset)

    def backup(self, regions, destination, device):
        """Read regions from the device and append them to destination.

        The destination gets one entry per region, in order, each appended
        only once the whole region has been read. Returns the new entries.
        """
        regions = validate_regions(regions, self.config.allow_overlap)
        session = self._new_session(BACKUP, device, regions)
        entries = []
        with session:
            for region in regions:
                session.check_cancelled(region)
                session.transition(SessionState.READING)
                payload = self._read_region(session, device, region)
                session.transition(SessionState.VERIFYING)
                entry = ArchiveEntry.from_payload(region, payload)
                destination.append(entry)
                entries.append(entry)
        return entries

    def restore(self, archive, device, regions_filter=None):
        """Write archived regions back to the device.

        Checksums of all selected entries are verified before the first
        write. Regions written before a failure stay written.
        """
        entries = archive.select(regions_filter)
        session = self._new_session(RESTORE, device, [entry.region for entry in entries])
        with session:
            session.transition(SessionState.VERIFYING)
            for entry in entries:
                entry.verify()
            for entry in entries:
                session.check_cancelled(entry.region)
                session.transition(SessionState.WRITING)
                self._write_region(session, device, entry)
        return entries


def pending_regions(regions, archive):
    """Return the regions that archive does not hold yet."""
    pending = []
    for region in regions:
        entry = archive.get(region.label)
        if entry is None:
            pending.append(region)
        elif entry.region != region:
            raise InvalidRegion(
                f"{region} does not match the archived {entry.region!r}", region=region
            )
    return pending
