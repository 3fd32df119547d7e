"""Region dumps and the archive container they are stored in.

An archive file is a header followed by complete entries up to EOF::

    header: magic (8s) | version (u16) | checksum name length (u16) | name
    entry:  label length (u16) | label | start (u32) | length (u32)
            | digest length (u16) | digest | payload

All integers are little-endian. Entries are appended one at a time, so a
backup that stops halfway leaves a readable archive of whole entries.
"""
import hashlib
import os
import struct

from esp_archiver.common import (
    ArchiveFormatError,
    ArchiveTruncated,
    ChecksumMismatch,
    Esp_archiverError,
    InvalidRegion,
    open_downloadable_binary,
)
from esp_archiver.const import (
    ARCHIVE_CHECKSUM,
    ARCHIVE_MAGIC,
    ARCHIVE_VERSION,
    MAX_UINT32,
)

HEADER = struct.Struct("<8sHH")
LABEL_LEN = struct.Struct("<H")
ENTRY_INFO = struct.Struct("<IIH")


class Region:
    def __init__(self, start_address, length, label):
        self.start_address = start_address
        self.length = length
        self.label = label

    @property
    def end_address(self):
        return self.start_address + self.length

    def overlaps(self, other):
        return (self.start_address < other.end_address
                and other.start_address < self.end_address)

    def validate(self):
        if not self.label:
            raise InvalidRegion("Region label must not be empty", region=self)
        if not 0 <= self.start_address <= MAX_UINT32:
            raise InvalidRegion(f"Start address of {self} is out of range", region=self)
        if self.length <= 0:
            raise InvalidRegion(f"Length of {self} must be positive", region=self)
        if self.end_address > MAX_UINT32 + 1:
            raise InvalidRegion(f"{self} extends past the 32-bit address space", region=self)

    def as_dict(self):
        return {
            "label": self.label,
            "start_address": self.start_address,
            "length": self.length,
        }

    def __eq__(self, other):
        if not isinstance(other, Region):
            return NotImplemented
        return (self.start_address, self.length, self.label) == (
            other.start_address, other.length, other.label)

    def __hash__(self):
        return hash((self.start_address, self.length, self.label))

    def __repr__(self):
        return f"Region(0x{self.start_address:X}, 0x{self.length:X}, {self.label!r})"

    def __str__(self):
        return f"region '{self.label}' at 0x{self.start_address:08X}"


def validate_regions(regions, allow_overlap=False):
    regions = list(regions)
    labels = set()
    for region in regions:
        region.validate()
        if region.label in labels:
            raise InvalidRegion(f"Duplicate region label '{region.label}'", region=region)
        labels.add(region.label)

    if not allow_overlap:
        ordered = sorted(regions, key=lambda r: r.start_address)
        for prev, region in zip(ordered, ordered[1:]):
            if prev.overlaps(region):
                raise InvalidRegion(f"{region} overlaps {prev}", region=region)
    return regions


def compute_checksum(payload):
    return hashlib.new(ARCHIVE_CHECKSUM, payload).digest()


class ArchiveEntry:
    def __init__(self, region, checksum, payload):
        if len(payload) != region.length:
            raise InvalidRegion(
                f"Payload of {region} is {len(payload)} bytes, expected {region.length}",
                region=region,
            )
        self.region = region
        self.checksum = checksum
        self.payload = payload

    @classmethod
    def from_payload(cls, region, payload):
        payload = bytes(payload)
        return cls(region, compute_checksum(payload), payload)

    def verify(self):
        if compute_checksum(self.payload) != self.checksum:
            raise ChecksumMismatch(
                f"Checksum mismatch for {self.region}, the archive is corrupt",
                region=self.region,
            )

    def __repr__(self):
        return f"ArchiveEntry({self.region!r}, {self.checksum.hex()[:16]}...)"


class Archive:
    """Ordered, in-memory collection of archive entries."""

    def __init__(self, entries=None):
        self._entries = []
        for entry in entries or ():
            self.append(entry)

    def append(self, entry):
        if self.get(entry.region.label) is not None:
            raise InvalidRegion(
                f"Archive already holds a region labelled '{entry.region.label}'",
                region=entry.region,
            )
        self._entries.append(entry)

    def get(self, label):
        for entry in self._entries:
            if entry.region.label == label:
                return entry
        return None

    def select(self, labels=None):
        if labels is None:
            return list(self._entries)
        wanted = set(labels)
        unknown = wanted - set(self.labels)
        if unknown:
            raise InvalidRegion(
                "Archive has no region labelled " + ", ".join(sorted(unknown))
            )
        return [entry for entry in self._entries if entry.region.label in wanted]

    def verify(self, labels=None):
        for entry in self.select(labels):
            entry.verify()

    @property
    def labels(self):
        return [entry.region.label for entry in self._entries]

    @property
    def regions(self):
        return [entry.region for entry in self._entries]

    def __iter__(self):
        return iter(self._entries)

    def __len__(self):
        return len(self._entries)


def encode_header():
    name = ARCHIVE_CHECKSUM.encode("ascii")
    return HEADER.pack(ARCHIVE_MAGIC, ARCHIVE_VERSION, len(name)) + name


def encode_entry_header(entry):
    label = entry.region.label.encode("utf-8")
    return (
        LABEL_LEN.pack(len(label))
        + label
        + ENTRY_INFO.pack(entry.region.start_address, entry.region.length, len(entry.checksum))
        + entry.checksum
    )


def _read_exact(fh, size, what):
    data = fh.read(size)
    if len(data) != size:
        raise ArchiveTruncated(f"Archive is truncated while reading {what}")
    return data


def _read_header(fh):
    magic, version, name_len = HEADER.unpack(_read_exact(fh, HEADER.size, "the header"))
    if magic != ARCHIVE_MAGIC:
        raise ArchiveFormatError(f"Not an archive (magic={magic!r})")
    if version != ARCHIVE_VERSION:
        raise ArchiveFormatError(f"Unsupported archive version {version}")
    name = _read_exact(fh, name_len, "the checksum name").decode("ascii", errors="replace")
    if name != ARCHIVE_CHECKSUM:
        raise ArchiveFormatError(f"Unsupported checksum algorithm '{name}'")


def _read_entry(fh):
    raw = fh.read(LABEL_LEN.size)
    if not raw:
        return None
    if len(raw) != LABEL_LEN.size:
        raise ArchiveTruncated("Archive is truncated while reading an entry")
    (label_len,) = LABEL_LEN.unpack(raw)
    raw = _read_exact(fh, label_len, "an entry label")
    try:
        label = raw.decode("utf-8")
    except UnicodeDecodeError as err:
        raise ArchiveFormatError(f"Entry label {raw!r} is not valid UTF-8") from err
    start, length, digest_len = ENTRY_INFO.unpack(
        _read_exact(fh, ENTRY_INFO.size, f"entry '{label}'"))
    checksum = _read_exact(fh, digest_len, f"the checksum of '{label}'")
    payload = _read_exact(fh, length, f"the payload of '{label}'")
    return ArchiveEntry(Region(start, length, label), checksum, payload)


def read_archive(fh, tolerate_truncation=False):
    """Parse an archive from a file object.

    Checksums are not verified here. With tolerate_truncation a trailing
    incomplete entry is dropped instead of raising; the returned offset is
    the end of the last complete entry.
    """
    _read_header(fh)
    archive = Archive()
    end = fh.tell()
    while True:
        try:
            entry = _read_entry(fh)
        except ArchiveTruncated:
            if not tolerate_truncation:
                raise
            break
        if entry is None:
            break
        archive.append(entry)
        end = fh.tell()
    return archive, end


def load_archive(path):
    fh = open_downloadable_binary(path)
    with fh:
        archive, _ = read_archive(fh)
    return archive


class ArchiveWriter:
    """Append-only archive file used as a backup destination."""

    def __init__(self, path, resume=False):
        self.path = path
        self.archive = Archive()
        try:
            if resume and os.path.exists(path):
                with open(path, "rb") as fh:
                    self.archive, end = read_archive(fh, tolerate_truncation=True)
                self.archive.verify()
                # pylint: disable=consider-using-with
                self._file = open(path, "r+b")
                self._file.truncate(end)
                self._file.seek(end)
            else:
                # pylint: disable=consider-using-with
                self._file = open(path, "wb")
                self._file.write(encode_header())
                self._sync()
        except IOError as err:
            raise Esp_archiverError(f"Error opening archive '{path}': {err}") from err

    def append(self, entry):
        if self.archive.get(entry.region.label) is not None:
            raise InvalidRegion(
                f"'{self.path}' already holds a region labelled '{entry.region.label}'",
                region=entry.region,
            )
        position = self._file.tell()
        try:
            self._file.write(encode_entry_header(entry))
            self._file.write(entry.payload)
            self._sync()
        except IOError as err:
            self._discard_from(position)
            raise Esp_archiverError(
                f"Error writing {entry.region} to '{self.path}': {err}",
                region=entry.region,
            ) from err
        self.archive.append(entry)

    def _discard_from(self, position):
        try:
            self._file.seek(position)
            self._file.truncate()
            self._sync()
        except IOError as err:
            print(f"Could not remove the incomplete entry from '{self.path}' ({err}), "
                  "run again with --resume to drop it.")

    def _sync(self):
        self._file.flush()
        os.fsync(self._file.fileno())

    def close(self):
        self._file.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def __iter__(self):
        return iter(self.archive)

    def __len__(self):
        return len(self.archive)
