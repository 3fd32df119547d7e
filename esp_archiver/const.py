import re

__version__ = "1.0.0"

ESP_ROM_BAUD = 115200
DEFAULT_UPLOAD_BAUD_RATE = 1500000

DEFAULT_CHUNK_SIZE = 0x10000      # 64KB, a whole number of 4KB flash sectors
DEFAULT_RETRY_ATTEMPTS = 3        # attempts per chunk before giving up
DEFAULT_RETRY_DELAY = 0.5         # seconds between attempts

FLASH_SECTOR_SIZE = 0x1000
MAX_UINT32 = 0xFFFFFFFF

ARCHIVE_MAGIC = b"ESPARCH\x00"
ARCHIVE_VERSION = 1
ARCHIVE_CHECKSUM = "sha256"

# Full 16MB dump followed by the app0 partition, as done by hand with esptool
DEFAULT_REGIONS = (
    ("firmware", 0x0, 0x1000000),
    ("app0", 0x10000, 0x640000),
)

# https://stackoverflow.com/a/3809435/8924614
HTTP_REGEX = re.compile(
    r"https?://(www\.)?[-a-zA-Z0-9@:%._+~#=]{2,256}\.[a-z]{2,6}\b([-a-zA-Z0-9@:%_+.~#?&/=]*)"
)
