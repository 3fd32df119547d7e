import io

from esptool.util import FatalError

from esp_archiver.const import HTTP_REGEX
from esp_archiver.helpers import prevent_print


class Esp_archiverError(Exception):
    def __init__(self, message="", region=None):
        super().__init__(message)
        self.region = region


class TransportUnavailable(Esp_archiverError):
    pass


class TransientIOError(Esp_archiverError):
    pass


class ShortRead(Esp_archiverError):
    pass


class ChecksumMismatch(Esp_archiverError):
    pass


class WriteFailure(Esp_archiverError):
    pass


class ArchiveFormatError(Esp_archiverError):
    pass


class ArchiveTruncated(ArchiveFormatError):
    pass


class InvalidRegion(Esp_archiverError):
    pass


class SessionStateError(Esp_archiverError):
    pass


class SessionCancelled(Esp_archiverError):
    pass


class ChipInfo:
    def __init__(self, family, model, mac, features, flash_size=None):
        self.family = family
        self.model = model
        self.mac = mac
        self.features = features
        self.flash_size = flash_size

    def as_dict(self):
        return {
            "family": self.family,
            "model": self.model,
            "mac": self.mac,
            "features": self.features,
            "flash_size": self.flash_size,
        }


def read_chip_property(func, *args, **kwargs):
    try:
        return prevent_print(func, *args, **kwargs)
    except FatalError as err:
        raise TransportUnavailable(f"Reading chip details failed: {err}") from err


def read_chip_info(chip):
    mac = ":".join(f"{x:02X}" for x in read_chip_property(chip.read_mac))
    model = read_chip_property(chip.get_chip_description)
    features = read_chip_property(chip.get_chip_features)
    return ChipInfo(chip.CHIP_NAME, model, mac, list(features))


def open_downloadable_binary(path):
    if hasattr(path, "seek"):
        path.seek(0)
        return path

    if HTTP_REGEX.match(path) is not None:
        import requests

        try:
            response = requests.get(path)
            response.raise_for_status()
        except requests.exceptions.Timeout as err:
            raise Esp_archiverError(
                f"Timeout while retrieving archive '{path}': {err}"
            ) from err
        except requests.exceptions.RequestException as err:
            raise Esp_archiverError(
                f"Error while retrieving archive '{path}': {err}"
            ) from err

        binary = io.BytesIO()
        binary.write(response.content)
        binary.seek(0)
        return binary

    try:
        return open(path, "rb")
    except IOError as err:
        raise Esp_archiverError(f"Error opening archive '{path}': {err}") from err
