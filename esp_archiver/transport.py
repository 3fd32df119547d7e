import hashlib

import serial
from esptool.cmds import DETECTED_FLASH_SIZES, detect_chip
from esptool.targets import CHIP_DEFS
from esptool.util import FatalError, flash_size_bytes

from esp_archiver.common import (
    TransientIOError,
    TransportUnavailable,
    WriteFailure,
    read_chip_info,
)
from esp_archiver.const import (
    DEFAULT_UPLOAD_BAUD_RATE,
    ESP_ROM_BAUD,
    FLASH_SECTOR_SIZE,
)
from esp_archiver.helpers import prevent_print


class DeviceTransport:
    """Serial link to a device's flash.

    Implementations raise TransportUnavailable when the device cannot be
    reached, TransientIOError for errors worth retrying and WriteFailure
    when a write was not accepted.
    """

    def open(self, port, chip):
        raise NotImplementedError

    def read_region(self, handle, address, length):
        raise NotImplementedError

    def write_region(self, handle, address, data):
        raise NotImplementedError

    def close(self, handle):
        raise NotImplementedError


class EsptoolHandle:
    def __init__(self, port, chip, info):
        self.port = port
        self.chip = chip
        self.info = info
        # (address, length) -> bytes around a pending write, see write_region
        self.preserved = {}

    @property
    def flash_size(self):
        return self.info.flash_size


def _connect(port, chip_name):
    try:
        if chip_name in (None, "auto"):
            chip = prevent_print(detect_chip, port, ESP_ROM_BAUD)
        else:
            try:
                klass = CHIP_DEFS[chip_name]
            except KeyError as err:
                raise TransportUnavailable(
                    f"Unknown chip '{chip_name}', expected one of {', '.join(sorted(CHIP_DEFS))}"
                ) from err
            chip = klass(port, ESP_ROM_BAUD)
            prevent_print(chip.connect)
    except FatalError as err:
        if "Wrong boot mode detected" in str(err):
            msg = "ESP is not in flash boot mode. Hold BOOT while resetting the device and try again."
        else:
            msg = f"Error connecting to ESP on {port}: {err}"
        raise TransportUnavailable(msg) from err
    except (OSError, serial.SerialException) as err:
        raise TransportUnavailable(f"Could not open serial port {port}: {err}") from err

    try:
        return prevent_print(chip.run_stub)
    except FatalError as err:
        raise TransportUnavailable(f"Error putting ESP in stub flash mode: {err}") from err


def _detect_flash_size(chip):
    try:
        flash_id = prevent_print(chip.flash_id)
    except FatalError as err:
        raise TransportUnavailable(f"Reading flash ID failed: {err}") from err
    return DETECTED_FLASH_SIZES.get(flash_id >> 16, "4MB")


class EsptoolTransport(DeviceTransport):
    """DeviceTransport backed by esptool and its RAM flasher stub."""

    def __init__(self, baud=DEFAULT_UPLOAD_BAUD_RATE):
        self.baud = baud

    def open(self, port, chip):
        stub_chip = _connect(port, chip)
        flash_size = None

        if self.baud != ESP_ROM_BAUD:
            try:
                prevent_print(stub_chip.change_baud, self.baud)
                # Check if the higher baud rate works
                flash_size = _detect_flash_size(stub_chip)
            except (FatalError, TransportUnavailable):
                print(f"Chip does not support baud rate {self.baud}, changing to {ESP_ROM_BAUD}")
                # pylint: disable=protected-access
                stub_chip._port.close()
                stub_chip = _connect(port, chip)

        if flash_size is None:
            flash_size = _detect_flash_size(stub_chip)

        try:
            prevent_print(stub_chip.flash_set_parameters, flash_size_bytes(flash_size))
        except FatalError as err:
            raise TransportUnavailable(f"Error setting flash parameters: {err}") from err

        info = read_chip_info(stub_chip)
        info.flash_size = flash_size
        return EsptoolHandle(port, stub_chip, info)

    def read_region(self, handle, address, length):
        try:
            return prevent_print(handle.chip.read_flash, address, length)
        except FatalError as err:
            raise TransientIOError(
                f"Reading 0x{length:X} bytes at 0x{address:08X} failed: {err}"
            ) from err

    def write_region(self, handle, address, data):
        chip = handle.chip
        # flash_begin erases whole sectors, so the bytes sharing a sector with
        # data are read first and written back around it
        start = address - address % FLASH_SECTOR_SIZE
        data_end = address + len(data)
        end = data_end + (-data_end % FLASH_SECTOR_SIZE)
        key = (address, len(data))
        try:
            if key not in handle.preserved:
                head = b""
                tail = b""
                if start < address:
                    head = prevent_print(chip.read_flash, start, address - start)
                if data_end < end:
                    tail = prevent_print(chip.read_flash, data_end, end - data_end)
                # kept until the write succeeds, a retry must not read back erased sectors
                handle.preserved[key] = (head, tail)
            head, tail = handle.preserved[key]
            image = head + bytes(data) + tail

            blocks = prevent_print(chip.flash_begin, len(image), start)
            for seq in range(blocks):
                block = image[seq * chip.FLASH_WRITE_SIZE:(seq + 1) * chip.FLASH_WRITE_SIZE]
                block = block + b"\xff" * (chip.FLASH_WRITE_SIZE - len(block))
                prevent_print(chip.flash_block, block, seq)
            digest = prevent_print(chip.flash_md5sum, start, len(image))
        except FatalError as err:
            raise TransientIOError(
                f"Writing 0x{len(data):X} bytes at 0x{address:08X} failed: {err}"
            ) from err
        del handle.preserved[key]

        expected = hashlib.md5(image).hexdigest()
        if digest != expected:
            raise WriteFailure(
                f"Flash at 0x{start:08X} does not match the written data "
                f"(device MD5 {digest}, expected {expected})"
            )
        return True

    def close(self, handle):
        chip = handle.chip
        try:
            # Leave flash mode, then run the application
            prevent_print(chip.flash_begin, 0, 0)
            prevent_print(chip.flash_finish, False)
            print("Hard Resetting...")
            prevent_print(chip.hard_reset)
        except (FatalError, TransportUnavailable) as err:
            print(f"Could not reset the chip cleanly: {err}")
        finally:
            # pylint: disable=protected-access
            chip._port.close()
