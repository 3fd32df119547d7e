import os
import sys

import serial
from serial.tools import list_ports

DEVNULL = open(os.devnull, 'w')


def prevent_print(func, *args, **kwargs):
    orig_sys_stdout = sys.stdout
    sys.stdout = DEVNULL
    try:
        return func(*args, **kwargs)
    except serial.SerialException as err:
        from esp_archiver.common import TransportUnavailable

        raise TransportUnavailable("Serial port closed: {}".format(err)) from err
    finally:
        sys.stdout = orig_sys_stdout


def list_serial_ports():
    result = []
    for port in sorted(list_ports.comports(), key=lambda p: p.device):
        result.append((port.device, port.description))
    return result


def parse_int(value):
    """Parse a decimal or 0x-prefixed integer, with optional KB/MB suffix."""
    text = str(value).strip().upper()
    factor = 1
    if text.endswith("MB"):
        factor, text = 1024 * 1024, text[:-2]
    elif text.endswith("KB"):
        factor, text = 1024, text[:-2]
    try:
        return int(text, 0) * factor
    except ValueError as err:
        raise ValueError(f"Invalid number '{value}'") from err


def format_size(size):
    if size >= 1024 * 1024 and size % (1024 * 1024) == 0:
        return f"{size // (1024 * 1024)}MB"
    if size >= 1024 and size % 1024 == 0:
        return f"{size // 1024}KB"
    return f"{size} bytes"


def print_overwrite(message, last_line=False):
    """Print a message, overwriting the current line on a TTY.

    If output is not a TTY (for example redirected to a pipe or the GUI
    console), no overwriting happens and this is the same as print().
    """
    isatty = getattr(sys.stdout, "isatty", None)
    if isatty is not None and isatty():
        print("\r%s" % message, end='\n' if last_line else '')
    else:
        print(message)


def print_progress(event):
    """Render a progress event as one status line per region."""
    percent = 100 * event.bytes_transferred // max(event.bytes_total, 1)
    message = (
        f"{event.label}: {event.region_transferred}/{event.region_total} bytes"
        f" ({percent} % of {event.bytes_total} total)"
    )
    print_overwrite(message, last_line=event.region_transferred == event.region_total)
