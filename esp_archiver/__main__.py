import argparse
import sys

from esp_archiver import const
from esp_archiver.archive import (
    ArchiveWriter,
    Region,
    load_archive,
    validate_regions,
)
from esp_archiver.archiver import FlashArchiver, SessionConfig, pending_regions
from esp_archiver.common import ChecksumMismatch, Esp_archiverError
from esp_archiver.const import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_REGIONS,
    DEFAULT_RETRY_ATTEMPTS,
    DEFAULT_RETRY_DELAY,
    DEFAULT_UPLOAD_BAUD_RATE,
)
from esp_archiver.helpers import (
    format_size,
    list_serial_ports,
    parse_int,
    print_progress,
)
from esp_archiver.transport import EsptoolTransport


def parse_region(text):
    parts = text.split(":")
    if len(parts) != 3 or not parts[0]:
        raise argparse.ArgumentTypeError(
            f"Invalid region '{text}', expected LABEL:START:LENGTH (e.g. app0:0x10000:0x640000)"
        )
    label, start, length = parts
    try:
        return Region(parse_int(start), parse_int(length), label)
    except ValueError as err:
        raise argparse.ArgumentTypeError(str(err)) from err


def default_regions():
    return [Region(start, length, label) for label, start, length in DEFAULT_REGIONS]


def add_device_arguments(parser):
    parser.add_argument("-p", "--port", help="Select the USB/COM port of the device.")
    parser.add_argument(
        "-c",
        "--chip",
        default="auto",
        help="Chip type, e.g. esp32c3 (default: auto-detect).",
    )
    parser.add_argument(
        "--baud",
        "--upload-baud-rate",
        dest="baud",
        type=int,
        default=DEFAULT_UPLOAD_BAUD_RATE,
        help="Baud rate used for the transfer",
    )
    parser.add_argument(
        "--chunk-size",
        type=parse_int,
        default=DEFAULT_CHUNK_SIZE,
        help="Bytes per transfer step, reported as progress (default: 64KB).",
    )
    parser.add_argument(
        "--retries",
        type=int,
        default=DEFAULT_RETRY_ATTEMPTS,
        help="Attempts for each chunk before a transient error is fatal.",
    )


def parse_args(argv):
    parser = argparse.ArgumentParser(prog=f"esp_archiver {const.__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    backup = subparsers.add_parser("backup", help="Dump flash regions into an archive.")
    add_device_arguments(backup)
    backup.add_argument("-o", "--out", required=True, help="The archive file to write.")
    backup.add_argument(
        "-r",
        "--region",
        action="append",
        type=parse_region,
        help="Region as LABEL:START:LENGTH, may be repeated. "
             "Defaults to the full 16MB flash followed by app0.",
    )
    backup.add_argument(
        "--resume",
        action="store_true",
        help="Keep the regions already in the archive and only dump the missing ones.",
    )
    backup.add_argument(
        "--allow-overlap", action="store_true", help="Allow regions that overlap."
    )

    restore = subparsers.add_parser("restore", help="Write an archive back to flash.")
    add_device_arguments(restore)
    restore.add_argument(
        "-i", "--in", dest="archive", required=True, help="The archive file or URL to restore."
    )
    restore.add_argument(
        "--only",
        action="append",
        metavar="LABEL",
        help="Restore only the region with this label, may be repeated.",
    )

    verify = subparsers.add_parser("verify", help="Check the checksums of an archive.")
    verify.add_argument("-i", "--in", dest="archive", required=True)

    info = subparsers.add_parser("info", help="List the regions of an archive.")
    info.add_argument("-i", "--in", dest="archive", required=True)

    subparsers.add_parser("ports", help="List serial ports.")

    return parser.parse_args(argv[1:])


def select_port(args):
    if args.port is not None:
        print(f"Using '{args.port}' as serial port.")
        return args.port
    ports = list_serial_ports()
    if not ports:
        raise Esp_archiverError("No serial port found!")
    if len(ports) != 1:
        print("Found more than one serial port:")
        for port, desc in ports:
            print(f" * {port} ({desc})")
        print("Please choose one with the --port argument.")
        raise Esp_archiverError
    print(f"Auto-detected serial port: {ports[0][0]}")
    return ports[0][0]


def make_config(args, allow_overlap=False):
    return SessionConfig(
        port=select_port(args),
        chip=args.chip,
        baud=args.baud,
        chunk_size=args.chunk_size,
        retry_attempts=args.retries,
        retry_delay=DEFAULT_RETRY_DELAY,
        allow_overlap=allow_overlap,
    )


def make_transport(config):
    return EsptoolTransport(config.baud)


def print_chip_info(device):
    info = getattr(device, "info", None)
    if info is None:
        return
    print()
    print("Chip Info:")
    print(f" - Chip Family: {info.family}")
    print(f" - Chip Model: {info.model}")
    print(f" - Features: {', '.join(info.features)}")
    print(f" - MAC Address: {info.mac}")
    print(f" - Flash Size: {info.flash_size}")
    print()


def print_regions(archive):
    for entry in archive:
        region = entry.region
        print(
            f" * {region.label:<12} 0x{region.start_address:08X} "
            f"0x{region.length:08X} ({format_size(region.length)}) "
            f"sha256={entry.checksum.hex()}"
        )


def run_backup(args, transport=None):
    regions = args.region or default_regions()
    # the built-in pair nests app0 inside the full dump
    allow_overlap = args.allow_overlap or not args.region
    validate_regions(regions, allow_overlap)
    config = make_config(args, allow_overlap)
    archiver = FlashArchiver(transport or make_transport(config), config, print_progress)

    with ArchiveWriter(args.out, resume=args.resume) as writer:
        todo = regions
        if args.resume:
            todo = pending_regions(regions, writer.archive)
            if len(writer):
                print(f"Resuming '{args.out}', {len(writer)} region(s) already archived:")
                print_regions(writer.archive)
        if not todo:
            print("All regions are already archived, nothing to do.")
            return

        try:
            with archiver.connect() as device:
                print_chip_info(device)
                total = sum(region.length for region in todo)
                print(f"Backing up {len(todo)} region(s), {format_size(total)} in total...")
                archiver.backup(todo, writer, device)
        except Esp_archiverError:
            if len(writer):
                print(f"'{args.out}' keeps {len(writer)} complete region(s), "
                      "run again with --resume to continue.")
            raise

    print(f"Done! {len(todo)} region(s) saved to '{args.out}'.")


def run_restore(args, transport=None):
    archive = load_archive(args.archive)
    entries = archive.select(args.only)
    print(f"Verifying {len(entries)} region(s) from '{args.archive}'...")
    archive.verify(args.only)

    config = make_config(args)
    archiver = FlashArchiver(transport or make_transport(config), config, print_progress)
    with archiver.connect() as device:
        print_chip_info(device)
        total = sum(entry.region.length for entry in entries)
        print(f"Restoring {len(entries)} region(s), {format_size(total)} in total...")
        archiver.restore(archive, device, args.only)

    print("Done! Restore is complete.")


def run_verify(args):
    archive = load_archive(args.archive)
    failed = []
    for entry in archive:
        try:
            entry.verify()
        except ChecksumMismatch:
            failed.append(entry.region)
            print(f" * {entry.region}: checksum MISMATCH")
        else:
            print(f" * {entry.region}: OK")
    if failed:
        raise ChecksumMismatch(
            f"{len(failed)} of {len(archive)} region(s) are corrupt: "
            + ", ".join(region.label for region in failed),
            region=failed[0],
        )
    print(f"All {len(archive)} region(s) verified.")


def run_info(args):
    archive = load_archive(args.archive)
    print(f"Archive '{args.archive}' holds {len(archive)} region(s):")
    print_regions(archive)


def run_ports():
    ports = list_serial_ports()
    if not ports:
        print("No serial port found!")
        return
    for port, desc in ports:
        print(f" * {port} ({desc})")


def run_esp_archiver(argv, transport=None):
    args = parse_args(argv)

    if args.command == "backup":
        return run_backup(args, transport)
    if args.command == "restore":
        return run_restore(args, transport)
    if args.command == "verify":
        return run_verify(args)
    if args.command == "info":
        return run_info(args)
    return run_ports()


def main(argv=None):
    argv = sys.argv if argv is None else argv
    try:
        if len(argv) <= 1:
            from esp_archiver import gui

            return gui.main() or 0
        return run_esp_archiver(argv) or 0
    except Esp_archiverError as err:
        msg = str(err)
        if msg:
            print(msg)
        return 1
    except KeyboardInterrupt:
        return 1


if __name__ == "__main__":
    sys.exit(main())
