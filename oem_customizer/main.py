import argparse
import json
import sys

from oem_customizer.config import settings
from oem_customizer.logging import LoggerFactory, setup_logging
from oem_customizer.storage import layout, partitions
from oem_customizer.storage.exceptions import CustomizerError, InvalidArgumentError
from oem_customizer.verity.seal import seal_oem_partition


def _positive_int(value):
    number = int(value)
    if number <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive integer: {value}")
    return number


def build_parser():
    parser = argparse.ArgumentParser(
        prog="oem-customizer",
        description="Resize and seal the OEM partition of an OS disk image",
    )
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Enable trace output")
    subparsers = parser.add_subparsers(dest="command", required=True)

    extend = subparsers.add_parser(
        "extend-oem",
        help="Grow the OEM partition by moving the stateful partition towards the end of the disk",
    )
    extend.add_argument("disk")
    extend.add_argument("state_part_num", type=_positive_int)
    extend.add_argument("oem_part_num", type=_positive_int)
    extend.add_argument(
        "oem_size",
        help="New OEM size: a number with unit like 10G, 10M, 10K or 10B, "
        "or without unit indicating the number of 512B sectors",
    )

    handle = subparsers.add_parser(
        "handle-disk-layout",
        help="Reorganize the disk for the OEM partition, optionally reclaiming the root partition",
    )
    handle.add_argument("disk")
    handle.add_argument("state_part_num", type=_positive_int)
    handle.add_argument("oem_part_num", type=_positive_int)
    handle.add_argument("oem_size")
    handle.add_argument("--reclaim-root", action="store_true", help="Shrink the root partition first")
    handle.add_argument("--root-part-num", type=_positive_int, default=None)
    handle.add_argument("--journal", default=None, help="Write completed steps to this JSON file")

    minimize = subparsers.add_parser("minimize", help="Shrink a partition to its minimum size")
    minimize.add_argument("disk")
    minimize.add_argument("part_num", type=_positive_int)

    show = subparsers.add_parser("show-table", help="Print the partition table of a disk")
    show.add_argument("disk")

    seal = subparsers.add_parser("seal-oem", help="Build the OEM hash tree and patch grub.cfg")
    seal.add_argument("size_4k", type=_positive_int, help="OEM filesystem size in 4K blocks")
    seal.add_argument("--oem-partition", default=None)
    seal.add_argument("--efi-partition", default=None)
    seal.add_argument("--device-name", default=None)
    seal.add_argument("--image-archive", default=None, help="docker image archive with veritysetup")

    config = subparsers.add_parser("settings", help="Show or change persistent settings")
    config.add_argument("key", nargs="?", help="Setting to show or change (all settings if omitted)")
    config.add_argument("value", nargs="?", help="New value, parsed as JSON when possible")

    return parser


def _parse_setting_value(value):
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


def run_settings(args):
    if args.key is None:
        for key, value in sorted(settings.settings_store.values.items()):
            print(f"{key}={json.dumps(value)}")
        return
    if args.key not in settings.DEFAULT_SETTINGS:
        raise InvalidArgumentError(f"unknown setting {args.key!r}", key=args.key)
    if args.value is not None:
        settings.set_setting(args.key, _parse_setting_value(args.value))
    print(f"{args.key}={json.dumps(settings.get_setting(args.key))}")


def run(args):
    if args.command == "extend-oem":
        layout.extend_oem_partition(args.disk, args.state_part_num, args.oem_part_num, args.oem_size)
    elif args.command == "handle-disk-layout":
        layout.handle_disk_layout(
            args.disk,
            args.state_part_num,
            args.oem_part_num,
            args.oem_size,
            args.reclaim_root,
            root_part_num=args.root_part_num,
            journal_path=args.journal,
        )
    elif args.command == "minimize":
        next_sector = partitions.minimize_partition(args.disk, args.part_num)
        print(next_sector)
    elif args.command == "show-table":
        print(partitions.read_partition_table(args.disk), end="")
    elif args.command == "seal-oem":
        result = seal_oem_partition(
            args.size_4k,
            oem_partition=args.oem_partition,
            efi_partition=args.efi_partition,
            device_name=args.device_name,
            image_archive=args.image_archive,
        )
        print(f"root_hexdigest={result.root_digest} salt={result.salt}")
    elif args.command == "settings":
        run_settings(args)


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(debug=args.debug, trace=args.trace)
    log = LoggerFactory.for_system()
    try:
        run(args)
    except CustomizerError as error:
        log.error(f"{args.command} failed: {error}")
        if error.journal is not None:
            log.error(f"Completed steps before failure: {error.journal.completed}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
