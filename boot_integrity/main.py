import argparse
import dataclasses
import json
import sys
from enum import Enum
from pathlib import Path

from boot_integrity.domain import DeviceMetadata, ImageType, PatchOptions
from boot_integrity.logging import LoggerFactory, setup_logging
from boot_integrity.services import BootToolkit
from boot_integrity.storage.exceptions import BootIntegrityError


def _json_default(value):
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def to_jsonable(result):
    if dataclasses.is_dataclass(result) and not isinstance(result, type):
        return dataclasses.asdict(result)
    if isinstance(result, (list, tuple)):
        return [to_jsonable(item) for item in result]
    return result


def emit(result, stream=None):
    stream = stream or sys.stdout
    json.dump(to_jsonable(result), stream, indent=2, default=_json_default)
    stream.write("\n")


def build_parser():
    parser = argparse.ArgumentParser(
        prog="boot-integrity",
        description="Android boot image and partition integrity toolkit",
    )
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Enable TRACE output (very verbose)")
    parser.add_argument("--no-log-files", action="store_true", help="Log to the console only")
    parser.add_argument("--cache-root", help="Stock cache directory")
    parser.add_argument("-s", "--serial", help="Device serial for device operations")
    sub = parser.add_subparsers(dest="command", required=True)

    info = sub.add_parser("info", help="Describe a boot image")
    info.add_argument("image")

    unpack = sub.add_parser("unpack", help="Unpack a boot image into a directory")
    unpack.add_argument("image")
    unpack.add_argument("output_dir")

    repack = sub.add_parser("repack", help="Repack a previously unpacked directory")
    repack.add_argument("work_dir")
    repack.add_argument("output")

    patch = sub.add_parser("patch", help="Root-patch a stock boot image")
    patch.add_argument("image")
    patch.add_argument("payload", help="Root-provider APK/zip")
    patch.add_argument("output")
    patch.add_argument("--keep-verity", action="store_true")
    patch.add_argument("--keep-encryption", action="store_true")
    patch.add_argument("--patch-vbmeta-flag", action="store_true")
    patch.add_argument("--legacy-sar", action="store_true")
    abi_group = patch.add_mutually_exclusive_group()
    abi_group.add_argument("--abi", help="Target ABI, e.g. arm64-v8a")
    abi_group.add_argument(
        "--device-abi",
        action="store_true",
        help="Read the target ABI from the connected device",
    )
    patch.add_argument("--model")
    patch.add_argument("--codename")
    patch.add_argument("--android-version")

    backup = sub.add_parser("backup", help="Cache a stock boot image")
    backup.add_argument("image")
    backup.add_argument("--model")
    backup.add_argument("--codename")
    backup.add_argument("--android-version")

    sub.add_parser("cache-list", help="List cached stock images")

    prune = sub.add_parser("cache-prune", help="Remove the oldest cached images")
    prune.add_argument("--max-entries", type=int)
    prune.add_argument("--max-bytes", type=int)

    compare = sub.add_parser("compare", help="Compare two partition images")
    compare.add_argument("file1")
    compare.add_argument("file2")
    compare.add_argument("--detailed", action="store_true")

    verify = sub.add_parser("verify", help="Verify an image against a SHA256 digest")
    verify.add_argument("image")
    digest = verify.add_mutually_exclusive_group(required=True)
    digest.add_argument("--sha256")
    digest.add_argument("--manifest", help="Factory image manifest with expected digests")
    verify.add_argument("--partition")

    validate = sub.add_parser("validate", help="Validate an image before flashing")
    validate.add_argument("image")
    validate.add_argument(
        "--expected-type", choices=[image_type.value for image_type in ImageType]
    )

    avb = sub.add_parser("avb", help="Read verified boot state")
    avb.add_argument("--mode", default="device", help="bootloader or device")

    slots = sub.add_parser("slots", help="Read A/B slot state")
    slots.add_argument("--mode", default="device", help="bootloader or device")

    partitions = sub.add_parser("partitions", help="List device partitions")
    partitions.add_argument("--batch-size", type=int)

    dump = sub.add_parser("dump", help="Dump a device partition to the host")
    dump.add_argument("partition")
    dump.add_argument("output")
    dump.add_argument("--compress", action="store_true")
    dump.add_argument("--metadata", action="store_true")
    return parser


def _device_metadata(args):
    return DeviceMetadata(
        model=args.model, codename=args.codename, android_version=args.android_version
    )


def run_command(args, toolkit):
    command = args.command
    if command == "info":
        return toolkit.get_boot_info(args.image)
    if command == "unpack":
        return toolkit.unpack(args.image, args.output_dir)
    if command == "repack":
        return toolkit.repack(args.work_dir, args.output)
    if command == "patch":
        target_abi = args.abi
        if args.device_abi:
            target_abi = toolkit.resolve_device_abi()
        options = PatchOptions(
            keep_verity=args.keep_verity,
            keep_encryption=args.keep_encryption,
            patch_vbmeta_flag=args.patch_vbmeta_flag,
            legacy_sar=args.legacy_sar,
            target_abi=target_abi,
        )
        return toolkit.patch_boot_image(
            args.image, args.payload, args.output, options, _device_metadata(args)
        )
    if command == "backup":
        return toolkit.backup_stock(args.image, _device_metadata(args))
    if command == "cache-list":
        return toolkit.list_cached_boots()
    if command == "cache-prune":
        return {"removed": toolkit.prune_cache(args.max_entries, args.max_bytes)}
    if command == "compare":
        return toolkit.compare_partitions(args.file1, args.file2, detailed=args.detailed)
    if command == "verify":
        expected = args.sha256
        if args.manifest:
            hashes = toolkit.parse_manifest(args.manifest)
            expected = hashes.get(Path(args.image).name, "")
        return toolkit.verify_partition_integrity(args.image, expected, args.partition)
    if command == "validate":
        expected_type = ImageType(args.expected_type) if args.expected_type else None
        return toolkit.validate_image(args.image, expected_type)
    if command == "avb":
        return toolkit.get_avb_state(args.mode)
    if command == "slots":
        return toolkit.get_slot_info(args.mode)
    if command == "partitions":
        return toolkit.list_partitions_detailed(args.batch_size)
    if command == "dump":
        return toolkit.dump_partition(
            args.partition,
            args.output,
            compress=args.compress,
            include_metadata=args.metadata,
        )
    raise ValueError(f"Unknown command: {command}")


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(debug=args.debug, trace=args.trace, file_sinks=not args.no_log_files)
    log = LoggerFactory.for_system()

    toolkit = BootToolkit.for_device(serial=args.serial, cache_root=args.cache_root)
    try:
        result = run_command(args, toolkit)
    except BootIntegrityError as error:
        log.error(str(error))
        return 1
    emit(result)
    return 0


if __name__ == "__main__":
    sys.exit(main())
