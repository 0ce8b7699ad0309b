"""Install the BIOS boot sector and stage 2 on an MBR or GPT disk."""

from __future__ import annotations

import logging
import struct
import sys
from contextlib import ExitStack
from dataclasses import replace

from .device import BlockDevice, DeviceError, load_undeploy_data, save_undeploy_data
from .gpt import ENTRY_SIZE, HEADER_SIZE, crc32, parse_gpt_entry, parse_gpt_header

__all__ = ["DeployError", "deploy", "main"]

_log = logging.getLogger(__name__)

_PROG = "liminekit-deploy"
_UNDEPLOY_OPT = "--undeploy-data-file="
_IMAGE_OPT = "--bootloader-image="

_LB_GUESSES = (512, 4096)
_PARTITION_STATUS_OFFSETS = (446, 462, 478, 494)
# (offset, signature, bytes cleared when forced)
_FS_SIGNATURES = (
    (4, b"_ECH_FS_", 8),
    (3, b"NTFS", 4),
    (54, b"FAT", 5),
    (82, b"FAT", 5),
    (3, b"FAT32", 5),
)
_EXT_MAGIC_OFFSET = 1080
_EXT_MAGIC = 0xEF53
_STAGE2_INFO = 0x1A4

_OPTIONS = (
    (f"{_IMAGE_OPT}<filename>", ("Bootloader image to deploy",)),
    ("--force-mbr", ("Force MBR detection to work even if the",
                     "safety checks fail (DANGEROUS!)")),
    ("--undeploy", ("Reverse the entire deployment procedure",)),
    (f"{_UNDEPLOY_OPT}<filename>", ("Set the input (for --undeploy) or output file",
                                    "name of the file which contains undeploy data")),
    ("--help | -h", ("Display this help message",)),
)
_OPTION_COLUMN = 20


class DeployError(Exception):
    """Raised when the disk is not suitable for deployment."""


def deploy(device: BlockDevice, bootloader_image: bytes,
           partition_index: int | None = None, force_mbr: bool = False) -> tuple[int, int]:
    """Deploy the image and return the offsets of the two stage 2 halves.

    ``partition_index`` is a 1-based GPT partition to hold stage 2 instead of
    embedding it next to the partition arrays. On any failure every write is
    undone before the error propagates.
    """
    image = bytes(bootloader_image)
    if len(image) < 512:
        raise DeployError("bootloader image is smaller than a boot sector")
    try:
        locations = _deploy(device, image, partition_index, force_mbr)
        device.flush()
    except (DeployError, DeviceError):
        device.undeploy()
        raise
    return locations


def _check_mbr(device: BlockDevice, force_mbr: bool) -> bool:
    mbr = True
    any_active = False
    for offset in _PARTITION_STATUS_OFFSETS:
        status = device.read(offset, 1)[0]
        if status not in (0x00, 0x80):
            if not force_mbr:
                mbr = False
            else:
                status = 0x80 if status & 0x80 else 0x00
                device.write(offset, bytes([status]))
        any_active = any_active or bool(status & 0x80)

    for offset, signature, clear in _FS_SIGNATURES:
        if device.read(offset, len(signature)) == signature:
            if not force_mbr:
                mbr = False
            else:
                device.write(offset, bytes(clear))

    (magic,) = struct.unpack("<H", device.read(_EXT_MAGIC_OFFSET, 2))
    if magic == _EXT_MAGIC:
        if not force_mbr:
            mbr = False
        else:
            device.write(_EXT_MAGIC_OFFSET, bytes(2))

    if mbr and not any_active:
        _log.warning("No active partition found, some systems may not boot.")
        _log.warning("Setting partition 1 as active to work around the issue...")
        device.write(_PARTITION_STATUS_OFFSETS[0], b"\x80")
    return mbr


def _deploy(device, image, partition_index, force_mbr):
    header = None
    lb_size = 0
    for guess in _LB_GUESSES:
        candidate = parse_gpt_header(device.read(guess, HEADER_SIZE))
        if candidate.is_valid():
            if force_mbr:
                raise DeployError("Device has a valid GPT, refusing to force MBR.")
            header = candidate
            lb_size = guess
            _log.info("Deploying to GPT. Logical block size of %d bytes.", guess)
            break

    secondary = None
    if header is not None:
        _log.info("Secondary header at LBA %#x.", header.alternate_lba)
        secondary = parse_gpt_header(
            device.read(lb_size * header.alternate_lba, HEADER_SIZE))
        if not secondary.is_valid():
            raise DeployError("Secondary header not valid, aborting.")
        _log.info("Secondary header valid.")
    elif not _check_mbr(device, force_mbr):
        raise DeployError(
            "Could not determine if the device has a valid partition table.\n"
            "       Please ensure the device has a valid MBR or GPT.\n"
            "       Alternatively, pass `--force-mbr` to override these checks.\n"
            "       **ONLY DO THIS AT YOUR OWN RISK, DATA LOSS MAY OCCUR!**")

    stage2 = image[512:]
    sectors = -(-len(stage2) // 512)
    size_a = ((sectors // 2) * 512 + (512 if sectors % 2 else 0)) & 0xFFFF
    size_b = ((sectors // 2) * 512) & 0xFFFF

    loc_a = 512
    loc_b = loc_a + size_a

    if header is not None:
        esize = header.size_of_partition_entry
        if esize == 0:
            raise DeployError("GPT partition entry size is zero.")
        array_base = header.partition_entry_lba * lb_size
        if partition_index is not None:
            number = (partition_index - 1) & 0xFFFFFFFF
            if number > header.number_of_partition_entries:
                raise DeployError("Partition number is too large.")
            entry = parse_gpt_entry(device.read(array_base + number * esize, ENTRY_SIZE))
            if not entry.is_used():
                raise DeployError("No such partition.")
            _log.info("GPT partition specified. Deploying there instead of embedding.")
            loc_a = entry.starting_lba * lb_size
            loc_b = loc_a + size_a
            if loc_b & (lb_size - 1):
                loc_b = (loc_b + lb_size) & ~(lb_size - 1)
        else:
            _log.info("GPT partition NOT specified. Attempting GPT embedding.")
            max_used = -1
            for index in range(header.number_of_partition_entries):
                entry = parse_gpt_entry(device.read(array_base + index * esize, ENTRY_SIZE))
                if entry.is_used():
                    max_used = index

            loc_a = ((header.partition_entry_lba + 32) * lb_size - size_a) & ~(lb_size - 1)
            loc_b = ((secondary.partition_entry_lba + 32) * lb_size - size_b) & ~(lb_size - 1)

            entries_per_lb = lb_size // esize
            new_count = (loc_a // lb_size - header.partition_entry_lba) * entries_per_lb
            if new_count <= max_used:
                raise DeployError(
                    "Cannot embed because there are too many used partition entries.")
            _log.info("New maximum count of partition entries: %d.", new_count)

            for index in range(max_used + 1, new_count):
                device.write(array_base + index * esize, bytes(esize))
            sec_esize = secondary.size_of_partition_entry
            sec_base = secondary.partition_entry_lba * lb_size
            for index in range(max_used + 1, new_count):
                device.write(sec_base + index * sec_esize, bytes(sec_esize))

            array_crc = crc32(device.read(array_base, new_count * esize))

            primary_new = replace(header, number_of_partition_entries=new_count,
                                  partition_entry_array_crc32=array_crc).with_checksum()
            device.write(lb_size, primary_new.pack())
            secondary_new = replace(secondary, number_of_partition_entries=new_count,
                                    partition_entry_array_crc32=array_crc).with_checksum()
            device.write(lb_size * header.alternate_lba, secondary_new.pack())
    else:
        _log.info("Deploying to MBR.")

    _log.info("Stage 2 to be located at %#x and %#x.", loc_a, loc_b)

    timestamp = device.read(218, 6)
    original_table = device.read(440, 70)

    device.write(0, image[:512])
    device.write(loc_a, stage2[:size_a])
    device.write(loc_b, stage2[size_a:])

    device.write(_STAGE2_INFO, struct.pack("<HHQQ", size_a, size_b, loc_a, loc_b))

    device.write(218, timestamp)
    device.write(440, original_table)
    return loc_a, loc_b


def _err(message: str) -> None:
    print(message, file=sys.stderr)


def _usage() -> str:
    """Return the help text shown for ``--help`` and on bad invocations."""
    lines = [f"Usage: {_PROG} <device> [GPT partition index]", ""]
    for option, description in _OPTIONS:
        first, *rest = description
        head = f"    {option}"
        if len(head) + 1 <= _OPTION_COLUMN:
            lines.append(head.ljust(_OPTION_COLUMN) + first)
        else:
            lines.append(head)
            lines.append(" " * _OPTION_COLUMN + first)
        lines.extend(" " * _OPTION_COLUMN + line for line in rest)
        lines.append("")
    return "\n".join(lines)


def main(argv=None) -> int:
    """Command-line entry point; returns the process exit status."""
    args = sys.argv[1:] if argv is None else list(argv)
    package_logger = logging.getLogger("liminekit")
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(message)s"))
    old_level = package_logger.level
    package_logger.addHandler(handler)
    package_logger.setLevel(logging.INFO)
    try:
        with ExitStack() as stack:
            return _run(args, stack)
    finally:
        package_logger.removeHandler(handler)
        package_logger.setLevel(old_level)


def _run(args: list[str], stack: ExitStack) -> int:
    if not args:
        print(_usage())
        return 1

    force_mbr = False
    undeploy_mode = False
    undeploy_file = None
    image_path = None
    stream = None
    partition = None

    for arg in args:
        if arg in ("--help", "-h"):
            print(_usage())
            return 0
        if arg == "--force-mbr":
            if force_mbr:
                _err("Warning: --force-mbr already set.")
            force_mbr = True
        elif arg == "--undeploy":
            if undeploy_mode:
                _err("Warning: --undeploy already set.")
            undeploy_mode = True
        elif arg.startswith(_UNDEPLOY_OPT):
            if undeploy_file is not None:
                _err("Warning: --undeploy-data-file already set. Overriding...")
            undeploy_file = arg[len(_UNDEPLOY_OPT):]
            if not undeploy_file:
                _err("ERROR: Undeploy data file has a zero-length name!")
                return 1
        elif arg.startswith(_IMAGE_OPT):
            if image_path is not None:
                _err("Warning: --bootloader-image already set. Overriding...")
            image_path = arg[len(_IMAGE_OPT):]
            if not image_path:
                _err("ERROR: Bootloader image has a zero-length name!")
                return 1
        elif stream is not None:
            partition = arg
        else:
            try:
                stream = stack.enter_context(open(arg, "r+b"))
            except OSError as exc:
                _err(f"ERROR: {exc}")
                return 1

    if stream is None:
        _err("ERROR: No device specified")
        print(_usage())
        return 1

    try:
        device = BlockDevice(stream)
    except DeviceError as exc:
        _err(f"ERROR: {exc}")
        return 1
    _err(f"Physical block size of {device.block_size} bytes.")

    if undeploy_mode:
        if undeploy_file is None:
            _err("ERROR: Undeploy mode set but no --undeploy-data-file=... passed.")
            return 1
        _err(f"Loading undeploy data from file: `{undeploy_file}`...")
        try:
            device.undeploy_records = load_undeploy_data(undeploy_file)
        except DeviceError as exc:
            _err(f"ERROR: {exc}")
            return 1
        device.undeploy()
        _err("Undeploy data restored successfully.")
        return 0

    if image_path is None:
        _err("ERROR: No bootloader image specified")
        return 1
    try:
        with open(image_path, "rb") as fh:
            image = fh.read()
    except OSError as exc:
        _err(f"ERROR: {exc}")
        return 1

    partition_index = None
    if partition is not None:
        try:
            partition_index = int(partition)
        except ValueError:
            _err(f"ERROR: Invalid partition index `{partition}`.")
            return 1

    try:
        deploy(device, image, partition_index, force_mbr)
    except (DeployError, DeviceError) as exc:
        _err(f"ERROR: {exc}")
        return 1

    _err("Reminder: Remember to copy the limine.sys file in either\n"
         "          the root, /boot, /limine, or /boot/limine directories of\n"
         "          one of the partitions on the device, or boot will fail!")
    _err("Bootloader deployed successfully!")

    if undeploy_file is not None:
        _err(f"Storing undeploy data to file: `{undeploy_file}`...")
        try:
            save_undeploy_data(device.undeploy_records, undeploy_file)
        except DeviceError as exc:
            _err(f"ERROR: {exc}")
    return 0