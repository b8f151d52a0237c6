"""Kernel command line patching for the sealed OEM partition.

A kernel command line in grub.cfg that sets up verified boot looks like:

    linux /syslinux/vmlinuz.A ... root=/dev/dm-0 dm="1 vroot none ro 1,0 4077568 verity payload=PARTUUID=8AC60384-... hashtree=PARTUUID=8AC60384-... hashstart=4077568 alg=sha256 root_hexdigest=... salt=..."

The leading number of the ``dm="..."`` value is the count of device-mapper
devices, and each device is a comma separated clause. Sealing the OEM
partition bumps the count and appends one more clause for it.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Optional

from oem_customizer.logging import LoggerFactory
from oem_customizer.storage.exceptions import (
    BootConfigWriteFailedError,
    CustomizerError,
    InvalidBootConfigError,
    PartitionUUIDNotFoundError,
)
from oem_customizer.storage.sizes import blocks_4k_to_sectors
from oem_customizer.storage.tools import AttributeScanner, BlkidScanner

log = LoggerFactory.for_seal()

DM_MARKER = 'dm="'
HASH_ALGORITHM = "sha256"
ATTRIBUTE_PATTERN = re.compile(r'(?P<key>[A-Z_]+)="(?P<value>[^"]*)"')
COUNT_PATTERN = re.compile(r"\d+")


def parse_part_uuid(blkid_output: str, partition: str) -> str:
    """Find the PARTUUID of ``partition`` in ``blkid`` output.

    blkid prints one device per line:

        /dev/sda8: LABEL="OEM" UUID="1401457b-..." TYPE="ext4" PARTLABEL="OEM" PARTUUID="9db2ae75-..."
    """
    prefix = f"{partition}:"
    for line in blkid_output.splitlines():
        if not line.startswith(prefix):
            continue
        for match in ATTRIBUTE_PATTERN.finditer(line[len(prefix):]):
            if match.group("key") == "PARTUUID" and match.group("value"):
                return match.group("value")
    raise PartitionUUIDNotFoundError(partition)


def get_part_uuid(partition: str, *, scanner: Optional[AttributeScanner] = None) -> str:
    scanner = scanner if scanner is not None else BlkidScanner()
    try:
        return parse_part_uuid(scanner.list_attributes(), partition)
    except CustomizerError as error:
        raise error.with_context(partition=partition)


def build_verity_target(name: str, part_uuid: str, root_digest: str, salt: str, size_4k: int) -> str:
    """Device-mapper clause for a partition whose hash tree follows its data."""
    sectors = blocks_4k_to_sectors(size_4k)
    return (
        f"{name} none ro 1,0 {sectors} verity "
        f"payload=PARTUUID={part_uuid} hashtree=PARTUUID={part_uuid} "
        f"hashstart={sectors} alg={HASH_ALGORITHM} "
        f"root_hexdigest={root_digest} salt={salt}"
    )


def patch_command_line(line: str, target: str, line_number: int = 0) -> str:
    """Add ``target`` to the ``dm="..."`` value of one kernel command line."""
    marker = line.find(DM_MARKER)
    if marker < 0:
        raise InvalidBootConfigError(line_number, f"no {DM_MARKER} parameter")
    value_start = marker + len(DM_MARKER)
    value_end = line.find('"', value_start)
    if value_end < 0:
        raise InvalidBootConfigError(line_number, "unterminated dm= parameter")
    count = COUNT_PATTERN.match(line, value_start, value_end)
    if count is None:
        raise InvalidBootConfigError(line_number, "dm= parameter does not start with a device count")
    new_count = str(int(count.group()) + 1)
    return (
        line[:value_start]
        + new_count
        + line[count.end():value_end]
        + ","
        + target
        + line[value_end:]
    )


def append_verity_target(
    boot_config_path,
    name: str,
    part_uuid: str,
    root_digest: str,
    salt: str,
    size_4k: int,
) -> int:
    """Append a verity target to every kernel command line in the boot config.

    Lines without a ``dm="`` parameter are written back unchanged. A file
    without any such line is left untouched.

    Returns:
        Number of patched lines
    """
    path = Path(boot_config_path)
    context = {
        "boot_config_path": str(path),
        "name": name,
        "part_uuid": part_uuid,
        "root_digest": root_digest,
        "salt": salt,
        "size_4k": size_4k,
    }
    target = build_verity_target(name, part_uuid, root_digest, salt, size_4k)
    try:
        try:
            content = path.read_bytes().decode("utf-8")
        except (OSError, UnicodeDecodeError) as error:
            raise BootConfigWriteFailedError(str(path), f"cannot read: {error}") from error

        lines = content.split("\n")
        patched = 0
        for index, line in enumerate(lines):
            if DM_MARKER not in line:
                continue
            lines[index] = patch_command_line(line, target, index + 1)
            patched += 1

        if patched == 0:
            log.warning(f"No kernel command line in {path} has a {DM_MARKER} parameter, no verity target added")
            return 0

        try:
            path.write_bytes("\n".join(lines).encode("utf-8"))
        except OSError as error:
            raise BootConfigWriteFailedError(str(path), f"cannot write: {error}") from error
    except CustomizerError as error:
        raise error.with_context(**context)

    log.info(f"Appended {name} verity target to {patched} kernel command line(s) in {path}")
    return patched
