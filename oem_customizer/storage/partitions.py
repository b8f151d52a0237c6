"""Single-edit partition operations.

Every operation dumps the current table from the device, applies exactly one
edit through the codec, and writes the table back. Nothing is cached between
calls, so each one sees the result of the previous one.
"""

from __future__ import annotations

from typing import Optional

from oem_customizer.logging import LoggerFactory

from .exceptions import CustomizerError, InvalidArgumentError
from .partition_table import (
    PartitionEntry,
    PartitionTable,
    parse_and_mutate,
    parse_partition_table,
    partition_name,
    read_entry_size,
    read_entry_start,
)
from .sizes import parse_move_target
from .tools import PartitionTableTool, SfdiskTool

log = LoggerFactory.for_layout()

# Smallest footprint for a minimized partition: 4096 sectors (2 MiB), which
# keeps the start of whatever follows it 4K aligned.
MINIMUM_PARTITION_SECTORS = 4096


def _tool(tool: Optional[PartitionTableTool]) -> PartitionTableTool:
    return tool if tool is not None else SfdiskTool()


def read_partition_table(disk: str, *, tool: Optional[PartitionTableTool] = None) -> str:
    if not disk:
        raise InvalidArgumentError("empty disk name", disk=disk)
    return _tool(tool).read_table(disk)


def list_partitions(disk: str, *, tool: Optional[PartitionTableTool] = None) -> PartitionTable:
    return parse_partition_table(read_partition_table(disk, tool=tool))


def read_partition_start(disk: str, part_num: int, *, tool: Optional[PartitionTableTool] = None) -> int:
    """Start sector of a partition."""
    name = partition_name(disk, part_num)
    try:
        return read_entry_start(read_partition_table(disk, tool=tool), name)
    except CustomizerError as error:
        raise error.with_context(disk=disk, part_num=part_num)


def read_partition_size(disk: str, part_num: int, *, tool: Optional[PartitionTableTool] = None) -> int:
    """Size of a partition in sectors."""
    name = partition_name(disk, part_num)
    try:
        return read_entry_size(read_partition_table(disk, tool=tool), name)
    except CustomizerError as error:
        raise error.with_context(disk=disk, part_num=part_num)


def _edit_partition(disk: str, part_num: int, mutate, tool: Optional[PartitionTableTool]) -> None:
    tool = _tool(tool)
    name = partition_name(disk, part_num)
    table = read_partition_table(disk, tool=tool)
    table = parse_and_mutate(table, name, True, mutate)
    tool.write_table(disk, table)


def move_partition(disk: str, part_num: int, dest: str, *, tool: Optional[PartitionTableTool] = None) -> None:
    """Move a partition's start sector without changing its size.

    ``dest`` is an absolute start sector ("2048") or a signed distance from
    the current start ("+10M", "-4096").
    """
    try:
        target = parse_move_target(dest)

        def mutate(entry: PartitionEntry) -> None:
            entry.start = entry.start + target.sectors if target.relative else target.sectors

        _edit_partition(disk, part_num, mutate, tool)
    except CustomizerError as error:
        raise error.with_context(disk=disk, part_num=part_num, dest=dest)
    log.info(f"Moved partition {part_num} of {disk} to {dest}")


def extend_partition(disk: str, part_num: int, end_sector: int, *, tool: Optional[PartitionTableTool] = None) -> None:
    """Resize a partition so its last sector is ``end_sector``, keeping its start."""
    try:

        def mutate(entry: PartitionEntry) -> None:
            if end_sector < entry.start:
                raise InvalidArgumentError(
                    f"end sector {end_sector} is before start sector {entry.start}"
                )
            entry.size = end_sector - entry.start + 1

        _edit_partition(disk, part_num, mutate, tool)
    except CustomizerError as error:
        raise error.with_context(disk=disk, part_num=part_num, end_sector=end_sector)
    log.info(f"Extended partition {part_num} of {disk} to end at sector {end_sector}")


def minimize_partition(disk: str, part_num: int, *, tool: Optional[PartitionTableTool] = None) -> int:
    """Shrink a partition to ``MINIMUM_PARTITION_SECTORS``, keeping its start.

    Returns:
        The first sector after the shrunk partition
    """
    start_sector = None

    def mutate(entry: PartitionEntry) -> None:
        nonlocal start_sector
        start_sector = entry.start
        entry.size = MINIMUM_PARTITION_SECTORS

    try:
        _edit_partition(disk, part_num, mutate, tool)
    except CustomizerError as error:
        raise error.with_context(disk=disk, part_num=part_num)
    log.info(f"Minimized partition {partition_name(disk, part_num)}")
    return start_sector + MINIMUM_PARTITION_SECTORS
