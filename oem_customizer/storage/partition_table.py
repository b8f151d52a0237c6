"""Partition table dump codec.

Reads and edits the text produced by ``sfdisk --dump``:

    label: gpt
    label-id: 5E2A2B4D-4E3C-C148-A4B0-9A3B4AF0A6D2
    device: /dev/sda
    unit: sectors
    first-lba: 34
    last-lba: 20971486

    /dev/sda1 : start=     4308992, size=    16662495, type=0FC63DAF-..., name="STATE"
    /dev/sda8 : start=       86016, size=       32768, type=0FC63DAF-..., name="OEM"

Only the ``start=`` and ``size=`` fields of one entry are ever rewritten.
Every other byte of the dump, including header lines, padding, field order
and line endings, comes back out unchanged so the result can be fed straight
to ``sfdisk`` again.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Callable, Optional

from .exceptions import InvalidArgumentError, PartitionNotFoundError, UnexpectedToolOutputError

# Entry lines put whitespace before the colon; header lines ("label: gpt") do not.
ENTRY_LINE_PATTERN = re.compile(r"^(?P<name>\S+)\s+:")
FIELD_PATTERNS = {
    key: re.compile(rf"(?:^|,)\s*{key}=(?P<pad>\s*)(?P<value>\d+)")
    for key in ("start", "size")
}


@dataclass
class PartitionEntry:
    name: str
    start: int
    size: int
    line_index: int

    @property
    def end(self) -> int:
        """Last sector of the partition (inclusive)."""
        return self.start + self.size - 1


@dataclass
class PartitionTable:
    lines: list[str] = field(default_factory=list)
    entries: list[PartitionEntry] = field(default_factory=list)

    def find(self, name: str) -> Optional[PartitionEntry]:
        for entry in self.entries:
            if entry.name == name:
                return entry
        return None

    def render(self) -> str:
        return "".join(self.lines)


def partition_name(disk: str, part_num: int) -> str:
    """Build the device name of a partition.

    Disks whose name ends in a digit get a ``p`` separator:
    ``/dev/sda`` + 8 -> ``/dev/sda8``, ``/dev/nvme0n1`` + 8 -> ``/dev/nvme0n1p8``.
    """
    if not disk or part_num <= 0:
        raise InvalidArgumentError(
            "empty disk name or non-positive partition number",
            disk=disk,
            part_num=part_num,
        )
    if disk[-1].isdigit():
        return f"{disk}p{part_num}"
    return f"{disk}{part_num}"


def split_line_ending(line: str) -> tuple[str, str]:
    body = line.rstrip("\r\n")
    return body, line[len(body):]


def match_entry_line(body: str) -> Optional[tuple[str, int]]:
    """Return the entry name and the offset of its field list, or None."""
    match = ENTRY_LINE_PATTERN.match(body)
    if not match:
        return None
    return match.group("name"), match.end()


def get_int_field(rest: str, key: str) -> Optional[int]:
    match = FIELD_PATTERNS[key].search(rest)
    if not match:
        return None
    return int(match.group("value"))


def set_int_field(rest: str, key: str, value: int) -> str:
    """Replace a numeric field, keeping the original right-aligned width."""
    match = FIELD_PATTERNS[key].search(rest)
    if not match:
        raise UnexpectedToolOutputError("sfdisk", f"entry has no {key}= field", rest)
    width = len(match.group("pad")) + len(match.group("value"))
    return rest[: match.start("pad")] + str(value).rjust(width) + rest[match.end("value"):]


def decode_entry(name: str, rest: str, line_index: int) -> PartitionEntry:
    start = get_int_field(rest, "start")
    size = get_int_field(rest, "size")
    if start is None or size is None:
        raise UnexpectedToolOutputError(
            "sfdisk", f"entry {name} is missing a start= or size= field", rest
        )
    return PartitionEntry(name=name, start=start, size=size, line_index=line_index)


def parse_partition_table(text: str) -> PartitionTable:
    """Parse a dump into raw lines plus the decoded entries."""
    table = PartitionTable(lines=text.splitlines(keepends=True))
    for index, line in enumerate(table.lines):
        body, _ = split_line_ending(line)
        matched = match_entry_line(body)
        if matched is None:
            continue
        name, offset = matched
        table.entries.append(decode_entry(name, body[offset:], index))
    return table


def parse_and_mutate(
    table_text: str,
    target: str,
    require_match: bool,
    mutate: Callable[[PartitionEntry], None],
) -> str:
    """Apply ``mutate`` to the entry named ``target`` and re-serialize.

    ``mutate`` edits ``start`` and/or ``size`` in place. Only the target line
    is re-encoded; all other lines are returned byte-identical.

    Raises:
        PartitionNotFoundError: target is absent and ``require_match`` is set
        InvalidArgumentError: the mutation produced a negative start or an empty size
    """
    lines = table_text.splitlines(keepends=True)
    for index, line in enumerate(lines):
        body, ending = split_line_ending(line)
        matched = match_entry_line(body)
        if matched is None or matched[0] != target:
            continue
        name, offset = matched
        prefix, rest = body[:offset], body[offset:]
        entry = decode_entry(name, rest, index)
        old_start, old_size = entry.start, entry.size
        mutate(entry)
        if entry.start < 0 or entry.size <= 0:
            raise InvalidArgumentError(
                f"invalid geometry for {name}: start={entry.start}, size={entry.size}",
                partition=name,
            )
        if entry.start != old_start:
            rest = set_int_field(rest, "start", entry.start)
        if entry.size != old_size:
            rest = set_int_field(rest, "size", entry.size)
        lines[index] = prefix + rest + ending
        return "".join(lines)

    if require_match:
        raise PartitionNotFoundError(target)
    return table_text


def find_entry(table_text: str, target: str) -> PartitionEntry:
    """Read-only lookup of one entry."""
    entry = parse_partition_table(table_text).find(target)
    if entry is None:
        raise PartitionNotFoundError(target)
    return entry


def read_entry_start(table_text: str, target: str) -> int:
    return find_entry(table_text, target).start


def read_entry_size(table_text: str, target: str) -> int:
    return find_entry(table_text, target).size
