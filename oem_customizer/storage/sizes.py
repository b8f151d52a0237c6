"""Size string parsing and sector arithmetic.

All partition table values are 512-byte sectors. Conversions between sizes
given by the user and sectors happen only in this module.

Accepted size strings:
    "4096"  bare integer, a number of 512-byte sectors
    "10B"   bytes
    "10K"   kibibytes
    "10M"   mebibytes
    "10G"   gibibytes
"""

from __future__ import annotations

from dataclasses import dataclass

from .exceptions import InvalidSizeFormatError

SECTOR_SIZE = 512
BLOCK_4K_SIZE = 4096
SECTORS_PER_4K_BLOCK = BLOCK_4K_SIZE // SECTOR_SIZE

UNIT_MULTIPLIERS = {
    "B": 1,
    "K": 1 << 10,
    "M": 1 << 20,
    "G": 1 << 30,
}


def parse_size(size: str) -> int:
    """Convert a size string to a number of bytes.

    A bare integer is a sector count, so ``parse_size("8")`` is 4096 bytes.

    Raises:
        InvalidSizeFormatError: empty string, unknown unit or non-numeric magnitude
    """
    if not isinstance(size, str) or not size.strip():
        raise InvalidSizeFormatError(str(size), "empty size")
    text = size.strip()
    unit = text[-1]
    if unit.isdigit():
        magnitude, multiplier = text, SECTOR_SIZE
    else:
        multiplier = UNIT_MULTIPLIERS.get(unit.upper())
        if multiplier is None:
            raise InvalidSizeFormatError(size, f"unknown unit {unit!r}, expected one of B, K, M, G")
        magnitude = text[:-1]
    if not (magnitude.isascii() and magnitude.isdigit()):
        raise InvalidSizeFormatError(size, f"magnitude {magnitude!r} is not a non-negative integer")
    return int(magnitude) * multiplier


def bytes_to_sectors(size_bytes: int) -> int:
    return size_bytes // SECTOR_SIZE


def sectors_to_bytes(sectors: int) -> int:
    return sectors * SECTOR_SIZE


def size_to_sectors(size: str) -> int:
    """Convert a size string to whole 512-byte sectors, rounding down."""
    return bytes_to_sectors(parse_size(size))


def blocks_4k_to_sectors(blocks: int) -> int:
    return blocks * SECTORS_PER_4K_BLOCK


def blocks_4k_to_bytes(blocks: int) -> int:
    return blocks * BLOCK_4K_SIZE


@dataclass(frozen=True)
class MoveTarget:
    """Destination of a partition move.

    ``relative`` targets are added to the partition's current start sector.
    """

    sectors: int
    relative: bool


def parse_move_target(dest: str) -> MoveTarget:
    """Parse a move destination such as ``"2048"``, ``"+10M"`` or ``"-4096"``."""
    if not isinstance(dest, str) or not dest.strip():
        raise InvalidSizeFormatError(str(dest), "empty move destination")
    text = dest.strip()
    sign = text[0]
    if sign in "+-":
        sectors = size_to_sectors(text[1:])
        return MoveTarget(sectors=-sectors if sign == "-" else sectors, relative=True)
    return MoveTarget(sectors=size_to_sectors(text), relative=False)
