"""Hash tree construction for the OEM partition with ``veritysetup``.

The hash tree is stored inside the sealed partition itself, right after the
data region, and no verity superblock is written. ``veritysetup format``
ends its report with the salt and root hash:

    VERITY header information for /dev/sda8
    UUID:
    Hash type:              0
    Data blocks:            2048
    Data block size:        4096
    Hash block size:        4096
    Hash algorithm:         sha256
    Salt:                   9cd7ba29a1771b2097a7d72be8c13b29766d7617c3b924eb0cf23ff5071fee47
    Root hash:              d6b862d01e01e6417a1b5e7eb0eed2a2189594b74325dd0749cd83bbf78f5dc8
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from oem_customizer.config.settings import get_setting
from oem_customizer.logging import LoggerFactory
from oem_customizer.storage.exceptions import (
    CustomizerError,
    InvalidArgumentError,
    UnexpectedToolOutputError,
)
from oem_customizer.storage.sizes import BLOCK_4K_SIZE, blocks_4k_to_bytes
from oem_customizer.storage.tools import HashTreeBuilder, VeritySetup

log = LoggerFactory.for_seal()

SALT_LABEL = "Salt:"
ROOT_HASH_LABEL = "Root hash:"


@dataclass(frozen=True)
class VerityResult:
    root_digest: str
    salt: str


def build_veritysetup_options(size_4k: int) -> list[str]:
    """``veritysetup format`` options for a data region of ``size_4k`` 4K blocks."""
    return [
        f"--data-block-size={BLOCK_4K_SIZE}",
        f"--hash-block-size={BLOCK_4K_SIZE}",
        f"--data-blocks={size_4k}",
        # --hash-offset is in bytes
        f"--hash-offset={blocks_4k_to_bytes(size_4k)}",
        "--no-superblock",
        "--format=0",
    ]


def _labeled_value(line: str, label: str) -> str:
    return line[len(label):].strip()


def parse_verity_report(report: str) -> VerityResult:
    """Extract the root digest and salt from a ``veritysetup format`` report.

    The report must end with a newline, the last line must be the root hash
    and the one before it the salt. No other layout is accepted.
    """
    lines = report.split("\n")
    if len(lines) < 3:
        raise UnexpectedToolOutputError("veritysetup", "report is too short", report)
    if lines[-1] != "":
        raise UnexpectedToolOutputError("veritysetup", "report does not end with a newline", report)
    root_line, salt_line = lines[-2], lines[-3]
    if not root_line.startswith(ROOT_HASH_LABEL) or not salt_line.startswith(SALT_LABEL):
        raise UnexpectedToolOutputError(
            "veritysetup",
            'the last two lines are not "Salt:" and "Root hash:"',
            report,
        )
    root_digest = _labeled_value(root_line, ROOT_HASH_LABEL)
    salt = _labeled_value(salt_line, SALT_LABEL)
    if not root_digest or not salt:
        raise UnexpectedToolOutputError("veritysetup", "empty salt or root hash", report)
    return VerityResult(root_digest=root_digest, salt=salt)


def seal(
    size_4k: int,
    *,
    device: Optional[str] = None,
    builder: Optional[HashTreeBuilder] = None,
) -> VerityResult:
    """Build the hash tree over the first ``size_4k`` 4K blocks of ``device``.

    Raises:
        SealToolFailedError: veritysetup exited non-zero
        UnexpectedToolOutputError: the report could not be parsed
    """
    if device is None:
        device = get_setting("oem_partition")
    try:
        if not device or size_4k <= 0:
            raise InvalidArgumentError("empty device or non-positive data block count")
        builder = builder if builder is not None else VeritySetup()
        report = builder.format(device, device, build_veritysetup_options(size_4k))
        result = parse_verity_report(report)
    except CustomizerError as error:
        raise error.with_context(size_4k=size_4k, device=device)
    log.info(f"Built hash tree for {device}, root hash {result.root_digest}")
    return result
