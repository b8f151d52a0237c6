"""Custom exceptions for partition layout and sealing operations.

Exception Hierarchy:
    CustomizerError (base)
        ├── InvalidArgumentError
        ├── InvalidSizeFormatError
        ├── PartitionNotFoundError
        ├── UnexpectedToolOutputError
        ├── PartitionUUIDNotFoundError
        ├── InvalidBootConfigError
        ├── BootConfigWriteFailedError
        ├── StateFileWriteFailedError
        └── CommandError
            ├── TableReadFailedError
            ├── TableWriteFailedError
            ├── SealToolFailedError
            └── MountFailedError

Every error keeps a ``context`` dict with the input parameters of the
operation that failed. Callers higher up the stack add their own inputs with
``with_context`` and re-raise the same object:

    try:
        move_partition(disk, part_num, dest)
    except CustomizerError as error:
        raise error.with_context(disk=disk, part_num=part_num, dest=dest)

Errors raised while a disk layout change is half applied also carry
``failed_step`` and ``journal`` (see ``storage.layout.LayoutJournal``).
"""

from __future__ import annotations

from typing import Any, Optional


class CustomizerError(Exception):
    """Base exception for all disk layout and sealing operations."""

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.context: dict[str, Any] = dict(context)
        # Set by the disk layout reorganizer when a step fails part way.
        self.failed_step: Optional[str] = None
        self.journal = None
        super().__init__(message)

    def with_context(self, **context: Any) -> "CustomizerError":
        for key, value in context.items():
            self.context.setdefault(key, value)
        return self

    def __str__(self) -> str:
        if not self.context:
            return self.message
        rendered = ", ".join(f"{key}={value!r}" for key, value in self.context.items())
        return f"{self.message}, input: {rendered}"


class InvalidArgumentError(CustomizerError):
    """Empty or non-positive input, rejected before any I/O."""


class InvalidSizeFormatError(CustomizerError):
    """Size string could not be parsed."""

    def __init__(self, size: str, reason: str):
        self.size = size
        self.reason = reason
        super().__init__(f"Invalid size {size!r}: {reason}")


class PartitionNotFoundError(CustomizerError):
    """Partition is not present in the partition table."""

    def __init__(self, partition: str):
        self.partition = partition
        super().__init__(f"Partition not found in partition table: {partition}")


class UnexpectedToolOutputError(CustomizerError):
    """An external tool succeeded but its output has an unexpected shape."""

    def __init__(self, tool: str, reason: str, output: str = ""):
        self.tool = tool
        self.reason = reason
        self.output = output
        message = f"Unexpected {tool} output: {reason}"
        if output:
            message += f"\n{output}"
        super().__init__(message)


class PartitionUUIDNotFoundError(CustomizerError):
    """No PARTUUID attribute was reported for the partition."""

    def __init__(self, partition: str):
        self.partition = partition
        super().__init__(f"Partition UUID not found for {partition}")


class InvalidBootConfigError(CustomizerError):
    """A kernel command line in the boot config cannot be patched."""

    def __init__(self, line_number: int, reason: str):
        self.line_number = line_number
        self.reason = reason
        super().__init__(f"Cannot patch boot config line {line_number}: {reason}")


class BootConfigWriteFailedError(CustomizerError):
    """Boot config could not be read or written."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Boot config I/O failed for {path}: {reason}")


class StateFileWriteFailedError(CustomizerError):
    """A settings or layout journal file could not be written."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Cannot write {path}: {reason}")


class CommandError(CustomizerError):
    """Base exception for failed external commands."""

    def __init__(self, message: str, command: Optional[list[str]] = None, returncode: Optional[int] = None):
        self.command = command or []
        self.returncode = returncode
        super().__init__(message)


class TableReadFailedError(CommandError):
    """The partition table tool could not dump the current table."""


class TableWriteFailedError(CommandError):
    """The partition table tool rejected a rewritten table."""


class SealToolFailedError(CommandError):
    """The hash-tree builder exited with an error."""


class MountFailedError(CommandError):
    """Mounting or unmounting the EFI partition failed."""

