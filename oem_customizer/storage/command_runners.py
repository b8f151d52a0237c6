"""Command execution utilities for the external disk tools."""

from __future__ import annotations

import os
import subprocess
from typing import Optional, Sequence

from oem_customizer.config.settings import get_bool
from oem_customizer.logging import LoggerFactory

log = LoggerFactory.for_command()


def privileged(command: Sequence[str]) -> list[str]:
    """Prefix a command with sudo when configured and not already root."""
    command = list(command)
    if get_bool("use_sudo", True) and os.geteuid() != 0:
        return ["sudo", *command]
    return command


def run_command(command: Sequence[str], input_text: Optional[str] = None) -> subprocess.CompletedProcess:
    """Run a command to completion and return the result without checking it."""
    command = list(command)
    log.debug("Running command: {}", " ".join(command))
    return subprocess.run(
        command,
        input=input_text,
        text=True,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
    )


def format_command_failure(summary: str, command: Sequence[str], result: subprocess.CompletedProcess) -> str:
    """Format a command failure message."""
    stderr = " ".join((result.stderr or "").strip().split())
    stdout = " ".join((result.stdout or "").strip().split())
    details = []
    if stderr:
        details.append(f"stderr: {stderr}")
    if stdout:
        details.append(f"stdout: {stdout}")
    if details:
        return f"{summary} ({' '.join(command)}, exit {result.returncode}): {' | '.join(details)}"
    return f"{summary} ({' '.join(command)}, exit {result.returncode})"


def run_checked_command(
    command: Sequence[str],
    summary: str,
    error_cls,
    input_text: Optional[str] = None,
) -> str:
    """Run a command and raise ``error_cls`` if it exits non-zero.

    Returns:
        The command's stdout
    """
    command = list(command)
    result = run_command(command, input_text=input_text)
    if result.returncode != 0:
        raise error_cls(
            format_command_failure(summary, command, result),
            command=command,
            returncode=result.returncode,
        )
    return result.stdout


__all__ = [
    "format_command_failure",
    "privileged",
    "run_checked_command",
    "run_command",
]
