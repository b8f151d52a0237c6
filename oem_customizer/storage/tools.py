"""Narrow interfaces over the external disk tools.

The layout and sealing code only talks to these objects, so tests can swap
in fakes that hold a partition table dump or a fixed tool report in memory.

    PartitionTableTool   read_table / write_table        (sfdisk)
    AttributeScanner     list_attributes                 (blkid)
    HashTreeBuilder      format                          (veritysetup)
    Mounter              mount / unmount                 (mount, umount)
"""

from __future__ import annotations

from typing import Optional, Protocol, Sequence

from oem_customizer.config.settings import get_setting

from .command_runners import privileged, run_checked_command
from .exceptions import (
    CommandError,
    MountFailedError,
    SealToolFailedError,
    TableReadFailedError,
    TableWriteFailedError,
)


class PartitionTableTool(Protocol):
    def read_table(self, disk: str) -> str:
        ...

    def write_table(self, disk: str, table: str) -> None:
        ...


class AttributeScanner(Protocol):
    def list_attributes(self) -> str:
        ...


class HashTreeBuilder(Protocol):
    def format(self, data_device: str, hash_device: str, options: Sequence[str]) -> str:
        ...


class Mounter(Protocol):
    def mount(self, device: str, mountpoint: str) -> None:
        ...

    def unmount(self, mountpoint: str) -> None:
        ...


class SfdiskTool:
    """Partition table dump and restore through ``sfdisk``."""

    def __init__(self, sfdisk: Optional[str] = None):
        self.sfdisk = sfdisk or get_setting("sfdisk_path", "sfdisk")

    def read_table(self, disk: str) -> str:
        return run_checked_command(
            privileged([self.sfdisk, "--dump", disk]),
            "sfdisk dump failed",
            TableReadFailedError,
        )

    def write_table(self, disk: str, table: str) -> None:
        run_checked_command(
            privileged([self.sfdisk, "--no-reread", disk]),
            "sfdisk failed to write partition table",
            TableWriteFailedError,
            input_text=table,
        )


class BlkidScanner:
    """Block device attributes through ``blkid``."""

    def __init__(self, blkid: Optional[str] = None):
        self.blkid = blkid or get_setting("blkid_path", "blkid")

    def list_attributes(self) -> str:
        return run_checked_command(privileged([self.blkid]), "blkid failed", CommandError)


class VeritySetup:
    """``veritysetup``, either on the host or inside a docker image."""

    def __init__(self, docker_image: Optional[str] = None):
        if docker_image is None:
            docker_image = get_setting("veritysetup_docker_image")
        self.docker_image = docker_image

    def command(self, data_device: str, hash_device: str, options: Sequence[str]) -> list[str]:
        command = ["veritysetup", "format", data_device, hash_device, *options]
        if self.docker_image:
            command = [
                "docker",
                "run",
                "--rm",
                "--privileged",
                "-v",
                "/dev:/dev",
                self.docker_image,
                *command,
            ]
        return privileged(command)

    def format(self, data_device: str, hash_device: str, options: Sequence[str]) -> str:
        return run_checked_command(
            self.command(data_device, hash_device, options),
            "veritysetup format failed",
            SealToolFailedError,
        )


def load_docker_image(archive: str) -> None:
    """Load a docker image archive (``docker load -i``)."""
    run_checked_command(
        privileged(["docker", "load", "-i", archive]),
        "docker load failed",
        SealToolFailedError,
    )


class SystemMounter:
    """``mount`` and ``umount`` with argument lists, never through a shell."""

    def mount(self, device: str, mountpoint: str) -> None:
        run_checked_command(
            privileged(["mount", device, mountpoint]),
            f"Failed to mount {device}",
            MountFailedError,
        )

    def unmount(self, mountpoint: str) -> None:
        run_checked_command(
            privileged(["umount", mountpoint]),
            f"Failed to unmount {mountpoint}",
            MountFailedError,
        )
