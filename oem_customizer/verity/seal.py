"""End-to-end sealing of the OEM partition.

Builds the hash tree, then adds a verity target for the OEM partition to
every kernel command line in ``efi/boot/grub.cfg`` on the EFI partition.
"""

from __future__ import annotations

import tempfile
from pathlib import Path
from typing import Optional

from oem_customizer.config.settings import get_setting
from oem_customizer.logging import operation_context
from oem_customizer.storage.exceptions import CustomizerError, MountFailedError
from oem_customizer.storage.tools import (
    AttributeScanner,
    HashTreeBuilder,
    Mounter,
    SystemMounter,
    load_docker_image,
)

from .boot_config import append_verity_target, get_part_uuid
from .sealer import VerityResult, seal

GRUB_CONFIG_RELATIVE_PATH = Path("efi") / "boot" / "grub.cfg"


def _remove_mount_dir(mountpoint: Path, log) -> None:
    # rmdir refuses a directory that is not empty, so a still mounted
    # partition is never touched.
    try:
        mountpoint.rmdir()
    except OSError as error:
        log.warning(f"Could not remove mount directory {mountpoint}: {error}")


def seal_oem_partition(
    size_4k: int,
    *,
    oem_partition: Optional[str] = None,
    efi_partition: Optional[str] = None,
    device_name: Optional[str] = None,
    image_archive: Optional[str] = None,
    builder: Optional[HashTreeBuilder] = None,
    scanner: Optional[AttributeScanner] = None,
    mounter: Optional[Mounter] = None,
    mount_dir: Optional[Path] = None,
) -> VerityResult:
    """Seal the OEM partition and make the kernel verify it at boot.

    Args:
        size_4k: Size of the OEM filesystem in 4K blocks; the hash tree is
            written right after it
        oem_partition: Partition to seal (default from settings)
        efi_partition: Partition holding efi/boot/grub.cfg (default from settings)
        device_name: Device-mapper name of the sealed device (default "oemroot")
        image_archive: docker image archive with veritysetup to load first
        mount_dir: Where to mount the EFI partition (default: a temp dir
            that is removed again afterwards)
    """
    oem_partition = oem_partition or get_setting("oem_partition")
    efi_partition = efi_partition or get_setting("efi_partition")
    device_name = device_name or get_setting("verity_device_name")
    if image_archive is None:
        image_archive = get_setting("veritysetup_image_archive")
    mounter = mounter if mounter is not None else SystemMounter()
    parameters = {
        "size_4k": size_4k,
        "oem_partition": oem_partition,
        "efi_partition": efi_partition,
        "device_name": device_name,
    }

    with operation_context("seal-oem", **parameters) as log:
        try:
            if image_archive:
                load_docker_image(image_archive)
                log.info(f"Loaded veritysetup image from {image_archive}")

            result = seal(size_4k, device=oem_partition, builder=builder)

            if mount_dir:
                mountpoint, created = Path(mount_dir), False
            else:
                mountpoint, created = Path(tempfile.mkdtemp(prefix="efi-")), True
            try:
                mounter.mount(efi_partition, str(mountpoint))
                log.info(f"Mounted {efi_partition} at {mountpoint}")
                try:
                    part_uuid = get_part_uuid(oem_partition, scanner=scanner)
                    append_verity_target(
                        mountpoint / GRUB_CONFIG_RELATIVE_PATH,
                        device_name,
                        part_uuid,
                        result.root_digest,
                        result.salt,
                        size_4k,
                    )
                except CustomizerError:
                    # Keep the original error; the unmount failure is only logged.
                    try:
                        mounter.unmount(str(mountpoint))
                    except MountFailedError as unmount_error:
                        log.warning(f"Could not unmount {mountpoint}: {unmount_error}")
                    raise
                mounter.unmount(str(mountpoint))
            finally:
                if created:
                    _remove_mount_dir(mountpoint, log)
        except CustomizerError as error:
            raise error.with_context(**parameters)
        log.info("Kernel command line modified")
        return result
