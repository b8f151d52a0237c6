"""
Pytest configuration and shared fixtures for oem-customizer tests.

External tools are never executed: partition tables live in a FakeSfdisk,
and blkid / veritysetup / mount are replaced by small fakes with fixed output.
"""

from pathlib import Path
from typing import List

import pytest
from loguru import logger

from oem_customizer.config import settings
from oem_customizer.storage.exceptions import TableWriteFailedError
from oem_customizer.storage.partition_table import parse_partition_table


# ==============================================================================
# Partition Table Fixtures
# ==============================================================================

# STATE (sda1) sits right after OEM (sda8), with free space up to last-lba.
ADJACENT_LAYOUT_DUMP = """\
label: gpt
label-id: 5E2A2B4D-4E3C-C148-A4B0-9A3B4AF0A6D2
device: /dev/sda
unit: sectors
first-lba: 34
last-lba: 20971486
sector-size: 512

/dev/sda1 : start=      118784, size=     2097152, type=0FC63DAF-8483-4772-8E79-3D69D8477DE4, uuid=120991FF-4F12-43BF-B962-17325185121D, name="STATE"
/dev/sda2 : start=       20480, size=       32768, type=FE3A2A5D-4F32-41A7-B725-ACCC3285A309, uuid=DE4778DD-C187-8343-B86C-E122F9D234C0, name="KERN-A", attrs="GUID:49,51,52,54,56"
/dev/sda8 : start=       86016, size=       32768, type=0FC63DAF-8483-4772-8E79-3D69D8477DE4, uuid=9DB2AE75-98DC-5B4F-A38B-B3CB0B80B17F, name="OEM"
"""

# COS-like layout: KERN-A, OEM, EFI, ROOT-A, then STATE, with free space at the end.
COS_LAYOUT_DUMP = """\
label: gpt
label-id: 5E2A2B4D-4E3C-C148-A4B0-9A3B4AF0A6D2
device: /dev/sda
unit: sectors
first-lba: 34
last-lba: 20971486
sector-size: 512

/dev/sda1 : start=     4308992, size=     2097152, type=0FC63DAF-8483-4772-8E79-3D69D8477DE4, uuid=120991FF-4F12-43BF-B962-17325185121D, name="STATE"
/dev/sda2 : start=       20480, size=       32768, type=FE3A2A5D-4F32-41A7-B725-ACCC3285A309, uuid=DE4778DD-C187-8343-B86C-E122F9D234C0, name="KERN-A", attrs="GUID:49,51,52,54,56"
/dev/sda3 : start=      114688, size=     4194304, type=3CB8E202-3B7E-47DD-8A3C-7FF2A13CFCEC, uuid=00CE255B-DB42-1E47-A62B-735C7A9A7397, name="ROOT-A"
/dev/sda8 : start=       53248, size=       32768, type=0FC63DAF-8483-4772-8E79-3D69D8477DE4, uuid=9DB2AE75-98DC-5B4F-A38B-B3CB0B80B17F, name="OEM"
/dev/sda12 : start=       86016, size=       28672, type=C12A7328-F81F-11D2-BA4B-00A0C93EC93B, uuid=AAEA6E5E-BC5F-2542-B19A-66C2DAA4D5A8, name="EFI-SYSTEM"
"""


class FakeSfdisk:
    """In-memory partition table device.

    Like sfdisk, it refuses tables where two partitions overlap or a
    partition runs past last-lba. ``fail_on_write`` makes the n-th write
    (0-based) fail with TableWriteFailedError.
    """

    def __init__(self, table: str, fail_on_write=None, last_lba: int = 20971486):
        self.table = table
        self.fail_on_write = fail_on_write
        self.last_lba = last_lba
        self.reads = 0
        self.writes: List[str] = []
        self.write_attempts = 0

    def read_table(self, disk: str) -> str:
        self.reads += 1
        return self.table

    def write_table(self, disk: str, table: str) -> None:
        attempt = self.write_attempts
        self.write_attempts += 1
        if self.fail_on_write is not None and attempt == self.fail_on_write:
            raise TableWriteFailedError(
                f"sfdisk failed to write partition table (sfdisk --no-reread {disk}, exit 1)",
                command=["sfdisk", "--no-reread", disk],
                returncode=1,
            )
        entries = sorted(parse_partition_table(table).entries, key=lambda entry: entry.start)
        for previous, current in zip(entries, entries[1:]):
            if current.start <= previous.end:
                raise TableWriteFailedError(
                    f"sfdisk: {current.name} overlaps {previous.name}",
                    command=["sfdisk", "--no-reread", disk],
                    returncode=1,
                )
        if entries and max(entry.end for entry in entries) > self.last_lba:
            raise TableWriteFailedError(
                "sfdisk: partition exceeds last-lba",
                command=["sfdisk", "--no-reread", disk],
                returncode=1,
            )
        self.writes.append(table)
        self.table = table

    def entry(self, name: str):
        return parse_partition_table(self.table).find(name)


@pytest.fixture
def adjacent_sfdisk() -> FakeSfdisk:
    return FakeSfdisk(ADJACENT_LAYOUT_DUMP)


@pytest.fixture
def cos_sfdisk() -> FakeSfdisk:
    return FakeSfdisk(COS_LAYOUT_DUMP)


# ==============================================================================
# Tool Output Fixtures
# ==============================================================================


@pytest.fixture
def veritysetup_report() -> str:
    return (
        "VERITY header information for /dev/sda8\n"
        "UUID:            \t\n"
        "Hash type:       \t0\n"
        "Data blocks:     \t2048\n"
        "Data block size: \t4096\n"
        "Hash block size: \t4096\n"
        "Hash algorithm:  \tsha256\n"
        "Salt:            \t9cd7ba29a1771b2097a7d72be8c13b29766d7617c3b924eb0cf23ff5071fee47\n"
        "Root hash:      \td6b862d01e01e6417a1b5e7eb0eed2a2189594b74325dd0749cd83bbf78f5dc8\n"
    )


@pytest.fixture
def blkid_output() -> str:
    return (
        '/dev/sda1: LABEL="STATE" UUID="120991ff-4f12-43bf-b962-17325185121d" TYPE="ext4" '
        'PARTLABEL="STATE" PARTUUID="120991ff-4f12-43bf-b962-17325185121d"\n'
        '/dev/sda3: LABEL="ROOT-A" SEC_TYPE="ext2" TYPE="ext4" PARTLABEL="ROOT-A" '
        'PARTUUID="00ce255b-db42-1e47-a62b-735c7a9a7397"\n'
        '/dev/sda8: LABEL="OEM" UUID="1401457b-449d-4755-9a1e-57054b287489" TYPE="ext4" '
        'PARTLABEL="OEM" PARTUUID="9db2ae75-98dc-5b4f-a38b-b3cb0b80b17f"\n'
        '/dev/sda12: SEC_TYPE="msdos" LABEL="EFI-SYSTEM" UUID="F6E7-003C" TYPE="vfat" '
        'PARTLABEL="EFI-SYSTEM" PARTUUID="aaea6e5e-bc5f-2542-b19a-66c2daa4d5a8"\n'
        '/dev/dm-0: LABEL="ROOT-A" SEC_TYPE="ext2" TYPE="ext4"\n'
    )


@pytest.fixture
def grub_cfg_text() -> str:
    return (
        "defaultA=2\n"
        "defaultB=3\n"
        "set timeout=0\n"
        "\n"
        'menuentry "local image A" {\n'
        "  linux /syslinux/vmlinuz.A init=/usr/lib/systemd/systemd boot=local rootwait ro "
        "noresume loglevel=7 console=ttyS0 i915.modeset=1 cros_efi root=/dev/sda3\n"
        "}\n"
        "\n"
        'menuentry "verified image A" {\n'
        "  linux /syslinux/vmlinuz.A init=/usr/lib/systemd/systemd boot=local rootwait ro "
        "noresume loglevel=7 console=ttyS0 dm_verity.error_behavior=3 dm_verity.max_bios=-1 "
        'dm_verity.dev_wait=1 root=/dev/dm-0 dm="1 vroot none ro 1,0 4077568 verity '
        "payload=PARTUUID=8AC60384-1187-9E49-91CE-3ABD8DA295A7 "
        "hashtree=PARTUUID=8AC60384-1187-9E49-91CE-3ABD8DA295A7 hashstart=4077568 alg=sha256 "
        "root_hexdigest=5e16f9e1cb7ba3b2d2d3d2f8b5d67e7b1e5a1f0e8e0b5b3f7f2d6e0e4a1c9b8d "
        'salt=6c8b2a6d4d2e1f0c9b8a7f6e5d4c3b2a1f0e9d8c7b6a5f4e3d2c1b0a9f8e7d6c"\n'
        "}\n"
    )


# ==============================================================================
# Settings / Logging Fixtures
# ==============================================================================


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """
    Auto-use fixture that resets settings to defaults for every test.

    sudo is disabled so command lines in assertions are the bare tool calls.
    """
    monkeypatch.setattr(settings, "SETTINGS_PATH", tmp_path / "settings.json")
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)
    settings.settings_store.values["use_sudo"] = False
    yield
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)


@pytest.fixture
def log_records():
    """Collect loguru records emitted during the test."""
    records = []
    handler_id = logger.add(lambda message: records.append(message.record), level="TRACE")
    yield records
    logger.remove(handler_id)


@pytest.fixture
def mock_subprocess_run(mocker):
    """
    Fixture providing a mock for subprocess.run.

    Returns:
        Mock object for subprocess.run
    """
    return mocker.patch("subprocess.run")


@pytest.fixture
def efi_mount_dir(tmp_path, grub_cfg_text) -> Path:
    """A directory laid out like a mounted EFI partition."""
    mount_dir = tmp_path / "efi-mount"
    boot_dir = mount_dir / "efi" / "boot"
    boot_dir.mkdir(parents=True)
    (boot_dir / "grub.cfg").write_text(grub_cfg_text, encoding="utf-8")
    return mount_dir
