"""Settings storage for tool paths and device defaults."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from oem_customizer.storage.exceptions import StateFileWriteFailedError


SETTINGS_PATH = Path(
    os.environ.get(
        "OEM_CUSTOMIZER_SETTINGS_PATH",
        Path.home() / ".config" / "oem-customizer" / "settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_OEM_PARTITION = "/dev/sda8"
DEFAULT_EFI_PARTITION = "/dev/sda12"
DEFAULT_ROOT_PARTITION_INDEX = 3
DEFAULT_VERITY_DEVICE_NAME = "oemroot"

DEFAULT_SETTINGS: dict[str, Any] = {
    "use_sudo": True,
    "sfdisk_path": "sfdisk",
    "blkid_path": "blkid",
    "veritysetup_docker_image": "veritysetup",
    "veritysetup_image_archive": None,
    "oem_partition": DEFAULT_OEM_PARTITION,
    "efi_partition": DEFAULT_EFI_PARTITION,
    "root_partition_index": DEFAULT_ROOT_PARTITION_INDEX,
    "verity_device_name": DEFAULT_VERITY_DEVICE_NAME,
    "layout_journal_path": None,
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def load_settings() -> None:
    settings_store.values = dict(DEFAULT_SETTINGS)
    if not SETTINGS_PATH.exists():
        return
    try:
        data = json.loads(SETTINGS_PATH.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return
    if isinstance(data, dict):
        settings_store.values.update(data)


def save_settings() -> None:
    try:
        SETTINGS_PATH.parent.mkdir(parents=True, exist_ok=True)
        SETTINGS_PATH.write_text(
            json.dumps(settings_store.values, indent=2, sort_keys=True),
            encoding="utf-8",
        )
    except OSError as error:
        raise StateFileWriteFailedError(str(SETTINGS_PATH), str(error)) from error


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def set_setting(key: str, value: Any) -> None:
    settings_store.values[key] = value
    save_settings()


def get_bool(key: str, default: bool = False) -> bool:
    return bool(get_setting(key, default))


load_settings()
