"""Disk layout changes that make room for a larger OEM partition.

Two policies are supported:

``extend_oem_partition``
    The OEM partition sits right before the stateful partition. The stateful
    partition is pushed towards the end of the disk by the new OEM size, the
    OEM partition moves into the stateful partition's old start, and is then
    grown up to one sector before the stateful partition's new start.

``handle_disk_layout``
    Same idea, but the start point can first be pulled forward by shrinking
    the root partition to its minimum footprint (``reclaim_root``).

Neither is transactional. Each step writes a complete partition table, and a
failure part way leaves the disk at the last completed step. The steps are
recorded in a ``LayoutJournal`` which is attached to the raised error and,
when ``layout_journal_path`` is configured, written to disk after each step.
A journal that cannot be written fails the step it belongs to.
Already written tables are never rolled back.
"""

from __future__ import annotations

import json
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Optional

from oem_customizer.config.settings import get_setting
from oem_customizer.logging import operation_context

from .exceptions import CustomizerError, InvalidArgumentError, StateFileWriteFailedError
from .partitions import (
    extend_partition,
    minimize_partition,
    move_partition,
    read_partition_size,
    read_partition_start,
    read_partition_table,
)
from .sizes import bytes_to_sectors, parse_size, sectors_to_bytes
from .tools import PartitionTableTool, SfdiskTool


@dataclass
class LayoutJournal:
    operation: str
    parameters: dict[str, Any]
    path: Optional[Path] = None
    completed: list[str] = field(default_factory=list)
    values: dict[str, int] = field(default_factory=dict)

    @property
    def last_completed(self) -> Optional[str]:
        return self.completed[-1] if self.completed else None

    def record(self, step: str, **values: int) -> None:
        self.completed.append(step)
        self.values.update(values)
        self.save()

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("path")
        return data

    def save(self) -> None:
        if self.path is None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(self.to_dict(), indent=2), encoding="utf-8")
        except OSError as error:
            raise StateFileWriteFailedError(str(self.path), str(error)) from error


def _journal_path(journal_path: Optional[Path]) -> Optional[Path]:
    if journal_path is not None:
        return Path(journal_path)
    configured = get_setting("layout_journal_path")
    return Path(configured) if configured else None


@contextmanager
def _step(journal: LayoutJournal, step: str):
    try:
        yield
    except CustomizerError as error:
        if error.failed_step is None:
            error.failed_step = step
            error.journal = journal
        raise error.with_context(**journal.parameters)


def _validate(disk: str, state_part_num: int, oem_part_num: int, **parameters) -> None:
    if not disk or state_part_num <= 0 or oem_part_num <= 0:
        raise InvalidArgumentError(
            "empty disk name or non-positive partition number",
            disk=disk,
            state_part_num=state_part_num,
            oem_part_num=oem_part_num,
            **parameters,
        )


def extend_oem_partition(
    disk: str,
    state_part_num: int,
    oem_part_num: int,
    oem_size: str,
    *,
    tool: Optional[PartitionTableTool] = None,
    journal_path: Optional[Path] = None,
) -> int:
    """Grow the OEM partition by moving the stateful partition out of the way.

    ``oem_size`` is a sector count ("40960") or a size with unit ("3G",
    "100M", "10000K", "99999B"). Requests that are not larger than the
    current OEM partition are logged and ignored.

    Returns:
        The OEM partition size in sectors after the call
    """
    _validate(disk, state_part_num, oem_part_num, oem_size=oem_size)
    tool = tool if tool is not None else SfdiskTool()
    parameters = {
        "disk": disk,
        "state_part_num": state_part_num,
        "oem_part_num": oem_part_num,
        "oem_size": oem_size,
    }
    journal = LayoutJournal("extend-oem", parameters, path=_journal_path(journal_path))

    with operation_context("extend-oem", **parameters) as log:
        with _step(journal, "read-oem-size"):
            new_oem_bytes = parse_size(oem_size)
            old_oem_size = read_partition_size(disk, oem_part_num, tool=tool)
        old_oem_bytes = sectors_to_bytes(old_oem_size)

        if new_oem_bytes <= old_oem_bytes:
            log.warning(
                f"oem_size {new_oem_bytes} bytes is not larger than the current OEM "
                f"partition ({old_oem_bytes} bytes), nothing is done"
            )
            return old_oem_size

        with _step(journal, "read-table"):
            table = read_partition_table(disk, tool=tool)
        log.info("Old partition table:\n{}", table)

        with _step(journal, "read-state-start"):
            old_state_start = read_partition_start(disk, state_part_num, tool=tool)
            journal.record("read-state-start", old_state_start=old_state_start)

        with _step(journal, "move-state"):
            move_partition(disk, state_part_num, f"+{oem_size.strip()}", tool=tool)
            journal.record("move-state")

        with _step(journal, "read-new-state-start"):
            new_state_start = read_partition_start(disk, state_part_num, tool=tool)
            journal.record("read-new-state-start", new_state_start=new_state_start)

        # The stateful partition has left old_state_start, so the OEM
        # partition can take it without overlapping anything.
        with _step(journal, "move-oem"):
            move_partition(disk, oem_part_num, str(old_state_start), tool=tool)
            journal.record("move-oem")

        with _step(journal, "extend-oem"):
            extend_partition(disk, oem_part_num, new_state_start - 1, tool=tool)
            journal.record("extend-oem")

        with _step(journal, "read-table"):
            table = read_partition_table(disk, tool=tool)
        log.info("New partition table:\n{}", table)
        return new_state_start - old_state_start


def handle_disk_layout(
    disk: str,
    state_part_num: int,
    oem_part_num: int,
    oem_size: str,
    reclaim_root: bool,
    *,
    root_part_num: Optional[int] = None,
    tool: Optional[PartitionTableTool] = None,
    journal_path: Optional[Path] = None,
) -> int:
    """Reorganize the disk for a larger OEM partition, optionally reclaiming root.

    If ``reclaim_root`` is set, the root partition is minimized first and
    the reorganization starts right after it. Otherwise it starts at the
    stateful partition's current start. The stateful partition moves to
    ``start + oem_size``, the OEM partition to ``start``, and the OEM
    partition is extended to one sector before the stateful partition.

    ``oem_size`` of "0" means the OEM partition keeps its size; with
    ``reclaim_root`` the stateful partition still moves to the start point.

    Returns:
        The OEM partition size in sectors after the call
    """
    if root_part_num is None:
        root_part_num = int(get_setting("root_partition_index", 3))
    _validate(
        disk,
        state_part_num,
        oem_part_num,
        oem_size=oem_size,
        reclaim_root=reclaim_root,
        root_part_num=root_part_num,
    )
    if not oem_size or (reclaim_root and root_part_num <= 0):
        raise InvalidArgumentError(
            "empty OEM size or non-positive root partition number",
            disk=disk,
            state_part_num=state_part_num,
            oem_part_num=oem_part_num,
            oem_size=oem_size,
            reclaim_root=reclaim_root,
            root_part_num=root_part_num,
        )
    tool = tool if tool is not None else SfdiskTool()
    parameters = {
        "disk": disk,
        "state_part_num": state_part_num,
        "oem_part_num": oem_part_num,
        "oem_size": oem_size,
        "reclaim_root": reclaim_root,
        "root_part_num": root_part_num,
    }
    journal = LayoutJournal("handle-disk-layout", parameters, path=_journal_path(journal_path))

    with operation_context("handle-disk-layout", **parameters) as log:
        with _step(journal, "read-table"):
            table = read_partition_table(disk, tool=tool)
        log.info("Old partition table:\n{}", table)

        with _step(journal, "read-oem-size"):
            new_oem_bytes = parse_size(oem_size)
            old_oem_size = read_partition_size(disk, oem_part_num, tool=tool)
        old_oem_bytes = sectors_to_bytes(old_oem_size)

        if reclaim_root:
            with _step(journal, "minimize-root"):
                start_point = minimize_partition(disk, root_part_num, tool=tool)
                journal.record("minimize-root", start_point=start_point)
            log.info(f"Shrunk root partition {root_part_num}, start point is sector {start_point}")
        else:
            with _step(journal, "read-state-start"):
                start_point = read_partition_start(disk, state_part_num, tool=tool)
                journal.record("read-state-start", start_point=start_point)

        if new_oem_bytes <= old_oem_bytes:
            if new_oem_bytes != 0:
                log.warning(
                    f"oem_size {new_oem_bytes} bytes is not larger than the current OEM "
                    f"partition ({old_oem_bytes} bytes), nothing is done for the OEM partition"
                )
            if not reclaim_root:
                return old_oem_size
            with _step(journal, "move-state"):
                move_partition(disk, state_part_num, str(start_point), tool=tool)
                journal.record("move-state")
            with _step(journal, "read-table"):
                table = read_partition_table(disk, tool=tool)
            log.info("New partition table:\n{}", table)
            return old_oem_size

        new_state_start = start_point + bytes_to_sectors(new_oem_bytes)

        with _step(journal, "move-state"):
            move_partition(disk, state_part_num, str(new_state_start), tool=tool)
            journal.record("move-state", new_state_start=new_state_start)

        with _step(journal, "move-oem"):
            move_partition(disk, oem_part_num, str(start_point), tool=tool)
            journal.record("move-oem")

        with _step(journal, "extend-oem"):
            extend_partition(disk, oem_part_num, new_state_start - 1, tool=tool)
            journal.record("extend-oem")

        with _step(journal, "read-table"):
            table = read_partition_table(disk, tool=tool)
        log.info("New partition table:\n{}", table)
        return new_state_start - start_point
