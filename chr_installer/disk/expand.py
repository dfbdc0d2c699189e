"""Partition and filesystem growth.

After the container image has been grown, the data partition still ends
where the vendor put it. The expander moves the end of the partition to
the end of the free space that follows it, keeping the start sector, then
checks and grows the ext filesystem inside.

Rewriting the partition table is the only step that can fail the install.
Filesystem check and grow problems are tolerated and reported as a
degraded result: the router still boots with the vendor-sized filesystem.
"""

from __future__ import annotations

import json
import logging
import os
import time
from collections.abc import Callable
from dataclasses import dataclass

from chr_installer.command import CommandRunner, run_command
from chr_installer.errors import CommandError, PartitionResizeFailed
from chr_installer.types import AttachedImage, StepResult

logger = logging.getLogger(__name__)

# Free space smaller than one alignment grain is not worth claiming
ALIGNMENT_BYTES = 1024 * 1024

# e2fsck exit statuses of 4 and above mean errors were left uncorrected
E2FSCK_UNCORRECTED = 4


@dataclass(frozen=True)
class PartitionEntry:
    """One entry of a partition table, in sectors."""

    node: str
    start: int
    size: int

    @property
    def end(self) -> int:
        return self.start + self.size - 1


@dataclass(frozen=True)
class PartitionTable:
    """Partition table as reported by ``sfdisk --json``."""

    label: str
    sector_size: int
    partitions: tuple[PartitionEntry, ...]
    last_lba: int | None = None

    @classmethod
    def from_sfdisk_json(cls, text: str) -> "PartitionTable":
        data = json.loads(text)["partitiontable"]
        return cls(
            label=data.get("label", "dos"),
            sector_size=int(data.get("sectorsize", 512)),
            partitions=tuple(
                PartitionEntry(
                    node=p["node"], start=int(p["start"]), size=int(p["size"])
                )
                for p in data.get("partitions", [])
            ),
            last_lba=int(data["lastlba"]) if "lastlba" in data else None,
        )


class PartitionExpander:
    """Grows a partition and its filesystem to fill the device.

    Args:
        runner: Command runner for sfdisk, blockdev, partprobe, e2fsck, resize2fs.
        poll_attempts: Polls for the partition node after the table reread.
        poll_interval: Delay between polls in seconds.
        path_exists: Existence check for device nodes (replaced in tests).
        sleep: Sleep function (replaced in tests).
    """

    def __init__(
        self,
        runner: CommandRunner = run_command,
        *,
        poll_attempts: int = 10,
        poll_interval: float = 0.5,
        path_exists: Callable[[str], bool] = os.path.exists,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.runner = runner
        self.poll_attempts = poll_attempts
        self.poll_interval = poll_interval
        self.path_exists = path_exists
        self.sleep = sleep

    def read_table(self, device_path: str) -> PartitionTable:
        """Read the partition table of a device.

        Raises:
            PartitionResizeFailed: sfdisk failed or printed something unexpected.
        """
        try:
            result = self.runner(["sfdisk", "--json", device_path])
            return PartitionTable.from_sfdisk_json(result.stdout)
        except CommandError as e:
            raise PartitionResizeFailed(device_path, e.message) from e
        except (ValueError, KeyError, TypeError) as e:
            raise PartitionResizeFailed(
                device_path, f"unexpected sfdisk output: {e}"
            ) from e

    def device_sectors(self, device_path: str, sector_size: int) -> int:
        """Return the device size in sectors of the given size."""
        try:
            result = self.runner(["blockdev", "--getsz", device_path])
            return int(result.stdout.strip()) * 512 // sector_size
        except CommandError as e:
            raise PartitionResizeFailed(device_path, e.message) from e
        except ValueError as e:
            raise PartitionResizeFailed(
                device_path, f"unexpected blockdev output: {e}"
            ) from e

    def expand(self, attached: AttachedImage, partition_index: int) -> StepResult:
        """Grow a partition and its filesystem into the free space after it.

        Running it again on an already grown partition changes nothing.

        Args:
            attached: Attached image handle.
            partition_index: 1-based partition to grow.

        Returns:
            StepResult; degraded when the filesystem could not be checked
            or grown.

        Raises:
            PartitionResizeFailed: The partition table could not be read or
                rewritten.
        """
        device = attached.host_device_path
        partition = attached.partition(partition_index)
        result = StepResult(details={"partition": partition, "changed": False})

        table = self.read_table(device)
        if table.label == "gpt":
            # Move the backup header to the new end of the device first
            try:
                self.runner(["sfdisk", "--relocate", "gpt-bak-std", device])
            except CommandError as e:
                raise PartitionResizeFailed(device, e.message) from e
            table = self.read_table(device)

        entry = self._entry(table, partition, partition_index, device)
        max_end = self._max_end(table, entry, device)
        slack = (max_end - entry.end) * table.sector_size
        result.details["old_end"] = entry.end

        if slack < ALIGNMENT_BYTES:
            logger.info("%s already fills the available space", partition)
            result.details["new_end"] = entry.end
            return result

        logger.info(
            "Growing %s from sector %d to %d (%s table)",
            partition,
            entry.end,
            max_end,
            table.label,
        )
        try:
            self.runner(
                ["sfdisk", "--no-reread", "-N", str(partition_index), device],
                input_text=", +\n",
            )
        except CommandError as e:
            raise PartitionResizeFailed(device, e.message) from e
        result.details["changed"] = True
        result.details["new_end"] = self._entry(
            self.read_table(device), partition, partition_index, device
        ).end

        if not self._reread(device, partition):
            result.degrade(
                f"Kernel did not pick up the new table of {device}; "
                "filesystem left at its original size"
            )
            return result

        self._grow_filesystem(partition, result)
        return result

    def _entry(
        self, table: PartitionTable, partition: str, index: int, device: str
    ) -> PartitionEntry:
        for entry in table.partitions:
            if entry.node == partition:
                return entry
        if 0 < index <= len(table.partitions):
            return table.partitions[index - 1]
        raise PartitionResizeFailed(device, f"partition {index} not in table")

    def _max_end(
        self, table: PartitionTable, entry: PartitionEntry, device: str
    ) -> int:
        following = [p.start for p in table.partitions if p.start > entry.start]
        if following:
            return min(following) - 1
        if table.last_lba is not None:
            return table.last_lba
        return self.device_sectors(device, table.sector_size) - 1

    def _reread(self, device: str, partition: str) -> bool:
        reread = self.runner(["partprobe", device], check=False)
        if not reread.ok:
            logger.warning("partprobe %s failed, trying blockdev", device)
            reread = self.runner(["blockdev", "--rereadpt", device], check=False)
            if not reread.ok:
                return False

        for _ in range(self.poll_attempts):
            if self.path_exists(partition):
                return True
            self.sleep(self.poll_interval)
        return False

    def _grow_filesystem(self, partition: str, result: StepResult) -> None:
        check = self.runner(["e2fsck", "-f", "-y", partition], check=False)
        if check.returncode >= E2FSCK_UNCORRECTED:
            result.degrade(
                f"e2fsck left errors on {partition} (exit {check.returncode}); "
                "filesystem not grown"
            )
            return
        if check.returncode:
            logger.info("e2fsck corrected errors on %s", partition)

        grow = self.runner(["resize2fs", partition], check=False)
        if not grow.ok:
            result.degrade(
                f"resize2fs failed on {partition} (exit {grow.returncode}); "
                "filesystem left at its original size"
            )
            return
        logger.info("Filesystem on %s grown", partition)


__all__ = ["PartitionEntry", "PartitionExpander", "PartitionTable"]
