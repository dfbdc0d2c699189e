"""Kernel controls used around the destructive write.

Wraps the handful of /proc interfaces and commands the writer needs:
generic sync, page cache drop, and the magic SysRq triggers used when the
disk being overwritten holds the running system.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from pathlib import Path

from chr_installer.command import CommandRunner, run_command

logger = logging.getLogger(__name__)

PROC_ROOT = Path("/proc")

SYSRQ_SYNC = "s"
SYSRQ_REBOOT = "b"


class KernelControl:
    """Sync, cache and reboot controls.

    Args:
        runner: Command runner for the reboot command.
        proc_root: Root of procfs (replaced in tests).
        sync: Generic filesystem sync function.
    """

    def __init__(
        self,
        runner: CommandRunner = run_command,
        *,
        proc_root: Path = PROC_ROOT,
        sync: Callable[[], None] = os.sync,
    ) -> None:
        self.runner = runner
        self.proc_root = Path(proc_root)
        self._sync = sync

    def sync(self) -> None:
        """Flush all filesystem buffers."""
        logger.debug("sync")
        self._sync()

    def drop_caches(self) -> bool:
        """Drop the page cache, dentries and inodes.

        Returns:
            False when the kernel refused; the write is already durable.
        """
        try:
            (self.proc_root / "sys/vm/drop_caches").write_text("3\n")
        except OSError as e:
            logger.warning("Could not drop page cache: %s", e)
            return False
        logger.debug("Page cache dropped")
        return True

    def enable_sysrq(self) -> None:
        """Allow every SysRq function."""
        (self.proc_root / "sys/kernel/sysrq").write_text("1\n")

    def sysrq(self, key: str) -> None:
        """Trigger a SysRq function.

        Raises:
            OSError: The trigger file could not be written.
        """
        logger.info("SysRq trigger '%s'", key)
        with open(self.proc_root / "sysrq-trigger", "w") as f:
            f.write(key)

    def emergency_sync(self) -> None:
        """Sync every mounted filesystem through SysRq."""
        try:
            self.enable_sysrq()
        except OSError as e:
            logger.warning("Could not enable SysRq: %s", e)
        self.sysrq(SYSRQ_SYNC)

    def emergency_reboot(self) -> None:
        """Reboot immediately, without unmounting or syncing."""
        self.sysrq(SYSRQ_REBOOT)

    def reboot(self) -> None:
        """Ask init for an orderly reboot."""
        logger.info("Requesting system reboot")
        self.runner(["reboot"])


__all__ = ["SYSRQ_REBOOT", "SYSRQ_SYNC", "KernelControl"]
