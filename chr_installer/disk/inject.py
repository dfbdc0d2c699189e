"""First-boot script injection.

Mounts a partition of the attached image on a scoped temporary mount
point, writes the first-boot script, verifies it by reading it back, and
unmounts again. The partition is never left mounted, whatever happens.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

from chr_installer.command import CommandRunner, run_command
from chr_installer.errors import CommandError, FilesystemError, MountFailed, WriteFailed
from chr_installer.routeros import FirstBootConfig
from chr_installer.types import AttachedImage, StepResult

logger = logging.getLogger(__name__)

SCRIPT_MODE = 0o755


class FilesystemInjector:
    """Writes first-boot artifacts into a partition of an attached image.

    Args:
        runner: Command runner for mount and umount.
        mount_root: Parent directory for temporary mount points.
    """

    def __init__(
        self, runner: CommandRunner = run_command, mount_root: Path | None = None
    ) -> None:
        self.runner = runner
        self.mount_root = mount_root

    def inject(
        self, attached: AttachedImage, partition_index: int, config: FirstBootConfig
    ) -> StepResult:
        """Write a first-boot script into a partition.

        Args:
            attached: Attached image handle.
            partition_index: 1-based partition holding the data filesystem.
            config: Rendered script and its path on the partition.

        Returns:
            StepResult with the partition and byte count in details.

        Raises:
            MountFailed: The partition could not be mounted.
            WriteFailed: The script could not be written or read back intact.
        """
        partition = attached.partition(partition_index)
        if self.mount_root is not None:
            self.mount_root.mkdir(parents=True, exist_ok=True)
        mount_point = Path(tempfile.mkdtemp(prefix="chr-mnt-", dir=self.mount_root))

        try:
            try:
                self.runner(["mount", partition, str(mount_point)])
            except CommandError as e:
                raise MountFailed(partition, e.message) from e
            logger.info("Mounted %s on %s", partition, mount_point)

            try:
                target = self._write(mount_point, config)
            finally:
                self._unmount(partition, mount_point)
        finally:
            try:
                mount_point.rmdir()
            except OSError as e:
                logger.warning("Could not remove mount point %s: %s", mount_point, e)

        logger.info(
            "Injected %s (%d bytes) into %s", target, len(config.content), partition
        )
        return StepResult(
            details={
                "partition": partition,
                "path": config.path,
                "bytes": len(config.content),
            }
        )

    def _write(self, mount_point: Path, config: FirstBootConfig) -> str:
        target = mount_point / config.path
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(target, "wb") as f:
                f.write(config.content)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(target, SCRIPT_MODE)
            written = target.read_bytes()
        except OSError as e:
            raise WriteFailed(config.path, str(e)) from e

        if written != config.content:
            raise WriteFailed(
                config.path,
                f"read back {len(written)} bytes, expected {len(config.content)}",
            )
        return config.path

    def _unmount(self, partition: str, mount_point: Path) -> None:
        try:
            self.runner(["umount", str(mount_point)])
        except CommandError as e:
            raise FilesystemError(
                f"Failed to unmount {partition} from {mount_point}: {e.message}",
                error_code="unmount_failed",
            ) from e
        logger.debug("Unmounted %s", partition)


__all__ = ["SCRIPT_MODE", "FilesystemInjector"]
