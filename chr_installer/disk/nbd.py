"""Network block device attachment.

Exposes a container image as a kernel block device through qemu-nbd so its
partitions can be mounted and resized. The device node is a kernel-global
slot: at most one image may be bound to it at a time. Bindings made by this
process are tracked in a slot registry; bindings made by anything else are
detected through sysfs.
"""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable
from pathlib import Path

from chr_installer.command import CommandRunner, run_command
from chr_installer.errors import (
    CommandError,
    DeviceBusy,
    DeviceError,
    PartitionsNotDetected,
)
from chr_installer.types import AttachedImage

logger = logging.getLogger(__name__)

DEFAULT_NBD_DEVICE = "/dev/nbd0"
SYSFS_BLOCK = Path("/sys/block")

# Device path -> backing file, for bindings owned by this process.
_SLOTS: dict[str, Path] = {}


def partition_node(device_path: str, index: int) -> str:
    """Return the partition node name for an nbd/loop/nvme style device."""
    return f"{device_path}p{index}"


class NbdConnector:
    """Attaches container images to a network block device node.

    Args:
        device_path: Well-known node to bind (e.g. '/dev/nbd0').
        runner: Command runner for modprobe, qemu-nbd and partprobe.
        expected_partitions: Partition nodes that must appear after attach.
        max_partitions: max_part parameter for the nbd module.
        poll_attempts: Partition polls before giving up.
        poll_interval: Delay between polls in seconds.
        slots: Slot registry (process-wide by default).
        sysfs_root: Root of /sys/block (replaced in tests).
        path_exists: Existence check for device nodes (replaced in tests).
        sleep: Sleep function (replaced in tests).
    """

    def __init__(
        self,
        device_path: str = DEFAULT_NBD_DEVICE,
        *,
        runner: CommandRunner = run_command,
        expected_partitions: int = 2,
        max_partitions: int = 8,
        poll_attempts: int = 10,
        poll_interval: float = 0.5,
        slots: dict[str, Path] | None = None,
        sysfs_root: Path = SYSFS_BLOCK,
        path_exists: Callable[[str], bool] = os.path.exists,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.device_path = device_path
        self.runner = runner
        self.expected_partitions = expected_partitions
        self.max_partitions = max_partitions
        self.poll_attempts = poll_attempts
        self.poll_interval = poll_interval
        self.slots = _SLOTS if slots is None else slots
        self.sysfs_root = Path(sysfs_root)
        self.path_exists = path_exists
        self.sleep = sleep

    @property
    def device_name(self) -> str:
        return Path(self.device_path).name

    def kernel_bound(self) -> bool:
        """Check whether the kernel reports a server attached to the node."""
        return (self.sysfs_root / self.device_name / "pid").exists()

    def bound_file(self) -> Path | None:
        """Backing file bound by this process, if any."""
        return self.slots.get(self.device_path)

    def is_bound(self) -> bool:
        """Check whether the node is bound by anyone."""
        return self.bound_file() is not None or self.kernel_bound()

    def attach(self, container_image: Path) -> AttachedImage:
        """Bind an image to the node and wait for its partitions.

        Args:
            container_image: qcow2 image to expose.

        Returns:
            AttachedImage handle; pass it to detach().

        Raises:
            DeviceBusy: Node is bound to another file.
            PartitionsNotDetected: Partition nodes never appeared.
            DeviceError: modprobe or qemu-nbd failed.
        """
        image = Path(container_image).resolve()
        current = self.bound_file()

        if current is not None and current != image:
            raise DeviceBusy(self.device_path, str(current))
        if current is None and self.kernel_bound():
            raise DeviceBusy(self.device_path)

        if current == image:
            logger.info("%s already bound to %s", self.device_path, image.name)
            return self._attached(image)

        try:
            self.runner(["modprobe", "nbd", f"max_part={self.max_partitions}"])
            logger.info("Attaching %s to %s", image.name, self.device_path)
            self.runner(
                [
                    "qemu-nbd",
                    f"--connect={self.device_path}",
                    "--format=qcow2",
                    str(image),
                ]
            )
        except CommandError as e:
            raise DeviceError(
                f"Failed to attach {image.name} to {self.device_path}: {e.message}",
                error_code="attach_failed",
            ) from e
        self.slots[self.device_path] = image

        try:
            return self._attached(image)
        except DeviceError:
            try:
                self._disconnect()
            except DeviceError as cleanup_error:
                logger.error("Cleanup after failed attach: %s", cleanup_error)
            raise

    def _attached(self, image: Path) -> AttachedImage:
        partitions = self.reread_partitions()
        return AttachedImage(
            host_device_path=self.device_path,
            backing_file=image,
            partition_paths=tuple(partitions),
        )

    def reread_partitions(self) -> list[str]:
        """Ask the kernel to reread the partition table and wait for nodes.

        Returns:
            Expected partition node paths, in order.

        Raises:
            PartitionsNotDetected: Nodes did not appear within the poll bound.
        """
        result = self.runner(["partprobe", self.device_path], check=False)
        if not result.ok:
            logger.warning(
                "partprobe %s failed: %s", self.device_path, result.stderr.strip()
            )

        expected = [
            partition_node(self.device_path, i)
            for i in range(1, self.expected_partitions + 1)
        ]
        missing = expected
        for attempt in range(1, self.poll_attempts + 1):
            missing = [p for p in expected if not self.path_exists(p)]
            if not missing:
                logger.debug("Partitions detected after %d poll(s)", attempt)
                return expected
            if attempt < self.poll_attempts:
                self.sleep(self.poll_interval)

        raise PartitionsNotDetected(self.device_path, missing)

    def detach(self, attached: AttachedImage | None = None) -> None:
        """Unbind the node. Detaching an unbound node is a no-op.

        Raises:
            DeviceError: qemu-nbd refused to disconnect.
        """
        if attached is not None and attached.host_device_path != self.device_path:
            raise ValueError(
                f"{attached.host_device_path} is not managed by this connector "
                f"({self.device_path})"
            )
        if not self.is_bound():
            logger.debug("%s not bound, nothing to detach", self.device_path)
            return
        self._disconnect()

    def _disconnect(self) -> None:
        logger.info("Detaching %s", self.device_path)
        try:
            self.runner(["qemu-nbd", f"--disconnect={self.device_path}"])
        except CommandError as e:
            raise DeviceError(
                f"Failed to detach {self.device_path}: {e.message}",
                error_code="detach_failed",
            ) from e
        self.slots.pop(self.device_path, None)

        for _ in range(self.poll_attempts):
            if not self.kernel_bound():
                return
            self.sleep(self.poll_interval)
        logger.warning("%s still reports a server after disconnect", self.device_path)


__all__ = ["DEFAULT_NBD_DEVICE", "NbdConnector", "partition_node"]
