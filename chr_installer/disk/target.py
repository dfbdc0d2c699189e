"""Target disk detection and validation.

This module decides which physical disk receives the router image and
whether the chosen install mode may write to it:
- Validate the path is an existing whole-disk block device
- Refuse disks smaller than the configured minimum
- Report mounted partitions and active swap on the disk
- Detect whether the running root filesystem lives on the disk

STANDARD mode only writes to a secondary disk with nothing mounted.
FORCED mode only writes to the disk the running system lives on.
"""

import logging
import os
import re
import stat
from pathlib import Path

from chr_installer.config import GIB
from chr_installer.errors import TargetDiskError
from chr_installer.types import InstallMode, TargetDisk

logger = logging.getLogger(__name__)

PROC_MOUNTS = Path("/proc/mounts")
PROC_SWAPS = Path("/proc/swaps")
SYS_BLOCK = Path("/sys/block")

# Probed in order when no disk is given
CANDIDATE_DISKS = ("sda", "vda", "nvme0n1")

# Patterns for partition detection
# /dev/sdX1, /dev/vdX1, /dev/xvdX1
_PARTITION_PATTERN_SD = re.compile(r"^/dev/(?:[shv]|xv)d[a-z]+(\d+)$")
# /dev/nvme0n1p1, /dev/mmcblk0p1, /dev/loop0p1, /dev/nbd0p1
_PARTITION_PATTERN_P = re.compile(
    r"^/dev/(?:nvme\d+n\d+|mmcblk\d+|loop\d+|nbd\d+)p(\d+)$"
)


def normalize_device(device: str) -> str:
    """Turn 'sda' or '/dev/sda' into '/dev/sda'."""
    device = device.strip()
    if not device:
        raise TargetDiskError("Empty target disk name", error_code="invalid_device")
    if not device.startswith("/"):
        device = f"/dev/{device}"
    return os.path.normpath(device)


def is_partition_path(device_path: str) -> bool:
    """Check if a device path looks like a partition."""
    return bool(
        _PARTITION_PATTERN_SD.match(device_path)
        or _PARTITION_PATTERN_P.match(device_path)
    )


def partition_to_whole_device(partition_path: str) -> str:
    """Convert '/dev/sda1' to '/dev/sda' and '/dev/nvme0n1p2' to '/dev/nvme0n1'.

    Paths that are not partitions are returned unchanged.
    """
    match = _PARTITION_PATTERN_SD.match(partition_path)
    if match:
        return partition_path[: -len(match.group(1))]
    if _PARTITION_PATTERN_P.match(partition_path):
        return partition_path[: partition_path.rfind("p")]
    return partition_path


def is_block_device(device_path: str) -> bool:
    """Check if a path is a block device."""
    try:
        return stat.S_ISBLK(os.stat(device_path).st_mode)
    except OSError:
        return False


def backing_disks(source: str, sys_block: Path = SYS_BLOCK) -> set[str]:
    """Return the whole-disk names a mount or swap source lives on.

    Device-mapper volumes (LVM, dm-crypt) are followed through their
    sysfs slaves down to the physical partitions.

    Args:
        source: Device path from /proc/mounts or /proc/swaps.
        sys_block: Root of /sys/block.

    Returns:
        Set of disk names such as {'sda'}; empty for non-device sources.
    """
    if not source.startswith("/dev/"):
        return set()

    device = os.path.realpath(source)
    name = Path(device).name
    if name.startswith("dm-"):
        disks: set[str] = set()
        slaves = sys_block / name / "slaves"
        try:
            for slave in slaves.iterdir():
                disks |= backing_disks(f"/dev/{slave.name}", sys_block)
        except OSError:
            logger.debug("No slaves listed for %s", name)
        return disks

    return {Path(partition_to_whole_device(device)).name}


def _read_lines(path: Path) -> list[str]:
    try:
        return path.read_text().splitlines()
    except OSError:
        logger.warning("Could not read %s, skipping", path)
        return []


def get_mount_points(
    device_path: str,
    *,
    proc_mounts: Path = PROC_MOUNTS,
    proc_swaps: Path = PROC_SWAPS,
    sys_block: Path = SYS_BLOCK,
) -> list[str]:
    """Get mount points and active swap areas on a disk.

    Args:
        device_path: Whole-disk device (e.g. '/dev/sda').

    Returns:
        Mount points, with swap areas reported as '[swap] <source>'.
    """
    device_name = Path(device_path).name
    mount_points: list[str] = []

    for line in _read_lines(proc_mounts):
        parts = line.split()
        if len(parts) >= 2 and device_name in backing_disks(parts[0], sys_block):
            mount_points.append(parts[1].replace("\\040", " "))

    # First line of /proc/swaps is a header
    for line in _read_lines(proc_swaps)[1:]:
        parts = line.split()
        if parts and device_name in backing_disks(parts[0], sys_block):
            mount_points.append(f"[swap] {parts[0]}")

    return mount_points


def get_root_device(
    *, proc_mounts: Path = PROC_MOUNTS, sys_block: Path = SYS_BLOCK
) -> str | None:
    """Get the whole disk holding the root filesystem.

    Returns:
        Path such as '/dev/sda', or None if it cannot be determined.
    """
    for line in _read_lines(proc_mounts):
        parts = line.split()
        if len(parts) >= 2 and parts[1] == "/":
            disks = backing_disks(parts[0], sys_block)
            if len(disks) == 1:
                return f"/dev/{disks.pop()}"
            if disks:
                logger.warning("Root filesystem spans several disks: %s", sorted(disks))
            return None
    return None


def get_device_size(device_path: str, sys_block: Path = SYS_BLOCK) -> int | None:
    """Get the size of a block device in bytes from sysfs."""
    size_path = sys_block / Path(device_path).name / "size"
    try:
        # Size is in 512-byte sectors
        return int(size_path.read_text().strip()) * 512
    except (OSError, ValueError) as e:
        logger.warning("Could not read device size for %s: %s", device_path, e)
    return None


def detect_target_disk(sys_block: Path = SYS_BLOCK) -> str:
    """Pick the first conventional system disk present on the host.

    Raises:
        TargetDiskError: None of the candidate disks exists.
    """
    for name in CANDIDATE_DISKS:
        if (sys_block / name).exists():
            logger.info("Auto-detected target disk /dev/%s", name)
            return f"/dev/{name}"
    raise TargetDiskError(
        f"No target disk found (looked for {', '.join(CANDIDATE_DISKS)}). "
        "Pass --disk explicitly.",
        error_code="no_disk_detected",
    )


def validate_target(
    device: str,
    mode: InstallMode,
    *,
    min_disk_bytes: int = GIB,
    proc_mounts: Path = PROC_MOUNTS,
    proc_swaps: Path = PROC_SWAPS,
    sys_block: Path = SYS_BLOCK,
) -> TargetDisk:
    """Validate a disk as the destination of the install.

    Args:
        device: Disk name or path ('sda' or '/dev/sda').
        mode: Install mode the disk will be written with.
        min_disk_bytes: Smallest acceptable disk.

    Returns:
        TargetDisk describing the validated disk.

    Raises:
        TargetDiskError: The disk is missing, a partition, too small, or
            unsuitable for the mode.
    """
    device_path = normalize_device(device)
    logger.debug("Validating target disk: %s", device_path)

    if not os.path.exists(device_path):
        raise TargetDiskError(f"Disk not found: {device_path}", error_code="not_found")
    if not is_block_device(device_path):
        raise TargetDiskError(
            f"Not a block device: {device_path}", error_code="not_block_device"
        )
    if is_partition_path(device_path):
        raise TargetDiskError(
            f"{device_path} is a partition. Pass the whole disk "
            f"(e.g. {partition_to_whole_device(device_path)}).",
            error_code="partition_not_allowed",
        )

    size_bytes = get_device_size(device_path, sys_block)
    if size_bytes is None:
        raise TargetDiskError(
            f"Could not determine the size of {device_path}", error_code="size_unknown"
        )
    if size_bytes < min_disk_bytes:
        raise TargetDiskError(
            f"Disk {device_path} is too small: {size_bytes // (1024 * 1024)} MiB, "
            f"at least {min_disk_bytes // (1024 * 1024)} MiB required",
            error_code="disk_too_small",
        )

    mount_points = get_mount_points(
        device_path, proc_mounts=proc_mounts, proc_swaps=proc_swaps, sys_block=sys_block
    )
    root_device = get_root_device(proc_mounts=proc_mounts, sys_block=sys_block)
    is_root = root_device == device_path

    if mode == InstallMode.STANDARD:
        if is_root:
            raise TargetDiskError(
                f"{device_path} holds the running root filesystem. "
                "Use --mode forced to overwrite the running system.",
                error_code="root_disk",
            )
        if mount_points:
            raise TargetDiskError(
                f"{device_path} has mounted partitions: {', '.join(mount_points)}. "
                "Unmount them before installing.",
                error_code="device_mounted",
            )
    elif not is_root:
        raise TargetDiskError(
            f"{device_path} does not hold the running root filesystem. "
            "Forced mode only overwrites the running system; use --mode standard.",
            error_code="not_root_disk",
        )
    else:
        logger.warning(
            "Forced mode will overwrite %s while mounted at %s",
            device_path,
            ", ".join(mount_points),
        )

    logger.info(
        "Target disk validated: %s (size=%d, root=%s, mounts=%d)",
        device_path,
        size_bytes,
        is_root,
        len(mount_points),
    )
    return TargetDisk(
        device_path=device_path,
        size_bytes=size_bytes,
        mounted_partitions=frozenset(mount_points),
        is_root_disk=is_root,
    )


__all__ = [
    "CANDIDATE_DISKS",
    "backing_disks",
    "detect_target_disk",
    "get_device_size",
    "get_mount_points",
    "get_root_device",
    "is_block_device",
    "is_partition_path",
    "normalize_device",
    "partition_to_whole_device",
    "validate_target",
]
