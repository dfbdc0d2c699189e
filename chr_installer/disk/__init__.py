"""Block device module.

This module handles:
- Attaching the container image as a network block device
- Injecting the first-boot script into the data partition
- Growing the data partition and its filesystem
- Validating the physical disk that receives the image
"""

from chr_installer.disk.expand import PartitionEntry, PartitionExpander, PartitionTable
from chr_installer.disk.inject import FilesystemInjector
from chr_installer.disk.nbd import DEFAULT_NBD_DEVICE, NbdConnector, partition_node
from chr_installer.disk.target import (
    detect_target_disk,
    get_device_size,
    get_mount_points,
    get_root_device,
    is_partition_path,
    normalize_device,
    validate_target,
)

__all__ = [
    # Attach
    "DEFAULT_NBD_DEVICE",
    "NbdConnector",
    "partition_node",
    # Inject
    "FilesystemInjector",
    # Expand
    "PartitionEntry",
    "PartitionExpander",
    "PartitionTable",
    # Target
    "detect_target_disk",
    "get_device_size",
    "get_mount_points",
    "get_root_device",
    "is_partition_path",
    "normalize_device",
    "validate_target",
]
