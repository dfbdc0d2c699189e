"""Disk writer module.

This module handles:
- Serializing the prepared image into a compressed in-memory stream
- Committing the stream onto the target disk in STANDARD or FORCED mode
- Kernel sync, cache and reboot controls around the write
"""

from chr_installer.writer.disk_writer import (
    DEFAULT_BLOCK_SIZE,
    CommitToken,
    CompressedStream,
    DiskWriter,
    ignore_interrupts,
)
from chr_installer.writer.kernel import KernelControl

__all__ = [
    "DEFAULT_BLOCK_SIZE",
    "CommitToken",
    "CompressedStream",
    "DiskWriter",
    "KernelControl",
    "ignore_interrupts",
]
