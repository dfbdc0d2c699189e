"""Writer module for the destructive disk write.

This module handles the last two stages of an installation:
- Serialize the prepared image into a compressed stream held in memory
- Commit the stream onto the physical disk, then request a reboot

The writer is a small state machine::

    IDLE -> SERIALIZING -> SERIALIZED -> COMMITTING -> COMMITTED

with FAILED reachable from every state. Commit only proceeds with a
CommitToken issued by authorize() for the same target and mode. Once commit
has opened the target disk, nothing in this module attempts to undo it.
"""

from __future__ import annotations

import contextlib
import fcntl
import gzip
import logging
import mmap
import os
import secrets
import signal
import threading
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

from chr_installer.disk.nbd import NbdConnector
from chr_installer.errors import (
    DeviceError,
    InstallCancelled,
    IrrecoverableWriteError,
    TargetDiskError,
    WriterStateError,
)
from chr_installer.types import (
    AttachedImage,
    InstallMode,
    ProgressCallback,
    TargetDisk,
    WriterState,
)
from chr_installer.writer.kernel import KernelControl

logger = logging.getLogger(__name__)

# Default block size for I/O operations (1 MiB)
DEFAULT_BLOCK_SIZE = 1024 * 1024

# O_DIRECT transfers must be multiples of the logical block size
DIRECT_IO_ALIGNMENT = 4096

STREAM_NAME = "chr-image.img.gz"

O_DIRECT = getattr(os, "O_DIRECT", 0)


@dataclass(frozen=True)
class CompressedStream:
    """Serialized image waiting to be committed.

    Attributes:
        path: gzip file in the staging directory.
        compressed_size: Size of the gzip file in bytes.
        logical_size: Size of the image once decompressed.
    """

    path: Path
    compressed_size: int
    logical_size: int


@dataclass(frozen=True)
class CommitToken:
    """Proof that the operator acknowledged the irreversible write."""

    writer_id: int
    device_path: str
    mode: InstallMode
    nonce: str


@contextlib.contextmanager
def ignore_interrupts() -> Iterator[None]:
    """Ignore SIGINT and SIGTERM for the duration of the block."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    previous = {
        sig: signal.signal(sig, signal.SIG_IGN)
        for sig in (signal.SIGINT, signal.SIGTERM)
    }
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def _read_full(source: BinaryIO, view: memoryview) -> int:
    """Fill a buffer from a stream; short only at end of stream."""
    filled = 0
    while filled < len(view):
        n = source.readinto(view[filled:])
        if not n:
            break
        filled += n
    return filled


def _write_full(fd: int, view: memoryview) -> None:
    written = 0
    while written < len(view):
        written += os.write(fd, view[written:])


class DiskWriter:
    """Serializes the prepared image and commits it to the target disk.

    Args:
        staging_dir: Directory for the compressed stream (a tmpfs).
        kernel: Kernel controls for sync, cache and reboot.
        block_size: I/O block size; a multiple of 4096.
        direct_io: Bypass the page cache for forced-mode writes.
        forced_presync: Emergency sync before a forced-mode write.
        compresslevel: gzip compression level.
    """

    def __init__(
        self,
        staging_dir: Path,
        *,
        kernel: KernelControl | None = None,
        block_size: int = DEFAULT_BLOCK_SIZE,
        direct_io: bool = True,
        forced_presync: bool = True,
        compresslevel: int = 6,
    ) -> None:
        if block_size <= 0 or block_size % DIRECT_IO_ALIGNMENT:
            raise ValueError(f"block_size must be a multiple of {DIRECT_IO_ALIGNMENT}")
        self.staging_dir = Path(staging_dir)
        self.kernel = kernel or KernelControl()
        self.block_size = block_size
        self.direct_io = direct_io and bool(O_DIRECT)
        self.forced_presync = forced_presync
        self.compresslevel = compresslevel
        self._state = WriterState.IDLE
        self._token: CommitToken | None = None
        self._written = 0

    @property
    def state(self) -> WriterState:
        return self._state

    def _require(self, *states: WriterState) -> None:
        if self._state not in states:
            expected = " or ".join(s.value for s in states)
            raise WriterStateError(
                f"Disk writer is {self._state.value}, expected {expected}"
            )

    def serialize(
        self,
        attached: AttachedImage,
        connector: NbdConnector,
        progress: ProgressCallback | None = None,
    ) -> CompressedStream:
        """Compress the attached device into the staging directory.

        The device is detached afterwards whether or not compression
        succeeded.

        Args:
            attached: Attached image to read.
            connector: Connector that attached it.
            progress: Called with (bytes read, device size).

        Returns:
            CompressedStream ready to commit.

        Raises:
            WriterStateError: Writer is not idle.
            DeviceError: The device could not be read or the stream written.
        """
        self._require(WriterState.IDLE)
        self._state = WriterState.SERIALIZING
        dest = self.staging_dir / STREAM_NAME

        try:
            try:
                stream = self._compress(attached.host_device_path, dest, progress)
            finally:
                connector.detach(attached)
        except BaseException:
            self._state = WriterState.FAILED
            dest.unlink(missing_ok=True)
            raise

        self._state = WriterState.SERIALIZED
        return stream

    def _compress(
        self, device_path: str, dest: Path, progress: ProgressCallback | None
    ) -> CompressedStream:
        logger.info("Serializing %s to %s", device_path, dest)
        done = 0
        try:
            with open(device_path, "rb") as src:
                total = src.seek(0, os.SEEK_END)
                src.seek(0)
                with gzip.open(dest, "wb", compresslevel=self.compresslevel) as dst:
                    while True:
                        chunk = src.read(self.block_size)
                        if not chunk:
                            break
                        dst.write(chunk)
                        done += len(chunk)
                        if progress:
                            progress(done, total)
        except OSError as e:
            raise DeviceError(
                f"Failed to serialize {device_path}: {e}", error_code="serialize_failed"
            ) from e

        if done != total:
            raise DeviceError(
                f"Read {done} of {total} bytes from {device_path}",
                error_code="serialize_failed",
            )

        compressed = dest.stat().st_size
        logger.info(
            "Serialized %d bytes into %d compressed bytes (%.1f%%)",
            total,
            compressed,
            100 * compressed / total if total else 0,
        )
        return CompressedStream(
            path=dest, compressed_size=compressed, logical_size=total
        )

    def authorize(
        self,
        stream: CompressedStream,
        target: TargetDisk,
        mode: InstallMode,
        acknowledged: bool,
    ) -> CommitToken:
        """Issue the token that allows commit().

        Args:
            stream: Serialized image that will be written.
            target: Validated target disk.
            mode: Install mode.
            acknowledged: Whether the operator confirmed the data loss.

        Returns:
            CommitToken bound to this writer, target and mode.

        Raises:
            InstallCancelled: Operator did not acknowledge.
            TargetDiskError: The target cannot take the image in this mode.
            WriterStateError: Nothing serialized yet.
        """
        self._require(WriterState.SERIALIZED)
        if not acknowledged:
            raise InstallCancelled()
        if stream.logical_size > target.size_bytes:
            raise TargetDiskError(
                f"Image ({stream.logical_size} bytes) does not fit on "
                f"{target.device_path} ({target.size_bytes} bytes)",
                error_code="disk_too_small",
            )
        if mode == InstallMode.STANDARD and target.mounted_partitions:
            raise TargetDiskError(
                f"{target.device_path} has mounted partitions",
                error_code="device_mounted",
            )

        self._token = CommitToken(
            writer_id=id(self),
            device_path=target.device_path,
            mode=mode,
            nonce=secrets.token_hex(8),
        )
        logger.info("Write to %s authorized (%s mode)", target.device_path, mode.value)
        return self._token

    def commit(
        self,
        stream: CompressedStream,
        target: TargetDisk,
        mode: InstallMode,
        token: CommitToken,
        progress: ProgressCallback | None = None,
    ) -> int:
        """Write the stream onto the target disk.

        This is the point of no return. SIGINT and SIGTERM are ignored until
        the write finishes.

        Args:
            stream: Serialized image.
            target: Target disk.
            mode: STANDARD or FORCED.
            token: Token from authorize() for the same target and mode.
            progress: Called with (bytes written, image size).

        Returns:
            Number of bytes written.

        Raises:
            WriterStateError: Wrong state or token.
            IrrecoverableWriteError: The write failed part way.
        """
        self._require(WriterState.SERIALIZED)
        if (
            self._token is None
            or token != self._token
            or token.device_path != target.device_path
            or token.mode != mode
        ):
            raise WriterStateError(
                f"No valid authorization to write {target.device_path} "
                f"in {mode.value} mode"
            )

        self._token = None
        self._state = WriterState.COMMITTING
        self._written = 0
        logger.warning(
            "Writing %d bytes to %s (%s mode)",
            stream.logical_size,
            target.device_path,
            mode.value,
        )

        with ignore_interrupts():
            try:
                if mode == InstallMode.FORCED:
                    self._commit_forced(stream, target.device_path, progress)
                else:
                    self._commit_standard(stream, target.device_path, progress)
            except Exception as e:
                self._state = WriterState.FAILED
                logger.critical(
                    "Write to %s failed after %d bytes: %s",
                    target.device_path,
                    self._written,
                    e,
                )
                raise IrrecoverableWriteError(
                    target.device_path, self._written, str(e)
                ) from e

        self._state = WriterState.COMMITTED
        logger.info("Wrote %d bytes to %s", self._written, target.device_path)
        return self._written

    def _commit_standard(
        self,
        stream: CompressedStream,
        device_path: str,
        progress: ProgressCallback | None,
    ) -> None:
        self.kernel.sync()
        fd = os.open(device_path, os.O_WRONLY)
        try:
            self._stream_to_fd(stream, fd, direct=False, progress=progress)
            os.fsync(fd)
        finally:
            os.close(fd)
        self.kernel.sync()
        self.kernel.drop_caches()

    def _commit_forced(
        self,
        stream: CompressedStream,
        device_path: str,
        progress: ProgressCallback | None,
    ) -> None:
        if self.forced_presync:
            self.kernel.emergency_sync()
        flags = os.O_WRONLY | os.O_SYNC
        if self.direct_io:
            flags |= O_DIRECT
        fd = os.open(device_path, flags)
        try:
            self._stream_to_fd(stream, fd, direct=self.direct_io, progress=progress)
        finally:
            os.close(fd)
        # Every block already landed through O_SYNC
        try:
            self.kernel.emergency_sync()
        except OSError as e:
            logger.error("Emergency sync after the write failed: %s", e)

    def _stream_to_fd(
        self,
        stream: CompressedStream,
        fd: int,
        *,
        direct: bool,
        progress: ProgressCallback | None,
    ) -> None:
        total = stream.logical_size
        # Anonymous mappings are page aligned, as O_DIRECT requires
        view = memoryview(mmap.mmap(-1, self.block_size))
        with gzip.open(stream.path, "rb") as src:
            while True:
                n = _read_full(src, view)
                if not n:
                    break
                if direct and n % DIRECT_IO_ALIGNMENT:
                    # Unaligned tail goes through the page cache
                    flags = fcntl.fcntl(fd, fcntl.F_GETFL)
                    fcntl.fcntl(fd, fcntl.F_SETFL, flags & ~O_DIRECT)
                    direct = False
                _write_full(fd, view[:n])
                self._written += n
                if progress:
                    progress(self._written, total)

        if self._written != total:
            raise OSError(f"stream ended after {self._written} of {total} bytes")

    def reboot(self, mode: InstallMode) -> None:
        """Reboot into the new system.

        STANDARD mode asks init for an orderly reboot. FORCED mode reboots
        through SysRq, since the filesystems the running system would
        unmount no longer exist on disk.
        """
        self._require(WriterState.COMMITTED)
        if mode == InstallMode.FORCED:
            self.kernel.emergency_reboot()
        else:
            self.kernel.reboot()


__all__ = [
    "DEFAULT_BLOCK_SIZE",
    "CommitToken",
    "CompressedStream",
    "DiskWriter",
    "ignore_interrupts",
]
