"""Tests for writer/disk_writer.py - serialize, authorize and commit."""

import dataclasses
import gzip
import os
import signal
from pathlib import Path
from unittest.mock import Mock

import pytest

from chr_installer.errors import (
    DeviceError,
    InstallCancelled,
    IrrecoverableWriteError,
    TargetDiskError,
    WriterStateError,
)
from chr_installer.types import AttachedImage, InstallMode, TargetDisk, WriterState
from chr_installer.writer.disk_writer import CommitToken, DiskWriter
from chr_installer.writer.kernel import KernelControl

BLOCK_SIZE = 64 * 1024
IMAGE_SIZE = 5 * BLOCK_SIZE + 123


@pytest.fixture
def image(tmp_path):
    """A regular file standing in for the attached image device."""
    path = tmp_path / "nbd0"
    path.write_bytes(os.urandom(IMAGE_SIZE))
    return path


@pytest.fixture
def attached(image):
    return AttachedImage(str(image), Path("chr.qcow2"), (f"{image}p1", f"{image}p2"))


@pytest.fixture
def target(tmp_path):
    """A regular file standing in for the target disk."""
    path = tmp_path / "sdb"
    path.write_bytes(b"\xff" * (IMAGE_SIZE + BLOCK_SIZE))
    return TargetDisk(device_path=str(path), size_bytes=IMAGE_SIZE + BLOCK_SIZE)


@pytest.fixture
def kernel():
    return Mock(spec=KernelControl)


@pytest.fixture
def connector():
    return Mock()


@pytest.fixture
def writer(tmp_path, kernel):
    staging = tmp_path / "staging"
    staging.mkdir()
    return DiskWriter(staging, kernel=kernel, block_size=BLOCK_SIZE, direct_io=False)


def kernel_calls(kernel):
    return [name for name, _, _ in kernel.method_calls]


class TestSerialize:
    """Tests for DiskWriter.serialize."""

    def test_compresses_device(self, writer, attached, connector, image):
        stream = writer.serialize(attached, connector)

        assert writer.state == WriterState.SERIALIZED
        assert stream.logical_size == IMAGE_SIZE
        assert stream.compressed_size == stream.path.stat().st_size
        assert gzip.decompress(stream.path.read_bytes()) == image.read_bytes()
        connector.detach.assert_called_once_with(attached)

    def test_reports_progress(self, writer, attached, connector):
        seen = []
        writer.serialize(attached, connector, lambda d, t: seen.append((d, t)))

        assert len(seen) == 6
        assert seen[-1] == (IMAGE_SIZE, IMAGE_SIZE)

    def test_failure_detaches_and_cleans_up(self, writer, connector, tmp_path):
        """A failed read should still detach and leave no partial stream."""
        missing = AttachedImage(str(tmp_path / "gone"), Path("chr.qcow2"))

        with pytest.raises(DeviceError) as exc_info:
            writer.serialize(missing, connector)

        assert exc_info.value.error_code == "serialize_failed"
        assert writer.state == WriterState.FAILED
        connector.detach.assert_called_once_with(missing)
        assert list(writer.staging_dir.iterdir()) == []

    def test_only_once(self, writer, attached, connector):
        writer.serialize(attached, connector)
        with pytest.raises(WriterStateError):
            writer.serialize(attached, connector)

    def test_rejects_unaligned_block_size(self, tmp_path, kernel):
        with pytest.raises(ValueError):
            DiskWriter(tmp_path, kernel=kernel, block_size=1000)


class TestAuthorize:
    """Tests for DiskWriter.authorize."""

    def test_requires_serialized_image(self, writer, target, tmp_path):
        stream = Mock(logical_size=IMAGE_SIZE)
        with pytest.raises(WriterStateError):
            writer.authorize(stream, target, InstallMode.STANDARD, acknowledged=True)

    def test_not_acknowledged(self, writer, attached, connector, target):
        stream = writer.serialize(attached, connector)

        with pytest.raises(InstallCancelled) as exc_info:
            writer.authorize(stream, target, InstallMode.STANDARD, acknowledged=False)

        assert exc_info.value.exit_code == 0
        assert writer.state == WriterState.SERIALIZED

    def test_image_larger_than_disk(self, writer, attached, connector, target):
        stream = writer.serialize(attached, connector)
        small = dataclasses.replace(target, size_bytes=IMAGE_SIZE - 1)

        with pytest.raises(TargetDiskError) as exc_info:
            writer.authorize(stream, small, InstallMode.STANDARD, acknowledged=True)

        assert exc_info.value.error_code == "disk_too_small"

    def test_standard_refuses_mounted_disk(self, writer, attached, connector, target):
        stream = writer.serialize(attached, connector)
        mounted = dataclasses.replace(target, mounted_partitions=frozenset({"/srv"}))

        with pytest.raises(TargetDiskError) as exc_info:
            writer.authorize(stream, mounted, InstallMode.STANDARD, acknowledged=True)

        assert exc_info.value.error_code == "device_mounted"

    def test_issues_token(self, writer, attached, connector, target):
        stream = writer.serialize(attached, connector)

        token = writer.authorize(stream, target, InstallMode.STANDARD, True)

        assert token.device_path == target.device_path
        assert token.mode == InstallMode.STANDARD
        assert token.writer_id == id(writer)


class TestCommit:
    """Tests for DiskWriter.commit."""

    def _prepare(self, writer, attached, connector, target, mode):
        stream = writer.serialize(attached, connector)
        return stream, writer.authorize(stream, target, mode, acknowledged=True)

    def test_standard_commit(self, writer, attached, connector, target, image, kernel):
        stream, token = self._prepare(
            writer, attached, connector, target, InstallMode.STANDARD
        )

        written = writer.commit(stream, target, InstallMode.STANDARD, token)

        data = Path(target.device_path).read_bytes()
        assert written == IMAGE_SIZE
        assert data[:IMAGE_SIZE] == image.read_bytes()
        assert data[IMAGE_SIZE:] == b"\xff" * BLOCK_SIZE
        assert writer.state == WriterState.COMMITTED
        assert kernel_calls(kernel) == ["sync", "sync", "drop_caches"]

    def test_forced_commit(self, writer, attached, connector, target, image, kernel):
        stream, token = self._prepare(
            writer, attached, connector, target, InstallMode.FORCED
        )

        writer.commit(stream, target, InstallMode.FORCED, token)

        assert Path(target.device_path).read_bytes()[:IMAGE_SIZE] == image.read_bytes()
        assert kernel_calls(kernel) == ["emergency_sync", "emergency_sync"]

    def test_forced_commit_without_presync(self, tmp_path, attached, connector, target):
        kernel = Mock(spec=KernelControl)
        writer = DiskWriter(
            tmp_path,
            kernel=kernel,
            block_size=BLOCK_SIZE,
            direct_io=False,
            forced_presync=False,
        )
        stream, token = self._prepare(
            writer, attached, connector, target, InstallMode.FORCED
        )

        writer.commit(stream, target, InstallMode.FORCED, token)

        assert kernel_calls(kernel) == ["emergency_sync"]

    def test_forced_commit_survives_failed_final_sync(
        self, writer, attached, connector, target, image, kernel
    ):
        """The image is on disk once every O_SYNC write returned."""
        kernel.emergency_sync.side_effect = [None, OSError("sysrq-trigger: EPERM")]
        stream, token = self._prepare(
            writer, attached, connector, target, InstallMode.FORCED
        )

        assert writer.commit(stream, target, InstallMode.FORCED, token) == IMAGE_SIZE
        assert writer.state == WriterState.COMMITTED

        writer.reboot(InstallMode.FORCED)
        kernel.emergency_reboot.assert_called_once_with()

    def test_signals_ignored_while_writing(self, writer, attached, connector, target):
        """SIGINT and SIGTERM should be ignored until the write finishes."""
        stream, token = self._prepare(
            writer, attached, connector, target, InstallMode.STANDARD
        )
        before = signal.getsignal(signal.SIGINT)
        during = []

        writer.commit(
            stream,
            target,
            InstallMode.STANDARD,
            token,
            lambda d, t: during.append(
                (signal.getsignal(signal.SIGINT), signal.getsignal(signal.SIGTERM))
            ),
        )

        assert during
        assert set(during) == {(signal.SIG_IGN, signal.SIG_IGN)}
        assert signal.getsignal(signal.SIGINT) == before

    def test_requires_matching_token(self, writer, attached, connector, target):
        stream, token = self._prepare(
            writer, attached, connector, target, InstallMode.STANDARD
        )
        forged = CommitToken(token.writer_id, "/dev/sda", token.mode, token.nonce)

        with pytest.raises(WriterStateError):
            writer.commit(stream, target, InstallMode.STANDARD, forged)
        with pytest.raises(WriterStateError):
            writer.commit(stream, target, InstallMode.FORCED, token)

        assert writer.state == WriterState.SERIALIZED
        assert Path(target.device_path).read_bytes()[:1] == b"\xff"

    def test_token_is_single_use(self, writer, attached, connector, target):
        stream, token = self._prepare(
            writer, attached, connector, target, InstallMode.STANDARD
        )
        writer.commit(stream, target, InstallMode.STANDARD, token)

        with pytest.raises(WriterStateError):
            writer.commit(stream, target, InstallMode.STANDARD, token)

    def test_write_failure_is_irrecoverable(
        self, writer, attached, connector, target, tmp_path
    ):
        stream, _ = self._prepare(
            writer, attached, connector, target, InstallMode.STANDARD
        )
        missing = dataclasses.replace(target, device_path=str(tmp_path / "x" / "sdz"))
        token = writer.authorize(stream, missing, InstallMode.STANDARD, True)

        with pytest.raises(IrrecoverableWriteError) as exc_info:
            writer.commit(stream, missing, InstallMode.STANDARD, token)

        assert exc_info.value.exit_code == 7
        assert exc_info.value.bytes_written == 0
        assert writer.state == WriterState.FAILED

    def test_short_stream_is_irrecoverable(self, writer, attached, connector, target):
        stream = writer.serialize(attached, connector)
        longer = dataclasses.replace(stream, logical_size=IMAGE_SIZE + 512)
        token = writer.authorize(longer, target, InstallMode.STANDARD, True)

        with pytest.raises(IrrecoverableWriteError) as exc_info:
            writer.commit(longer, target, InstallMode.STANDARD, token)

        assert exc_info.value.bytes_written == IMAGE_SIZE


class TestReboot:
    """Tests for DiskWriter.reboot."""

    def test_requires_commit(self, writer):
        with pytest.raises(WriterStateError):
            writer.reboot(InstallMode.STANDARD)

    @pytest.mark.parametrize(
        "mode,expected",
        [(InstallMode.STANDARD, "reboot"), (InstallMode.FORCED, "emergency_reboot")],
    )
    def test_reboot_by_mode(
        self, writer, attached, connector, target, kernel, mode, expected
    ):
        stream = writer.serialize(attached, connector)
        token = writer.authorize(stream, target, mode, True)
        writer.commit(stream, target, mode, token)

        writer.reboot(mode)

        assert kernel_calls(kernel)[-1] == expected
