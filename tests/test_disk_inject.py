"""Tests for disk/inject.py - first-boot script injection."""

import shutil
import stat
from pathlib import Path
from unittest.mock import patch

import pytest

from chr_installer.disk.inject import FilesystemInjector
from chr_installer.errors import FilesystemError, MountFailed, WriteFailed
from chr_installer.routeros import FirstBootConfig
from chr_installer.types import AttachedImage

ATTACHED = AttachedImage(
    host_device_path="/dev/nbd0",
    backing_file=Path("/tmp/chr.qcow2"),
    partition_paths=("/dev/nbd0p1", "/dev/nbd0p2"),
)
SCRIPT = FirstBootConfig(content=b"/ip service disable telnet\n")


@pytest.fixture
def partition(tmp_path):
    """Directory standing in for the partition's filesystem."""
    path = tmp_path / "partition"
    path.mkdir()
    return path


@pytest.fixture
def mounted(runner, partition):
    """Make umount move whatever was written under the mount point."""

    def umount(argv):
        mount_point = Path(argv[1])
        for child in mount_point.iterdir():
            shutil.move(str(child), str(partition / child.name))

    runner.on("umount", action=umount)
    return runner


@pytest.fixture
def injector(mounted, tmp_path):
    return FilesystemInjector(mounted, mount_root=tmp_path / "mnt")


class TestInject:
    """Tests for FilesystemInjector.inject."""

    def test_writes_script(self, injector, mounted, partition, tmp_path):
        """The script should land byte-identical and executable."""
        result = injector.inject(ATTACHED, 2, SCRIPT)

        written = partition / "rw" / "autorun.scr"
        assert written.read_bytes() == SCRIPT.content
        assert stat.S_IMODE(written.stat().st_mode) == 0o755
        assert not result.degraded
        assert result.details == {
            "partition": "/dev/nbd0p2",
            "path": "rw/autorun.scr",
            "bytes": len(SCRIPT.content),
        }

        mount_point = mounted.calls[0][2]
        assert mounted.calls == [
            ["mount", "/dev/nbd0p2", mount_point],
            ["umount", mount_point],
        ]
        assert list((tmp_path / "mnt").iterdir()) == []

    def test_mount_failure(self, injector, mounted, tmp_path):
        mounted.on("mount", returncode=32, stderr="wrong fs type")

        with pytest.raises(MountFailed) as exc_info:
            injector.inject(ATTACHED, 2, SCRIPT)

        assert exc_info.value.exit_code == 6
        assert mounted.called("umount") == []
        assert list((tmp_path / "mnt").iterdir()) == []

    def test_write_failure_still_unmounts(self, injector, mounted, tmp_path):
        with patch(
            "chr_installer.disk.inject.os.fsync", side_effect=OSError("I/O error")
        ):
            with pytest.raises(WriteFailed) as exc_info:
                injector.inject(ATTACHED, 2, SCRIPT)

        assert "I/O error" in exc_info.value.message
        assert len(mounted.called("umount")) == 1
        assert list((tmp_path / "mnt").iterdir()) == []

    def test_read_back_mismatch(self, injector, mounted):
        with patch.object(Path, "read_bytes", return_value=b"truncated"):
            with pytest.raises(WriteFailed, match="read back"):
                injector.inject(ATTACHED, 2, SCRIPT)

        assert len(mounted.called("umount")) == 1

    def test_unmount_failure(self, runner, tmp_path):
        runner.on("umount", returncode=32, stderr="target is busy")
        injector = FilesystemInjector(runner, mount_root=tmp_path / "mnt")

        with pytest.raises(FilesystemError) as exc_info:
            injector.inject(ATTACHED, 2, SCRIPT)

        assert exc_info.value.error_code == "unmount_failed"

    def test_unknown_partition(self, injector, mounted):
        with pytest.raises(IndexError):
            injector.inject(ATTACHED, 3, SCRIPT)
        assert mounted.calls == []
