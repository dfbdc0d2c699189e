"""Tests for disk/expand.py - partition and filesystem growth."""

import json
from pathlib import Path

import pytest

from chr_installer.disk.expand import PartitionExpander, PartitionTable
from chr_installer.errors import PartitionResizeFailed
from chr_installer.types import AttachedImage, StepStatus

ATTACHED = AttachedImage(
    host_device_path="/dev/nbd0",
    backing_file=Path("/tmp/chr.qcow2"),
    partition_paths=("/dev/nbd0p1", "/dev/nbd0p2"),
)

# 2 GiB device in 512-byte sectors
DEVICE_SECTORS = 4194304


def sfdisk_json(partitions, label="dos", lastlba=None):
    table = {
        "label": label,
        "device": "/dev/nbd0",
        "unit": "sectors",
        "sectorsize": 512,
        "partitions": [
            {"node": f"/dev/nbd0p{i}", "start": start, "size": size, "type": "83"}
            for i, (start, size) in enumerate(partitions, 1)
        ],
    }
    if lastlba is not None:
        table["lastlba"] = lastlba
    return json.dumps({"partitiontable": table})


VENDOR = [(34, 65536), (65570, 262144)]
GROWN = [(34, 65536), (65570, DEVICE_SECTORS - 65570)]


@pytest.fixture
def expander(runner):
    runner.on("blockdev", "--getsz", stdout=f"{DEVICE_SECTORS}\n")
    return PartitionExpander(
        runner, poll_attempts=3, path_exists=lambda p: True, sleep=lambda s: None
    )


class TestPartitionTable:
    def test_parses_sfdisk_json(self):
        table = PartitionTable.from_sfdisk_json(sfdisk_json(VENDOR, "gpt", 4194270))

        assert table.label == "gpt"
        assert table.sector_size == 512
        assert table.last_lba == 4194270
        assert table.partitions[1].node == "/dev/nbd0p2"
        assert table.partitions[1].end == 65570 + 262144 - 1


class TestExpand:
    """Tests for PartitionExpander.expand."""

    def test_grows_last_partition(self, expander, runner):
        """The partition should grow to the device end, keeping its start."""
        runner.on("sfdisk", "--json", stdout=sfdisk_json(VENDOR))
        runner.on("sfdisk", "--json", stdout=sfdisk_json(GROWN))

        result = expander.expand(ATTACHED, 2)

        assert result.status == StepStatus.OK
        assert result.details["changed"] is True
        assert result.details["old_end"] == 65570 + 262144 - 1
        assert result.details["new_end"] == DEVICE_SECTORS - 1

        resize = runner.called("sfdisk", "--no-reread")
        assert resize == [["sfdisk", "--no-reread", "-N", "2", "/dev/nbd0"]]
        assert runner.inputs[runner.calls.index(resize[0])] == ", +\n"
        assert [c[0] for c in runner.calls[-3:]] == ["partprobe", "e2fsck", "resize2fs"]
        assert runner.called("e2fsck") == [["e2fsck", "-f", "-y", "/dev/nbd0p2"]]
        assert runner.called("resize2fs") == [["resize2fs", "/dev/nbd0p2"]]

    def test_already_grown_is_noop(self, expander, runner):
        """Running on a grown partition should change nothing."""
        runner.on("sfdisk", "--json", stdout=sfdisk_json(GROWN))

        result = expander.expand(ATTACHED, 2)

        assert result.status == StepStatus.OK
        assert result.details["changed"] is False
        assert result.details["new_end"] == result.details["old_end"]
        assert runner.called("sfdisk", "--no-reread") == []
        assert runner.called("e2fsck") == []

    def test_gpt_relocates_backup_header(self, expander, runner):
        lastlba = DEVICE_SECTORS - 34
        runner.on("sfdisk", "--json", stdout=sfdisk_json(VENDOR, "gpt", lastlba))
        runner.on("sfdisk", "--json", stdout=sfdisk_json(VENDOR, "gpt", lastlba))
        runner.on(
            "sfdisk",
            "--json",
            stdout=sfdisk_json(
                [(34, 65536), (65570, lastlba - 65570 + 1)], "gpt", lastlba
            ),
        )

        result = expander.expand(ATTACHED, 2)

        assert runner.calls[1] == ["sfdisk", "--relocate", "gpt-bak-std", "/dev/nbd0"]
        assert result.details["new_end"] == lastlba
        assert runner.called("blockdev", "--getsz") == []

    def test_partition_bounded_by_next(self, expander, runner):
        """A partition followed by another may only grow up to it."""
        layout = [(2048, 2048), (1048576, 262144)]
        runner.on("sfdisk", "--json", stdout=sfdisk_json(layout))
        runner.on("sfdisk", "--json", stdout=sfdisk_json([(2048, 1046528), layout[1]]))

        result = expander.expand(ATTACHED, 1)

        assert result.details["new_end"] == 1048575
        assert runner.called("sfdisk", "--no-reread")[0][3] == "1"

    def test_table_rewrite_failure(self, expander, runner):
        runner.on("sfdisk", "--json", stdout=sfdisk_json(VENDOR))
        runner.on("sfdisk", "--no-reread", returncode=1, stderr="device busy")

        with pytest.raises(PartitionResizeFailed) as exc_info:
            expander.expand(ATTACHED, 2)

        assert exc_info.value.exit_code == 6
        assert runner.called("e2fsck") == []

    def test_unreadable_table(self, expander, runner):
        runner.on("sfdisk", "--json", stdout="{}")
        with pytest.raises(PartitionResizeFailed, match="unexpected sfdisk output"):
            expander.expand(ATTACHED, 2)


class TestExpandDegraded:
    """Filesystem problems should degrade the result, not fail it."""

    @pytest.fixture(autouse=True)
    def tables(self, runner):
        runner.on("sfdisk", "--json", stdout=sfdisk_json(VENDOR))
        runner.on("sfdisk", "--json", stdout=sfdisk_json(GROWN))

    def test_e2fsck_uncorrected_errors(self, expander, runner):
        runner.on("e2fsck", returncode=4)

        result = expander.expand(ATTACHED, 2)

        assert result.status == StepStatus.DEGRADED
        assert "e2fsck" in result.warnings[0]
        assert result.details["changed"] is True
        assert runner.called("resize2fs") == []

    def test_e2fsck_corrected_errors(self, expander, runner):
        runner.on("e2fsck", returncode=1)

        result = expander.expand(ATTACHED, 2)

        assert result.status == StepStatus.OK
        assert len(runner.called("resize2fs")) == 1

    def test_resize2fs_failure(self, expander, runner):
        runner.on("resize2fs", returncode=1, stderr="bad superblock")

        result = expander.expand(ATTACHED, 2)

        assert result.degraded
        assert "resize2fs" in result.warnings[0]

    def test_reread_falls_back_to_blockdev(self, expander, runner):
        runner.on("partprobe", returncode=1)

        result = expander.expand(ATTACHED, 2)

        assert result.status == StepStatus.OK
        assert runner.called("blockdev", "--rereadpt") == [
            ["blockdev", "--rereadpt", "/dev/nbd0"]
        ]

    def test_kernel_keeps_old_table(self, expander, runner):
        runner.on("partprobe", returncode=1)
        runner.on("blockdev", "--rereadpt", returncode=1)

        result = expander.expand(ATTACHED, 2)

        assert result.degraded
        assert runner.called("e2fsck") == []

    def test_partition_node_never_reappears(self, runner):
        expander = PartitionExpander(
            runner, poll_attempts=2, path_exists=lambda p: False, sleep=lambda s: None
        )
        runner.on("blockdev", "--getsz", stdout=f"{DEVICE_SECTORS}\n")

        result = expander.expand(ATTACHED, 2)

        assert result.degraded
        assert runner.called("resize2fs") == []
