"""Shared type definitions for chr_installer.

This module contains dataclasses, enums, and type aliases shared across
subpackages to avoid circular imports.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

# Called with (bytes_done, bytes_total); bytes_done never decreases.
ProgressCallback = Callable[[int, int], None]


class InstallMode(str, Enum):
    """How the destructive write treats the running system."""

    STANDARD = "standard"
    FORCED = "forced"


class WriterState(str, Enum):
    """State of the disk writer."""

    IDLE = "idle"
    SERIALIZING = "serializing"
    SERIALIZED = "serialized"
    COMMITTING = "committing"
    COMMITTED = "committed"
    FAILED = "failed"


class StepStatus(str, Enum):
    """Outcome of a best-effort step."""

    OK = "ok"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class ImageSpec:
    """Identifies the CHR image to fetch.

    Attributes:
        version: RouterOS version (e.g. '7.19.4').
        source_url: URL of the zipped raw image.
        local_cache_path: Where the extracted raw image is cached.
    """

    version: str
    source_url: str
    local_cache_path: Path

    @property
    def image_filename(self) -> str:
        """Name of the raw image inside the archive."""
        return f"chr-{self.version}.img"

    @classmethod
    def from_version(cls, version: str, cache_dir: Path, base_url: str) -> "ImageSpec":
        """Build an ImageSpec for a RouterOS version.

        Args:
            version: RouterOS version string.
            cache_dir: Root of the image cache.
            base_url: Download base URL (without trailing slash).

        Returns:
            ImageSpec for the version.
        """
        version = version.strip()
        if not version or "/" in version or version.startswith("."):
            raise ValueError(f"Invalid RouterOS version: {version!r}")
        filename = f"chr-{version}.img"
        return cls(
            version=version,
            source_url=f"{base_url.rstrip('/')}/{version}/{filename}.zip",
            local_cache_path=Path(cache_dir) / version / filename,
        )


@dataclass(frozen=True)
class AttachedImage:
    """A container image currently exposed as a kernel block device.

    Attributes:
        host_device_path: Block device node (e.g. '/dev/nbd0').
        backing_file: Container image bound to the node.
        partition_paths: Partition nodes in table order.
    """

    host_device_path: str
    backing_file: Path
    partition_paths: tuple[str, ...] = ()

    def partition(self, index: int) -> str:
        """Return the device node of a 1-based partition index."""
        if index < 1 or index > len(self.partition_paths):
            raise IndexError(
                f"{self.host_device_path} has no partition {index} "
                f"({len(self.partition_paths)} detected)"
            )
        return self.partition_paths[index - 1]


@dataclass(frozen=True)
class NetworkConfig:
    """Network settings handed to the router's first-boot script.

    Attributes:
        interface_name: Host interface the values were taken from.
        cidr_address: Address with prefix length (e.g. '203.0.113.5/24').
        gateway: Default gateway address.
        dns_servers: DNS resolvers in preference order.
        use_dhcp: Configure a DHCP client instead of static values.
    """

    interface_name: str
    cidr_address: str | None
    gateway: str | None
    dns_servers: tuple[str, ...] = ()
    use_dhcp: bool = False


@dataclass(frozen=True)
class TargetDisk:
    """The physical disk receiving the image.

    Attributes:
        device_path: Whole-disk device node (e.g. '/dev/sda').
        size_bytes: Disk size in bytes.
        mounted_partitions: Mount points of the disk's partitions.
        is_root_disk: Whether the running root filesystem lives here.
    """

    device_path: str
    size_bytes: int
    mounted_partitions: frozenset[str] = frozenset()
    is_root_disk: bool = False


@dataclass
class StepResult:
    """Result of a step whose failures are tolerated.

    Attributes:
        status: OK, or DEGRADED when a tolerated sub-step failed.
        warnings: Human-readable descriptions of tolerated failures.
        details: Step specific values.
    """

    status: StepStatus = StepStatus.OK
    warnings: list[str] = field(default_factory=list)
    details: dict[str, object] = field(default_factory=dict)

    @property
    def degraded(self) -> bool:
        """Whether a tolerated sub-step failed."""
        return self.status == StepStatus.DEGRADED

    def degrade(self, warning: str) -> None:
        """Record a tolerated failure."""
        self.status = StepStatus.DEGRADED
        self.warnings.append(warning)


__all__ = [
    "AttachedImage",
    "ImageSpec",
    "InstallMode",
    "NetworkConfig",
    "ProgressCallback",
    "StepResult",
    "StepStatus",
    "TargetDisk",
    "WriterState",
]
