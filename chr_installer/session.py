"""Installation session.

InstallationSession runs one installation end to end:

    validate -> fetch -> convert/grow -> attach -> inject -> expand
             -> serialize (detaches) -> authorize -> commit -> reboot

Everything before commit is reversible: temporary resources are registered
on an ExitStack as they are acquired and released in reverse order on every
exit path, including interrupts. Components raise; the session alone maps
errors to process exit codes.
"""

from __future__ import annotations

import contextlib
import logging
import os
import platform
import shutil
import signal
import threading
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from chr_installer.command import CommandRunner, run_command
from chr_installer.config import Settings
from chr_installer.disk.expand import PartitionExpander
from chr_installer.disk.inject import FilesystemInjector
from chr_installer.disk.nbd import NbdConnector
from chr_installer.disk.target import detect_target_disk, validate_target
from chr_installer.errors import (
    EXIT_INTERRUPTED,
    EXIT_OK,
    EXIT_UNEXPECTED,
    CommandError,
    DeviceError,
    FilesystemError,
    HostEnvironmentError,
    InstallCancelled,
    InstallerError,
    InstallInterrupted,
    ValidationError,
)
from chr_installer.image.convert import SECTOR_SIZE, ImageFormatConverter
from chr_installer.image.fetch import ImageFetcher, is_cached
from chr_installer.network import resolve_network
from chr_installer.profile import InstallProfile
from chr_installer.routeros import (
    AdminCredentials,
    FirstBootConfig,
    render_autorun,
    validate_password,
)
from chr_installer.types import (
    AttachedImage,
    ImageSpec,
    InstallMode,
    NetworkConfig,
    ProgressCallback,
    TargetDisk,
)
from chr_installer.writer.disk_writer import DiskWriter, ignore_interrupts
from chr_installer.writer.kernel import KernelControl

logger = logging.getLogger(__name__)

SUPPORTED_MACHINES = ("x86_64", "amd64")

REQUIRED_TOOLS = (
    "qemu-img",
    "qemu-nbd",
    "modprobe",
    "partprobe",
    "sfdisk",
    "blockdev",
    "e2fsck",
    "resize2fs",
    "mount",
    "umount",
    "reboot",
)

CONTAINER_MARKERS = (Path("/.dockerenv"), Path("/run/.containerenv"))
_CGROUP_CONTAINER_HINTS = ("docker", "lxc", "kubepods", "containerd")


@dataclass
class InstallRequest:
    """Operator input for one installation.

    None means "not given": profile values and then settings apply.
    """

    password: str
    mode: InstallMode | None = None
    disk: str | None = None
    dhcp: bool = False
    address: str | None = None
    gateway: str | None = None
    dns_servers: list[str] | None = None
    version: str | None = None
    router_interface: str | None = None
    image_size_bytes: int | None = None
    dry_run: bool = False
    assume_yes: bool = False

    def __repr__(self) -> str:
        return (
            f"InstallRequest(mode={self.mode}, disk={self.disk!r}, "
            f"version={self.version!r}, dry_run={self.dry_run})"
        )

    def with_profile(self, profile: InstallProfile) -> InstallRequest:
        """Fill values not given on the command line from a profile."""
        net = profile.network
        static_given = bool(self.address or self.gateway)
        return replace(
            self,
            mode=self.mode or profile.mode,
            disk=self.disk or profile.disk,
            dhcp=self.dhcp or (net.dhcp and not static_given),
            address=self.address or (None if self.dhcp else net.address),
            gateway=self.gateway or (None if self.dhcp else net.gateway),
            dns_servers=self.dns_servers or net.dns,
            version=self.version or profile.version,
            router_interface=self.router_interface or profile.router_interface,
            image_size_bytes=self.image_size_bytes or profile.image_size_bytes,
        )


@dataclass
class InstallPlan:
    """Everything validated before any device is touched."""

    image: ImageSpec
    target: TargetDisk
    network: NetworkConfig
    mode: InstallMode
    image_size_bytes: int
    first_boot: FirstBootConfig
    cached: bool
    warnings: list[str] = field(default_factory=list)

    def describe(self) -> dict[str, Any]:
        """Plan summary for display; never includes the password."""
        return {
            "version": self.image.version,
            "source_url": self.image.source_url,
            "cached": self.cached,
            "mode": self.mode.value,
            "target": {
                "device": self.target.device_path,
                "size_bytes": self.target.size_bytes,
                "is_root_disk": self.target.is_root_disk,
                "mounted": sorted(self.target.mounted_partitions),
            },
            "image_size_bytes": self.image_size_bytes,
            "network": {
                "detected_on": self.network.interface_name,
                "dhcp": self.network.use_dhcp,
                "address": self.network.cidr_address,
                "gateway": self.network.gateway,
                "dns": list(self.network.dns_servers),
            },
            "warnings": list(self.warnings),
        }


def check_host(
    settings: Settings,
    *,
    need_network_tools: bool = True,
    euid: Callable[[], int] = os.geteuid,
    machine: Callable[[], str] = platform.machine,
    which: Callable[[str], str | None] = shutil.which,
    proc_root: Path = Path("/proc"),
    container_markers: tuple[Path, ...] = CONTAINER_MARKERS,
) -> list[str]:
    """Collect reasons this host cannot run an installation.

    Returns:
        Human-readable problems; empty when the host is suitable.
    """
    problems: list[str] = []

    if euid() != 0:
        problems.append("must run as root")

    arch = machine()
    if arch not in SUPPORTED_MACHINES:
        problems.append(f"unsupported architecture {arch} (x86_64 required)")

    available = _available_memory(proc_root / "meminfo")
    if available is not None and available < settings.min_memory_bytes:
        problems.append(
            f"only {available // (1024 * 1024)} MiB memory available, "
            f"{settings.min_memory_bytes // (1024 * 1024)} MiB required"
        )

    if _in_container(proc_root, container_markers):
        problems.append("running inside a container")

    tools = list(REQUIRED_TOOLS)
    if need_network_tools:
        tools.append("ip")
    missing = [tool for tool in tools if which(tool) is None]
    if missing:
        problems.append(f"missing tools: {', '.join(missing)}")

    return problems


def _available_memory(meminfo: Path) -> int | None:
    try:
        for line in meminfo.read_text().splitlines():
            if line.startswith("MemAvailable:"):
                return int(line.split()[1]) * 1024
    except (OSError, ValueError, IndexError) as e:
        logger.warning("Could not read %s: %s", meminfo, e)
    return None


def _in_container(proc_root: Path, markers: tuple[Path, ...]) -> bool:
    if any(marker.exists() for marker in markers):
        return True
    try:
        cgroup = (proc_root / "1" / "cgroup").read_text()
    except OSError:
        return False
    return any(hint in cgroup for hint in _CGROUP_CONTAINER_HINTS)


@contextlib.contextmanager
def terminate_as_interrupt() -> Iterator[None]:
    """Turn SIGTERM into InstallInterrupted for the duration of the block."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handler(signum: int, frame: object) -> None:
        raise InstallInterrupted("Installation terminated")

    previous = signal.signal(signal.SIGTERM, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGTERM, previous)


def _countdown(seconds: int) -> None:
    for remaining in range(seconds, 0, -1):
        logger.info("Rebooting in %d...", remaining)
        time.sleep(1)


class InstallationSession:
    """Runs one installation and owns its temporary resources.

    Args:
        settings: Effective settings.
        request: Operator input.
        runner: Command runner shared by every component.
        fetcher, converter, connector, injector, expander, kernel: Components;
            built from settings when omitted.
        writer_factory: Builds the DiskWriter for a staging directory.
        host_check: Host suitability check.
        confirm: Asked once with the plan; False cancels the install.
        progress: Returns a progress callback for a stage name
            ('download', 'serialize', 'write').
        countdown: Called with the reboot delay before rebooting.
    """

    def __init__(
        self,
        settings: Settings,
        request: InstallRequest,
        *,
        runner: CommandRunner = run_command,
        fetcher: ImageFetcher | None = None,
        converter: ImageFormatConverter | None = None,
        connector: NbdConnector | None = None,
        injector: FilesystemInjector | None = None,
        expander: PartitionExpander | None = None,
        kernel: KernelControl | None = None,
        writer_factory: Callable[[Path], DiskWriter] | None = None,
        host_check: Callable[..., list[str]] = check_host,
        confirm: Callable[[InstallPlan], bool] | None = None,
        progress: Callable[[str], ProgressCallback | None] | None = None,
        countdown: Callable[[int], None] = _countdown,
    ) -> None:
        self.settings = settings
        self.request = request
        self.runner = runner
        self.progress = progress or (lambda stage: None)
        self.fetcher = fetcher or ImageFetcher(
            attempts=settings.download_attempts,
            retry_delay=settings.download_retry_delay,
            timeout=settings.download_timeout,
            progress=self.progress("download"),
        )
        self.converter = converter or ImageFormatConverter(runner)
        self.connector = connector or NbdConnector(
            settings.nbd_device,
            runner=runner,
            expected_partitions=settings.data_partition,
            max_partitions=settings.nbd_max_partitions,
            poll_attempts=settings.partition_poll_attempts,
            poll_interval=settings.partition_poll_interval,
        )
        self.injector = injector or FilesystemInjector(runner)
        self.expander = expander or PartitionExpander(
            runner,
            poll_attempts=settings.partition_poll_attempts,
            poll_interval=settings.partition_poll_interval,
        )
        self.kernel = kernel or KernelControl(runner)
        self.writer_factory = writer_factory or self._default_writer
        self.host_check = host_check
        self.confirm = confirm
        self.countdown = countdown
        self.plan: InstallPlan | None = None
        self.warnings: list[str] = []
        self.bytes_written = 0
        self.target_touched = False

    def _default_writer(self, staging_dir: Path) -> DiskWriter:
        return DiskWriter(
            staging_dir,
            kernel=self.kernel,
            direct_io=self.settings.direct_io,
            forced_presync=self.settings.forced_presync,
        )

    # Planning

    def build_plan(self) -> InstallPlan:
        """Validate the request and the host without touching any device.

        Raises:
            ValidationError: Bad password, network values or target disk.
            HostEnvironmentError: The host cannot run the install.
        """
        settings = self.settings
        request = self.request
        mode = request.mode or InstallMode.STANDARD

        password = validate_password(request.password, settings.min_password_length)

        static_or_dhcp = request.dhcp or bool(request.address or request.gateway)
        problems = self.host_check(settings, need_network_tools=not static_or_dhcp)
        if problems and not request.dry_run:
            raise HostEnvironmentError(
                "Host cannot run the installation: " + "; ".join(problems),
                error_code="host_unsuitable",
            )

        try:
            image = ImageSpec.from_version(
                request.version or settings.routeros_version,
                settings.cache_dir,
                settings.download_base_url,
            )
        except ValueError as e:
            raise ValidationError(str(e), error_code="invalid_version") from e

        device = request.disk or detect_target_disk()
        target = validate_target(device, mode, min_disk_bytes=settings.min_disk_bytes)

        dns = request.dns_servers if request.dns_servers else settings.dns_servers
        network = resolve_network(
            dhcp=request.dhcp,
            address=request.address,
            gateway=request.gateway,
            dns_servers=dns,
            runner=self.runner,
        )
        first_boot = render_autorun(
            network,
            AdminCredentials(password=password),
            router_interface=request.router_interface or settings.router_interface,
        )

        size = (
            request.image_size_bytes or settings.image_size_bytes or target.size_bytes
        )
        size = min(size, target.size_bytes)
        size -= size % SECTOR_SIZE

        plan = InstallPlan(
            image=image,
            target=target,
            network=network,
            mode=mode,
            image_size_bytes=size,
            first_boot=first_boot,
            cached=is_cached(image),
            warnings=[f"host: {p}" for p in problems],
        )
        logger.info(
            "Plan: RouterOS %s onto %s (%s mode, %d bytes)",
            image.version,
            target.device_path,
            mode.value,
            size,
        )
        return plan

    # Execution

    def run(self) -> int:
        """Run the installation and return the process exit code."""
        try:
            with terminate_as_interrupt():
                self.execute()
        except InstallCancelled as e:
            logger.info("%s", e.message)
            return e.exit_code
        except KeyboardInterrupt:
            if self.target_touched:
                logger.error(
                    "Installation interrupted after the target disk was written"
                )
            else:
                logger.error(
                    "Installation interrupted; no changes were made to the disk"
                )
            return EXIT_INTERRUPTED
        except InstallerError as e:
            logger.error("%s [%s]", e.message, e.error_code)
            return e.exit_code
        except Exception:
            logger.exception("Unexpected error")
            return EXIT_UNEXPECTED
        return EXIT_OK

    def execute(self) -> InstallPlan:
        """Run the installation, raising on failure.

        Returns:
            The executed (or, for a dry run, validated) plan.
        """
        plan = self.plan = self.build_plan()
        if self.request.dry_run:
            logger.info("Dry run: nothing written")
            return plan

        if not self.request.assume_yes:
            if self.confirm is None or not self.confirm(plan):
                raise InstallCancelled()

        # Signals stay ignored from the start of the commit until the reboot
        with contextlib.ExitStack() as no_return:
            writer = self._install(plan, no_return)
            try:
                self.countdown(self.settings.reboot_delay)
            except KeyboardInterrupt:
                logger.warning("Countdown interrupted, rebooting now")
            writer.reboot(plan.mode)
        return plan

    def _install(
        self, plan: InstallPlan, no_return: contextlib.ExitStack
    ) -> DiskWriter:
        data_partition = self.settings.data_partition
        stack = contextlib.ExitStack()
        with stack:
            try:
                work_dir = self._work_dir(stack)
                raw = self.fetcher.fetch(plan.image)
                container = self.converter.convert(raw, work_dir / "chr.qcow2")
                self.converter.grow(container, plan.image_size_bytes)

                attached = self.connector.attach(container)
                stack.callback(self._release_device, attached)
                self.injector.inject(attached, data_partition, plan.first_boot)
                expanded = self.expander.expand(attached, data_partition)
                for warning in expanded.warnings:
                    logger.warning("%s", warning)
                self.warnings.extend(expanded.warnings)

                staging = self._staging_dir(stack, work_dir)
                writer = self.writer_factory(staging)
                stream = writer.serialize(
                    attached, self.connector, self.progress("serialize")
                )
                token = writer.authorize(
                    stream, plan.target, plan.mode, acknowledged=True
                )

                no_return.enter_context(ignore_interrupts())
                self.target_touched = True
                self.bytes_written = writer.commit(
                    stream, plan.target, plan.mode, token, self.progress("write")
                )
            finally:
                if self.target_touched and plan.mode == InstallMode.FORCED:
                    # The running system's disk now holds the new image
                    logger.warning("Running system overwritten, skipping cleanup")
                    stack.pop_all()
        return writer

    def _work_dir(self, stack: contextlib.ExitStack) -> Path:
        work_dir = self.settings.work_dir / f"session-{os.getpid()}"
        try:
            work_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise HostEnvironmentError(
                f"Cannot create work directory {work_dir}: {e}", error_code="work_dir"
            ) from e
        stack.callback(shutil.rmtree, work_dir, ignore_errors=True)
        return work_dir

    def _staging_dir(self, stack: contextlib.ExitStack, work_dir: Path) -> Path:
        staging = work_dir / "staging"
        staging.mkdir(exist_ok=True)
        try:
            self.runner(["mount", "-t", "tmpfs", "tmpfs", str(staging)])
        except CommandError as e:
            raise FilesystemError(
                f"Cannot mount staging tmpfs on {staging}: {e.message}",
                error_code="staging_mount",
            ) from e
        stack.callback(self._unmount_staging, staging)
        return staging

    def _unmount_staging(self, staging: Path) -> None:
        result = self.runner(["umount", str(staging)], check=False)
        if not result.ok:
            logger.error("Could not unmount staging area %s", staging)

    def _release_device(self, attached: AttachedImage) -> None:
        try:
            self.connector.detach(attached)
        except DeviceError as e:
            logger.error("Cleanup: %s", e.message)


__all__ = [
    "REQUIRED_TOOLS",
    "InstallPlan",
    "InstallRequest",
    "InstallationSession",
    "check_host",
    "terminate_as_interrupt",
]
