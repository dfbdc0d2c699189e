"""Error taxonomy for chr_installer.

Every component raises a subclass of InstallerError. Each family carries a
stable error code and the process exit code the session reports for it:

- ValidationError (2): bad arguments, short password, unsuitable target disk
- HostEnvironmentError (3): wrong architecture, low memory, container host
- AcquisitionError (4): download, extraction, or image conversion failure
- DeviceError (5): block device attach, detection, or target problems
- FilesystemError (6): mount, write, or partition table failure
- IrrecoverableWriteError (7): failure after the target was touched
"""

EXIT_OK = 0
EXIT_UNEXPECTED = 1
EXIT_VALIDATION = 2
EXIT_ENVIRONMENT = 3
EXIT_ACQUISITION = 4
EXIT_DEVICE = 5
EXIT_FILESYSTEM = 6
EXIT_WRITE = 7
EXIT_INTERRUPTED = 130


class InstallerError(Exception):
    """Base exception for installer errors."""

    exit_code = EXIT_UNEXPECTED

    def __init__(self, message: str, error_code: str = "installer_error") -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code


class ValidationError(InstallerError):
    """Invalid operator input; raised before any device is touched."""

    exit_code = EXIT_VALIDATION

    def __init__(self, message: str, error_code: str = "validation") -> None:
        super().__init__(message, error_code)


class HostEnvironmentError(InstallerError):
    """The host cannot run the installation."""

    exit_code = EXIT_ENVIRONMENT

    def __init__(self, message: str, error_code: str = "environment") -> None:
        super().__init__(message, error_code)


class AcquisitionError(InstallerError):
    """The router image could not be obtained or prepared."""

    exit_code = EXIT_ACQUISITION


class DownloadFailed(AcquisitionError):
    """Download failed after all attempts."""

    def __init__(self, url: str, attempts: int, reason: str) -> None:
        super().__init__(
            f"Failed to download {url} after {attempts} attempt(s): {reason}",
            error_code="download_failed",
        )
        self.url = url
        self.attempts = attempts
        self.reason = reason


class ExtractionFailed(AcquisitionError):
    """Archive is corrupt or lacks the expected image."""

    def __init__(self, message: str) -> None:
        super().__init__(message, error_code="extraction_failed")


class ImageConversionError(AcquisitionError):
    """qemu-img could not convert or inspect the image."""

    def __init__(self, message: str, error_code: str = "conversion_failed") -> None:
        super().__init__(message, error_code)


class InvalidSize(ImageConversionError):
    """Requested container size would shrink or misalign the image."""

    def __init__(self, requested: int, current: int) -> None:
        super().__init__(
            f"Cannot resize image to {requested} bytes "
            f"(current size {current} bytes, must not shrink and must be "
            "a multiple of 512)",
            error_code="invalid_size",
        )
        self.requested = requested
        self.current = current


class DeviceError(InstallerError):
    """Block device operation failed."""

    exit_code = EXIT_DEVICE

    def __init__(self, message: str, error_code: str = "device_error") -> None:
        super().__init__(message, error_code)


class DeviceBusy(DeviceError):
    """The network block device node is bound to another image."""

    def __init__(self, device_path: str, bound_to: str | None = None) -> None:
        owner = f" (bound to {bound_to})" if bound_to else ""
        super().__init__(
            f"Block device {device_path} is already in use{owner}. "
            "Detach it before starting another installation.",
            error_code="device_busy",
        )
        self.device_path = device_path
        self.bound_to = bound_to


class PartitionsNotDetected(DeviceError):
    """Partition nodes did not appear after attaching."""

    def __init__(self, device_path: str, missing: list[str]) -> None:
        super().__init__(
            f"Partitions of {device_path} not detected: {', '.join(missing)}",
            error_code="partitions_not_detected",
        )
        self.device_path = device_path
        self.missing = missing


class TargetDiskError(ValidationError):
    """The destination disk failed validation or detection."""

    def __init__(self, message: str, error_code: str = "target_disk") -> None:
        super().__init__(message, error_code)


class CommandError(DeviceError):
    """An external command exited with a non-zero status."""

    def __init__(self, argv: list[str], returncode: int, stderr: str) -> None:
        detail = stderr.strip().splitlines()[-1] if stderr.strip() else "no output"
        super().__init__(
            f"Command failed ({returncode}): {' '.join(argv)}: {detail}",
            error_code="command_failed",
        )
        self.argv = argv
        self.returncode = returncode
        self.stderr = stderr


class FilesystemError(InstallerError):
    """Filesystem or partition table operation on the image failed."""

    exit_code = EXIT_FILESYSTEM

    def __init__(self, message: str, error_code: str = "filesystem_error") -> None:
        super().__init__(message, error_code)


class MountFailed(FilesystemError):
    """Partition could not be mounted."""

    def __init__(self, partition: str, reason: str) -> None:
        super().__init__(
            f"Failed to mount {partition}: {reason}", error_code="mount_failed"
        )
        self.partition = partition


class WriteFailed(FilesystemError):
    """First-boot artifact could not be written intact."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Failed to write {path}: {reason}", error_code="write_failed")
        self.path = path


class PartitionResizeFailed(FilesystemError):
    """Partition table could not be rewritten."""

    def __init__(self, device_path: str, reason: str) -> None:
        super().__init__(
            f"Failed to grow partition table on {device_path}: {reason}",
            error_code="partition_resize_failed",
        )
        self.device_path = device_path


class WriterStateError(InstallerError):
    """Disk writer operation called in the wrong state or without a token."""

    def __init__(self, message: str) -> None:
        super().__init__(message, error_code="writer_state")


class IrrecoverableWriteError(InstallerError):
    """The target disk was partially written; its contents are undefined."""

    exit_code = EXIT_WRITE

    def __init__(self, device_path: str, bytes_written: int, reason: str) -> None:
        super().__init__(
            f"Write to {device_path} failed after {bytes_written} bytes: {reason}. "
            "The disk contents are now undefined and the previous system may "
            "not boot. Manual recovery (rescue console or reinstall) is required.",
            error_code="irrecoverable_write",
        )
        self.device_path = device_path
        self.bytes_written = bytes_written


class InstallCancelled(InstallerError):
    """Operator declined before the point of no return."""

    exit_code = EXIT_OK

    def __init__(self, message: str = "Installation cancelled by user") -> None:
        super().__init__(message, error_code="cancelled")


class InstallInterrupted(InstallerError):
    """Interrupt signal received before the point of no return."""

    exit_code = EXIT_INTERRUPTED

    def __init__(self, message: str = "Installation interrupted") -> None:
        super().__init__(message, error_code="interrupted")


__all__ = [
    "EXIT_ACQUISITION",
    "EXIT_DEVICE",
    "EXIT_ENVIRONMENT",
    "EXIT_FILESYSTEM",
    "EXIT_INTERRUPTED",
    "EXIT_OK",
    "EXIT_UNEXPECTED",
    "EXIT_VALIDATION",
    "EXIT_WRITE",
    "AcquisitionError",
    "CommandError",
    "DeviceBusy",
    "DeviceError",
    "DownloadFailed",
    "ExtractionFailed",
    "FilesystemError",
    "HostEnvironmentError",
    "ImageConversionError",
    "InstallCancelled",
    "InstallInterrupted",
    "InstallerError",
    "InvalidSize",
    "IrrecoverableWriteError",
    "MountFailed",
    "PartitionResizeFailed",
    "PartitionsNotDetected",
    "TargetDiskError",
    "ValidationError",
    "WriteFailed",
    "WriterStateError",
]
