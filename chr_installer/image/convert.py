"""Image format conversion with qemu-img.

The vendor ships a raw disk image. It is converted to a sparse qcow2
container whose logical size can be grown before the image is attached,
leaving the new space unallocated for the partition expander to claim.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from chr_installer.command import CommandRunner, run_command
from chr_installer.errors import CommandError, ImageConversionError, InvalidSize

logger = logging.getLogger(__name__)

CONTAINER_FORMAT = "qcow2"
SECTOR_SIZE = 512


class ImageFormatConverter:
    """Converts and resizes disk images.

    Args:
        runner: Command runner used to invoke qemu-img.
    """

    def __init__(self, runner: CommandRunner = run_command) -> None:
        self.runner = runner

    def convert(self, raw_path: Path, dest_path: Path | None = None) -> Path:
        """Convert a raw image to a qcow2 container.

        Args:
            raw_path: Raw image to read (left untouched).
            dest_path: Output path; defaults to raw_path with a .qcow2 suffix.

        Returns:
            Path to the container image.

        Raises:
            ImageConversionError: qemu-img failed or the input is missing.
        """
        raw_path = Path(raw_path)
        if not raw_path.is_file():
            raise ImageConversionError(f"Raw image not found: {raw_path}")

        dest_path = Path(dest_path) if dest_path else raw_path.with_suffix(".qcow2")
        dest_path.parent.mkdir(parents=True, exist_ok=True)
        dest_path.unlink(missing_ok=True)

        logger.info("Converting %s to %s", raw_path.name, CONTAINER_FORMAT)
        try:
            self.runner(
                [
                    "qemu-img",
                    "convert",
                    "-f",
                    "raw",
                    "-O",
                    CONTAINER_FORMAT,
                    str(raw_path),
                    str(dest_path),
                ]
            )
        except CommandError as e:
            dest_path.unlink(missing_ok=True)
            raise ImageConversionError(f"Failed to convert {raw_path}: {e}") from e

        return dest_path

    def virtual_size(self, image_path: Path) -> int:
        """Return the logical size of an image in bytes.

        Raises:
            ImageConversionError: qemu-img failed or produced unexpected output.
        """
        try:
            result = self.runner(
                ["qemu-img", "info", "--output=json", str(image_path)]
            )
            info = json.loads(result.stdout)
            return int(info["virtual-size"])
        except CommandError as e:
            raise ImageConversionError(f"Failed to inspect {image_path}: {e}") from e
        except (ValueError, KeyError, TypeError) as e:
            raise ImageConversionError(
                f"Unexpected qemu-img info output for {image_path}: {e}"
            ) from e

    def grow(self, image_path: Path, new_size: int) -> int:
        """Increase the logical size of a container image.

        Existing partition and filesystem metadata are left alone; the added
        space is unallocated. Growing to the current size is a no-op.

        Args:
            image_path: Container image (must not be attached).
            new_size: New logical size in bytes.

        Returns:
            The logical size after the call.

        Raises:
            InvalidSize: new_size is smaller than the current size or not a
                multiple of the sector size.
            ImageConversionError: qemu-img failed.
        """
        current = self.virtual_size(image_path)
        if new_size < current or new_size % SECTOR_SIZE:
            raise InvalidSize(new_size, current)
        if new_size == current:
            logger.info("Image %s already %d bytes", Path(image_path).name, current)
            return current

        logger.info(
            "Growing %s from %d to %d bytes", Path(image_path).name, current, new_size
        )
        try:
            self.runner(
                [
                    "qemu-img",
                    "resize",
                    "-f",
                    CONTAINER_FORMAT,
                    str(image_path),
                    str(new_size),
                ]
            )
        except CommandError as e:
            raise ImageConversionError(f"Failed to resize {image_path}: {e}") from e

        return new_size


__all__ = ["CONTAINER_FORMAT", "SECTOR_SIZE", "ImageFormatConverter"]
