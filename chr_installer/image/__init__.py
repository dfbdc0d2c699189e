"""Image acquisition module.

This module handles:
- Fetching the vendor CHR image with retry and a version cache
- Converting it to a growable qcow2 container
"""

from chr_installer.image.convert import CONTAINER_FORMAT, ImageFormatConverter
from chr_installer.image.fetch import (
    DownloadError,
    DownloadResult,
    ImageFetcher,
    download_file,
    download_with_retry,
    extract_image,
    is_cached,
    prune_cache,
)

__all__ = [
    # Fetch
    "DownloadError",
    "DownloadResult",
    "ImageFetcher",
    "download_file",
    "download_with_retry",
    "extract_image",
    "is_cached",
    "prune_cache",
    # Convert
    "CONTAINER_FORMAT",
    "ImageFormatConverter",
]
