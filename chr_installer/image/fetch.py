"""CHR image fetch module.

This module handles:
- Version-keyed cache lookup for extracted images
- Download with bounded retries, per-attempt timeout and resume
- Extraction of the raw image from the vendor zip archive
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import time
import zipfile
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

import httpx

from chr_installer.errors import DownloadFailed, ExtractionFailed
from chr_installer.types import ImageSpec, ProgressCallback

logger = logging.getLogger(__name__)

# Timeout for a single download attempt (seconds)
DOWNLOAD_TIMEOUT = 300

# Chunk size for downloads and extraction (bytes)
DOWNLOAD_CHUNK_SIZE = 64 * 1024  # 64 KB

DEFAULT_ATTEMPTS = 3
DEFAULT_RETRY_DELAY = 5.0

_CONTENT_RANGE = re.compile(r"^bytes (\d+)-(\d+)/(\d+|\*)$")


class DownloadError(Exception):
    """Raised when a single download attempt fails."""

    def __init__(self, message: str, code: str = "download_error") -> None:
        """Initialize DownloadError.

        Args:
            message: Error description.
            code: Error code for structured error handling.
        """
        super().__init__(message)
        self.code = code


@dataclass
class DownloadResult:
    """Result of a completed download."""

    archive_path: Path
    size_bytes: int
    resumed_from: int = 0


def _expected_total(response: httpx.Response, offset: int) -> int | None:
    """Work out the full size of the resource from response headers."""
    if response.status_code == 206:
        match = _CONTENT_RANGE.match(response.headers.get("content-range", ""))
        if match and match.group(3) != "*":
            return int(match.group(3))
        length = response.headers.get("content-length")
        return offset + int(length) if length else None
    length = response.headers.get("content-length")
    return int(length) if length else None


def download_file(
    client: httpx.Client,
    url: str,
    dest_path: Path,
    timeout: float = DOWNLOAD_TIMEOUT,
    chunk_size: int = DOWNLOAD_CHUNK_SIZE,
    progress: ProgressCallback | None = None,
) -> DownloadResult:
    """Download a file, resuming from a partial file when present.

    A partial ``dest_path`` left by an earlier attempt is continued with a
    ``Range`` request. Servers that ignore the range answer 200, in which
    case the file is rewritten from the start.

    Args:
        client: HTTPX client instance.
        url: URL to download from.
        dest_path: Destination path (also the partial file).
        timeout: Upper bound for the whole attempt, and for each socket
            operation, in seconds.
        chunk_size: Size of chunks to download.
        progress: Optional callback receiving (bytes_done, bytes_total).

    Returns:
        DownloadResult with path and size.

    Raises:
        DownloadError: If the attempt fails.
    """
    dest_path.parent.mkdir(parents=True, exist_ok=True)
    offset = dest_path.stat().st_size if dest_path.exists() else 0
    headers = {"Range": f"bytes={offset}-"} if offset else {}
    deadline = time.monotonic() + timeout

    logger.info(
        "Downloading %s to %s%s",
        url,
        dest_path,
        f" (resuming at {offset} bytes)" if offset else "",
    )

    try:
        with client.stream("GET", url, headers=headers, timeout=timeout) as response:
            if response.status_code == 416:
                dest_path.unlink(missing_ok=True)
                raise DownloadError(
                    f"Server rejected resume of {url} at {offset} bytes",
                    code="range_not_satisfiable",
                )
            response.raise_for_status()

            if response.status_code != 206 and offset:
                logger.info("Server does not support resume, restarting download")
                offset = 0

            total = _expected_total(response, offset)
            done = offset

            with dest_path.open("ab" if offset else "wb") as f:
                for chunk in response.iter_bytes(chunk_size):
                    f.write(chunk)
                    done += len(chunk)
                    if progress is not None:
                        progress(done, total or done)
                    if time.monotonic() > deadline:
                        raise DownloadError(
                            f"Timeout downloading {url} after {timeout}s",
                            code="timeout",
                        )

            if total is not None and done != total:
                raise DownloadError(
                    f"Incomplete download of {url}: {done} of {total} bytes",
                    code="incomplete",
                )

            logger.info("Downloaded %s (%d bytes)", dest_path.name, done)
            return DownloadResult(
                archive_path=dest_path, size_bytes=done, resumed_from=offset
            )

    except httpx.HTTPStatusError as e:
        raise DownloadError(
            f"HTTP error downloading {url}: "
            f"{e.response.status_code} {e.response.reason_phrase}",
            code="http_error",
        ) from e
    except httpx.TimeoutException as e:
        raise DownloadError(
            f"Timeout downloading {url}",
            code="timeout",
        ) from e
    except httpx.RequestError as e:
        raise DownloadError(
            f"Network error downloading {url}: {e}",
            code="network_error",
        ) from e
    except OSError as e:
        raise DownloadError(
            f"Error writing {dest_path}: {e}",
            code="os_error",
        ) from e


def download_with_retry(
    client: httpx.Client,
    url: str,
    dest_path: Path,
    *,
    attempts: int = DEFAULT_ATTEMPTS,
    retry_delay: float = DEFAULT_RETRY_DELAY,
    timeout: float = DOWNLOAD_TIMEOUT,
    progress: ProgressCallback | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> DownloadResult:
    """Download with a fixed-delay retry policy.

    The partial file is kept between attempts so later attempts can resume,
    and removed once all attempts have failed.

    Raises:
        DownloadFailed: All attempts failed.
    """
    last_error: DownloadError | None = None

    for attempt in range(1, attempts + 1):
        try:
            return download_file(
                client, url, dest_path, timeout=timeout, progress=progress
            )
        except DownloadError as e:
            last_error = e
            logger.warning(
                "Download attempt %d/%d failed (%s): %s", attempt, attempts, e.code, e
            )
            if attempt < attempts:
                sleep(retry_delay)

    dest_path.unlink(missing_ok=True)
    raise DownloadFailed(url, attempts, str(last_error))


def _find_member(archive: zipfile.ZipFile, member_name: str) -> zipfile.ZipInfo | None:
    """Locate the image member, allowing for a leading directory."""
    for info in archive.infolist():
        if info.is_dir():
            continue
        if PurePosixPath(info.filename).name == member_name:
            return info
    return None


def extract_image(
    archive_path: Path,
    member_name: str,
    dest_path: Path,
    chunk_size: int = DOWNLOAD_CHUNK_SIZE,
) -> Path:
    """Extract a single image member from a zip archive.

    The member is streamed to a temporary sibling of ``dest_path`` and
    renamed into place, so a failed extraction never leaves a truncated
    image at the cache path.

    Args:
        archive_path: Path to the zip archive.
        member_name: File name of the raw image inside the archive.
        dest_path: Final path of the extracted image.
        chunk_size: Copy buffer size.

    Returns:
        dest_path.

    Raises:
        ExtractionFailed: Archive is corrupt, lacks the member, or the member
            is empty.
    """
    logger.info("Extracting %s from %s", member_name, archive_path.name)
    tmp_path = dest_path.with_name(f".{dest_path.name}.extract")

    try:
        with zipfile.ZipFile(archive_path) as archive:
            info = _find_member(archive, member_name)
            if info is None:
                raise ExtractionFailed(
                    f"Archive {archive_path.name} does not contain {member_name}"
                )

            dest_path.parent.mkdir(parents=True, exist_ok=True)
            with archive.open(info) as src, tmp_path.open("wb") as dst:
                shutil.copyfileobj(src, dst, chunk_size)

        if tmp_path.stat().st_size == 0:
            raise ExtractionFailed(f"Extracted image {member_name} is empty")

        os.replace(tmp_path, dest_path)

    except zipfile.BadZipFile as e:
        raise ExtractionFailed(f"Corrupt archive {archive_path.name}: {e}") from e
    except OSError as e:
        raise ExtractionFailed(f"OS error extracting {archive_path.name}: {e}") from e
    finally:
        tmp_path.unlink(missing_ok=True)

    logger.info(
        "Extracted %s (%d bytes)", dest_path.name, dest_path.stat().st_size
    )
    return dest_path


def is_cached(spec: ImageSpec) -> bool:
    """Check whether an extracted, non-empty image for the version exists."""
    path = spec.local_cache_path
    return path.is_file() and path.stat().st_size > 0


class ImageFetcher:
    """Fetches CHR images into a version-keyed cache.

    Args:
        client: HTTPX client; one is created per fetch when omitted.
        attempts: Download attempts before giving up.
        retry_delay: Delay between attempts in seconds.
        timeout: Per-attempt timeout in seconds.
        progress: Optional download progress callback.
        sleep: Sleep function (replaced in tests).
    """

    def __init__(
        self,
        client: httpx.Client | None = None,
        *,
        attempts: int = DEFAULT_ATTEMPTS,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        timeout: float = DOWNLOAD_TIMEOUT,
        progress: ProgressCallback | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.client = client
        self.attempts = attempts
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.progress = progress
        self.sleep = sleep

    def fetch(self, spec: ImageSpec) -> Path:
        """Return the local raw image for ``spec``, downloading on a cache miss.

        Raises:
            DownloadFailed: Download failed after all attempts.
            ExtractionFailed: Archive corrupt or image missing.
        """
        if is_cached(spec):
            logger.info("Using cached image %s", spec.local_cache_path)
            return spec.local_cache_path

        cache_dir = spec.local_cache_path.parent
        cache_dir.mkdir(parents=True, exist_ok=True)
        archive_path = cache_dir / f".{spec.image_filename}.zip.part"

        if self.client is not None:
            self._download(self.client, spec, archive_path)
        else:
            with httpx.Client(follow_redirects=True) as client:
                self._download(client, spec, archive_path)

        try:
            return extract_image(
                archive_path, spec.image_filename, spec.local_cache_path
            )
        finally:
            archive_path.unlink(missing_ok=True)

    def _download(
        self, client: httpx.Client, spec: ImageSpec, archive_path: Path
    ) -> None:
        download_with_retry(
            client,
            spec.source_url,
            archive_path,
            attempts=self.attempts,
            retry_delay=self.retry_delay,
            timeout=self.timeout,
            progress=self.progress,
            sleep=self.sleep,
        )


def prune_cache(cache_dir: Path, keep_version: str | None = None) -> list[str]:
    """Remove cached image versions.

    Args:
        cache_dir: Root of the image cache.
        keep_version: Version to keep, if any.

    Returns:
        Removed version names.
    """
    removed: list[str] = []
    if not cache_dir.exists():
        return removed

    for entry in sorted(cache_dir.iterdir()):
        if entry.is_dir() and entry.name != keep_version:
            logger.info("Pruning cached image %s", entry.name)
            shutil.rmtree(entry)
            removed.append(entry.name)
    return removed


__all__ = [
    "DOWNLOAD_CHUNK_SIZE",
    "DOWNLOAD_TIMEOUT",
    "DownloadError",
    "DownloadResult",
    "ImageFetcher",
    "download_file",
    "download_with_retry",
    "extract_image",
    "is_cached",
    "prune_cache",
]
