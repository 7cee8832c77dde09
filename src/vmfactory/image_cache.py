"""
Cloud image cache with time-based expiry.

Images live at ``<cache_dir>/<filename>`` next to ``<filename>.stamp``, which
holds the unix time of the download. An entry is used only while both files
exist and the stamp is no older than ``max_age_days``; anything else is purged
and fetched again.
"""

import logging
import os
import time
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import urlparse

import requests

from vmfactory.errors import DownloadError

logger = logging.getLogger(__name__)

# (bytes_downloaded, total_bytes or None when the server sends no length)
ProgressCallback = Callable[[int, Optional[int]], None]

CHUNK_SIZE = 1024 * 1024


def download_file(
    url: str,
    dest: Path,
    progress: Optional[ProgressCallback] = None,
    timeout: int = 60,
) -> None:
    """Stream ``url`` into ``dest``, reporting real byte counts to ``progress``.

    Raises:
        DownloadError: on any HTTP or transport failure; ``dest`` is removed
    """
    try:
        with requests.get(url, stream=True, timeout=timeout, allow_redirects=True) as response:
            response.raise_for_status()
            length = response.headers.get("Content-Length")
            total = int(length) if length and length.isdigit() else None
            downloaded = 0
            if progress:
                progress(downloaded, total)
            with open(dest, "wb") as out:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if chunk:
                        out.write(chunk)
                        downloaded += len(chunk)
                        if progress:
                            progress(downloaded, total)
    except (requests.RequestException, OSError) as e:
        dest.unlink(missing_ok=True)
        raise DownloadError(url, str(e)) from e
    except BaseException:
        dest.unlink(missing_ok=True)
        raise


class ImageCache:
    """Maps image URLs to local files, downloading only when stale or missing."""

    def __init__(
        self,
        cache_dir: str,
        max_age_days: int = 30,
        downloader: Callable[..., None] = download_file,
        clock: Callable[[], float] = time.time,
    ):
        self.cache_dir = Path(cache_dir)
        self.max_age_days = max_age_days
        self.downloader = downloader
        self.clock = clock

    @staticmethod
    def cache_key(url: str) -> str:
        """Final path segment of the URL."""
        name = os.path.basename(urlparse(url).path)
        if not name:
            raise ValueError(f"Cannot derive an image filename from {url!r}")
        return name

    def image_path(self, url: str) -> Path:
        return self.cache_dir / self.cache_key(url)

    def stamp_path(self, url: str) -> Path:
        path = self.image_path(url)
        return path.with_name(path.name + ".stamp")

    def partial_path(self, url: str) -> Path:
        path = self.image_path(url)
        return path.with_name(path.name + ".part")

    def _stamp_time(self, stamp: Path) -> Optional[int]:
        try:
            text = stamp.read_text().strip()
        except OSError:
            return None
        return int(text) if text.isdigit() and text.isascii() else None

    def is_valid(self, url: str) -> bool:
        """True when the image and a parseable, unexpired stamp both exist."""
        image, stamp = self.image_path(url), self.stamp_path(url)
        if not (image.is_file() and stamp.is_file()):
            return False
        ts = self._stamp_time(stamp)
        if ts is None:
            return False
        return self.clock() - ts <= self.max_age_days * 86400

    def purge(self, url: str) -> None:
        """Delete the image and its stamp."""
        for path in (self.image_path(url), self.stamp_path(url)):
            path.unlink(missing_ok=True)

    def discard_partial(self, url: str) -> None:
        """Remove an interrupted download, if any."""
        self.partial_path(url).unlink(missing_ok=True)

    def resolve(self, url: str, progress: Optional[ProgressCallback] = None) -> Path:
        """
        Return a local path for ``url``, downloading only if the cache is invalid.

        Args:
            url: Image URL; its filename is the cache key
            progress: Optional byte-count callback for the transfer

        Returns:
            Path to the cached image

        Raises:
            DownloadError: transfer failed; nothing is left in the cache
        """
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise DownloadError(url, f"cache directory {self.cache_dir} is not usable: {e}") from e
        image = self.image_path(url)

        if self.is_valid(url):
            logger.info(f"Using cached image {image}")
            return image

        if image.exists() or self.stamp_path(url).exists():
            logger.info(f"Cached image {image.name} is stale or unstamped, purging")
        self.purge(url)

        partial = self.partial_path(url)
        logger.info(f"Downloading {url} -> {image}")
        try:
            self.downloader(url, partial, progress=progress)
        except BaseException:
            self.discard_partial(url)
            raise
        try:
            os.replace(partial, image)
            self.stamp_path(url).write_text(f"{int(self.clock())}\n")
        except OSError as e:
            self.discard_partial(url)
            self.purge(url)
            raise DownloadError(url, f"cannot store image in {self.cache_dir}: {e}") from e
        return image
