"""Local disk tier.

Artifacts are image tar blobs named ``<key>.tar`` in the cache directory.
Stores write to a temporary file in the same directory and publish it with
an atomic rename, so a concurrent probe never sees a partial blob.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

from buildcache.docker.interfaces import ImageRuntime
from buildcache.errors import DockerCommandError, FetchFailed, StoreFailed, TierUnavailable
from buildcache.types import StoreOutcome, TierName, TierRecord

logger = logging.getLogger(__name__)

BLOB_SUFFIX = ".tar"

# Repository used to tag images while they pass through the local tier
LOCAL_TAG_REPOSITORY = "buildcache-cache"


class LocalTier:
    """Cache tier backed by blob files in a directory."""

    name = TierName.LOCAL

    def __init__(self, cache_dir: Path, runtime: ImageRuntime) -> None:
        self.cache_dir = Path(cache_dir)
        self.runtime = runtime

    def blob_path(self, key: str) -> Path:
        """Path of the blob for a key."""
        return self.cache_dir / f"{key}{BLOB_SUFFIX}"

    @staticmethod
    def cache_tag(key: str) -> str:
        """Local tag the blob's image is saved and loaded under."""
        return f"{LOCAL_TAG_REPOSITORY}:{key}"

    def probe(self, key: str, *, timeout: float | None = None) -> TierRecord:
        path = self.blob_path(key)
        try:
            present = path.stat().st_size > 0 and path.is_file()
        except FileNotFoundError:
            present = False
        except OSError as e:
            logger.warning("%s", TierUnavailable(self.name.value, f"cannot stat {path}: {e}"))
            present = False
        return TierRecord(self.name, present, str(path) if present else None)

    def fetch(
        self,
        key: str,
        locator: str,
        image_name: str,
        *,
        timeout: float | None = None,
    ) -> None:
        try:
            self.runtime.load(Path(locator), timeout=timeout)
            self.runtime.tag(self.cache_tag(key), image_name)
        except (DockerCommandError, OSError) as e:
            raise FetchFailed(self.name.value, f"cannot load {locator}: {e}") from e
        logger.info("Loaded %s from %s", image_name, locator)

    def store(
        self,
        key: str,
        image_name: str,
        *,
        timeout: float | None = None,
    ) -> StoreOutcome:
        final_path = self.blob_path(key)
        tmp_path: Path | None = None
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self.cache_dir, prefix=f".{key}.", suffix=".tmp"
            )
            os.close(fd)
            tmp_path = Path(tmp_name)

            self.runtime.tag(image_name, self.cache_tag(key))
            self.runtime.save(self.cache_tag(key), tmp_path, timeout=timeout)
            size = tmp_path.stat().st_size
            os.replace(tmp_path, final_path)
            tmp_path = None
        except (DockerCommandError, OSError) as e:
            raise StoreFailed(self.name.value, f"cannot save {image_name}: {e}") from e
        finally:
            if tmp_path is not None:
                tmp_path.unlink(missing_ok=True)

        logger.info("Saved %s to %s (%.1f MB)", image_name, final_path, size / 1024 / 1024)
        return StoreOutcome(self.name, str(final_path), size)

    def remove(self, key: str, locator: str | None = None) -> bool:
        path = Path(locator) if locator else self.blob_path(key)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.debug("Removed %s", path)
        return True


__all__ = ["BLOB_SUFFIX", "LOCAL_TAG_REPOSITORY", "LocalTier"]
