"""Remote registry tier.

Artifacts are registry tags of the form
``<registry>/<repository>:cache-<key>``. Probing and fetching collapse
into a pull attempt: a failed pull is a miss, not an error.
"""

from __future__ import annotations

import logging

from buildcache.docker.interfaces import RegistryClient
from buildcache.docker.registry_api import CACHE_TAG_PREFIX, RegistryAPI
from buildcache.errors import (
    DockerCommandError,
    FetchFailed,
    ImageNotFoundError,
    OperationCancelled,
    RegistryAPIError,
    StoreFailed,
    TierUnavailable,
)
from buildcache.types import StoreOutcome, TierName, TierRecord

logger = logging.getLogger(__name__)


class RegistryTier:
    """Cache tier backed by tags in a remote registry.

    Attributes:
        registry_url: Registry host[:port].
        repository: Repository holding the cache tags.
        push_latest: Also update the ``latest`` tag on store.
    """

    name = TierName.REGISTRY

    def __init__(
        self,
        registry_url: str,
        repository: str,
        client: RegistryClient,
        api: RegistryAPI | None = None,
        push_latest: bool = True,
    ) -> None:
        self.registry_url = registry_url.rstrip("/")
        self.repository = repository
        self.client = client
        self.api = api
        self.push_latest = push_latest

    def cache_tag(self, key: str) -> str:
        """Remote tag for a key."""
        return f"{self.registry_url}/{self.repository}:{CACHE_TAG_PREFIX}{key}"

    @property
    def latest_tag(self) -> str:
        """Remote tag tracking the most recent store."""
        return f"{self.registry_url}/{self.repository}:latest"

    def probe(self, key: str, *, timeout: float | None = None) -> TierRecord:
        tag = self.cache_tag(key)
        logger.debug("Checking registry: %s", tag)
        try:
            ref = self.client.pull(tag, timeout=timeout)
        except ImageNotFoundError:
            logger.debug("Not in registry: %s", tag)
            return TierRecord(self.name, False)
        except DockerCommandError as e:
            logger.warning("%s", TierUnavailable(self.name.value, f"pull of {tag} failed: {e}"))
            return TierRecord(self.name, False)
        return TierRecord(self.name, True, ref)

    def fetch(
        self,
        key: str,
        locator: str,
        image_name: str,
        *,
        timeout: float | None = None,
    ) -> None:
        # The pull already happened during probe; only the local tag is missing
        try:
            self.client.tag(locator, image_name)
        except DockerCommandError as e:
            raise FetchFailed(self.name.value, f"cannot tag {locator}: {e}") from e
        logger.info("Tagged %s from %s", image_name, locator)

    def store(
        self,
        key: str,
        image_name: str,
        *,
        timeout: float | None = None,
    ) -> StoreOutcome:
        tag = self.cache_tag(key)
        try:
            self.client.tag(image_name, tag)
            self.client.push(tag, timeout=timeout)
        except DockerCommandError as e:
            raise StoreFailed(self.name.value, f"cannot push {tag}: {e}") from e
        logger.info("Pushed %s", tag)

        if self.push_latest:
            try:
                self.client.tag(image_name, self.latest_tag)
                self.client.push(self.latest_tag, timeout=timeout)
            except (DockerCommandError, OperationCancelled) as e:
                logger.warning("Failed to update %s: %s", self.latest_tag, e)

        return StoreOutcome(self.name, tag)

    def remove(self, key: str, locator: str | None = None) -> bool:
        tag_name = f"{CACHE_TAG_PREFIX}{key}"
        if self.api is None:
            logger.warning("No registry API configured; cannot delete %s", tag_name)
            return False
        try:
            return self.api.delete_tag(self.repository, tag_name)
        except RegistryAPIError as e:
            logger.warning("Failed to delete %s:%s: %s", self.repository, tag_name, e)
            return False


__all__ = ["RegistryTier"]
