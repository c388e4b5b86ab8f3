"""Registry HTTP API client.

This module handles:
- Listing tags of a repository (Docker Registry HTTP API v2)
- Filtering cache tags
- Deleting a tag by resolving its manifest digest

Image transport (pull/push) is not done here; it goes through the
RegistryClient collaborator.
"""

from __future__ import annotations

import logging

import httpx

from buildcache.errors import RegistryAPIError

logger = logging.getLogger(__name__)

# Timeout for registry API requests (seconds)
API_TIMEOUT = 30

CACHE_TAG_PREFIX = "cache-"

MANIFEST_ACCEPT = ", ".join(
    [
        "application/vnd.docker.distribution.manifest.v2+json",
        "application/vnd.docker.distribution.manifest.list.v2+json",
        "application/vnd.oci.image.manifest.v1+json",
        "application/vnd.oci.image.index.v1+json",
    ]
)


class RegistryAPI:
    """Thin client for the registry's tag and manifest endpoints.

    Attributes:
        base_url: Registry API base URL, e.g. http://localhost:5000.
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        base_url: str,
        client: httpx.Client | None = None,
        timeout: float = API_TIMEOUT,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client or httpx.Client()
        self._owns_client = client is None

    def close(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> RegistryAPI:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _request(self, method: str, path: str, **kwargs: object) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            return self._client.request(method, url, timeout=self.timeout, **kwargs)  # type: ignore[arg-type]
        except httpx.TimeoutException as e:
            raise RegistryAPIError(f"Timeout calling {method} {url}", code="timeout") from e
        except httpx.RequestError as e:
            raise RegistryAPIError(
                f"Network error calling {method} {url}: {e}", code="network_error"
            ) from e

    def list_tags(self, repository: str) -> list[str]:
        """List all tags of a repository.

        Returns:
            Tag names; empty if the repository does not exist.

        Raises:
            RegistryAPIError: If the request fails.
        """
        response = self._request("GET", f"/v2/{repository}/tags/list")
        if response.status_code == 404:
            return []
        if response.is_error:
            raise RegistryAPIError(
                f"HTTP error listing tags of {repository}: {response.status_code}",
                code="http_error",
            )
        return list(response.json().get("tags") or [])

    def list_cache_tags(self, repository: str) -> list[str]:
        """List the cache tags of a repository, sorted."""
        return sorted(t for t in self.list_tags(repository) if t.startswith(CACHE_TAG_PREFIX))

    def get_digest(self, repository: str, tag: str) -> str | None:
        """Resolve a tag to its manifest digest.

        Returns:
            Digest, or None if the tag does not exist.
        """
        response = self._request(
            "HEAD",
            f"/v2/{repository}/manifests/{tag}",
            headers={"Accept": MANIFEST_ACCEPT},
        )
        if response.status_code == 404:
            return None
        if response.is_error:
            raise RegistryAPIError(
                f"HTTP error resolving {repository}:{tag}: {response.status_code}",
                code="http_error",
            )
        digest = response.headers.get("Docker-Content-Digest")
        if not digest:
            raise RegistryAPIError(
                f"Registry returned no digest for {repository}:{tag}",
                code="missing_digest",
            )
        return digest

    def delete_tag(self, repository: str, tag: str) -> bool:
        """Delete the manifest a tag points to.

        The registry must run with deletion enabled.

        Returns:
            True if deleted, False if the tag was already gone.

        Raises:
            RegistryAPIError: If resolution or deletion fails.
        """
        digest = self.get_digest(repository, tag)
        if digest is None:
            return False

        response = self._request("DELETE", f"/v2/{repository}/manifests/{digest}")
        if response.status_code == 404:
            return False
        if response.is_error:
            raise RegistryAPIError(
                f"HTTP error deleting {repository}:{tag}: {response.status_code}",
                code="http_error",
            )
        logger.info("Deleted %s:%s (%s)", repository, tag, digest[:19])
        return True


__all__ = ["CACHE_TAG_PREFIX", "RegistryAPI"]
