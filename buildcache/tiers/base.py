"""Cache tier protocol.

Defines the capability every storage backend exposes to the fallback
orchestrator. Any type with these members satisfies the protocol; no
inheritance is needed.
"""

from typing import Protocol, runtime_checkable

from buildcache.types import StoreOutcome, TierName, TierRecord


@runtime_checkable
class CacheTier(Protocol):
    """Probe/fetch/store/remove against one storage backend."""

    name: TierName

    def probe(self, key: str, *, timeout: float | None = None) -> TierRecord:
        """Check whether a usable artifact exists for the key.

        Unreachable stores are reported as ``present=False``, never raised.
        Only OperationCancelled propagates.
        """
        ...

    def fetch(
        self,
        key: str,
        locator: str,
        image_name: str,
        *,
        timeout: float | None = None,
    ) -> None:
        """Materialize the artifact locally under ``image_name``.

        Raises:
            FetchFailed: If materialization fails.
        """
        ...

    def store(
        self,
        key: str,
        image_name: str,
        *,
        timeout: float | None = None,
    ) -> StoreOutcome:
        """Persist the local image ``image_name`` under the key.

        Raises:
            StoreFailed: If the write fails.
        """
        ...

    def remove(self, key: str, locator: str | None = None) -> bool:
        """Delete the artifact for the key.

        Returns:
            True if something was removed.
        """
        ...


__all__ = ["CacheTier"]
