"""Shared type definitions for buildcache.

This module contains dataclasses, enums, and small value types shared
across subpackages to avoid circular imports.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from buildcache.errors import OperationCancelled


class TierName(str, Enum):
    """Name of a cache tier."""

    LOCAL = "local"
    REGISTRY = "registry"
    LAYER = "layer"


class RequestState(str, Enum):
    """State of a cache request in the fallback state machine."""

    PROBING = "probing"
    HIT = "hit"
    ALL_MISSED = "all_missed"
    BUILDING = "building"
    BUILD_FAILED = "build_failed"
    BUILT = "built"
    SAVING = "saving"
    DONE = "done"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset(
    {RequestState.DONE, RequestState.BUILD_FAILED, RequestState.CANCELLED}
)


@dataclass(frozen=True)
class TierRecord:
    """Existence fact for one key in one tier."""

    tier: TierName
    present: bool
    locator: str | None = None


@dataclass(frozen=True)
class StoreOutcome:
    """Successful write-through of one artifact to one tier."""

    tier: TierName
    locator: str
    size_bytes: int | None = None


@dataclass(frozen=True)
class CacheEntry:
    """Provenance record for one cached artifact.

    Attributes:
        cache_key: Key the artifact is stored under.
        image_name: Image name the artifact was built as.
        created_at: When the entry was recorded (UTC).
        size_bytes: Artifact size in bytes.
        build_duration_ms: Wall time of the build that produced it.
        inputs: Snapshot of the originating build inputs.
    """

    cache_key: str
    image_name: str
    created_at: datetime
    size_bytes: int
    build_duration_ms: int
    inputs: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "cache_key": self.cache_key,
            "image_name": self.image_name,
            "timestamp": self.created_at.isoformat(),
            "size_bytes": self.size_bytes,
            "build_duration_ms": self.build_duration_ms,
            "inputs": dict(self.inputs),
        }


@dataclass
class CacheResult:
    """Outcome of one orchestrated cache request."""

    success: bool
    cached: bool
    cache_key: str
    image_name: str
    state: RequestState
    tier: TierName | None = None
    history: list[RequestState] = field(default_factory=list)
    store_results: dict[str, bool] = field(default_factory=dict)
    error_code: str | None = None
    error_message: str | None = None
    probe_ms: int = 0
    build_ms: int = 0
    save_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "success": self.success,
            "cached": self.cached,
            "cache_key": self.cache_key,
            "image_name": self.image_name,
            "state": self.state.value,
            "tier": self.tier.value if self.tier else None,
            "history": [s.value for s in self.history],
            "store_results": dict(self.store_results),
            "error_code": self.error_code,
            "error_message": self.error_message,
            "probe_ms": self.probe_ms,
            "build_ms": self.build_ms,
            "save_ms": self.save_ms,
        }


class Deadline:
    """Caller-supplied deadline propagated into collaborator calls.

    Combines a monotonic expiry time with an optional cancel event. The
    remaining time is handed to subprocess and network calls as their
    timeout.
    """

    def __init__(
        self,
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.expires_at = None if timeout is None else time.monotonic() + timeout
        self.cancel_event = cancel_event

    @classmethod
    def never(cls) -> Deadline:
        """Deadline that never expires."""
        return cls()

    def remaining(self) -> float | None:
        """Seconds left, or None if unbounded."""
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - time.monotonic())

    def expired(self) -> bool:
        """Check whether the deadline passed or cancellation was requested."""
        if self.cancel_event is not None and self.cancel_event.is_set():
            return True
        return self.expires_at is not None and time.monotonic() >= self.expires_at

    def check(self) -> None:
        """Raise OperationCancelled if the deadline is exhausted."""
        if self.expired():
            raise OperationCancelled("Operation cancelled: deadline exceeded")

    def timeout_for(self, limit: float | None) -> float | None:
        """Bound a per-call timeout by the remaining deadline.

        Args:
            limit: Per-call timeout from settings, or None.

        Returns:
            The smaller of the two, or None if both are unbounded.
        """
        remaining = self.remaining()
        if remaining is None:
            return limit
        if limit is None:
            return remaining
        return min(limit, remaining)


__all__ = [
    "TERMINAL_STATES",
    "CacheEntry",
    "CacheResult",
    "Deadline",
    "RequestState",
    "StoreOutcome",
    "TierName",
    "TierRecord",
]
