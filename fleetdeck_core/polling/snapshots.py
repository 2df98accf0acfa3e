from __future__ import annotations

import itertools
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Generic, TypeVar

from fleetdeck_core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

READ_DEVICES = "devices"
READ_RELEASES = "releases"
READ_DISTRIBUTIONS = "distributions"
READ_CATEGORIES = "categories"
READ_SUMMARY = "summary"
READ_ROLLOUTS = "rollouts"
READ_DEPLOYMENT = "deployment"

READ_MODELS: tuple[str, ...] = (
    READ_DEVICES,
    READ_RELEASES,
    READ_DISTRIBUTIONS,
    READ_CATEGORIES,
    READ_SUMMARY,
    READ_ROLLOUTS,
    READ_DEPLOYMENT,
)


def deployment_key(release_id: int) -> str:
    """Read-model key for one release's deployment view."""
    return f"{READ_DEPLOYMENT}:{release_id}"


@dataclass(frozen=True)
class ReadModel(Generic[T]):
    key: str
    value: T
    sequence: int
    updated_at: datetime
    stale: bool = False


class SnapshotStore:
    """Latest completed snapshot per read model.

    Every fetch takes a ticket from ``begin()`` before issuing its request.
    Published values replace the stored one whole, in completion order.
    A response whose ticket predates the latest ``invalidate()`` of its key was
    requested before a mutation and is discarded.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()
        self._counter = itertools.count(1)
        self._models: dict[str, ReadModel[Any]] = {}
        self._invalidated_at: dict[str, int] = {}
        self._listeners: list[Callable[[str], None]] = []

    def begin(self) -> int:
        with self._lock:
            return next(self._counter)

    def publish(self, key: str, ticket: int, value: Any) -> bool:
        with self._lock:
            if ticket < self._invalidated_at.get(key, 0):
                accepted = False
            else:
                self._models[key] = ReadModel(
                    key=key,
                    value=value,
                    sequence=ticket,
                    updated_at=self._clock(),
                )
                accepted = True
            listeners = list(self._listeners)
        if not accepted:
            logger.debug(
                "Discarded stale snapshot",
                extra={"read_model": key, "sequence": ticket},
            )
            return False
        for listener in listeners:
            listener(key)
        return True

    def get(self, key: str) -> ReadModel[Any] | None:
        with self._lock:
            return self._models.get(key)

    def value(self, key: str, default: Any = None) -> Any:
        model = self.get(key)
        if model is None:
            return default
        return model.value

    def invalidate(self, *keys: str) -> None:
        with self._lock:
            marker = next(self._counter)
            for key in keys:
                self._invalidated_at[key] = marker
                current = self._models.get(key)
                if current is not None and not current.stale:
                    self._models[key] = ReadModel(
                        key=current.key,
                        value=current.value,
                        sequence=current.sequence,
                        updated_at=current.updated_at,
                        stale=True,
                    )

    def is_stale(self, key: str) -> bool:
        model = self.get(key)
        return model is None or model.stale

    def subscribe(self, listener: Callable[[str], None]) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe
