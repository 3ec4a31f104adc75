"""Shared plumbing for the observable, persisted caches."""

from __future__ import annotations

import functools
import logging
import time
from typing import Any, Callable, TypeVar

from chatsync.cache.persistence import PersistenceAdapter, load_versioned, save_versioned
from chatsync.errors import ValidationError

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., bool])

Listener = Callable[[], None]
Clock = Callable[[], float]


def guarded(fn: F) -> F:
    """Contain :class:`ValidationError` raised by a cache mutator.

    The error is logged and the call becomes a no-op returning ``False``.
    """

    @functools.wraps(fn)
    def wrapper(self: Any, *args: Any, **kwargs: Any) -> bool:
        try:
            return fn(self, *args, **kwargs)
        except ValidationError as exc:
            logger.warning("%s.%s rejected: %s", type(self).__name__, fn.__name__, exc)
            return False

    return wrapper  # type: ignore[return-value]


def require_id(value: Any, what: str = "id") -> str:
    """Return *value* if it is a usable identifier, else raise."""
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{what} must be a non-empty string, got {value!r}")
    return value


class ObservableStore:
    """Base for stores: change listeners, timestamps and persistence.

    Subclasses install new state synchronously and then call
    :meth:`_committed`.  Listeners always observe fully committed state.  A
    mutation made from inside a listener is itself committed immediately,
    but its notification waits until the current round has finished, so
    listeners are never re-entered.
    """

    storage_key: str = ""
    schema_version: int = 1

    def __init__(
        self,
        persistence: PersistenceAdapter | None = None,
        namespace: str = "chat",
        clock: Clock = time.time,
    ) -> None:
        self._persistence = persistence
        self._namespace = namespace
        self._clock = clock
        self._listeners: list[Listener] = []
        self._notifying = False
        self._pending = False
        self.last_update_time: int | None = None

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener*; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _committed(self, touched: bool = True) -> None:
        self.last_update_time = self._now_ms() if touched else None
        self.save()

        if self._notifying:
            self._pending = True
            return

        self._notifying = True
        try:
            self._pending = True
            while self._pending:
                self._pending = False
                for listener in list(self._listeners):
                    listener()
        finally:
            self._notifying = False

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    @property
    def key(self) -> str:
        return f"{self._namespace}-{self.storage_key}"

    def snapshot(self) -> dict[str, Any]:
        """Return the JSON-compatible committed state."""
        raise NotImplementedError

    def restore(self, state: dict[str, Any]) -> None:
        """Install a snapshot previously produced by :meth:`snapshot`."""
        raise NotImplementedError

    def save(self) -> None:
        if self._persistence is None:
            return
        save_versioned(self._persistence, self.key, self.schema_version, self.snapshot())

    def load(self) -> bool:
        """Rehydrate from persistence.  Returns True if state was restored."""
        if self._persistence is None:
            return False
        state = load_versioned(self._persistence, self.key, self.schema_version)
        if state is None:
            return False
        try:
            self.restore(state)
        except (KeyError, TypeError, ValueError) as exc:
            logger.error("Rehydrating %s failed: %s", self.key, exc)
            self._persistence.delete(self.key)
            return False
        logger.info("Rehydrated %s from storage", self.key)
        return True
