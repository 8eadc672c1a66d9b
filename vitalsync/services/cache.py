"""
Subscription cache: latest known value per key, with observers.

Every mutation of engine state funnels through `SubscriptionCache.set` (or its
deletion form), which enforces last-writer-wins by time:

- a write applies only when its `updated_at` is >= the stored entry's;
- on equal timestamps a pull never replaces a push;
- stale writes are dropped silently.

All methods are synchronous. The engine runs on a single event loop, so the
single-writer discipline replaces locking.
"""

from collections.abc import Callable, Iterator
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Final, Generic, TypeVar

import structlog

from vitalsync.domain.models import UpdateSource

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class _Deleted:
    """Marker delivered to observers when an entity is deleted."""

    _instance: "_Deleted | None" = None

    def __new__(cls) -> "_Deleted":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "DELETED"

    def __bool__(self) -> bool:
        return False


DELETED: Final = _Deleted()


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    """Stored value for one key. A deleted entity keeps a tombstone entry."""

    key: str
    value: T | _Deleted
    updated_at: datetime
    source: UpdateSource

    @property
    def deleted(self) -> bool:
        return self.value is DELETED


Observer = Callable[[str, Any], None]
WriteHook = Callable[[str, "CacheEntry[Any] | None", "CacheEntry[Any]"], None]
EvictionHook = Callable[[str], None]


class SubscriptionCache:
    """
    Keyed in-memory store shared by every open view.

    Observers are called as `observer(key, value)` where `value` is the new
    value or `DELETED`. Write hooks are called as `hook(key, previous, entry)`
    before observers, so derived state they maintain is already consistent
    when observers run.
    """

    def __init__(self) -> None:
        self._entries: dict[str, CacheEntry[Any]] = {}
        self._observers: dict[str, list[Observer]] = {}
        self._pinned: set[str] = set()
        self._write_hooks: list[WriteHook] = []
        self._eviction_hooks: list[EvictionHook] = []
        self.logger = logger.bind(component="subscription_cache")

    # Reads

    def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None or entry.deleted:
            return None
        return entry.value

    def get_entry(self, key: str) -> CacheEntry[Any] | None:
        return self._entries.get(key)

    def __contains__(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and not entry.deleted

    def live_entries(self, prefix: str = "") -> Iterator[CacheEntry[Any]]:
        """Iterate over non-deleted entries whose key starts with `prefix`."""
        for key, entry in list(self._entries.items()):
            if key.startswith(prefix) and not entry.deleted:
                yield entry

    # Writes

    def accepts(self, key: str, updated_at: datetime, source: UpdateSource) -> bool:
        """Whether a write with this timestamp and source would be applied."""
        current = self._entries.get(key)
        if current is None:
            return True
        if updated_at > current.updated_at:
            return True
        if updated_at < current.updated_at:
            return False
        return not (source is UpdateSource.PULL and current.source is UpdateSource.PUSH)

    def set(self, key: str, value: Any, updated_at: datetime, source: UpdateSource) -> bool:
        """Store `value` under `key` if the write is not stale. Returns whether it was applied."""
        if value is None:
            raise ValueError("use delete() to remove a key")
        return self._write(key, value, updated_at, source)

    def delete(self, key: str, updated_at: datetime, source: UpdateSource) -> bool:
        """Replace the value with a tombstone. Observers receive `DELETED`."""
        return self._write(key, DELETED, updated_at, source)

    def _write(self, key: str, value: Any, updated_at: datetime, source: UpdateSource) -> bool:
        if not self.accepts(key, updated_at, source):
            current = self._entries[key]
            self.logger.debug(
                "cache_write_rejected",
                key=key,
                incoming_at=updated_at.isoformat(),
                stored_at=current.updated_at.isoformat(),
                source=source.value,
            )
            return False

        previous = self._entries.get(key)
        entry: CacheEntry[Any] = CacheEntry(
            key=key, value=value, updated_at=updated_at, source=source
        )
        self._entries[key] = entry

        for hook in list(self._write_hooks):
            try:
                hook(key, previous, entry)
            except Exception as e:
                self.logger.exception("cache_write_hook_failed", key=key, error=str(e))

        self._notify(key, value)
        return True

    def _notify(self, key: str, value: Any) -> None:
        # Copy: observers may unsubscribe while being notified
        for observer in list(self._observers.get(key, ())):
            try:
                observer(key, value)
            except Exception as e:
                self.logger.exception("cache_observer_failed", key=key, error=str(e))

    # Subscriptions

    def subscribe(self, key: str, observer: Observer) -> Callable[[], None]:
        """Register interest in `key`. Returns a callable that unsubscribes."""
        observers = self._observers.setdefault(key, [])
        if observer not in observers:
            observers.append(observer)
        return lambda: self.unsubscribe(key, observer)

    def unsubscribe(self, key: str, observer: Observer) -> None:
        observers = self._observers.get(key)
        if not observers or observer not in observers:
            return
        observers.remove(observer)
        if not observers:
            del self._observers[key]
            if key not in self._pinned:
                self.evict(key)

    def observer_count(self, key: str) -> int:
        return len(self._observers.get(key, ()))

    def subscribed_keys(self) -> list[str]:
        return list(self._observers)

    def is_interested(self, key: str) -> bool:
        """A key is interesting while it has observers or is pinned."""
        return key in self._observers or key in self._pinned

    # Pinning and eviction

    def pin(self, key: str) -> None:
        self._pinned.add(key)

    def unpin(self, key: str) -> None:
        self._pinned.discard(key)
        if key not in self._observers:
            self.evict(key)

    def is_pinned(self, key: str) -> bool:
        return key in self._pinned

    def pinned_keys(self) -> list[str]:
        return sorted(self._pinned)

    def evict(self, key: str) -> None:
        """Drop the entry for `key` without notifying observers."""
        self._entries.pop(key, None)
        for hook in list(self._eviction_hooks):
            try:
                hook(key)
            except Exception as e:
                self.logger.exception("cache_eviction_hook_failed", key=key, error=str(e))
        self.logger.debug("cache_entry_evicted", key=key)

    # Hooks

    def add_write_hook(self, hook: WriteHook) -> None:
        self._write_hooks.append(hook)

    def add_eviction_hook(self, hook: EvictionHook) -> None:
        self._eviction_hooks.append(hook)
