from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Hashable, Optional

__all__ = [
    "CHATS_QUERY_KEY",
    "CacheRegistry",
    "MutationState",
    "MutationStatus",
    "QueryCache",
    "QueryState",
    "QueryStatus",
    "chat_key",
]

QueryKey = tuple[Hashable, ...]

CHATS_QUERY_KEY: QueryKey = ("chats",)

DEFAULT_MAX_USERS = 1000
DEFAULT_MAX_IDLE_SECONDS = 30 * 60

log = logging.getLogger(__name__)


def chat_key(chat_id: str) -> QueryKey:
    return (*CHATS_QUERY_KEY, chat_id)


def _error_message(error: Optional[BaseException]) -> Optional[str]:
    if error is None:
        return None
    return getattr(error, "message", None) or str(error)


class QueryStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


class MutationStatus(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(slots=True)
class QueryState:
    status: QueryStatus = QueryStatus.IDLE
    error: Optional[BaseException] = None
    failure_count: int = 0

    @property
    def is_loading(self) -> bool:
        return self.status is QueryStatus.LOADING

    @property
    def is_error(self) -> bool:
        return self.status is QueryStatus.ERROR

    def start(self) -> None:
        self.status = QueryStatus.LOADING
        self.failure_count = 0

    def succeed(self) -> None:
        self.status = QueryStatus.SUCCESS
        self.error = None

    def fail(self, error: BaseException) -> None:
        self.status = QueryStatus.ERROR
        self.error = error

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status.value, "error": _error_message(self.error), "failureCount": self.failure_count}


@dataclass(slots=True)
class MutationState:
    status: MutationStatus = MutationStatus.IDLE
    error: Optional[BaseException] = None
    data: Any = None

    @property
    def is_pending(self) -> bool:
        return self.status is MutationStatus.PENDING

    def start(self) -> None:
        self.status = MutationStatus.PENDING
        self.error = None

    def succeed(self, data: Any) -> None:
        self.status = MutationStatus.SUCCESS
        self.data = data

    def fail(self, error: BaseException) -> None:
        self.status = MutationStatus.ERROR
        self.error = error

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status.value, "error": _error_message(self.error)}


@dataclass(slots=True)
class _CacheEntry:
    data: Any
    updated_at: float = field(default_factory=time.monotonic)


class QueryCache:
    """In-memory store of query results keyed by tuples such as ``("chats", chat_id)``.

    All operations are synchronous and take the cache lock, so the most recent
    write always wins. There are no version checks.

    The cache also holds the user's query and mutation states, so they outlive
    the request that changed them.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._entries: dict[QueryKey, _CacheEntry] = {}
        self._query_states: dict[QueryKey, QueryState] = {}
        self._mutation_states: dict[str, MutationState] = {}
        self._lock = threading.RLock()
        self._clock = clock
        self.deleting_id: Optional[str] = None

    def get_query_data(self, key: QueryKey) -> Any:
        with self._lock:
            entry = self._entries.get(tuple(key))
            return entry.data if entry is not None else None

    def set_query_data(self, key: QueryKey, value: Any) -> Any:
        """Store ``value``, or the result of ``value(old_data)`` when it is callable."""
        key = tuple(key)
        with self._lock:
            if callable(value):
                current = self._entries.get(key)
                value = value(current.data if current is not None else None)
            self._entries[key] = _CacheEntry(value, self._clock())
            return value

    def remove_queries(self, key: QueryKey) -> None:
        with self._lock:
            self._entries.pop(tuple(key), None)

    def has(self, key: QueryKey) -> bool:
        with self._lock:
            return tuple(key) in self._entries

    def is_fresh(self, key: QueryKey, max_age: float) -> bool:
        with self._lock:
            entry = self._entries.get(tuple(key))
            if entry is None:
                return False
            return self._clock() - entry.updated_at < max_age

    def query_state(self, key: QueryKey) -> QueryState:
        with self._lock:
            return self._query_states.setdefault(tuple(key), QueryState())

    def mutation_state(self, name: str) -> MutationState:
        with self._lock:
            return self._mutation_states.setdefault(name, MutationState())

    def status(self) -> dict[str, Any]:
        """JSON-ready view of the list query, per-chat queries, mutations and pending delete."""
        with self._lock:
            chats = self._query_states.get(CHATS_QUERY_KEY) or QueryState()
            return {
                "chats": chats.to_dict(),
                "chat": {
                    str(key[-1]): state.to_dict()
                    for key, state in self._query_states.items()
                    if len(key) == len(CHATS_QUERY_KEY) + 1
                },
                "mutations": {name: state.to_dict() for name, state in self._mutation_states.items()},
                "deletingId": self.deleting_id,
            }


class CacheRegistry:
    """Hands out one :class:`QueryCache` per signed-in user.

    Caches are kept in least-recently-used order. A lookup first drops every
    cache idle for longer than ``max_idle`` seconds, then the oldest ones
    beyond ``max_users``.
    """

    def __init__(
        self,
        max_users: int = DEFAULT_MAX_USERS,
        max_idle: float = DEFAULT_MAX_IDLE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_users < 1:
            raise ValueError("max_users must be at least 1")
        self.max_users = max_users
        self.max_idle = max_idle
        self._caches: OrderedDict[str, QueryCache] = OrderedDict()
        self._last_used: dict[str, float] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def __len__(self) -> int:
        with self._lock:
            return len(self._caches)

    def __contains__(self, uid: object) -> bool:
        with self._lock:
            return uid in self._caches

    def _evict(self, now: float) -> None:
        while self._caches:
            oldest = next(iter(self._caches))
            if now - self._last_used[oldest] <= self.max_idle:
                break
            self._drop(oldest)
        while len(self._caches) > self.max_users:
            self._drop(next(iter(self._caches)))

    def _drop(self, uid: str) -> None:
        del self._caches[uid]
        del self._last_used[uid]
        log.debug("Evicted query cache for %s", uid)

    def for_user(self, uid: str) -> QueryCache:
        with self._lock:
            now = self._clock()
            cache = self._caches.get(uid)
            if cache is None:
                cache = self._caches[uid] = QueryCache()
            else:
                self._caches.move_to_end(uid)
            self._last_used[uid] = now
            self._evict(now)
            return cache
