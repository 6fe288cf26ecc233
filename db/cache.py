"""In-process TTL cache with explicit invalidation.

Object definitions, merged schemas, get-by-id results and simple searches
are cached per process. Every write path invalidates the entries it could
have changed; the TTL only bounds staleness caused by other processes.

The cache only ever holds committed state. A session whose current
transaction has written neither reads from nor fills the cache, and
invalidations issued inside a transaction are replayed once it commits.
"""
import logging
import os
import time
from collections import OrderedDict
from typing import Any, Callable, Hashable, Optional

from sqlalchemy import event
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

DEFAULT_TTL = float(os.environ.get("PLATFORM_CACHE_TTL", "300"))

_MISSING = object()


class TTLCache:
    """Bounded LRU cache whose keys are tuples.

    ``invalidate_prefix(("org-1",))`` drops every key starting with
    ``"org-1"``, which is how organization-wide invalidation works.
    """

    def __init__(
        self,
        name: str,
        ttl: float = DEFAULT_TTL,
        max_entries: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.ttl = ttl
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[tuple, tuple[float, Any]]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: tuple, default: Any = None) -> Any:
        entry = self._entries.get(key, _MISSING)
        if entry is _MISSING:
            return default
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return default
        self._entries.move_to_end(key)
        return value

    def set(self, key: tuple, value: Any, ttl: Optional[float] = None) -> None:
        self._entries[key] = (self._clock() + (self.ttl if ttl is None else ttl), value)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def invalidate(self, key: tuple) -> None:
        self._entries.pop(key, None)

    def invalidate_prefix(self, prefix: tuple) -> int:
        n = len(prefix)
        stale = [k for k in self._entries if k[:n] == prefix]
        for k in stale:
            del self._entries[k]
        if stale:
            logger.debug("Invalidated %d %s cache entries", len(stale), self.name)
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()


object_definitions = TTLCache("object_definition")
merged_schemas = TTLCache("merged_schema")
records = TTLCache("record", max_entries=50_000)
searches = TTLCache("search", ttl=60)


def invalidate_object_type(object_type: str) -> None:
    """A definition changed: drop it and every organization's merged view of it."""
    object_definitions.invalidate((object_type,))
    stale = [k for k in list(merged_schemas._entries) if k[1:2] == (object_type,)]
    for k in stale:
        merged_schemas.invalidate(k)


def invalidate_merged_schema(organization_id: Hashable, object_type: str) -> None:
    merged_schemas.invalidate((organization_id, object_type))


def invalidate_record(organization_id: Hashable, record_id: int) -> None:
    """A record changed: drop its cached view and the organization's searches."""
    records.invalidate((organization_id, record_id))
    searches.invalidate_prefix((organization_id,))


def clear_all() -> None:
    for c in (object_definitions, merged_schemas, records, searches):
        c.clear()


# ---------------------------------------------------------------------------
# Transaction awareness
# ---------------------------------------------------------------------------

_WROTE = "cache_wrote"
_PENDING = "cache_pending_invalidations"


def _sync(session) -> Session:
    return getattr(session, "sync_session", session)


def note_write(session) -> None:
    """Mark the session's current transaction as holding uncommitted writes."""
    _sync(session).info[_WROTE] = True


def has_uncommitted_writes(session) -> bool:
    return bool(_sync(session).info.get(_WROTE))


def lookup(session, cache: TTLCache, key: tuple) -> Any:
    """cache.get(key), bypassed while the session's transaction has written."""
    if has_uncommitted_writes(session):
        return None
    return cache.get(key)


def remember(session, cache: TTLCache, key: tuple, value: Any) -> None:
    """cache.set(key, value) unless the value may reflect uncommitted writes."""
    if not has_uncommitted_writes(session):
        cache.set(key, value)


def invalidate_on_commit(session, invalidate: Callable[..., Any], *args) -> None:
    """Invalidate now and again when the session's transaction commits.

    The second pass drops entries other sessions cached from the old
    committed state while this transaction was still open.
    """
    invalidate(*args)
    _sync(session).info.setdefault(_PENDING, []).append((invalidate, args))


@event.listens_for(Session, "after_flush")
def _after_flush(session, flush_context):
    note_write(session)


@event.listens_for(Session, "do_orm_execute")
def _on_execute(orm_execute_state):
    if orm_execute_state.is_insert or orm_execute_state.is_update or orm_execute_state.is_delete:
        note_write(orm_execute_state.session)


@event.listens_for(Session, "after_commit")
def _after_commit(session):
    for invalidate, args in session.info.pop(_PENDING, []):
        invalidate(*args)


@event.listens_for(Session, "after_transaction_end")
def _after_transaction_end(session, transaction):
    # Only the outermost transaction ends the unit of work
    if transaction.parent is None:
        session.info.pop(_WROTE, None)
        session.info.pop(_PENDING, None)
