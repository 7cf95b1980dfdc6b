"""
Per-key serialization and the unit-of-work used by every mutating service.

Two layers keep guard checks atomic with the writes they authorise:

1. ``entity_lock(*keys)``: an in-process re-entrant lock per entity key
   (``order:<id>``, ``batch:<id>``, ``workflow:<id>``, ``capacity:<date>``).
   Requests on different keys never wait on each other. Keys passed in one
   call are acquired in sorted order.
2. ``atomic()``: commits the session on success and rolls back on any
   exception, so a failed guard never leaves partial state. Optimistic
   version mismatches (another process wrote the row first) and unique
   constraint collisions surface as ConcurrentModification.

Rows are additionally loaded ``FOR UPDATE`` by the services on backends
that support it.

Usage:
    with entity_lock(f"order:{order_id}"), atomic():
        ...
"""

import logging
import threading
import weakref
from contextlib import contextmanager

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from radiopharm.core.exceptions import ConcurrentModification
from radiopharm.models import db

logger = logging.getLogger(__name__)


class _KeyLock:
    __slots__ = ("lock", "__weakref__")

    def __init__(self):
        self.lock = threading.RLock()


# Entries disappear once no thread holds a reference to the key's lock.
_locks: "weakref.WeakValueDictionary[str, _KeyLock]" = weakref.WeakValueDictionary()
_registry_lock = threading.Lock()


def _lock_for(key: str) -> _KeyLock:
    with _registry_lock:
        key_lock = _locks.get(key)
        if key_lock is None:
            key_lock = _KeyLock()
            _locks[key] = key_lock
        return key_lock


@contextmanager
def entity_lock(*keys: str):
    """Hold the locks for *keys* for the duration of the block."""
    held = [_lock_for(k) for k in sorted(set(keys))]
    acquired = []
    try:
        for key_lock in held:
            key_lock.lock.acquire()
            acquired.append(key_lock)
        yield
    finally:
        for key_lock in reversed(acquired):
            key_lock.lock.release()


@contextmanager
def atomic():
    """Commit on success, roll back on any error.

    Raises:
        ConcurrentModification: a versioned row changed underneath us, or
            an insert collided with a unique constraint.
    """
    try:
        yield db.session
        db.session.commit()
    except StaleDataError as exc:
        db.session.rollback()
        logger.warning("Concurrent modification detected: %s", exc)
        raise ConcurrentModification(
            "Record was modified by another request; re-read and retry",
            details={"reason": str(exc)},
        ) from exc
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Write conflicts with an existing record: %s", exc.orig)
        raise ConcurrentModification(
            "Write conflicts with an existing record; re-read and retry",
            details={"reason": str(exc.orig)},
        ) from exc
    except Exception:
        db.session.rollback()
        raise
