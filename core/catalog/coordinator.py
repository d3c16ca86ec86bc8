# ============================================================
# Face Catalog
# core/catalog/coordinator.py
# ============================================================
# Scoped per-person / per-face locking for catalog mutations.
#
# Locks are keyed by strings such as "person:<id>" or
# "face:<id>".  A lock entry exists only while someone holds or
# waits for it (reference counted), and the table mutex guards
# only that bookkeeping, never user code.
#
# Multi-key acquisition always walks the keys in sorted order,
# so two mutations touching the same people cannot deadlock.
# ============================================================

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional, TypeVar

from core.catalog.errors import LockTimeout
from utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def person_key(person_id: str) -> str:
    return f"person:{person_id}"


def face_key(face_id: str) -> str:
    return f"face:{face_id}"


@dataclass
class _LockEntry:
    lock: threading.Lock = field(default_factory=threading.Lock)
    refs: int = 0


class MutationCoordinator:
    """
    Serialises mutations that touch the same person or face.

    Args:
        lock_timeout: Seconds to wait for the whole key set before
                      raising ``LockTimeout``.
        max_retries:  Attempts for optimistic re-read loops
                      (see ``FaceCatalog``).
    """

    def __init__(self, lock_timeout: float = 10.0, max_retries: int = 8) -> None:
        self.lock_timeout = float(lock_timeout)
        self.max_retries = int(max_retries)
        self._table: Dict[str, _LockEntry] = {}
        self._mutex = threading.Lock()

    def with_person_lock(self, person_id: str, fn: Callable[[], T]) -> T:
        """Run *fn* while holding the lock of *person_id*."""
        with self.locked(person_key(person_id)):
            return fn()

    @contextmanager
    def locked(self, *keys: Optional[str]) -> Iterator[List[str]]:
        """
        Hold the locks of *keys* (None entries are ignored).

        Yields:
            The de-duplicated keys in acquisition order.

        Raises:
            LockTimeout: if the keys could not all be taken in time.
        """
        ordered = sorted({k for k in keys if k})
        entries = self._retain(ordered)
        held: List[_LockEntry] = []
        try:
            deadline = time.monotonic() + self.lock_timeout
            for key, entry in zip(ordered, entries):
                remaining = max(0.0, deadline - time.monotonic())
                if not entry.lock.acquire(timeout=remaining):
                    logger.warning(f"Lock timeout after {self.lock_timeout:.1f}s on {key}")
                    raise LockTimeout(
                        f"Timed out waiting for {key}; another mutation is in progress.",
                        key=key,
                    )
                held.append(entry)
            yield ordered
        finally:
            for entry in reversed(held):
                entry.lock.release()
            self._release(ordered)

    @property
    def active_keys(self) -> int:
        """Number of lock entries currently alive (held or awaited)."""
        with self._mutex:
            return len(self._table)

    # ------------------------------------------------------------------

    def _retain(self, keys: List[str]) -> List[_LockEntry]:
        with self._mutex:
            entries = []
            for key in keys:
                entry = self._table.get(key)
                if entry is None:
                    entry = self._table[key] = _LockEntry()
                entry.refs += 1
                entries.append(entry)
            return entries

    def _release(self, keys: List[str]) -> None:
        with self._mutex:
            for key in keys:
                entry = self._table[key]
                entry.refs -= 1
                if entry.refs == 0:
                    del self._table[key]
