"""Unit of work with compensating actions.

The face rows, the person clusters and the embedding index live in
separate structures, so a mutation that touches all three records an
undo action after each successful step.  Leaving the ``with`` block
through any exception (including cancellation) runs the undo actions
in reverse order.

Work running on behalf of a caller that may give up (an HTTP request
with a timeout) carries a ``CancelToken`` via ``cancel_scope``.  The
token settles the race between "commit" and "caller gave up" exactly
once: a unit of work that loses it rolls back instead of committing.
"""

from __future__ import annotations

import itertools
import threading
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Callable, Iterator, List, Optional, Tuple

from core.catalog.errors import InternalError, RequestCancelled
from utils.logger import get_logger

logger = get_logger(__name__)

_tx_ids = itertools.count(1)


class CancelToken:
    """
    One-shot decision between committing and abandoning a request.

    ``cancel()`` and ``claim_commit()`` race; whichever runs first wins
    and the other returns False.  Once committed, later units of work
    in the same request keep committing.
    """

    _CANCELLED = "cancelled"
    _COMMITTED = "committed"

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._state: Optional[str] = None

    def cancel(self) -> bool:
        """Give up; True when nothing has been committed (and now never will be)."""
        with self._lock:
            if self._state is None:
                self._state = self._CANCELLED
            return self._state == self._CANCELLED

    def claim_commit(self) -> bool:
        """True when the caller is still waiting and the commit may proceed."""
        with self._lock:
            if self._state is None:
                self._state = self._COMMITTED
            return self._state == self._COMMITTED

    @property
    def cancelled(self) -> bool:
        return self._state == self._CANCELLED


_current_token: ContextVar[Optional[CancelToken]] = ContextVar("cancel_token", default=None)


@contextmanager
def cancel_scope(token: CancelToken) -> Iterator[CancelToken]:
    """Attach *token* to every UnitOfWork opened inside the block."""
    reset = _current_token.set(token)
    try:
        yield token
    finally:
        _current_token.reset(reset)


class UnitOfWork:
    """
    Collects undo actions for one logical mutation.

    Usage::

        with UnitOfWork("delete_face") as uow:
            store.delete(face_id, uow=uow)
            ...
    """

    def __init__(self, name: str = "tx") -> None:
        self.name = name
        self.tx_id = next(_tx_ids)
        self._undo: List[Tuple[str, Callable[[], None]]] = []
        self._after_commit: List[Callable[[], None]] = []
        self._closed = False
        self._token = _current_token.get()

    @property
    def pending(self) -> int:
        return len(self._undo)

    def on_rollback(self, description: str, action: Callable[[], None]) -> None:
        """Register *action* to undo the step that just succeeded."""
        if self._closed:
            raise InternalError(f"Transaction {self.name}#{self.tx_id} is already closed.")
        self._undo.append((description, action))

    def after_commit(self, action: Callable[[], None]) -> None:
        """Register *action* to run once the transaction commits."""
        self._after_commit.append(action)

    def commit(self) -> None:
        self._closed = True
        self._undo.clear()
        hooks, self._after_commit = self._after_commit, []
        for hook in hooks:
            hook()

    def rollback(self) -> None:
        """Run every registered undo action, newest first."""
        self._closed = True
        failures = 0
        while self._undo:
            description, action = self._undo.pop()
            try:
                action()
            except Exception:
                failures += 1
                logger.exception(f"[tx {self.name}#{self.tx_id}] undo failed: {description}")
        self._after_commit.clear()
        if failures:
            raise InternalError(
                f"Rollback of {self.name} left {failures} step(s) unreverted."
            )
        logger.debug(f"[tx {self.name}#{self.tx_id}] rolled back")

    def __enter__(self) -> "UnitOfWork":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is None:
            if self._token is None or self._token.claim_commit():
                self.commit()
                return False
            logger.warning(
                f"[tx {self.name}#{self.tx_id}] caller gave up; rolling back {len(self._undo)} step(s)"
            )
            self.rollback()
            raise RequestCancelled()
        if self._undo:
            logger.warning(
                f"[tx {self.name}#{self.tx_id}] rolling back {len(self._undo)} step(s) "
                f"after {exc_type.__name__}"
            )
        self.rollback()
        return False


@contextmanager
def maybe_transaction(uow: Optional[UnitOfWork], name: str) -> Iterator[UnitOfWork]:
    """Join *uow* when given, otherwise open (and close) a fresh one."""
    if uow is not None:
        yield uow
        return
    with UnitOfWork(name) as own:
        yield own
