# ============================================================
# Face Catalog
# api/dependencies.py
# ============================================================
# FastAPI dependencies shared by the routers:
#   - get_catalog     - the FaceCatalog on app.state (503 if absent)
#   - get_account_id  - trusted account from the auth middleware
#   - run_blocking    - run a catalog call in the thread pool with
#                       a timeout, so the event loop never blocks;
#                       uncommitted work rolls back on timeout
# ============================================================

from __future__ import annotations

import asyncio
from functools import partial
from typing import Any, Callable, TypeVar

from fastapi import HTTPException, Request, status

from api.middleware.auth import DEFAULT_ACCOUNT
from core.catalog.errors import ModelUnavailable, RequestCancelled
from core.catalog.service import FaceCatalog
from core.catalog.transaction import CancelToken, cancel_scope
from utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# Maximum seconds for a single catalog / model call before timeout
_CALL_TIMEOUT: float = 60.0


def get_catalog(request: Request) -> FaceCatalog:
    catalog = getattr(request.app.state, "catalog", None)
    if catalog is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Face catalog is not initialised.",
        )
    return catalog


def get_account_id(request: Request) -> str:
    return getattr(request.state, "account_id", None) or DEFAULT_ACCOUNT


def _run_cancellable(token: CancelToken, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    with cancel_scope(token):
        return fn(*args, **kwargs)


def _drain(name: str) -> Callable[[asyncio.Future], None]:
    """Done-callback for work the caller stopped waiting for."""

    def _callback(future: asyncio.Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if isinstance(exc, RequestCancelled):
            logger.info(f"{name} rolled back after the caller gave up")
        elif exc is not None:
            logger.opt(exception=exc).warning(f"{name} failed after the caller gave up")

    return _callback


async def run_blocking(request: Request, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """
    Run ``fn(*args, **kwargs)`` on the app executor.

    The worker cannot be interrupted, so a caller that times out (or is
    cancelled) settles the request's ``CancelToken`` instead: any unit of
    work that has not committed yet rolls back.  If the work committed
    first, the timeout is ignored and the committed result is returned.

    Raises:
        ModelUnavailable: if the call does not finish within the timeout
            and nothing was committed.
    """
    loop = asyncio.get_running_loop()
    executor = getattr(request.app.state, "executor", None)
    name = getattr(fn, "__name__", repr(fn))
    token = CancelToken()
    future = loop.run_in_executor(executor, partial(_run_cancellable, token, fn, *args, **kwargs))
    try:
        return await asyncio.wait_for(asyncio.shield(future), timeout=_CALL_TIMEOUT)
    except asyncio.TimeoutError as exc:
        if not token.cancel():
            logger.warning(f"{name} committed after {_CALL_TIMEOUT:.0f}s; waiting for it to finish")
            return await future
        future.add_done_callback(_drain(name))
        logger.error(f"{name} timed out after {_CALL_TIMEOUT:.0f}s")
        raise ModelUnavailable(f"Request timed out after {_CALL_TIMEOUT:.0f}s.") from exc
    except asyncio.CancelledError:
        token.cancel()
        future.add_done_callback(_drain(name))
        raise
