"""API key authentication middleware.

Resolves the trusted ``account_id`` of every request and stores it on
``request.state.account_id``.  Route handlers never read the account
from the request body.
"""

from __future__ import annotations

import hmac
from typing import Dict, List, Optional, Set, Tuple

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from utils.logger import get_logger

logger = get_logger(__name__)

_SKIP_PATHS: Set[str] = {"/docs", "/redoc", "/openapi.json", "/", "/metrics"}
_SKIP_SUFFIXES = ("/health", "/metrics")

DEFAULT_ACCOUNT = "default"


def parse_api_keys(entries: List[str]) -> Dict[str, str]:
    """
    Turn ``"key:account_id"`` entries into a key → account mapping.

    An entry without a colon maps the key to the default account.
    """
    keys: Dict[str, str] = {}
    for entry in entries:
        if not entry:
            continue
        key, _, account = entry.partition(":")
        keys[key.strip()] = account.strip() or DEFAULT_ACCOUNT
    return keys


class APIKeyMiddleware(BaseHTTPMiddleware):
    """Reject requests missing a valid ``X-API-Key`` header.

    Configured via ``API_API_KEYS`` (list of ``key:account_id``).
    When the key list is empty, auth is disabled and the account is
    taken from the ``X-Account-ID`` header (development only).
    """

    def __init__(self, app: ASGIApp, api_keys: list[str] | None = None) -> None:
        super().__init__(app)
        self._api_keys: List[Tuple[str, str]] = list(parse_api_keys(api_keys or []).items())

    async def dispatch(self, request: Request, call_next) -> Response:
        if not self._api_keys:
            request.state.account_id = request.headers.get("X-Account-ID") or DEFAULT_ACCOUNT
            return await call_next(request)

        # Allow CORS preflight through without auth
        if request.method == "OPTIONS":
            return await call_next(request)

        path = request.url.path
        if path in _SKIP_PATHS or path.endswith(_SKIP_SUFFIXES):
            return await call_next(request)

        account = self._check_key(request.headers.get("X-API-Key", ""))
        if account is None:
            logger.warning(f"Rejected request with invalid API key | path={path}")
            return Response(
                content='{"error":"unauthorized","message":"Invalid or missing API key."}',
                status_code=401,
                media_type="application/json",
            )

        request.state.account_id = account
        return await call_next(request)

    def _check_key(self, candidate: str) -> Optional[str]:
        """Constant-time comparison against all accepted keys."""
        if not candidate:
            return None
        account = None
        for valid_key, valid_account in self._api_keys:
            if hmac.compare_digest(candidate, valid_key):
                account = valid_account
        return account
