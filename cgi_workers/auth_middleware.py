"""
Shared-secret authentication for the CGI worker.

The public API (login, tokens, uploads) runs in front of this worker and
forwards each call with two headers:

  X-Worker-Secret — must match WORKER_SHARED_SECRET
  X-Account-Id    — the already-authenticated account; trusted as-is

The account id is stored on `request.state.account_id` for the routes.
"""

import os
import secrets
from typing import Optional

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

SECRET_HEADER = "X-Worker-Secret"
ACCOUNT_HEADER = "X-Account-Id"


class WorkerAuthMiddleware(BaseHTTPMiddleware):
    """Reject requests without a valid shared secret."""

    PUBLIC_PATHS = {"/health", "/docs", "/openapi.json", "/redoc"}

    def __init__(self, app, secret: Optional[str] = None):
        super().__init__(app)
        self._secret = secret

    @property
    def secret(self) -> str:
        if self._secret is not None:
            return self._secret
        return os.environ.get("WORKER_SHARED_SECRET", "")

    async def dispatch(self, request: Request, call_next):
        request.state.account_id = request.headers.get(ACCOUNT_HEADER, "").strip() or None

        if request.url.path in self.PUBLIC_PATHS:
            return await call_next(request)

        if not self.secret:
            # In development without the secret set, allow all traffic
            if os.environ.get("ENVIRONMENT", "development") == "development":
                return await call_next(request)
            return JSONResponse(status_code=500, content={"detail": "WORKER_SHARED_SECRET not configured"})

        # Constant-time compare avoids timing attacks
        provided = request.headers.get(SECRET_HEADER, "")
        if not secrets.compare_digest(provided, self.secret):
            return JSONResponse(status_code=401, content={"detail": "Invalid or missing worker secret"})

        return await call_next(request)


def get_account_id(request: Request) -> str:
    """Route dependency: the authenticated account forwarded by the API layer."""
    account_id = getattr(request.state, "account_id", None)
    if not account_id:
        raise HTTPException(status_code=401, detail=f"Missing {ACCOUNT_HEADER} header")
    return account_id
