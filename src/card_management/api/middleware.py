"""
Starlette middleware that turns identity headers into a request identity.

Authentication itself happens upstream (API gateway or identity provider);
this layer only trusts the forwarded headers:

  X-User-Id     subject id of the caller (required under `path_prefix`)
  X-User-Email  optional hint used to seed a new usage record
  X-User-Name   optional display name hint
  X-User-Photo  optional photo URL hint
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from ..models.usage import IdentityHints


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequestIdentity:
    user_id: str
    hints: IdentityHints


class IdentityMiddleware(BaseHTTPMiddleware):
    """
    Attach `request.state.identity` (a `RequestIdentity` or None) to every
    request, and reject unidentified requests under `path_prefix` with 401.
    """

    def __init__(
        self,
        app: Any,
        *,
        path_prefix: str = "/cards",
        user_id_header: str = "X-User-Id",
        email_header: str = "X-User-Email",
        name_header: str = "X-User-Name",
        photo_header: str = "X-User-Photo",
        skip_paths: Optional[Sequence[str]] = None,
    ) -> None:
        super().__init__(app)
        self.path_prefix = path_prefix.rstrip("/")
        self.user_id_header = user_id_header
        self.email_header = email_header
        self.name_header = name_header
        self.photo_header = photo_header
        self.skip_paths = tuple(skip_paths or ())

    def _requires_identity(self, path: str) -> bool:
        if not path.startswith(self.path_prefix + "/") and path != self.path_prefix:
            return False
        for skip in self.skip_paths:
            if path == skip or path.startswith(skip.rstrip("/") + "/"):
                return False
        return True

    def _identity_from(self, request: Request) -> Optional[RequestIdentity]:
        user_id = (request.headers.get(self.user_id_header) or "").strip()
        if not user_id:
            return None
        hints = IdentityHints(
            email=request.headers.get(self.email_header),
            display_name=request.headers.get(self.name_header),
            photo_url=request.headers.get(self.photo_header),
        )
        return RequestIdentity(user_id=user_id, hints=hints)

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Any]
    ) -> Response:
        identity = self._identity_from(request)
        request.state.identity = identity

        if identity is None and self._requires_identity(request.url.path):
            logger.info("Rejected unidentified request to %s", request.url.path)
            return JSONResponse(
                status_code=401,
                content={
                    "error": {
                        "code": "unauthenticated",
                        "message": f"Missing user identification ({self.user_id_header} header).",
                        "retryable": False,
                        "details": {},
                    }
                },
            )
        return await call_next(request)
