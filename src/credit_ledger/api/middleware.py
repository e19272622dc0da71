"""
FastAPI/Starlette middleware that meters priced endpoints.

Flow:
  1. Before request: read the caller's balance; reject with 402 if it does
     not cover the flat per-request price.
  2. Request is executed.
  3. After a 2xx response: deduct the price exactly once and report the new
     balance in response headers. Non-2xx responses are not charged.
  A deduction that fails after the handler succeeded is logged to the ledger
  and the response is still returned unchanged.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional, Sequence
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from ..errors import CreditError
from ..services.credit_middleware import CreditMiddleware, GuardState
from .errors import credit_error_response


logger = logging.getLogger(__name__)


class _UnchargedResponse(Exception):
    """Carries a non-2xx response out of the guarded operation."""

    def __init__(self, response: Response) -> None:
        super().__init__(f"HTTP {response.status_code}")
        self.response = response


class CreditValidationMiddleware(BaseHTTPMiddleware):
    """
    Middleware that checks credits before a priced request and deducts them
    after it succeeds.

    - Only paths under one of `path_prefixes` are metered.
    - The caller is identified by `user_id_header`; requests without it get 401.
    - `request.state.operation_id` is set so handlers can report progress.
    """

    def __init__(
        self,
        app: Any,
        credit_middleware: CreditMiddleware,
        *,
        path_prefixes: Sequence[str] = ("/api",),
        user_id_header: str = "X-User-Id",
        request_id_header: str = "X-Request-Id",
        skip_paths: Optional[Sequence[str]] = None,
    ) -> None:
        super().__init__(app)
        self.credit_middleware = credit_middleware
        self.path_prefixes = tuple(p.rstrip("/") for p in path_prefixes)
        self.user_id_header = user_id_header
        self.request_id_header = request_id_header
        self.skip_paths = tuple(skip_paths or ())

    def _should_apply(self, path: str) -> bool:
        for skip in self.skip_paths:
            if path == skip or path.startswith(skip.rstrip("/") + "/"):
                return False
        return any(path == p or path.startswith(p + "/") for p in self.path_prefixes)

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Any]
    ) -> Response:
        if not self._should_apply(request.url.path):
            return await call_next(request)

        user_id = request.headers.get(self.user_id_header)
        if not user_id:
            return JSONResponse(
                status_code=401,
                content={"detail": f"Missing user identification ({self.user_id_header} header)."},
            )

        operation_id = request.headers.get(self.request_id_header) or uuid4().hex
        request.state.credit_user_id = user_id
        request.state.operation_id = operation_id

        async def operation() -> Response:
            response = await call_next(request)
            if not 200 <= response.status_code < 300:
                raise _UnchargedResponse(response)
            return response

        try:
            outcome = await self.credit_middleware.run_guarded(
                user_id,
                operation,
                endpoint=request.url.path,
                request_id=operation_id,
                metadata={"method": request.method},
            )
        except _UnchargedResponse as exc:
            exc.response.headers[self.request_id_header] = operation_id
            return exc.response
        except CreditError as exc:
            return credit_error_response(exc)

        response: Response = outcome.result
        response.headers[self.request_id_header] = operation_id
        if outcome.deduction is not None:
            response.headers["X-Credits-Deducted"] = str(outcome.required_credits)
            response.headers["X-Credits-Remaining"] = str(outcome.deduction.new_balance)
            response.headers["X-Transaction-Id"] = outcome.deduction.transaction_id
        elif outcome.state is GuardState.DEDUCTION_FAILED:
            logger.warning(
                "Request %s on %s completed without a recorded deduction",
                operation_id,
                request.url.path,
            )
        return response
