from __future__ import annotations

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from ..errors import CreditError, CreditErrorCode


logger = logging.getLogger(__name__)

STATUS_BY_CODE = {
    CreditErrorCode.INSUFFICIENT_CREDITS: status.HTTP_402_PAYMENT_REQUIRED,
    CreditErrorCode.INVALID_AMOUNT: status.HTTP_400_BAD_REQUEST,
    CreditErrorCode.USER_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    CreditErrorCode.TRANSACTION_FAILED: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def credit_error_response(exc: CreditError) -> JSONResponse:
    return JSONResponse(status_code=STATUS_BY_CODE[exc.code], content=exc.to_payload())


async def credit_error_handler(request: Request, exc: CreditError) -> JSONResponse:
    if exc.code is CreditErrorCode.TRANSACTION_FAILED:
        logger.error("Credit storage failure on %s: %s", request.url.path, exc.message)
    else:
        logger.info("Credit request rejected on %s: %s", request.url.path, exc.message)
    return credit_error_response(exc)


async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(CreditError, credit_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(ValueError, value_error_handler)  # type: ignore[arg-type]
