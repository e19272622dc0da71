"""
Credit ledger FastAPI application.

`create_app` wires one `CreditContainer` per app instance; request handlers
reach it through `app.state.credits`.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from .api.admin_router import router as admin_router
from .api.errors import register_exception_handlers
from .api.middleware import CreditValidationMiddleware
from .api.router import router as credit_router
from .api.router import subscription_router
from .config import Settings, settings as default_settings
from .container import CreditContainer
from .db.base import BaseDBManager
from .notifications.queue import AsyncNotificationQueue


logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app(
    settings: Optional[Settings] = None,
    db: Optional[BaseDBManager] = None,
    queue: Optional[AsyncNotificationQueue] = None,
) -> FastAPI:
    settings = settings or default_settings
    configure_logging(settings.LOG_LEVEL)
    container = CreditContainer(settings, db=db, queue=queue)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await container.db.ensure_indexes()
        await container.ledger.log_system("Credit ledger started")
        yield
        await container.operations.cleanup()
        logger.info("Credit ledger shutting down")

    app = FastAPI(title="Credit Ledger API", version="0.1.0", lifespan=lifespan)
    app.state.credits = container

    app.add_middleware(
        CreditValidationMiddleware,
        credit_middleware=container.credit_middleware,
        path_prefixes=settings.PRICED_PATH_PREFIXES,
        user_id_header=settings.USER_ID_HEADER,
        request_id_header=settings.REQUEST_ID_HEADER,
    )
    register_exception_handlers(app)

    app.include_router(credit_router)
    app.include_router(subscription_router)
    app.include_router(admin_router)

    @app.get("/health", tags=["health"])
    async def health() -> dict:
        return {"status": "ok"}

    return app


def main() -> None:
    import uvicorn

    uvicorn.run(create_app(), host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
