from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI

from ..config import Settings, get_settings
from ..db.mongo import MongoCardStore
from .error_handlers import register_error_handlers
from .middleware import IdentityMiddleware
from .router import CardServices, build_services, public_router, router


logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    services: Optional[CardServices] = None,
) -> FastAPI:
    """
    Build the HTTP binding.

    `services` replaces the store and service wiring derived from
    `settings`, which is how tests run the app against an in-memory store.
    """
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if isinstance(services.store, MongoCardStore):
            await services.store.ensure_indexes()
        yield

    app = FastAPI(title="Card Management", lifespan=lifespan)
    app.state.card_services = services
    app.add_middleware(IdentityMiddleware, path_prefix="/cards")
    register_error_handlers(app)
    app.include_router(router)
    app.include_router(public_router)
    return app


def main() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(create_app(settings), host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
