from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import os
from typing import AsyncIterator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from aika.deps import Services
from aika.routes.health import router as health_router
from aika.routes.v1 import router as v1_router
from aika.routes.webhook import router as webhook_router
from aika.settings import Settings, load_settings


def _parse_cors_origins(raw: Optional[str]) -> list[str]:
    if not raw:
        return ["*"]
    parts = [p.strip() for p in raw.split(",")]
    return [p for p in parts if p]


def _setup_logging() -> None:
    level = (os.getenv("LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    _setup_logging()
    settings = settings or load_settings()
    services = Services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await services.store.initialize()
        try:
            yield
        finally:
            await services.store.close()

    app = FastAPI(title="AIKA Backend", version="0.1.0", lifespan=lifespan)
    app.state.services = services

    origins = _parse_cors_origins(settings.cors_origins)
    allow_all = "*" in origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if allow_all else origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
        max_age=86400,
    )

    app.include_router(health_router)
    app.include_router(webhook_router)
    app.include_router(v1_router, prefix="/v1")

    return app


app = create_app()
