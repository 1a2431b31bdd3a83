import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Annotated

import uvicorn
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.db.models import ApiResponse, ApplicationInfo, HealthCheck
from api.db.session import build_engine
from api.routers import auth, users
from api.utils.config import Settings
from api.utils.dependencies import get_settings, load_settings
from api.utils.errors import register_exception_handlers
from api.utils.redis_client import build_redis_client

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings: Settings = app.state.settings
    app.state.engine = build_engine(settings)
    app.state.redis = build_redis_client(settings)
    logger.info("%s %s started", settings.APP_NAME, settings.APP_VERSION)
    try:
        yield
    finally:
        app.state.redis.close()
        app.state.engine.dispose()
        logger.info("%s stopped", settings.APP_NAME)


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or load_settings()
    logging.basicConfig(level=settings.LOG_LEVEL)

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[str(origin).rstrip("/") for origin in settings.CORS_ORIGIN],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)

    app.include_router(auth.router)
    app.include_router(users.router)

    @app.get("/")
    async def root(
        settings: Annotated[Settings, Depends(get_settings)],
    ) -> ApiResponse[ApplicationInfo]:
        return ApiResponse(
            data=ApplicationInfo(app_name=settings.APP_NAME, version=settings.APP_VERSION)
        )

    @app.get("/health")
    async def health_check() -> ApiResponse[HealthCheck]:
        return ApiResponse(data=HealthCheck(status="ok", timestamp=datetime.now(UTC)))

    return app


app = create_app()


def serve() -> None:
    settings = load_settings()
    uvicorn.run("api.main:app", host="0.0.0.0", port=settings.PORT)  # nosec B104
