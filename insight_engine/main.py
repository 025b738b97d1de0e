from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from insight_engine.core.config import settings
from insight_engine.core.limiter import limiter
from insight_engine.core.logging_config import setup_logging

from contextlib import asynccontextmanager
from typing import Optional
import logging

from insight_engine.api import endpoints
from insight_engine.services.container import ServiceContainer

logger = logging.getLogger(__name__)


def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging()
        services = container or ServiceContainer.from_settings(settings)
        app.state.container = services
        # Startup: the store falls back to memory instead of failing here
        await services.startup()
        yield
        await services.shutdown()

    app = FastAPI(title=settings.PROJECT_NAME, lifespan=lifespan)
    if container is not None:
        app.state.container = container

    # Rate Limiting
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # Set all CORS enabled origins (with production-aware guard)
    cors_origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
    if not settings.is_development and any("localhost" in o for o in cors_origins):
        logger.warning(
            "CORS allows localhost origins outside development. "
            "Set CORS_ORIGINS env var to restrict origins in production."
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(endpoints.router, prefix="/api", tags=["api"])

    @app.get("/health")
    def health_check():
        services = getattr(app.state, "container", None)
        mode = services.store.mode.value if services and services.store.mode else "uninitialized"
        return {"status": "healthy", "project": settings.PROJECT_NAME, "store": mode}

    @app.get("/")
    def root():
        return {"message": "Welcome to Insight Engine API"}

    return app


app = create_app()
