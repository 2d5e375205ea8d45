"""HTTP API: FastAPI application factory.

The app factory creates a FastAPI instance with:
- Lifespan handler that builds the engine from config (unless one is given)
  and closes it on shutdown
- Health endpoint at GET /api/health
- Availability and appointment routers
- Error handlers mapping engine exceptions to HTTP status codes
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI

from slotkeeper.api.deps import get_engine
from slotkeeper.api.middleware import register_error_handlers
from slotkeeper.api.models import ApiResponse, HealthResponse
from slotkeeper.api.routers.appointments import router as appointments_router
from slotkeeper.api.routers.availability import router as availability_router
from slotkeeper.config import SlotkeeperConfig, load_config
from slotkeeper.crypto import is_encryption_configured
from slotkeeper.engine import Engine, build_engine

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the engine on startup when none was injected; close what we built."""
    owned: Engine | None = None
    if getattr(app.state, "engine", None) is None:
        config = app.state.config or load_config()
        owned = await build_engine(config)
        app.state.engine = owned

    yield

    if owned is not None:
        await owned.close()
        app.state.engine = None


def create_app(
    engine: Engine | None = None,
    config: SlotkeeperConfig | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    engine:
        A prebuilt engine.  When omitted the lifespan handler builds one from
        *config* (or from ``load_config()``).
    config:
        Configuration used when no engine is supplied.
    """
    app = FastAPI(
        title="Slotkeeper API",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.router.redirect_slashes = False
    app.state.engine = engine
    app.state.config = config

    register_error_handlers(app)

    app.include_router(availability_router)
    app.include_router(appointments_router)

    @app.get("/api/health", response_model=ApiResponse[HealthResponse])
    async def health(engine: Engine = Depends(get_engine)) -> ApiResponse[HealthResponse]:
        return ApiResponse[HealthResponse](
            data=HealthResponse(
                encryption_configured=is_encryption_configured(
                    engine.config.encryption.key_env
                ),
                storage=engine.storage_backend,
            )
        )

    return app
