from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from realmauth import __version__
from realmauth.api.error_handling import register_exception_handlers
from realmauth.api.routes import router
from realmauth.logging import get_logger, set_correlation_id

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the maintenance worker on startup and stop it on shutdown."""
    from realmauth.service.runtime import get_runtime

    runtime = get_runtime()
    if runtime.settings.maintenance_enabled:
        await runtime.maintenance.start()
    else:
        logger.info("maintenance_worker_disabled")

    yield

    await runtime.maintenance.stop()
    runtime.close()
    logger.info("runtime_cleanup_complete")


app = FastAPI(title="Realm Hunter Accounts", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind the X-Request-ID header (or a fresh id) to the request's log context."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


def create_app() -> FastAPI:
    return app
