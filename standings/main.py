from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from standings.api.router import api_router
from standings.core.config import get_settings
from standings.core.telemetry import configure_logging, setup_telemetry
from standings.services.repository import get_repository

settings = get_settings()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    logger.info(
        "%s starting env=%s storage=%s head_to_head=%s",
        settings.app_name,
        settings.environment,
        "postgres" if settings.database_url else "memory",
        settings.head_to_head_enabled,
    )
    try:
        yield
    finally:
        telemetry.shutdown()
        repository = get_repository()
        await repository.close()
        get_repository.cache_clear()
        logger.info("%s stopped", settings.app_name)


app = FastAPI(title=settings.app_name, lifespan=lifespan)
telemetry = setup_telemetry(settings, app=app)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    logger.info(
        "%s %s -> %s in %.1fms",
        request.method,
        request.url.path,
        response.status_code,
        (time.perf_counter() - started) * 1000.0,
    )
    return response


app.include_router(api_router)
