import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from brewery_core.blend_api import router as blend_router
from brewery_core.brewing_api import router as brewing_router
from brewery_core.config import settings
from brewery_core.errors import BreweryCoreError
from brewery_core.inventory_api import router as inventory_router
from brewery_core.logging_config import LogContext, configure_logging
from brewery_core.lots_api import router as lots_router
from brewery_core.middleware import RequestIdMiddleware
from brewery_core.packaging_api import router as packaging_router
from brewery_core.tank_sync import router as tank_sync_router
from brewery_core.tanks_api import router as tanks_router
from brewery_core.timeline_api import router as timeline_router

logger = logging.getLogger("brewery_core.api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level, settings.log_format)
    yield


app = FastAPI(title="Brewery Core API", lifespan=lifespan)
app.add_middleware(RequestIdMiddleware)

app.include_router(tanks_router)
app.include_router(brewing_router)
app.include_router(lots_router)
app.include_router(blend_router)
app.include_router(packaging_router)
app.include_router(timeline_router)
app.include_router(inventory_router)
app.include_router(tank_sync_router)


@app.exception_handler(BreweryCoreError)
async def brewery_error_handler(request: Request, exc: BreweryCoreError):
    if exc.status_code >= 500:
        logger.error("request_failed", extra={"code": exc.code, "path": request.url.path})
    else:
        logger.info("request_rejected", extra={"code": exc.code, "path": request.url.path})
    return JSONResponse(
        status_code=exc.status_code,
        content=jsonable_encoder({
            "error": exc.to_dict(),
            "correlation_id": LogContext.get("correlation_id"),
        }),
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error", extra={"path": request.url.path})
    return JSONResponse(
        status_code=500,
        content={
            "error": {"code": "INTERNAL_ERROR", "message": "Internal server error", "details": {}},
            "correlation_id": LogContext.get("correlation_id"),
        },
    )


@app.get("/health")
async def health():
    return {"ok": True}
