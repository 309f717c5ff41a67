import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from listing_sync.api.v1.router import router as v1_router
from listing_sync.core.errors import SyncError
from listing_sync.core.telemetry import configure_logging, setup_telemetry
from listing_sync.schemas.common import ErrorResponse

log = logging.getLogger(__name__)

configure_logging()

app = FastAPI(title="Listing Sync API", version="0.1.0")

setup_telemetry(app)
app.include_router(v1_router)


@app.exception_handler(SyncError)
async def sync_error_handler(request: Request, exc: SyncError) -> JSONResponse:
    log.warning("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=exc.message, details=exc.as_detail()).model_dump(),
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    log.exception("%s %s crashed", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(error="Internal server error", details={"type": type(exc).__name__}).model_dump(),
    )
