import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

import structlog
from fastapi import FastAPI, HTTPException, Query, Request, status
from fastapi.exception_handlers import http_exception_handler
from fastapi.responses import JSONResponse, Response
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

from model_service.conversion import (
    ArtifactNotReadyError,
    ConversionFailedError,
    ConversionService,
    JobNotFoundError,
    JobRecord,
    PayloadTooLargeError,
    StorageError,
    ValidationError,
)
from model_service.conversion.adapters import LocalBlobStore, LocalJobLedger, PlaceholderGlbConverter
from model_service.conversion.ledger_sql import SqlJobLedger
from model_service.logging_config import configure_logging

LOGGER = structlog.get_logger(__name__)

# Global configuration defaults
DATA_DIR = Path(os.getenv("DATA_DIR", "./data")).resolve()
# Empty means one JSON file per job under DATA_DIR; otherwise a SQLAlchemy URL.
LEDGER_URL = os.getenv("LEDGER_URL", "")
WORKERS = int(os.getenv("WORKERS", "4"))
MAX_UPLOAD_MB = int(os.getenv("MAX_UPLOAD_MB", "50"))
CONVERTER_TIMEOUT_SEC = float(os.getenv("CONVERTER_TIMEOUT_SEC", "300"))
CONVERSION_DELAY_SEC = float(os.getenv("CONVERSION_DELAY_SEC", "0"))
STALE_AFTER_SEC = float(os.getenv("STALE_AFTER_SEC", "1800"))
STALE_CHECK_INTERVAL_SEC = float(os.getenv("STALE_CHECK_INTERVAL_SEC", "60"))

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
    "Access-Control-Max-Age": "86400",
}
ASSET_CACHE_CONTROL = "public, max-age=31536000"

SERVICE: ConversionService | None = None


def build_service() -> ConversionService:
    """Wire the domain service from environment configuration."""
    (DATA_DIR / "jobs").mkdir(parents=True, exist_ok=True)
    storage = LocalBlobStore(str(DATA_DIR))
    ledger = SqlJobLedger(LEDGER_URL) if LEDGER_URL else LocalJobLedger(str(DATA_DIR))
    converter = PlaceholderGlbConverter(delay_sec=CONVERSION_DELAY_SEC)
    return ConversionService(
        storage=storage,
        ledger=ledger,
        converter=converter,
        workers=WORKERS,
        max_upload_bytes=MAX_UPLOAD_MB * 1024 * 1024,
        converter_timeout_sec=CONVERTER_TIMEOUT_SEC or None,
        stale_after_sec=STALE_AFTER_SEC or None,
        stale_check_interval_sec=STALE_CHECK_INTERVAL_SEC,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    configure_logging()
    # Initialize domain service and start workers
    global SERVICE
    SERVICE = build_service()
    await SERVICE.start()
    LOGGER.info("service_started", data_dir=str(DATA_DIR), workers=WORKERS, ledger=LEDGER_URL or "json")
    try:
        yield
    finally:
        await SERVICE.stop()
        SERVICE = None
        LOGGER.info("service_stopped")


app = FastAPI(
    title="Image to 3D Model Conversion Service",
    version=os.getenv("MODEL_SERVICE_VERSION", "0.1.0"),
    description=(
        "Upload an image, poll the conversion status and download the "
        "resulting GLB model once it is ready."
    ),
    lifespan=lifespan,
)


@app.middleware("http")
async def _cors(request: Request, call_next):
    # Every OPTIONS request is answered as a preflight, whatever the path.
    if request.method == "OPTIONS":
        return Response(status_code=status.HTTP_200_OK, headers=CORS_HEADERS)
    response = await call_next(request)
    response.headers.update(CORS_HEADERS)
    return response


@app.exception_handler(StarletteHTTPException)
async def _http_error(request: Request, exc: StarletteHTTPException) -> Response:
    # Unmatched routes and methods carry a plain string detail from the router.
    if not isinstance(exc.detail, dict) and exc.status_code in (404, 405):
        return JSONResponse(status_code=404, content={"error": "Not found"})
    return await http_exception_handler(request, exc)


@app.exception_handler(Exception)
async def _unhandled_error(request: Request, exc: Exception) -> JSONResponse:
    LOGGER.error("request_failed", path=request.url.path, exc_info=exc)
    # Raised errors bypass the CORS middleware, so the headers are added here.
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "message": str(exc)},
        headers=CORS_HEADERS,
    )


def _service() -> ConversionService:
    assert SERVICE is not None
    return SERVICE


def _not_found(message: str) -> HTTPException:
    return HTTPException(status_code=404, detail={"code": "not_found", "message": message})


def _links(job_id: str) -> dict[str, str]:
    return {"imageUrl": f"/image/{job_id}", "modelUrl": f"/model/{job_id}"}


def _status_body(job: JobRecord) -> dict[str, object]:
    return {
        "id": job.id,
        "status": job.status,
        "error": job.error,
        "created_at": job.created_at,
        "updated_at": job.updated_at,
        **_links(job.id),
    }


@app.get("/health")
def health() -> dict[str, str]:
    """Basic health check endpoint."""
    return {"status": "ok"}


@app.post("/upload", status_code=status.HTTP_202_ACCEPTED)
async def upload(request: Request) -> JSONResponse:
    """Create a new conversion job from an uploaded image.

    Accepts multipart/form-data with a single required file part named "image".
    The image is stored and a pending job recorded before responding; the
    conversion itself runs in the background.
    """
    content_type = request.headers.get("content-type", "")
    if "multipart/form-data" not in content_type.lower():
        raise HTTPException(
            status_code=400,
            detail={"code": "bad_request", "message": "Expected multipart/form-data"},
        )

    async with request.form() as form:
        image = form.get("image")
        if not isinstance(image, UploadFile):
            raise HTTPException(
                status_code=400,
                detail={"code": "missing_image", "message": "No image file provided"},
            )
        data = await image.read()
        declared_type = image.content_type

    try:
        job = await _service().ingest(data, declared_type)
    except PayloadTooLargeError as e:
        raise HTTPException(status_code=413, detail={"code": "payload_too_large", "message": str(e)})
    except ValidationError as e:
        raise HTTPException(status_code=400, detail={"code": "bad_request", "message": str(e)})
    except StorageError as e:
        LOGGER.error("upload_failed", error=str(e))
        raise HTTPException(
            status_code=500,
            detail={"code": "storage_error", "message": "Failed to process upload"},
        )

    body = {"id": job.id, "status": job.status, **_links(job.id)}
    headers = {"Location": f"/status?id={job.id}"}
    return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=body, headers=headers)


@app.get("/status")
def get_status(job_id: str | None = Query(None, alias="id")) -> JSONResponse:
    if not job_id:
        raise HTTPException(status_code=400, detail={"code": "bad_request", "message": "Missing id parameter"})
    try:
        job = _service().get_status(job_id)
    except JobNotFoundError:
        raise _not_found("Conversion not found")
    return JSONResponse(content=_status_body(job))


@app.get("/image/{job_id}")
def get_image(job_id: str) -> Response:
    try:
        blob = _service().get_image(job_id)
    except JobNotFoundError as e:
        raise _not_found(str(e))
    return Response(
        content=blob.data,
        media_type=blob.content_type,
        headers={"Cache-Control": ASSET_CACHE_CONTROL},
    )


@app.get("/model/{job_id}")
def get_model(job_id: str) -> Response:
    try:
        blob = _service().get_artifact(job_id)
    except ArtifactNotReadyError as e:
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content={
                "status": e.status,
                "message": "The 3D model is still being processed. Please check back later.",
            },
        )
    except ConversionFailedError as e:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"status": "failed", "message": "Failed to generate the 3D model.", "error": e.error},
        )
    except JobNotFoundError as e:
        raise _not_found(str(e))
    return Response(
        content=blob.data,
        media_type=blob.content_type,
        headers={"Cache-Control": ASSET_CACHE_CONTROL},
    )


def run() -> None:
    """Run a development ASGI server using uvicorn.

    Exposes the app at host:port (default 0.0.0.0:8080). Set PORT env var to override.
    """
    import uvicorn

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8080"))
    # Enable reload in dev unless explicitly disabled
    reload = os.getenv("RELOAD", "true").lower() in {"1", "true", "yes", "on"}

    uvicorn.run("model_service.webapi:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    run()
