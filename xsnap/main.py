"""Entry point for the FastAPI application."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import AsyncIterator

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import FileResponse, JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from xsnap.admission import AdmissionController, AdmissionResult
from xsnap.capture import BrowserCaptureExecutor
from xsnap.errors import JobNotFound, StoreUnavailable, ValidationError
from xsnap.rate_limit import extract_rate_limit_key
from xsnap.schemas import (
    CaptureCreateRequest,
    CaptureCreateResponse,
    CaptureListResponse,
    CaptureResponse,
    InvalidEntry,
    WorkerStatusResponse,
)
from xsnap.settings import Settings, get_settings
from xsnap.store import StorageConfig, Store, build_store
from xsnap.worker import CaptureWorker

LOGGER = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
CONTENT_TYPES = {
    ".png": "image/png",
    ".pdf": "application/pdf",
    ".json": "application/json",
    ".har": "application/json",
    ".txt": "text/plain",
}


@lru_cache(maxsize=1)
def get_store() -> Store:
    return build_store(StorageConfig.from_settings(get_settings()))


@lru_cache(maxsize=1)
def get_admission() -> AdmissionController:
    return AdmissionController.from_settings(get_store(), get_settings().admission)


def build_worker(settings: Settings, store: Store) -> CaptureWorker:
    executor = BrowserCaptureExecutor(settings.browser)
    return CaptureWorker(store=store, executor=executor, settings=settings.worker)


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    worker = build_worker(get_settings(), get_store())
    app.state.worker = worker
    await worker.start()
    try:
        yield
    finally:
        await worker.shutdown()


app = FastAPI(title="xsnap", lifespan=_lifespan)
instrumentator = Instrumentator(should_instrument_requests_inprogress=True)
instrumentator.instrument(app)
try:
    instrumentator.expose(app, include_in_schema=False, should_gzip=True)
except ValueError:  # pragma: no cover - already registered
    LOGGER.debug("Prometheus /metrics endpoint already exposed")


@app.exception_handler(ValidationError)
async def _validation_error_handler(_: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})


@app.exception_handler(JobNotFound)
async def _not_found_handler(_: Request, exc: JobNotFound) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


@app.exception_handler(StoreUnavailable)
async def _store_unavailable_handler(_: Request, exc: StoreUnavailable) -> JSONResponse:
    LOGGER.warning("Store unavailable while serving request: %s", exc)
    return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": "Store unavailable"})


def _admission_response(result: AdmissionResult) -> CaptureCreateResponse:
    return CaptureCreateResponse(
        created=result.created,
        duplicates=result.duplicates,
        invalid=[InvalidEntry(input=entry.input, reason=entry.reason) for entry in result.invalid],
        error=result.error,
    )


@app.post("/captures", status_code=status.HTTP_202_ACCEPTED, response_model=CaptureCreateResponse)
def create_captures(
    payload: CaptureCreateRequest,
    request: Request,
    admission: AdmissionController = Depends(get_admission),
):
    result = admission.submit(payload.urls, client_key=extract_rate_limit_key(request))
    if result.rate_limited:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=result.error,
            headers={"Retry-After": str(max(1, round(result.retry_after_seconds or 0)))},
        )
    body = _admission_response(result)
    if result.error:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=body.model_dump())
    return body


@app.get("/captures", response_model=CaptureListResponse)
def list_captures(
    status_filter: str | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1),
    offset: int = Query(default=0, ge=0),
    store: Store = Depends(get_store),
) -> CaptureListResponse:
    page_size = min(limit, MAX_PAGE_SIZE)
    records, total = store.list_captures(status=status_filter, limit=page_size, offset=offset)
    return CaptureListResponse(
        data=[CaptureResponse.model_validate(record) for record in records],
        total=total,
        limit=page_size,
        offset=offset,
    )


@app.get("/captures/{job_id}", response_model=CaptureResponse)
def get_capture(job_id: str, store: Store = Depends(get_store)) -> CaptureResponse:
    return CaptureResponse.model_validate(store.get_by_id(job_id))


@app.get("/artifacts/{job_id}/{artifact_path:path}")
def get_artifact(job_id: str, artifact_path: str, store: Store = Depends(get_store)) -> FileResponse:
    try:
        path = store.resolve_artifact(job_id, artifact_path)
    except PermissionError:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid path") from None
    except FileNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found") from None
    media_type = CONTENT_TYPES.get(path.suffix.lower(), "application/octet-stream")
    return FileResponse(
        path,
        media_type=media_type,
        headers={"Cache-Control": "public, max-age=31536000, immutable"},
    )


@app.get("/worker", response_model=WorkerStatusResponse)
def worker_status(request: Request, store: Store = Depends(get_store)) -> WorkerStatusResponse:
    worker: CaptureWorker | None = getattr(request.app.state, "worker", None)
    return WorkerStatusResponse(
        running=bool(worker and worker.is_running),
        active=worker.active_count if worker else 0,
        concurrency_limit=worker.concurrency_limit if worker else get_settings().worker.concurrency_limit,
        in_flight=worker.in_flight() if worker else [],
        counts=store.status_counts(),
    )
