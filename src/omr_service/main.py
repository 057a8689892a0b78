from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, File, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse

from . import __version__
from .configuration import Settings, load_settings
from .errors import ArtifactMissing, IOFailure, NoInputProvided, OMRServiceError
from .job_manager import JobManager
from .logging_config import configure_logging
from .models import AsyncSubmission, ConversionResult, HealthStatus, JobStatus, JobSummary, StatusResponse

logger = logging.getLogger(__name__)

SERVICE_NAME = "omr-service"


def get_job_manager(request: Request) -> JobManager:
    return request.app.state.job_manager


def _require_upload(file: Optional[UploadFile]) -> UploadFile:
    if file is None:
        raise NoInputProvided()
    return file


async def handle_service_error(request: Request, exc: OMRServiceError) -> JSONResponse:
    if exc.http_status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.message}")
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


def create_app(settings: Optional[Settings] = None, job_manager: Optional[JobManager] = None) -> FastAPI:
    """
    Build the FastAPI application around one JobManager.

    The manager (and with it the JobStore and WorkerPool) lives on
    ``app.state`` for the lifetime of the app and is shut down gracefully
    when the app stops.
    """
    settings = settings or (job_manager.settings if job_manager else load_settings())
    configure_logging(settings.log_level)
    job_manager = job_manager or JobManager(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        app.state.job_manager.shutdown(wait=True)

    app = FastAPI(title="OMR Service API", version=__version__, lifespan=lifespan)
    app.state.job_manager = job_manager
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(OMRServiceError, handle_service_error)

    @app.get("/health", response_model=HealthStatus)
    def healthcheck() -> HealthStatus:
        return HealthStatus(status="ok", service=SERVICE_NAME, version=__version__)

    @app.post("/convert", response_model=ConversionResult)
    def convert(
        file: Optional[UploadFile] = File(None),
        manager: JobManager = Depends(get_job_manager),
    ) -> ConversionResult:
        upload = _require_upload(file)
        return manager.convert_sync(upload.filename, upload.file)

    @app.post("/convert/async", response_model=AsyncSubmission)
    def convert_async(
        file: Optional[UploadFile] = File(None),
        manager: JobManager = Depends(get_job_manager),
    ) -> AsyncSubmission:
        upload = _require_upload(file)
        return manager.convert_async(upload.filename, upload.file)

    @app.get("/status/{job_id}", response_model=StatusResponse, response_model_exclude_none=True)
    def job_status(job_id: str, manager: JobManager = Depends(get_job_manager)) -> StatusResponse:
        record = manager.get_status(job_id)
        response = StatusResponse(status=record.status.value, job_id=record.id)

        if record.status == JobStatus.COMPLETED:
            try:
                response.musicxml = manager.read_artifact(record)
            except (ArtifactMissing, IOFailure) as exc:
                # Reported for this response only; the stored job stays completed
                logger.warning(f"Job {job_id} artifact unreadable: {exc.message}")
                response.status = "error"
                response.message = "Failed to read output file"
        elif record.status == JobStatus.FAILED:
            response.message = record.error
        return response

    @app.get("/jobs/{job_id}/download")
    def download(job_id: str, manager: JobManager = Depends(get_job_manager)) -> FileResponse:
        path = manager.get_download(job_id)
        return FileResponse(
            path,
            media_type=manager.settings.artifact_media_type,
            filename=manager.download_filename(job_id),
        )

    @app.get("/jobs", response_model=List[JobSummary])
    def list_jobs(manager: JobManager = Depends(get_job_manager)) -> List[JobSummary]:
        return manager.list_jobs()

    return app


app = create_app()
