"""
Job orchestration and lifecycle management for OMR conversions.

This module manages the end-to-end lifecycle of conversion jobs:
- Storing uploaded documents in the shared temp directory
- Synchronous conversions executed on the calling thread
- Asynchronous conversions registered in the JobStore and run on the WorkerPool
- Status, artifact and download lookups
- Retention of finished jobs and their temporary files

The JobManager class is the single authority over job state. Background
tasks are the only writers of their own job; everything else reads.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from functools import partial
from pathlib import Path
from typing import BinaryIO, List, Optional
from uuid import uuid4

from .backends import ConversionBackend, build_backend
from .configuration import Settings, load_settings
from .errors import (
    ArtifactMissing,
    BackendFailure,
    IOFailure,
    JobNotFound,
    JobNotReady,
    NoInputProvided,
    OMRServiceError,
)
from .job_store import JobRecord, JobStore, utcnow
from .models import AsyncSubmission, ConversionResult, JobStatus, JobSummary
from .utils import ensure_directory, file_extension, persist_stream, remove_file
from .worker_pool import WorkerPool

logger = logging.getLogger(__name__)


def _mark_processing(record: JobRecord) -> None:
    record.status = JobStatus.PROCESSING
    record.started_at = utcnow()


def _mark_completed(output_path: Path, record: JobRecord) -> None:
    record.status = JobStatus.COMPLETED
    record.output_path = output_path
    record.finished_at = utcnow()


def _mark_failed(error: str, record: JobRecord) -> None:
    record.status = JobStatus.FAILED
    record.error = error
    record.finished_at = utcnow()


def _error_message(exc: Exception) -> str:
    if isinstance(exc, OMRServiceError):
        return exc.message
    return str(exc) or exc.__class__.__name__


def _decode_artifact(content: bytes) -> str:
    try:
        return content.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise BackendFailure(f"Artifact is not valid UTF-8: {exc}") from exc


class JobManager:
    """
    Central coordinator for conversion jobs.

    Both request paths funnel through here:
    - ``convert_sync`` runs the backend on the caller's thread and keeps no state
    - ``convert_async`` registers a PENDING job and hands it to the WorkerPool

    Attributes:
        settings: Runtime settings
        temp_dir: Shared directory for uploads and artifacts
        backend: Recognition engine
        store: Registry of async jobs
        pool: Background worker pool
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        backend: Optional[ConversionBackend] = None,
        store: Optional[JobStore] = None,
        pool: Optional[WorkerPool] = None,
    ) -> None:
        """
        Initialize the job manager.

        Args:
            settings: Runtime settings (default: ``load_settings()``)
            backend: Recognition engine (default: built from settings)
            store: Job registry (default: a fresh JobStore)
            pool: Worker pool (default: ``settings.max_workers`` slots)
        """
        self.settings = settings or load_settings()
        self.temp_dir = ensure_directory(self.settings.temp_dir)
        self.backend = backend or build_backend(self.settings)
        self.store = store or JobStore()
        self.pool = pool or WorkerPool(self.settings.max_workers)
        ttl = self.settings.job_ttl_seconds
        self._retention = timedelta(seconds=ttl) if ttl else None

    # Paths

    def _input_path(self, job_id: str, filename: Optional[str]) -> Path:
        return self.temp_dir / f"{job_id}_input{file_extension(filename)}"

    def _output_path(self, job_id: str) -> Path:
        return self.temp_dir / f"{job_id}_output.{self.settings.artifact_extension}"

    def download_filename(self, job_id: str) -> str:
        return f"{job_id}.{self.settings.artifact_extension}"

    def _store_input(self, job_id: str, filename: Optional[str], stream: Optional[BinaryIO]) -> Path:
        if stream is None:
            raise NoInputProvided()
        return persist_stream(stream, self._input_path(job_id, filename))

    def _invoke_backend(self, input_path: Path, output_path: Path) -> bytes:
        """
        Run the backend and return the non-empty artifact it produced.

        Raises:
            BackendFailure: Any engine failure, including timeouts
            IOFailure: Filesystem errors around the invocation
        """
        try:
            content = self.backend.convert(input_path, output_path, timeout=self.settings.backend_timeout_seconds)
            if content is None:
                content = output_path.read_bytes()
        except OMRServiceError:
            raise
        except FileNotFoundError as exc:
            raise BackendFailure("Backend produced no output") from exc
        except OSError as exc:
            raise IOFailure(f"I/O error during conversion: {exc}") from exc
        except Exception as exc:  # noqa: BLE001
            raise BackendFailure(_error_message(exc)) from exc

        if not content:
            raise BackendFailure("Backend produced an empty artifact")
        return content

    # Request paths

    def convert_sync(self, filename: Optional[str], stream: Optional[BinaryIO]) -> ConversionResult:
        """
        Convert a document on the calling thread.

        The job id only names the temporary files; nothing is registered and
        the temporary files are removed before returning.

        Raises:
            NoInputProvided: If no document was supplied
            IOFailure: If the upload cannot be stored
            BackendFailure: If conversion fails or times out
        """
        job_id = str(uuid4())
        input_path = self._store_input(job_id, filename, stream)
        output_path = self._output_path(job_id)
        logger.info(f"Synchronous conversion {job_id} started for {filename!r}")

        try:
            content = self._invoke_backend(input_path, output_path)
            musicxml = _decode_artifact(content)
        except OMRServiceError as exc:
            logger.warning(f"Synchronous conversion {job_id} failed: {exc.message}")
            raise
        finally:
            remove_file(input_path)
            remove_file(output_path)

        logger.info(f"Synchronous conversion {job_id} completed")
        return ConversionResult(musicxml=musicxml, job_id=job_id)

    def convert_async(self, filename: Optional[str], stream: Optional[BinaryIO]) -> AsyncSubmission:
        """
        Register a job and queue it for background conversion.

        Returns as soon as the job is queued; the reported status is the one
        recorded at registration (PENDING).

        Raises:
            NoInputProvided: If no document was supplied
            IOFailure: If the upload cannot be stored
            DuplicateJobId: If the generated id is already registered
            ServiceUnavailable: If the worker pool is shut down
        """
        self.evict_expired()

        if stream is None:
            raise NoInputProvided()

        job_id = str(uuid4())
        # Register first: a duplicate id must not overwrite the existing job's upload
        record = self.store.create(job_id, filename or "", self._input_path(job_id, filename))
        input_path = record.input_path

        try:
            persist_stream(stream, input_path)
        except IOFailure:
            self.store.remove(job_id)
            raise

        try:
            self.pool.submit(partial(self._run_conversion, job_id))
        except OMRServiceError:
            self.store.remove(job_id)
            remove_file(input_path)
            raise

        logger.info(f"Job {job_id} registered for {filename!r}")
        return AsyncSubmission(job_id=job_id, status=record.status)

    def _run_conversion(self, job_id: str) -> None:
        """
        Execute one async job (runs on a worker thread).

        Every failure is recorded on the job; nothing propagates to the pool.
        """
        record = self.store.update(job_id, _mark_processing)
        output_path = self._output_path(job_id)
        logger.info(f"Job {job_id} processing")

        try:
            content = self._invoke_backend(record.input_path, output_path)
            if not output_path.is_file():
                output_path.write_bytes(content)
        except Exception as exc:  # noqa: BLE001
            error = _error_message(exc)
            self.store.update(job_id, partial(_mark_failed, error))
            remove_file(output_path)
            logger.warning(f"Job {job_id} failed: {error}")
            return

        self.store.update(job_id, partial(_mark_completed, output_path))
        logger.info(f"Job {job_id} completed")

    # Queries

    def get_status(self, job_id: str) -> JobRecord:
        """
        Return the current snapshot of a job.

        Raises:
            JobNotFound: If the job is unknown (or already evicted)
        """
        record = self.store.get(job_id)
        if record is None:
            raise JobNotFound(job_id)
        return record

    def get_artifact(self, job_id: str) -> str:
        """
        Read the MusicXML produced by a completed job.

        Raises:
            JobNotFound: If the job is unknown
            JobNotReady: If the job has not completed
            ArtifactMissing: If the artifact file is gone
            IOFailure: If the artifact cannot be read
        """
        return self.read_artifact(self.get_status(job_id))

    def read_artifact(self, record: JobRecord) -> str:
        """
        Read the MusicXML of an already fetched snapshot without consulting the store again.

        Raises:
            JobNotReady: If the snapshot is not completed
            ArtifactMissing: If the artifact file is gone
            IOFailure: If the artifact cannot be read
        """
        output_path = self._artifact_path(record)
        try:
            return output_path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise ArtifactMissing(record.id) from exc
        except (OSError, UnicodeDecodeError) as exc:
            raise IOFailure(f"Failed to read output file: {exc}") from exc

    def get_download(self, job_id: str) -> Path:
        """
        Resolve the artifact file of a completed job.

        Raises:
            JobNotFound: If the job is unknown
            JobNotReady: If the job has not completed
            ArtifactMissing: If the artifact file no longer exists
        """
        return self._artifact_path(self.get_status(job_id))

    def _artifact_path(self, record: JobRecord) -> Path:
        if record.status != JobStatus.COMPLETED or record.output_path is None:
            raise JobNotReady(record.id, record.status.value)
        if not record.output_path.is_file():
            raise ArtifactMissing(record.id)
        return record.output_path

    def list_jobs(self) -> List[JobSummary]:
        self.evict_expired()
        return [record.to_summary() for record in self.store.list_all()]

    # Housekeeping

    def evict_expired(self, now: Optional[datetime] = None) -> int:
        """
        Drop finished jobs older than the retention window.

        Completed and failed jobs whose ``finished_at`` is older than
        ``job_ttl_seconds`` are removed from the store together with their
        temporary files. Jobs still pending or processing are never evicted.

        Returns:
            Number of evicted jobs
        """
        if self._retention is None:
            return 0
        expired = self.store.pop_finished_before((now or utcnow()) - self._retention)
        for record in expired:
            remove_file(record.input_path)
            remove_file(record.output_path)
            logger.info(f"Job {record.id} evicted after retention window")
        return len(expired)

    def shutdown(self, wait: bool = True) -> None:
        """Stop the worker pool, draining queued jobs when ``wait`` is set."""
        logger.info("Shutting down job manager")
        self.pool.shutdown(wait=wait)
