"""
OMR Service - REST API for optical music recognition conversions

This package provides a FastAPI-based web service that converts scanned
sheet music (images or PDFs) into MusicXML. It enables:

- Document uploads for synchronous conversion
- Asynchronous conversion jobs executed on a bounded worker pool
- Job status tracking and artifact download
- Pluggable recognition backends behind a file-in/file-out contract

The service does not implement recognition itself. It treats the OMR engine
as an opaque backend and focuses on the job lifecycle around it.

Key Components:
    - main: FastAPI application factory and HTTP endpoint definitions
    - job_manager: Job lifecycle coordinator (sync and async conversions)
    - job_store: Thread-safe in-memory registry of job records
    - worker_pool: Fixed-size pool running conversion tasks
    - backends: ConversionBackend contract and implementations
    - models: Job status enum and Pydantic response models
    - errors: Service exception hierarchy
    - configuration: Settings loading and merging logic
    - utils: Filesystem and filename utilities

Usage:
    Run the API server with:
        uvicorn omr_service.main:app --host 0.0.0.0 --port 8081

    Or use the console script:
        omr-service

Architecture Principles:
    - The recognition engine is a black box invoked with file paths
    - Thread-safe job state management with a single writer per job
    - Job state lives only as long as the process
    - Explicitly owned components, no hidden global registries
"""

__version__ = "0.1.0"
