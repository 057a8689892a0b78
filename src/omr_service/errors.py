"""
Exception hierarchy for the OMR service.

Every failure the service reports to a client is an ``OMRServiceError``
subclass. Each class carries a stable error code and the HTTP status the API
layer should answer with, so routes never translate exceptions by hand.
"""

from __future__ import annotations

from typing import Any, Dict


class OMRServiceError(Exception):
    """
    Base exception for all service errors.

    Attributes:
        message: Human-readable error description (returned to clients)
        error_code: Stable machine-readable code
        http_status: HTTP status code the API layer responds with
    """

    error_code = "OMR_SERVICE_ERROR"
    http_status = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": "error",
            "message": self.message,
            "code": self.error_code,
        }


class NoInputProvided(OMRServiceError):
    error_code = "NO_INPUT_PROVIDED"
    http_status = 400

    def __init__(self, message: str = "No file uploaded") -> None:
        super().__init__(message)


class DuplicateJobId(OMRServiceError):
    error_code = "DUPLICATE_JOB_ID"
    http_status = 409

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} already exists")
        self.job_id = job_id


class JobNotFound(OMRServiceError):
    error_code = "JOB_NOT_FOUND"
    http_status = 404

    def __init__(self, job_id: str) -> None:
        super().__init__("Job not found")
        self.job_id = job_id


class JobNotReady(OMRServiceError):
    error_code = "JOB_NOT_READY"
    http_status = 409

    def __init__(self, job_id: str, status: str) -> None:
        super().__init__(f"Job not completed (status: {status})")
        self.job_id = job_id
        self.status = status


class ArtifactMissing(OMRServiceError):
    error_code = "ARTIFACT_MISSING"
    http_status = 404

    def __init__(self, job_id: str) -> None:
        super().__init__("Output file not found")
        self.job_id = job_id


class BackendFailure(OMRServiceError):
    """Raised when the recognition backend cannot convert a document."""

    error_code = "BACKEND_FAILURE"
    http_status = 500


class BackendTimeout(BackendFailure):
    error_code = "BACKEND_TIMEOUT"
    http_status = 504

    def __init__(self, timeout: float) -> None:
        super().__init__(f"Conversion timed out after {timeout:g} seconds")
        self.timeout = timeout


class IOFailure(OMRServiceError):
    """Raised when persisting an upload or reading an artifact fails."""

    error_code = "IO_FAILURE"
    http_status = 500


class InvalidTransition(OMRServiceError):
    error_code = "INVALID_TRANSITION"
    http_status = 500

    def __init__(self, job_id: str, current: str, target: str, detail: str | None = None) -> None:
        message = f"Job {job_id} cannot move from {current} to {target}"
        super().__init__(f"{message}: {detail}" if detail else message)
        self.job_id = job_id
        self.current = current
        self.target = target


class ServiceUnavailable(OMRServiceError):
    error_code = "SERVICE_UNAVAILABLE"
    http_status = 503


class ConfigurationError(OMRServiceError):
    error_code = "CONFIGURATION_ERROR"
    http_status = 500
