"""
Thread-safe in-memory registry of conversion jobs.

The store is the only shared mutable structure in the service. Submitters
create records, the worker that owns a job mutates it, and any number of
request threads read it. Every operation runs under one lock and readers
always receive a copy, so nobody observes a half-applied transition.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Callable, Dict, List, Optional

from .errors import DuplicateJobId, InvalidTransition, JobNotFound
from .models import JobStatus, JobSummary

# Allowed status moves; terminal states have no way out
TRANSITIONS: Dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class JobRecord:
    """
    Internal representation of a conversion job.

    Attributes:
        id: Unique job identifier (UUID string), never reused
        filename: Original uploaded filename
        input_path: Stored upload owned by this job
        status: Current lifecycle state
        created_at: Registration timestamp (UTC)
        started_at: Set when the job enters PROCESSING
        finished_at: Set when the job reaches a terminal state
        output_path: Produced artifact, set only when COMPLETED
        error: Failure description, set only when FAILED
    """

    id: str
    filename: str
    input_path: Path
    status: JobStatus
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    output_path: Optional[Path] = None
    error: Optional[str] = None

    def to_summary(self) -> JobSummary:
        return JobSummary(
            job_id=self.id,
            status=self.status,
            filename=self.filename,
            input_path=str(self.input_path),
            output_path=str(self.output_path) if self.output_path else None,
            error=self.error,
            created_at=self.created_at,
            started_at=self.started_at,
            finished_at=self.finished_at,
        )


def _check_update(current: JobRecord, draft: JobRecord) -> None:
    if draft.id != current.id:
        raise InvalidTransition(current.id, current.status.value, draft.status.value, "job id is immutable")
    if current.status.is_terminal:
        raise InvalidTransition(current.id, current.status.value, draft.status.value, "job already finished")
    if draft.status != current.status and draft.status not in TRANSITIONS[current.status]:
        raise InvalidTransition(current.id, current.status.value, draft.status.value)
    if (draft.output_path is not None) != (draft.status == JobStatus.COMPLETED):
        raise InvalidTransition(
            current.id, current.status.value, draft.status.value, "output path is set only for completed jobs"
        )
    if (draft.error is not None) != (draft.status == JobStatus.FAILED):
        raise InvalidTransition(current.id, current.status.value, draft.status.value, "error is set only for failed jobs")


class JobStore:
    """
    Registry of job records keyed by job id.

    Thread Safety:
        A single lock serializes create, update, remove and reads. Mutations
        are applied to a copy and committed only after validation, and reads
        return copies, so readers see the last committed state.
    """

    def __init__(self) -> None:
        self._jobs: Dict[str, JobRecord] = {}
        self._lock = Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def __contains__(self, job_id: object) -> bool:
        with self._lock:
            return job_id in self._jobs

    def create(self, job_id: str, filename: str, input_path: Path) -> JobRecord:
        """
        Register a new PENDING job.

        Raises:
            DuplicateJobId: If ``job_id`` is already registered
        """
        record = JobRecord(
            id=job_id,
            filename=filename,
            input_path=input_path,
            status=JobStatus.PENDING,
            created_at=utcnow(),
        )
        with self._lock:
            if job_id in self._jobs:
                raise DuplicateJobId(job_id)
            self._jobs[job_id] = record
            return replace(record)

    def get(self, job_id: str) -> Optional[JobRecord]:
        with self._lock:
            record = self._jobs.get(job_id)
            return replace(record) if record else None

    def update(self, job_id: str, mutator: Callable[[JobRecord], None]) -> JobRecord:
        """
        Atomically apply ``mutator`` to a job.

        The mutator receives a draft copy. The draft replaces the stored
        record only if it is a legal move of the state machine and keeps the
        output/error invariants; otherwise the stored record is untouched.

        Returns:
            Snapshot of the committed record

        Raises:
            JobNotFound: If the job does not exist
            InvalidTransition: If the draft breaks the state machine
        """
        with self._lock:
            current = self._jobs.get(job_id)
            if current is None:
                raise JobNotFound(job_id)
            draft = replace(current)
            mutator(draft)
            _check_update(current, draft)
            self._jobs[job_id] = draft
            return replace(draft)

    def list_all(self) -> List[JobRecord]:
        """Snapshot of all jobs in insertion order."""
        with self._lock:
            return [replace(record) for record in self._jobs.values()]

    def remove(self, job_id: str) -> Optional[JobRecord]:
        with self._lock:
            return self._jobs.pop(job_id, None)

    def pop_finished_before(self, cutoff: datetime) -> List[JobRecord]:
        """Remove and return terminal jobs that finished before ``cutoff``."""
        with self._lock:
            expired = [
                job_id
                for job_id, record in self._jobs.items()
                if record.status.is_terminal and record.finished_at is not None and record.finished_at < cutoff
            ]
            return [self._jobs.pop(job_id) for job_id in expired]
