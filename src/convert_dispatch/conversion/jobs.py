"""
In-memory job store.

Holds every job record plus an index from owner to job ids. All state
changes go through the guarded transitions below:

    PENDING -> PROCESSING -> COMPLETED | FAILED

COMPLETED and FAILED are terminal. A transition attempted on a terminal or
missing job is ignored (logged, never raised); callers compare the returned
snapshot with what they expected.

Records are frozen dataclasses replaced whole under one lock, so a reader
never sees a half-applied transition.
"""

import copy
import threading
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..logging_config import get_logger

logger = get_logger(name=__name__)


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


@dataclass(frozen=True)
class Job:
    id: str
    owner: str
    original_filename: str
    source_format: str
    target_format: str
    engine_id: str
    status: JobStatus
    progress: int
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None
    output_filename: Optional[str] = None
    error_message: Optional[str] = None
    options: Optional[Dict[str, Any]] = None

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "original_filename": self.original_filename,
            "source_format": self.source_format,
            "target_format": self.target_format,
            "engine": self.engine_id,
            "status": self.status.value,
            "progress": self.progress,
            "output_filename": self.output_filename,
            "error_message": self.error_message,
            "created_at": _isoformat(self.created_at),
            "updated_at": _isoformat(self.updated_at),
            "completed_at": _isoformat(self.completed_at),
            "options": copy.deepcopy(self.options),
        }


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat().replace("+00:00", "Z")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _snapshot(job: Job) -> Job:
    # Jobs are frozen; only the options blob can be mutated through a reference.
    if job.options is None:
        return job
    return replace(job, options=copy.deepcopy(job.options))


class JobStore:
    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._jobs: Dict[str, Job] = {}
        self._by_owner: Dict[str, List[str]] = {}

    def create(
        self,
        owner: str,
        original_filename: str,
        source_format: str,
        target_format: str,
        engine_id: str,
        options: Optional[Dict[str, Any]] = None,
    ) -> Job:
        now = self._clock()
        job = Job(
            id=str(uuid.uuid4()),
            owner=owner,
            original_filename=original_filename,
            source_format=source_format,
            target_format=target_format,
            engine_id=engine_id,
            status=JobStatus.PENDING,
            progress=0,
            created_at=now,
            updated_at=now,
            options=copy.deepcopy(options),
        )
        with self._lock:
            self._jobs[job.id] = job
            self._by_owner.setdefault(owner, []).append(job.id)
        logger.info(
            "Created job {} for {} ({} -> {} via {})",
            job.id, owner, source_format, target_format, engine_id,
        )
        return _snapshot(job)

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
        return _snapshot(job) if job is not None else None

    def get_owned(self, job_id: str, owner: str) -> Optional[Job]:
        """Return the job only if `owner` created it.

        A job belonging to someone else is reported exactly like a missing one.
        """
        job = self.get(job_id)
        if job is None or job.owner != owner:
            return None
        return job

    def list_owned(self, owner: str) -> List[Job]:
        with self._lock:
            ids = list(self._by_owner.get(owner, ()))
            jobs = [self._jobs[i] for i in ids if i in self._jobs]
        return [_snapshot(j) for j in jobs]

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    # Guarded transitions

    def _transition(self, job_id: str, action: str, apply: Callable[[Job], Optional[Job]]) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                logger.debug("Ignored {} for missing job {}", action, job_id)
                return None
            updated = apply(job)
            if updated is None:
                logger.debug("Ignored {} for job {} in state {}", action, job_id, job.status.value)
                return _snapshot(job)
            self._jobs[job_id] = updated
        logger.debug("Job {}: {} -> {} ({})", job_id, job.status.value, updated.status.value, action)
        return _snapshot(updated)

    def set_processing(self, job_id: str) -> Optional[Job]:
        def apply(job: Job) -> Optional[Job]:
            if job.status is not JobStatus.PENDING:
                return None
            return replace(job, status=JobStatus.PROCESSING, updated_at=self._clock())

        return self._transition(job_id, "set_processing", apply)

    def set_progress(self, job_id: str, progress: int) -> Optional[Job]:
        value = max(0, min(100, int(progress)))

        def apply(job: Job) -> Optional[Job]:
            if job.status is not JobStatus.PROCESSING or value <= job.progress:
                return None
            return replace(job, progress=value, updated_at=self._clock())

        return self._transition(job_id, "set_progress", apply)

    def complete(self, job_id: str, output_filename: str) -> Optional[Job]:
        def apply(job: Job) -> Optional[Job]:
            if job.status.terminal:
                return None
            now = self._clock()
            return replace(
                job,
                status=JobStatus.COMPLETED,
                progress=100,
                output_filename=output_filename,
                updated_at=now,
                completed_at=job.completed_at or now,
            )

        return self._transition(job_id, "complete", apply)

    def fail(self, job_id: str, message: str) -> Optional[Job]:
        def apply(job: Job) -> Optional[Job]:
            if job.status.terminal:
                return None
            now = self._clock()
            return replace(
                job,
                status=JobStatus.FAILED,
                error_message=message,
                updated_at=now,
                completed_at=job.completed_at or now,
            )

        return self._transition(job_id, "fail", apply)

    # Removal

    def _remove_locked(self, job: Job) -> None:
        del self._jobs[job.id]
        ids = self._by_owner.get(job.owner)
        if ids is not None:
            ids[:] = [i for i in ids if i != job.id]
            if not ids:
                del self._by_owner[job.owner]

    def delete(self, job_id: str, owner: str) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.owner != owner:
                return False
            self._remove_locked(job)
        logger.info("Deleted job {} ({}) for {}", job_id, job.status.value, owner)
        return True

    def expired(self, cutoff: datetime) -> List[Job]:
        """Jobs created strictly before `cutoff`, any status."""
        with self._lock:
            jobs = [j for j in self._jobs.values() if j.created_at < cutoff]
        return [_snapshot(j) for j in jobs]

    def discard(self, job_id: str) -> Optional[Job]:
        """Remove a job regardless of owner; used by retention."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            self._remove_locked(job)
        return job

    def now(self) -> datetime:
        return self._clock()
