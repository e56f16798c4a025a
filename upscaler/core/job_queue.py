"""
Job records and the visible processing queue.
"""
import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterable, List, Optional

logger = logging.getLogger(__name__)


class FileStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class JobStatus(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    PROCESSING = "processing"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"
    STOPPED = "stopped"


TERMINAL_STATUSES = {JobStatus.COMPLETED, JobStatus.ERROR, JobStatus.STOPPED}
LIVE_STATUSES = {JobStatus.QUEUED, JobStatus.PROCESSING, JobStatus.PAUSED}

_job_ids = itertools.count(1)


@dataclass(eq=False)
class MediaFile:
    name: str
    path: str
    size: int
    extension: str
    type: str  # "video" | "image"
    status: FileStatus = FileStatus.PENDING

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "path": self.path,
            "size": self.size,
            "extension": self.extension,
            "type": self.type,
            "status": self.status.value,
        }


@dataclass(eq=False)
class Job:
    """
    One file's trip through the remote service. Only the worker running the
    job (or the scheduler on pause/stop) writes to it.
    """
    file: MediaFile
    id: int = field(default_factory=lambda: next(_job_ids))
    status: JobStatus = JobStatus.QUEUED
    progress: float = 0.0
    phase: str = "queued"
    started_at: Optional[datetime] = None
    credential: Optional[object] = None
    request_id: Optional[str] = None
    retry_count: int = 0
    credits_before: Optional[int] = None
    credits_used: Optional[int] = None
    error: Optional[str] = None
    output_path: Optional[str] = None
    history: List[JobStatus] = field(default_factory=list)

    def __post_init__(self):
        self.history.append(self.status)

    @property
    def media_type(self) -> str:
        return self.file.type

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def set_status(self, status: JobStatus, phase: Optional[str] = None):
        if status != self.status:
            self.status = status
            self.history.append(status)
        if phase is not None:
            self.phase = phase

    def advance(self, progress: float, phase: Optional[str] = None):
        """Move progress forward. Never goes backwards."""
        if progress > self.progress:
            self.progress = min(100.0, progress)
        if phase is not None:
            self.phase = phase

    def fail(self, message: str, phase: str = "Error"):
        self.set_status(JobStatus.ERROR, phase)
        self.error = message
        self.file.status = FileStatus.ERROR

    def to_dict(self) -> dict:
        credential = self.credential
        return {
            "id": self.id,
            "file_name": self.file.name,
            "file_path": self.file.path,
            "media_type": self.media_type,
            "status": self.status.value,
            "progress": round(self.progress, 1),
            "phase": self.phase,
            "started_at": self.started_at,
            "api_key": getattr(credential, "masked", None),
            "request_id": self.request_id,
            "retry_count": self.retry_count,
            "credits_used": self.credits_used,
            "error": self.error,
            "output_path": self.output_path,
        }


class JobQueue:
    """Ordered list of admitted jobs, kept until the operator dismisses them."""

    def __init__(self):
        self._jobs: List[Job] = []

    def __len__(self):
        return len(self._jobs)

    def __iter__(self):
        return iter(list(self._jobs))

    def add(self, file: MediaFile) -> Job:
        job = Job(file=file)
        self._jobs.append(job)
        logger.debug(f"Job #{job.id} queued for {file.name}")
        return job

    def get(self, job_id: int) -> Optional[Job]:
        return next((j for j in self._jobs if j.id == job_id), None)

    def remove(self, job: Job) -> bool:
        if job in self._jobs:
            self._jobs.remove(job)
            return True
        return False

    def first_with_status(self, status: JobStatus) -> Optional[Job]:
        return next((j for j in self._jobs if j.status == status), None)

    def with_status(self, *statuses: JobStatus) -> List[Job]:
        return [j for j in self._jobs if j.status in statuses]

    def represents(self, file: MediaFile) -> bool:
        return any(j.file is file for j in self._jobs)

    def has_live_jobs(self) -> bool:
        return any(j.status in LIVE_STATUSES for j in self._jobs)

    def counts(self) -> dict:
        counts = {s.value: 0 for s in JobStatus}
        for job in self._jobs:
            counts[job.status.value] += 1
        return counts

    def clear_terminal(self, statuses: Iterable[JobStatus] = TERMINAL_STATUSES) -> int:
        statuses = set(statuses)
        before = len(self._jobs)
        self._jobs = [j for j in self._jobs if j.status not in statuses]
        return before - len(self._jobs)
