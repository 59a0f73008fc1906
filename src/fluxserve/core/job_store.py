"""In-memory job records shared between the API handlers and job workers.

A job's status is one of three immutable variants:

- :class:`InProgress` - running, with a 0-100 progress value
- :class:`Completed` - finished, with the artifact path relative to the
  public directory (``images/<job id>.png``)
- :class:`Failed` - finished, with an error message

:class:`JobStore` maps job ids to :class:`Job` records.  Records are frozen
and every write replaces the whole record under a single lock, so a reader
can never observe a status paired with another update's request.  Handlers
call the store from the event loop while job bodies call it from worker
threads, which is why the guard is a ``threading.Lock`` rather than an
``asyncio.Lock``.

Each job has exactly one writer while it runs (its dispatcher task), so the
store keeps no per-job locks and no cross-job invariants.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Union

from fluxserve.core.request import GenerationRequest

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InProgress:
    progress: int = 0


@dataclass(frozen=True)
class Completed:
    image_path: str


@dataclass(frozen=True)
class Failed:
    error: str


JobStatus = Union[InProgress, Completed, Failed]


@dataclass(frozen=True)
class Job:
    """A tracked generation job.

    Attributes:
        id: Opaque unique job identifier.
        status: Current status variant.
        request: The request that created the job.
    """

    id: str
    status: JobStatus
    request: GenerationRequest


class JobStore:
    """Thread-safe map from job id to :class:`Job`.

    ``update`` on an unknown id re-creates the record, exactly like
    ``create``.  A job evicted by the retention policy while its worker is
    still running would therefore reappear; in practice eviction only
    targets terminal jobs, whose workers have already finished.
    """

    def __init__(self) -> None:
        self._jobs: dict[str, Job] = {}
        self._lock = threading.Lock()

    def create(self, job_id: str, status: JobStatus, request: GenerationRequest) -> Job:
        job = Job(id=job_id, status=status, request=request)
        with self._lock:
            self._jobs[job_id] = job
        return job

    def update(self, job_id: str, status: JobStatus, request: GenerationRequest) -> Job:
        job = Job(id=job_id, status=status, request=request)
        with self._lock:
            if job_id not in self._jobs:
                logger.debug("Update for unknown job %s re-creates the record.", job_id)
            self._jobs[job_id] = job
        return job

    def get(self, job_id: str) -> Job | None:
        with self._lock:
            return self._jobs.get(job_id)

    def delete(self, job_id: str) -> bool:
        """Remove a job.  Returns ``False`` if it was already gone."""
        with self._lock:
            return self._jobs.pop(job_id, None) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)
