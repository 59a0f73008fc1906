"""Pydantic request and response models for the FluxServe API.

FastAPI uses them for request validation, serialisation and the OpenAPI
schema.  All JSON keys are camelCase.

Models
------
GenerationRequest
    Payload for ``POST /generate`` (defined in
    :mod:`fluxserve.core.request`, re-exported here).
JobResponse
    Response of ``POST /generate`` - the id to poll.
JobStatusResponse
    Response of ``GET /status/{jobId}`` - status, progress and the
    normalised request values.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from fluxserve.core.job_store import Completed, Failed, InProgress, Job
from fluxserve.core.request import GenerationRequest

__all__ = ["GenerationRequest", "JobResponse", "JobStatusResponse"]


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class JobResponse(_CamelModel):
    """Response body of ``POST /generate``.

    Attributes:
        job_id: Identifier to pass to ``/status`` and ``/download``.
    """

    job_id: str = Field(..., description="Identifier of the created job.")


class JobStatusResponse(_CamelModel):
    """Response body of ``GET /status/{jobId}``.

    ``progress`` is 100 for completed jobs and 0 for failed ones.
    ``image_path`` is only set once the job has completed and ``error``
    only when it failed.

    Attributes:
        status: ``"in_progress"``, ``"completed"`` or ``"failed"``.
        progress: Percentage 0-100.
        image_path: Artifact path relative to the public directory.
        error: Failure message.
        prompt: Prompt as submitted.
        width: Normalised width.
        height: Normalised height.
        steps: Normalised step count.
        model: Normalised model variant name.
    """

    status: Literal["in_progress", "completed", "failed"]
    progress: int = Field(..., ge=0, le=100)
    image_path: str | None = None
    error: str | None = None
    prompt: str | None = None
    width: int | None = None
    height: int | None = None
    steps: int | None = None
    model: str | None = None

    @classmethod
    def from_job(cls, job: Job) -> JobStatusResponse:
        request = job.request
        echoed = {
            "prompt": request.prompt,
            "width": request.final_width,
            "height": request.final_height,
            "steps": request.final_steps,
            "model": request.final_model,
        }

        status = job.status
        if isinstance(status, InProgress):
            return cls(status="in_progress", progress=status.progress, **echoed)
        if isinstance(status, Completed):
            return cls(status="completed", progress=100, image_path=status.image_path, **echoed)
        if isinstance(status, Failed):
            return cls(status="failed", progress=0, error=status.error, **echoed)
        raise TypeError(f"Unexpected job status: {status!r}")
