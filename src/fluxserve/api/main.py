"""FluxServe - FastAPI application.

This module builds the FastAPI application, defines the three job routes,
and provides the ``main()`` CLI function that launches the uvicorn server.

Architecture
------------
Generation is asynchronous: a submission returns a job id straight away and
the image is produced by a background task.

- **Job state** lives in an in-memory :class:`~fluxserve.core.job_store.JobStore`
  created on startup and shared through ``app.state``.
- **Generation** is run by :class:`~fluxserve.core.dispatcher.GenerationDispatcher`,
  one detached task per job, on top of a
  :class:`~fluxserve.core.engine.DiffusersFluxEngine` (loaded lazily on the
  first job).
- **Artifacts** are PNG files in ``<public_dir>/images/``; the
  :class:`~fluxserve.core.retention.RetentionManager` evicts them according
  to the configured policy.

Endpoints
---------
========  ======================  ==========================================
Method    Path                    Purpose
========  ======================  ==========================================
POST      ``/generate``           Submit a job, returns ``{"jobId": ...}``
GET       ``/status/{jobId}``     Progress / result / error of a job
GET       ``/download/{jobId}``   PNG bytes of a completed job
========  ======================  ==========================================

Usage
-----
CLI (installed entry point)::

    fluxserve

Direct invocation::

    python -m fluxserve.api.main
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from fluxserve import __version__
from fluxserve.api.models import GenerationRequest, JobResponse, JobStatusResponse
from fluxserve.core.config import FluxServeConfig, config
from fluxserve.core.dispatcher import GenerationDispatcher, new_job_id
from fluxserve.core.engine import DiffusersFluxEngine, InferenceEngine, select_model
from fluxserve.core.errors import UnknownModelError
from fluxserve.core.job_store import Completed, JobStore
from fluxserve.core.retention import RetentionManager

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Leading data URI header of an embedded image, e.g. "data:image/png;base64,".
_DATA_URI_PREFIX = re.compile(r"^data:image/\w+;base64,")

router = APIRouter()


# ---------------------------------------------------------------------------
# Application factory and lifecycle.
# ---------------------------------------------------------------------------


def create_app(
    settings: FluxServeConfig | None = None,
    engine: InferenceEngine | None = None,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Configuration to use.  Defaults to the global
            :data:`~fluxserve.core.config.config`.
        engine: Inference engine to use.  Defaults to a
            :class:`DiffusersFluxEngine` built from ``settings``.

    Returns:
        The configured application.
    """
    settings = settings or config

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Create the job machinery on startup and drain it on shutdown.

        On startup:
            Creates the image directory, the job store, the retention
            manager and the dispatcher.  No model is loaded yet.

        On shutdown:
            Waits for running jobs to finish, cancels pending eviction
            timers and unloads the model.
        """
        # --- Startup -------------------------------------------------------
        settings.ensure_directories()
        job_engine = engine if engine is not None else DiffusersFluxEngine(settings)
        store = JobStore()
        retention = RetentionManager(store, settings.retention_policy, settings.retention_seconds)

        app.state.config = settings
        app.state.store = store
        app.state.retention = retention
        app.state.dispatcher = GenerationDispatcher(store, job_engine, settings, retention)
        logger.info(
            "Images will be saved to %s (retention policy: %s).",
            settings.images_dir.resolve(),
            settings.retention_policy,
        )

        yield

        # --- Shutdown ------------------------------------------------------
        await app.state.dispatcher.wait_idle()
        retention.cancel_all()
        if isinstance(job_engine, DiffusersFluxEngine):
            job_engine.unload()
        logger.info("FluxServe shut down.")

    app = FastAPI(
        title="FluxServe",
        description="Asynchronous FLUX image generation API.",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST", "OPTIONS", "DELETE", "PATCH"],
        allow_headers=["*"],
    )
    app.include_router(router)
    return app


# ---------------------------------------------------------------------------
# Helpers.
# ---------------------------------------------------------------------------


def _require_job_id(job_id: str) -> str:
    if not job_id.strip():
        raise HTTPException(status_code=400, detail="Job ID is required")
    return job_id


def _store_base64_source(req: GenerationRequest, destination: Path) -> GenerationRequest:
    """Decode ``initImageBase64`` to ``destination`` and point the request at it.

    Raises:
        HTTPException: 400 if the payload is not valid base64, 500 if the
            file cannot be written.
    """
    payload = _DATA_URI_PREFIX.sub("", req.init_image_base64 or "", count=1)
    try:
        data = base64.b64decode("".join(payload.split()), validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(status_code=400, detail="initImageBase64 is not valid base64")

    try:
        destination.write_bytes(data)
    except OSError:
        logger.exception("Could not write source image to %s.", destination)
        raise HTTPException(status_code=500, detail="Could not store the source image")

    logger.info("Received base64 source image; wrote %d bytes to %s.", len(data), destination)
    return req.model_copy(update={"init_image_path": str(destination), "init_image_base64": None})


# ---------------------------------------------------------------------------
# Routes.
# ---------------------------------------------------------------------------


@router.post("/generate", response_model=JobResponse)
async def generate(req: GenerationRequest, request: Request) -> JobResponse:
    """Submit a generation job.

    The job is created as ``in_progress`` with progress 0 and generated in
    the background; this handler does not wait for it.

    Args:
        req: Validated :class:`GenerationRequest` payload.

    Returns:
        :class:`JobResponse` with the new job id.

    Raises:
        HTTPException: 400 for an unknown model or an invalid base64 image.
    """
    try:
        select_model(req.final_model)
    except UnknownModelError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    dispatcher: GenerationDispatcher = request.app.state.dispatcher
    job_id = new_job_id()

    if req.init_image_base64:
        req = _store_base64_source(req, dispatcher.temp_source_path(job_id))

    logger.info(
        "Received request: prompt=%r, width=%d, height=%d, steps=%d, model=%s.",
        req.final_prompt,
        req.final_width,
        req.final_height,
        req.final_steps,
        req.final_model,
    )
    dispatcher.submit(req, job_id)
    return JobResponse(job_id=job_id)


@router.get(
    "/status/{job_id:path}",
    response_model=JobStatusResponse,
    response_model_exclude_none=True,
)
async def get_status(job_id: str, request: Request) -> JobStatusResponse:
    """Return the status of a job.

    Raises:
        HTTPException: 400 if the id is empty, 404 if the job is unknown.
    """
    job_id = _require_job_id(job_id)
    store: JobStore = request.app.state.store

    job = store.get(job_id)
    if job is None:
        logger.info("Job %s not found in status check.", job_id)
        raise HTTPException(status_code=404, detail="Job not found")

    return JobStatusResponse.from_job(job)


@router.get("/download/{job_id:path}")
async def download(job_id: str, request: Request) -> Response:
    """Return the generated PNG of a completed job.

    Under the ``deliver_once`` retention policy the job and its file are
    deleted as soon as the bytes have been read.

    Raises:
        HTTPException: 400 if the id is empty; 404 if the job is unknown,
            not completed, or its file is gone.
    """
    job_id = _require_job_id(job_id)
    state = request.app.state

    job = state.store.get(job_id)
    if job is None or not isinstance(job.status, Completed):
        raise HTTPException(status_code=404, detail="Image not found or job not completed")

    artifact = state.config.public_dir / job.status.image_path
    try:
        data = artifact.read_bytes()
    except FileNotFoundError:
        raise HTTPException(status_code=404, detail="Image file not found")

    state.retention.on_delivered(job_id, artifact)
    return Response(content=data, media_type="image/png")


# ---------------------------------------------------------------------------
# CLI entry point.
# ---------------------------------------------------------------------------


def main() -> None:
    """Launch the uvicorn ASGI server.

    Reads host and port from :data:`~fluxserve.core.config.config`
    (``FLUXSERVE_SERVER_HOST`` / ``FLUXSERVE_SERVER_PORT``).  Defaults to
    ``0.0.0.0:8080``.
    """
    import uvicorn

    logging.basicConfig(level=config.log_level.upper(), format=LOG_FORMAT)
    uvicorn.run(
        "fluxserve.api.main:create_app",
        factory=True,
        host=config.server_host,
        port=config.server_port,
        reload=False,
    )


if __name__ == "__main__":
    main()
