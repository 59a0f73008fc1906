"""Background execution of generation jobs.

Job lifecycle
-------------
::

    submit() ──► InProgress(0) ──► InProgress(25) ──► ... ──► Completed("images/<id>.png")
                                                    └────────► Failed("<message>")

1. :meth:`GenerationDispatcher.submit` stores the job as ``InProgress(0)``,
   spawns a detached asyncio task and returns the job id immediately.
2. The task runs :meth:`GenerationDispatcher.run_job` on a worker thread
   (``asyncio.to_thread``) so the event loop keeps serving polls.
3. :func:`generate_image` drives the engine's step iterator.  After every
   forced step the job's progress is republished through the store.
4. The last latents are unpacked, decoded and written to
   ``<images_dir>/<job id>.png``; the job becomes ``Completed``.
5. Back on the event loop, the retention policy is notified of the
   completed or failed job.

Anything that goes wrong in steps 3-4 is caught at the job boundary and
recorded as ``Failed(message)``; nothing propagates to the HTTP handlers.
The dispatcher task is the only writer of its job's status while the job
runs.

A temporary source image uploaded as base64 (``tmp_<job id>.png``) is
removed once the job finishes, whether it succeeded or failed.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from pathlib import Path

import numpy as np

from fluxserve.core.codec import load_image_tensor, save_image, unpack_latents
from fluxserve.core.config import FluxServeConfig
from fluxserve.core.engine import (
    GenerationParameters,
    InferenceEngine,
    LoadConfiguration,
    select_model,
)
from fluxserve.core.errors import GenerationError
from fluxserve.core.job_store import Completed, Failed, InProgress, JobStatus, JobStore
from fluxserve.core.progress import calculate_progress
from fluxserve.core.request import DIMENSION_ALIGNMENT, GenerationRequest
from fluxserve.core.retention import RetentionManager

logger = logging.getLogger(__name__)

StepCallback = Callable[[int, int], None]


def new_job_id() -> str:
    return str(uuid.uuid4())


def build_load_configuration(request: GenerationRequest, config: FluxServeConfig) -> LoadConfiguration:
    """Resolve which pipeline a request needs.

    Raises:
        UnknownModelError: If the request names an unsupported model.
    """
    variant = select_model(request.final_model)
    hf_token = request.hf_token or config.hf_token
    if variant.gated and not hf_token:
        logger.warning(
            "Model %s is gated on the HuggingFace Hub; loading may fail without a token.",
            variant.name,
        )

    return LoadConfiguration(
        repo=variant.repo(config),
        float16=request.final_float16,
        quantize=request.final_quantize,
        lora_path=request.lora_path,
        hf_token=hf_token,
    )


def build_parameters(request: GenerationRequest) -> GenerationParameters:
    return GenerationParameters(
        prompt=request.final_prompt,
        width=request.final_width,
        height=request.final_height,
        steps=request.final_steps,
        guidance=request.final_guidance,
        seed=request.seed,
    )


def generate_image(
    engine: InferenceEngine,
    request: GenerationRequest,
    config: FluxServeConfig,
    on_step: StepCallback | None = None,
) -> np.ndarray:
    """Run one generation and return the decoded ``(H, W, 3)`` image in ``[0, 1]``.

    Shared by the job dispatcher and the command-line tool.

    Args:
        engine: Inference engine to run on.
        request: The generation request (normalised values are used).
        config: Application configuration.
        on_step: Called as ``on_step(step, total_steps)`` after each step
            has been forced.  ``step`` counts from 1.

    Raises:
        GenerationError: If the dimensions are too small or the engine
            yields no steps.
        UnknownModelError, ImageDecodeError: For a bad model or source
            image.
    """
    load_config = build_load_configuration(request, config)
    params = build_parameters(request)

    if params.width < DIMENSION_ALIGNMENT or params.height < DIMENSION_ALIGNMENT:
        raise GenerationError(
            f"Image dimensions must be at least {DIMENSION_ALIGNMENT}px, "
            f"got {params.width}x{params.height}"
        )

    with engine.session(load_config) as session:
        if request.init_image_path:
            logger.info("Image-to-image from %s (strength %.2f).", request.init_image_path, request.final_image_strength)
            source = load_image_tensor(
                request.init_image_path,
                max_edge=max(params.width, params.height),
            )
            steps = session.image_to_image(source, params, request.final_image_strength)
        else:
            steps = session.text_to_image(params)

        latents = None
        for step, xt in enumerate(steps, start=1):
            latents = session.force(xt)
            if on_step is not None:
                on_step(step, params.steps)

        if latents is None:
            raise GenerationError("The engine produced no denoising steps")

        unpacked = unpack_latents(latents, params.height, params.width)
        decoded = session.decode(unpacked)

    return decoded[0] if decoded.ndim == 4 else decoded


class GenerationDispatcher:
    """Spawns and runs generation jobs.

    Args:
        store: Job store shared with the HTTP handlers.
        engine: Inference engine used by every job.
        config: Provides ``images_dir``.
        retention: Notified when a job completes.
    """

    def __init__(
        self,
        store: JobStore,
        engine: InferenceEngine,
        config: FluxServeConfig,
        retention: RetentionManager,
    ) -> None:
        self._store = store
        self._engine = engine
        self._config = config
        self._retention = retention
        self._tasks: set[asyncio.Task] = set()

    @property
    def active_jobs(self) -> int:
        return len(self._tasks)

    def artifact_path(self, job_id: str) -> Path:
        return self._config.images_dir / f"{job_id}.png"

    def temp_source_path(self, job_id: str) -> Path:
        return self._config.images_dir / f"tmp_{job_id}.png"

    def submit(self, request: GenerationRequest, job_id: str | None = None) -> str:
        """Create the job record and start it in the background.

        Must be called from the event loop.  Returns without waiting for
        any generation work.
        """
        job_id = job_id or new_job_id()
        self._store.create(job_id, InProgress(0), request)
        logger.info("Created job %s (%d jobs tracked).", job_id, len(self._store))

        task = asyncio.create_task(self._run(job_id, request), name=f"generate-{job_id}")
        # The loop only keeps weak references to tasks.
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return job_id

    async def wait_idle(self) -> None:
        """Wait until every submitted job has reached a terminal state."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _run(self, job_id: str, request: GenerationRequest) -> None:
        status = await asyncio.to_thread(self.run_job, job_id, request)
        if isinstance(status, Completed):
            self._retention.on_completed(job_id, self.artifact_path(job_id))
        elif isinstance(status, Failed):
            self._retention.on_failed(job_id)

    def run_job(self, job_id: str, request: GenerationRequest) -> JobStatus:
        """Execute one job to a terminal status (blocking).

        Never raises: failures are recorded as :class:`Failed`.
        """

        def publish(step: int, total: int) -> None:
            progress = calculate_progress(step, total)
            self._store.update(job_id, InProgress(progress), request)
            logger.info("Job %s step %d/%d, progress %d%%.", job_id, step, total, progress)

        status: JobStatus
        try:
            image = generate_image(self._engine, request, self._config, on_step=publish)
            artifact = save_image(image, self.artifact_path(job_id))
            status = Completed(image_path=f"images/{artifact.name}")
            logger.info("Job %s completed, image saved to %s.", job_id, artifact)
        except Exception as exc:
            logger.exception("Job %s failed.", job_id)
            status = Failed(error=str(exc) or type(exc).__name__)
        finally:
            self._cleanup_source_image(job_id, request)

        self._store.update(job_id, status, request)
        return status

    def _cleanup_source_image(self, job_id: str, request: GenerationRequest) -> None:
        if not request.init_image_path:
            return

        temp_path = self.temp_source_path(job_id)
        # Only the file this job created; never a caller-supplied path.
        if Path(request.init_image_path) != temp_path:
            return

        try:
            temp_path.unlink(missing_ok=True)
            logger.info("Removed temporary source image %s.", temp_path)
        except OSError as exc:
            logger.warning("Could not remove temporary source image %s: %s", temp_path, exc)
