"""FLUX inference engine behind a narrow, step-by-step contract.

The job machinery never talks to diffusers directly.  It opens a session on
an :class:`InferenceEngine` and receives a *lazy, forward-only* iterator of
packed latent tensors, one per denoising step.  Each ``next()`` runs one
transformer forward pass, so the consumer decides when the real work (and
the wall-clock time) happens.  After the last step the consumer unpacks the
latents (see :func:`fluxserve.core.codec.unpack_latents`) and hands them
back to :meth:`EngineSession.decode`.

Contract
--------
::

    with engine.session(load_config) as session:
        for latents in session.text_to_image(params):
            array = session.force(latents)       # numpy, fully evaluated
        image = session.decode(unpack_latents(array, h, w))   # (1, H, W, 3) in [0, 1]

:class:`DiffusersFluxEngine` is the production implementation.  Like the
model manager it grew out of, it keeps **one** pipeline in memory at a time:
asking for a different repository, precision, quantisation or LoRA unloads
the current pipeline (freeing CUDA memory) before loading the new one.
Sessions hold the engine lock, so concurrent jobs run one after another.

``torch`` and ``diffusers`` are imported lazily so that the API, the job
store and the test-suite can be imported without them.

Model Variants
--------------
- ``schnell`` - FLUX.1-schnell, timestep-distilled, good results in 1-4 steps
- ``dev`` - FLUX.1-dev, guidance-distilled, higher quality, gated on the Hub
  (needs a HuggingFace token)
"""

from __future__ import annotations

import gc
import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ContextManager, Protocol

import numpy as np

from fluxserve.core.errors import GenerationError, UnknownModelError

if TYPE_CHECKING:
    from fluxserve.core.config import FluxServeConfig

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Model variants and parameters.
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelVariant:
    """A supported FLUX variant.

    Attributes:
        name: Public variant name used in requests.
        description: Human-readable summary.
        repo_setting: Name of the config field holding the Hub repository.
        gated: Whether the repository requires a HuggingFace token.
    """

    name: str
    description: str
    repo_setting: str
    gated: bool = False

    def repo(self, config: FluxServeConfig) -> str:
        return getattr(config, self.repo_setting)


MODEL_VARIANTS: dict[str, ModelVariant] = {
    "schnell": ModelVariant(
        name="schnell",
        description="Fast generation in 1-4 steps",
        repo_setting="schnell_repo",
    ),
    "dev": ModelVariant(
        name="dev",
        description="High-quality generation, 20-50 steps recommended",
        repo_setting="dev_repo",
        gated=True,
    ),
}


def select_model(name: str) -> ModelVariant:
    """Look up a model variant by (case-insensitive) name.

    Raises:
        UnknownModelError: If ``name`` is not a supported variant.
    """
    variant = MODEL_VARIANTS.get(name.lower())
    if variant is None:
        raise UnknownModelError(name)
    return variant


@dataclass(frozen=True)
class LoadConfiguration:
    """Everything that determines which pipeline must be in memory.

    ``hf_token`` is excluded from comparisons (a new token does not require
    a reload) and from the repr (so it never reaches the logs).
    """

    repo: str
    float16: bool = True
    quantize: bool = False
    lora_path: str | None = None
    hf_token: str | None = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class GenerationParameters:
    """Per-run generation settings (already normalised)."""

    prompt: str
    width: int
    height: int
    steps: int
    guidance: float
    seed: int | None = None


# ---------------------------------------------------------------------------
# Contract.
# ---------------------------------------------------------------------------


class EngineSession(Protocol):
    def text_to_image(self, params: GenerationParameters) -> Iterator[Any]: ...

    def image_to_image(
        self,
        image: np.ndarray,
        params: GenerationParameters,
        strength: float,
    ) -> Iterator[Any]: ...

    def force(self, latents: Any) -> np.ndarray: ...

    def decode(self, latents: np.ndarray) -> np.ndarray: ...


class InferenceEngine(Protocol):
    def session(self, load_config: LoadConfiguration) -> ContextManager[EngineSession]: ...


# ---------------------------------------------------------------------------
# Diffusers implementation.
# ---------------------------------------------------------------------------

_DTYPE_MAP: dict | None = None


def _get_dtype_map() -> dict:
    """Return the ``float16`` flag → ``torch.dtype`` mapping.

    Half precision maps to bfloat16: the FLUX transformer overflows in
    IEEE float16.  Built lazily so ``torch`` is only imported when a model
    is actually loaded.
    """
    global _DTYPE_MAP
    if _DTYPE_MAP is None:
        import torch

        _DTYPE_MAP = {
            True: torch.bfloat16,
            False: torch.float32,
        }
    return _DTYPE_MAP


class DiffusersFluxEngine:
    """Runs FLUX through HuggingFace diffusers, one loaded pipeline at a time.

    Attributes:
        _config (FluxServeConfig):
            Device, cache directory and performance flags.
        _pipeline:
            The loaded ``FluxPipeline``, or ``None``.
        _loaded (LoadConfiguration | None):
            Configuration the current pipeline was loaded with.
    """

    def __init__(self, config: FluxServeConfig) -> None:
        self._config = config
        self._pipeline = None
        self._loaded: LoadConfiguration | None = None
        self._lock = threading.Lock()

    @contextmanager
    def session(self, load_config: LoadConfiguration) -> Iterator[EngineSession]:
        """Hold the engine for one generation run.

        Loads (or switches to) the requested pipeline first.  The lock is
        held until the ``with`` block exits, so the pipeline cannot be
        swapped out underneath a running job.
        """
        with self._lock:
            self._ensure_loaded(load_config)
            yield _FluxSession(self._pipeline, self._config.max_sequence_length)

    def _ensure_loaded(self, load_config: LoadConfiguration) -> None:
        if self._pipeline is not None and self._loaded == load_config:
            logger.info("Pipeline for %s is already loaded, reusing it.", load_config.repo)
            return

        if self._pipeline is not None:
            logger.info("Switching from %s to %s, unloading current pipeline.", self._loaded, load_config)
            self.unload()

        from diffusers import FluxPipeline

        torch_dtype = _get_dtype_map()[load_config.float16]
        logger.info(
            "Loading %s (dtype=%s, quantize=%s, lora=%s, device=%s, cache=%s).",
            load_config.repo,
            torch_dtype,
            load_config.quantize,
            load_config.lora_path,
            self._config.device,
            self._config.models_dir,
        )

        pretrained_kwargs: dict = {
            "torch_dtype": torch_dtype,
            "cache_dir": str(self._config.models_dir),
            "token": load_config.hf_token,
        }

        try:
            if load_config.quantize:
                from diffusers import BitsAndBytesConfig, FluxTransformer2DModel

                # 8-bit transformer weights; the text encoders and VAE stay
                # in the requested dtype.
                pretrained_kwargs["transformer"] = FluxTransformer2DModel.from_pretrained(
                    load_config.repo,
                    subfolder="transformer",
                    quantization_config=BitsAndBytesConfig(load_in_8bit=True),
                    torch_dtype=torch_dtype,
                    cache_dir=str(self._config.models_dir),
                    token=load_config.hf_token,
                )

            pipeline = FluxPipeline.from_pretrained(load_config.repo, **pretrained_kwargs)

            if load_config.lora_path:
                logger.info("Loading LoRA weights from %s.", load_config.lora_path)
                pipeline.load_lora_weights(load_config.lora_path)

            if self._config.enable_model_cpu_offload:
                pipeline.enable_model_cpu_offload()
                logger.info("Model CPU offloading enabled.")
            else:
                pipeline = pipeline.to(self._config.device)

            if self._config.enable_attention_slicing:
                pipeline.enable_attention_slicing()
                logger.info("Attention slicing enabled.")

            self._pipeline = pipeline
            self._loaded = load_config
            logger.info("Pipeline for %s loaded successfully.", load_config.repo)

        except Exception:
            self._pipeline = None
            self._loaded = None
            logger.exception("Failed to load pipeline for %s.", load_config.repo)
            raise

    def unload(self) -> None:
        """Unload the current pipeline and free GPU memory (no-op when empty)."""
        if self._pipeline is None:
            return

        logger.info("Unloading pipeline for %s.", self._loaded.repo if self._loaded else None)
        del self._pipeline
        self._pipeline = None
        self._loaded = None

        gc.collect()

        try:
            import torch

            if torch.cuda.is_available():
                torch.cuda.empty_cache()
                torch.cuda.synchronize()
                logger.info("CUDA cache cleared.")
        except ImportError:
            pass

    @property
    def is_loaded(self) -> bool:
        return self._pipeline is not None

    @property
    def loaded_configuration(self) -> LoadConfiguration | None:
        return self._loaded


class _FluxSession:
    """Step-wise access to a loaded ``FluxPipeline``.

    Mirrors the denoising loop of ``FluxPipeline.__call__`` but yields the
    packed latents after every scheduler step instead of running to the end.
    """

    def __init__(self, pipeline, max_sequence_length: int) -> None:
        self._pipeline = pipeline
        self._max_sequence_length = max_sequence_length

    # -- Setup helpers ------------------------------------------------------

    def _generator(self, seed: int | None):
        import torch

        if seed is None:
            return None
        return torch.Generator(device="cpu").manual_seed(seed)

    def _encode_prompt(self, prompt: str, device):
        import torch

        with torch.no_grad():
            return self._pipeline.encode_prompt(
                prompt=prompt,
                prompt_2=None,
                device=device,
                num_images_per_prompt=1,
                max_sequence_length=self._max_sequence_length,
            )

    def _timesteps(self, steps: int, image_seq_len: int, device):
        from diffusers.pipelines.flux.pipeline_flux import calculate_shift, retrieve_timesteps

        scheduler = self._pipeline.scheduler
        sigmas = np.linspace(1.0, 1 / steps, steps)
        # FLUX.1-dev enables dynamic shifting in its scheduler config; the
        # shift grows with the number of image tokens.
        mu = calculate_shift(
            image_seq_len,
            scheduler.config.get("base_image_seq_len", 256),
            scheduler.config.get("max_image_seq_len", 4096),
            scheduler.config.get("base_shift", 0.5),
            scheduler.config.get("max_shift", 1.15),
        )
        timesteps, _ = retrieve_timesteps(scheduler, steps, device, sigmas=sigmas, mu=mu)
        return timesteps

    def _guidance(self, guidance: float, device):
        import torch

        if not self._pipeline.transformer.config.guidance_embeds:
            return None
        return torch.full([1], guidance, device=device, dtype=torch.float32)

    # -- Step sequences -----------------------------------------------------

    def text_to_image(self, params: GenerationParameters) -> Iterator[Any]:
        pipe = self._pipeline
        device = pipe._execution_device
        generator = self._generator(params.seed)

        prompt_embeds, pooled_prompt_embeds, text_ids = self._encode_prompt(params.prompt, device)

        num_channels_latents = pipe.transformer.config.in_channels // 4
        latents, latent_image_ids = pipe.prepare_latents(
            1,
            num_channels_latents,
            params.height,
            params.width,
            prompt_embeds.dtype,
            device,
            generator,
        )

        timesteps = self._timesteps(params.steps, latents.shape[1], device)
        pipe.scheduler.set_begin_index(0)

        return self._denoise(
            latents,
            latent_image_ids,
            timesteps,
            prompt_embeds,
            pooled_prompt_embeds,
            text_ids,
            self._guidance(params.guidance, device),
        )

    def image_to_image(
        self,
        image: np.ndarray,
        params: GenerationParameters,
        strength: float,
    ) -> Iterator[Any]:
        """Denoise starting from a noised encoding of ``image``.

        ``image`` is ``(H, W, 3)`` in ``[-1, 1]``.  ``strength`` is how much
        of the source survives: the first ``int(steps * strength)`` steps are
        skipped (at least one step always runs), so 0.0 behaves like
        text-to-image and values close to 1.0 barely change the source.
        """
        import torch
        import torch.nn.functional as F
        from diffusers.utils.torch_utils import randn_tensor

        pipe = self._pipeline
        device = pipe._execution_device
        generator = self._generator(params.seed)

        pixels = torch.from_numpy(np.ascontiguousarray(image, dtype=np.float32))
        pixels = pixels.permute(2, 0, 1).unsqueeze(0).to(device=device, dtype=pipe.vae.dtype)
        if tuple(pixels.shape[-2:]) != (params.height, params.width):
            pixels = F.interpolate(
                pixels,
                size=(params.height, params.width),
                mode="bilinear",
                align_corners=False,
            )

        prompt_embeds, pooled_prompt_embeds, text_ids = self._encode_prompt(params.prompt, device)

        with torch.no_grad():
            image_latents = pipe.vae.encode(pixels).latent_dist.sample(generator)
        image_latents = (image_latents - pipe.vae.config.shift_factor) * pipe.vae.config.scaling_factor
        image_latents = image_latents.to(dtype=prompt_embeds.dtype)

        num_channels_latents = pipe.transformer.config.in_channels // 4
        latent_height, latent_width = image_latents.shape[-2:]
        image_seq_len = (latent_height // 2) * (latent_width // 2)

        timesteps = self._timesteps(params.steps, image_seq_len, device)
        t_start = min(int(params.steps * strength), params.steps - 1)
        timesteps = timesteps[t_start * pipe.scheduler.order :]
        pipe.scheduler.set_begin_index(t_start * pipe.scheduler.order)

        noise = randn_tensor(
            image_latents.shape,
            generator=generator,
            device=device,
            dtype=image_latents.dtype,
        )
        latents = pipe.scheduler.scale_noise(image_latents, timesteps[:1], noise)
        latents = pipe._pack_latents(latents, 1, num_channels_latents, latent_height, latent_width)
        latent_image_ids = pipe._prepare_latent_image_ids(
            1,
            latent_height // 2,
            latent_width // 2,
            device,
            prompt_embeds.dtype,
        )

        return self._denoise(
            latents,
            latent_image_ids,
            timesteps,
            prompt_embeds,
            pooled_prompt_embeds,
            text_ids,
            self._guidance(params.guidance, device),
        )

    def _denoise(
        self,
        latents,
        latent_image_ids,
        timesteps,
        prompt_embeds,
        pooled_prompt_embeds,
        text_ids,
        guidance,
    ) -> Iterator[Any]:
        import torch

        pipe = self._pipeline
        for t in timesteps:
            timestep = t.expand(latents.shape[0]).to(latents.dtype)
            with torch.no_grad():
                noise_pred = pipe.transformer(
                    hidden_states=latents,
                    timestep=timestep / 1000,
                    guidance=guidance,
                    pooled_projections=pooled_prompt_embeds,
                    encoder_hidden_states=prompt_embeds,
                    txt_ids=text_ids,
                    img_ids=latent_image_ids,
                    return_dict=False,
                )[0]
                latents = pipe.scheduler.step(noise_pred, t, latents, return_dict=False)[0]
            yield latents

    # -- Materialisation and decoding ---------------------------------------

    def force(self, latents) -> np.ndarray:
        """Copy latents to host memory, waiting for the device to finish."""
        return latents.detach().float().cpu().numpy()

    def decode(self, latents: np.ndarray) -> np.ndarray:
        """Decode ``(1, H/8, W/8, 16)`` latents into ``(1, H, W, 3)`` in ``[0, 1]``."""
        import torch

        pipe = self._pipeline
        vae = pipe.vae
        device = pipe._execution_device

        if latents.ndim != 4 or latents.shape[-1] != 16:
            raise GenerationError(f"Expected (1, h, w, 16) latents, got {latents.shape}")

        tensor = torch.from_numpy(np.ascontiguousarray(latents, dtype=np.float32))
        tensor = tensor.permute(0, 3, 1, 2).to(device=device, dtype=vae.dtype)
        tensor = tensor / vae.config.scaling_factor + vae.config.shift_factor

        with torch.no_grad():
            decoded = vae.decode(tensor, return_dict=False)[0]

        decoded = (decoded / 2 + 0.5).clamp(0, 1)
        return decoded.permute(0, 2, 3, 1).float().cpu().numpy()
