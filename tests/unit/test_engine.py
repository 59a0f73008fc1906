"""Tests for fluxserve.core.engine - model variants and pipeline lifecycle.

All tests use mocked torch and diffusers imports so that no real model
loading or GPU access occurs.  Tests cover:

- Model variant lookup.
- Load configuration equality (tokens never force a reload).
- Pipeline loading, reuse and switching.
- Quantised and LoRA loading paths.
- Error handling during loading.
- Unload safety (no-op when nothing loaded).
- The step-wise denoising session: laziness, image-to-image step
  skipping and VAE decoding (torch tensors backed by numpy).

Implementation Note
-------------------
``DiffusersFluxEngine`` imports ``torch`` and ``diffusers`` lazily inside
its methods, so the mocks are injected through ``sys.modules`` rather than
``@patch`` decorators.
"""

from __future__ import annotations

import contextlib
import sys
from unittest.mock import MagicMock

import numpy as np
import pytest

from fluxserve.core.config import FluxServeConfig
from fluxserve.core.engine import (
    MODEL_VARIANTS,
    DiffusersFluxEngine,
    GenerationParameters,
    LoadConfiguration,
    _FluxSession,
    select_model,
)
from fluxserve.core.errors import GenerationError, UnknownModelError

SCHNELL = LoadConfiguration(repo="black-forest-labs/FLUX.1-schnell")
DEV = LoadConfiguration(repo="black-forest-labs/FLUX.1-dev", hf_token="hf_secret")


class _NumpyTensor:
    """Minimal numpy-backed stand-in for the ``torch.Tensor`` calls the session makes."""

    def __init__(self, array):
        self.array = np.asarray(array)

    @property
    def shape(self):
        return self.array.shape

    @property
    def dtype(self):
        return self.array.dtype

    def permute(self, *dims):
        return _NumpyTensor(self.array.transpose(dims))

    def unsqueeze(self, dim):
        return _NumpyTensor(np.expand_dims(self.array, dim))

    def expand(self, *sizes):
        return _NumpyTensor(np.broadcast_to(self.array, sizes))

    def clamp(self, low, high):
        return _NumpyTensor(np.clip(self.array, low, high))

    def float(self):
        return _NumpyTensor(self.array.astype(np.float32))

    def to(self, *args, **kwargs):
        return self

    def cpu(self):
        return self

    def detach(self):
        return self

    def numpy(self):
        return self.array

    def __getitem__(self, key):
        return _NumpyTensor(self.array[key])

    def __iter__(self):
        return (_NumpyTensor(item) for item in self.array)

    def __len__(self):
        return len(self.array)

    def __add__(self, other):
        return _NumpyTensor(self.array + _unwrap(other))

    def __sub__(self, other):
        return _NumpyTensor(self.array - _unwrap(other))

    def __mul__(self, other):
        return _NumpyTensor(self.array * _unwrap(other))

    def __truediv__(self, other):
        return _NumpyTensor(self.array / _unwrap(other))

    __radd__ = __add__
    __rmul__ = __mul__


def _unwrap(value):
    return value.array if isinstance(value, _NumpyTensor) else value


def _retrieve_timesteps(scheduler, steps, device, sigmas=None, mu=None):
    return _NumpyTensor(np.asarray(sigmas, dtype=np.float32) * 1000), steps


class _MockContext:
    """Context manager that injects mock torch and diffusers into sys.modules.

    ``torch.from_numpy`` and friends produce :class:`_NumpyTensor` values so
    the denoising loop can run without torch installed.
    """

    def __init__(self):
        self.mock_torch = MagicMock()
        self.mock_torch.bfloat16 = "mock_bfloat16"
        self.mock_torch.float32 = "mock_float32"
        self.mock_torch.cuda.is_available.return_value = False
        self.mock_torch.no_grad.side_effect = contextlib.nullcontext
        self.mock_torch.from_numpy.side_effect = _NumpyTensor
        self.mock_torch.full.side_effect = lambda size, value, device=None, dtype=None: _NumpyTensor(
            np.full(size, value, dtype=np.float32)
        )

        self.mock_pipeline = MagicMock()
        self.mock_pipeline.to.return_value = self.mock_pipeline

        self.mock_diffusers = MagicMock()
        self.mock_diffusers.FluxPipeline.from_pretrained.return_value = self.mock_pipeline

        self.mock_pipeline_flux = MagicMock()
        self.mock_pipeline_flux.calculate_shift.return_value = 1.0
        self.mock_pipeline_flux.retrieve_timesteps.side_effect = _retrieve_timesteps

        self.mock_torch_utils = MagicMock()
        self.mock_torch_utils.randn_tensor.side_effect = lambda shape, generator=None, device=None, dtype=None: (
            _NumpyTensor(np.zeros(shape, dtype=np.float32))
        )

        self._modules = {
            "torch": self.mock_torch,
            "torch.nn": self.mock_torch.nn,
            "torch.nn.functional": self.mock_torch.nn.functional,
            "diffusers": self.mock_diffusers,
            "diffusers.pipelines.flux.pipeline_flux": self.mock_pipeline_flux,
            "diffusers.utils.torch_utils": self.mock_torch_utils,
        }
        self._saved = {}

    def __enter__(self):
        import fluxserve.core.engine as engine_module

        engine_module._DTYPE_MAP = None
        for name, module in self._modules.items():
            self._saved[name] = sys.modules.get(name)
            sys.modules[name] = module
        return self

    def __exit__(self, *args):
        for name, module in self._saved.items():
            if module is not None:
                sys.modules[name] = module
            else:
                sys.modules.pop(name, None)

        import fluxserve.core.engine as engine_module

        engine_module._DTYPE_MAP = None

    @property
    def from_pretrained(self) -> MagicMock:
        return self.mock_diffusers.FluxPipeline.from_pretrained


class TestModelVariants:
    """Test variant lookup."""

    def test_known_variants(self):
        assert set(MODEL_VARIANTS) == {"schnell", "dev"}
        assert MODEL_VARIANTS["dev"].gated is True
        assert MODEL_VARIANTS["schnell"].gated is False

    def test_select_is_case_insensitive(self):
        assert select_model("SCHNELL").name == "schnell"

    def test_select_unknown_raises(self):
        with pytest.raises(UnknownModelError) as excinfo:
            select_model("turbo")
        assert excinfo.value.model == "turbo"
        assert str(excinfo.value) == "Unknown model: turbo"

    def test_variant_repo_comes_from_config(self, test_config: FluxServeConfig):
        cfg = test_config.model_copy(update={"dev_repo": "mirror/flux-dev"})
        assert select_model("dev").repo(cfg) == "mirror/flux-dev"


class TestLoadConfiguration:
    """Only settings that change the weights take part in equality."""

    def test_token_ignored_in_equality(self):
        assert LoadConfiguration(repo="r", hf_token="a") == LoadConfiguration(repo="r", hf_token="b")

    def test_token_hidden_from_repr(self):
        assert "hf_secret" not in repr(DEV)

    def test_precision_matters(self):
        assert LoadConfiguration(repo="r") != LoadConfiguration(repo="r", float16=False)


class TestEngineInit:
    """Test initial state."""

    def test_nothing_loaded_initially(self, test_config: FluxServeConfig):
        engine = DiffusersFluxEngine(test_config)
        assert engine.is_loaded is False
        assert engine.loaded_configuration is None

    def test_unload_when_empty_is_noop(self, test_config: FluxServeConfig):
        DiffusersFluxEngine(test_config).unload()


class TestPipelineLoading:
    """Test loading through sessions."""

    def test_session_loads_pipeline(self, test_config: FluxServeConfig):
        with _MockContext() as ctx:
            engine = DiffusersFluxEngine(test_config)
            with engine.session(SCHNELL):
                pass

            assert engine.is_loaded is True
            assert engine.loaded_configuration == SCHNELL
            args, kwargs = ctx.from_pretrained.call_args
            assert args == (SCHNELL.repo,)
            assert kwargs["torch_dtype"] == "mock_bfloat16"
            assert kwargs["cache_dir"] == str(test_config.models_dir)
            ctx.mock_pipeline.to.assert_called_once_with("cpu")

    def test_float32_when_half_precision_disabled(self, test_config: FluxServeConfig):
        with _MockContext() as ctx:
            engine = DiffusersFluxEngine(test_config)
            with engine.session(LoadConfiguration(repo="r", float16=False)):
                pass

            assert ctx.from_pretrained.call_args.kwargs["torch_dtype"] == "mock_float32"

    def test_same_configuration_is_reused(self, test_config: FluxServeConfig):
        with _MockContext() as ctx:
            engine = DiffusersFluxEngine(test_config)
            with engine.session(SCHNELL):
                pass
            with engine.session(LoadConfiguration(repo=SCHNELL.repo, hf_token="other")):
                pass

            assert ctx.from_pretrained.call_count == 1

    def test_switching_reloads(self, test_config: FluxServeConfig):
        with _MockContext() as ctx:
            engine = DiffusersFluxEngine(test_config)
            with engine.session(SCHNELL):
                pass
            with engine.session(DEV):
                pass

            assert ctx.from_pretrained.call_count == 2
            assert engine.loaded_configuration == DEV
            assert ctx.from_pretrained.call_args.kwargs["token"] == "hf_secret"

    def test_lora_weights_loaded(self, test_config: FluxServeConfig):
        with _MockContext() as ctx:
            engine = DiffusersFluxEngine(test_config)
            with engine.session(LoadConfiguration(repo="r", lora_path="user/style-lora")):
                pass

            ctx.mock_pipeline.load_lora_weights.assert_called_once_with("user/style-lora")

    def test_quantized_transformer(self, test_config: FluxServeConfig):
        with _MockContext() as ctx:
            engine = DiffusersFluxEngine(test_config)
            with engine.session(LoadConfiguration(repo="r", quantize=True)):
                pass

            transformer_cls = ctx.mock_diffusers.FluxTransformer2DModel
            transformer_cls.from_pretrained.assert_called_once()
            ctx.mock_diffusers.BitsAndBytesConfig.assert_called_once_with(load_in_8bit=True)
            assert (
                ctx.from_pretrained.call_args.kwargs["transformer"]
                is transformer_cls.from_pretrained.return_value
            )

    def test_cpu_offload(self, test_config: FluxServeConfig):
        cfg = test_config.model_copy(update={"enable_model_cpu_offload": True})
        with _MockContext() as ctx:
            engine = DiffusersFluxEngine(cfg)
            with engine.session(SCHNELL):
                pass

            ctx.mock_pipeline.enable_model_cpu_offload.assert_called_once()
            ctx.mock_pipeline.to.assert_not_called()

    def test_load_failure_clears_state(self, test_config: FluxServeConfig):
        with _MockContext() as ctx:
            ctx.from_pretrained.side_effect = RuntimeError("Out of memory")
            engine = DiffusersFluxEngine(test_config)

            with pytest.raises(RuntimeError, match="Out of memory"):
                with engine.session(SCHNELL):
                    pass

            assert engine.is_loaded is False
            assert engine.loaded_configuration is None

    def test_unload_clears_state(self, test_config: FluxServeConfig):
        with _MockContext():
            engine = DiffusersFluxEngine(test_config)
            with engine.session(SCHNELL):
                pass
            engine.unload()

            assert engine.is_loaded is False


class TestSessionForce:
    def test_force_copies_to_host(self, test_config: FluxServeConfig):
        with _MockContext():
            engine = DiffusersFluxEngine(test_config)
            latents = MagicMock()
            with engine.session(SCHNELL) as session:
                result = session.force(latents)

            assert result is latents.detach.return_value.float.return_value.cpu.return_value.numpy.return_value


def _flux_pipeline() -> MagicMock:
    """A pipeline mock whose transformer predicts ones and whose scheduler adds them."""
    pipe = MagicMock()
    pipe._execution_device = "cpu"
    pipe.transformer.config.in_channels = 64
    pipe.transformer.config.guidance_embeds = False
    pipe.transformer.side_effect = lambda **kwargs: (
        _NumpyTensor(np.ones(kwargs["hidden_states"].shape, dtype=np.float32)),
    )
    pipe.encode_prompt.return_value = (
        _NumpyTensor(np.zeros((1, 512, 4096), dtype=np.float32)),
        _NumpyTensor(np.zeros((1, 768), dtype=np.float32)),
        _NumpyTensor(np.zeros((512, 3), dtype=np.float32)),
    )
    pipe.prepare_latents.return_value = (_NumpyTensor(np.zeros((1, 16, 64), dtype=np.float32)), MagicMock())

    pipe.scheduler.order = 1
    pipe.scheduler.step.side_effect = lambda noise, t, latents, return_dict=False: (latents + noise,)
    pipe.scheduler.scale_noise.side_effect = lambda sample, timestep, noise: sample

    pipe.vae.config.scaling_factor = 0.5
    pipe.vae.config.shift_factor = 0.1
    pipe.vae.encode.return_value.latent_dist.sample.return_value = _NumpyTensor(
        np.zeros((1, 16, 8, 8), dtype=np.float32)
    )
    pipe._pack_latents.side_effect = lambda latents, batch, channels, h, w: _NumpyTensor(
        np.zeros((batch, (h // 2) * (w // 2), channels * 4), dtype=np.float32)
    )
    return pipe


def _params(steps: int = 3, seed: int | None = None) -> GenerationParameters:
    return GenerationParameters(prompt="cat", width=64, height=64, steps=steps, guidance=3.5, seed=seed)


class TestSessionTextToImage:
    """The step sequence is lazy: one transformer call per ``next()``."""

    def test_no_work_before_first_step(self):
        with _MockContext():
            pipe = _flux_pipeline()
            steps = _FluxSession(pipe, 512).text_to_image(_params(steps=3))

            pipe.transformer.assert_not_called()
            pipe.scheduler.set_begin_index.assert_called_once_with(0)

            first = next(steps)
            assert pipe.transformer.call_count == 1
            np.testing.assert_array_equal(first.array, np.ones((1, 16, 64)))

            second = next(steps)
            assert pipe.transformer.call_count == 2
            np.testing.assert_array_equal(second.array, np.full((1, 16, 64), 2.0))

            assert len(list(steps)) == 1
            assert pipe.transformer.call_count == 3
            with pytest.raises(StopIteration):
                next(steps)

    def test_timesteps_are_scaled_for_the_transformer(self):
        with _MockContext():
            pipe = _flux_pipeline()
            list(_FluxSession(pipe, 512).text_to_image(_params(steps=2)))

            timesteps = [c.kwargs["timestep"].array for c in pipe.transformer.call_args_list]
            np.testing.assert_allclose(timesteps, [[1.0], [0.5]])
            assert pipe.transformer.call_args.kwargs["guidance"] is None

    def test_guidance_embedded_when_supported(self):
        with _MockContext():
            pipe = _flux_pipeline()
            pipe.transformer.config.guidance_embeds = True
            next(_FluxSession(pipe, 512).text_to_image(_params()))

            np.testing.assert_array_equal(pipe.transformer.call_args.kwargs["guidance"].array, [3.5])

    def test_seed_builds_generator(self):
        with _MockContext() as ctx:
            pipe = _flux_pipeline()
            _FluxSession(pipe, 512).text_to_image(_params(seed=7))

            ctx.mock_torch.Generator.assert_called_once_with(device="cpu")
            manual_seed = ctx.mock_torch.Generator.return_value.manual_seed
            manual_seed.assert_called_once_with(7)
            assert pipe.prepare_latents.call_args.args[-1] is manual_seed.return_value

    def test_no_seed_means_no_generator(self):
        with _MockContext() as ctx:
            pipe = _flux_pipeline()
            _FluxSession(pipe, 512).text_to_image(_params())

            ctx.mock_torch.Generator.assert_not_called()
            assert pipe.prepare_latents.call_args.args[-1] is None


class TestSessionImageToImage:
    """Strength skips the leading steps of the schedule."""

    @pytest.mark.parametrize(
        ("strength", "expected_steps"),
        [(0.0, 4), (0.5, 2), (0.8, 1), (1.0, 1)],
    )
    def test_strength_skips_steps(self, strength: float, expected_steps: int):
        with _MockContext():
            pipe = _flux_pipeline()
            image = np.zeros((64, 64, 3), dtype=np.float32)
            steps = _FluxSession(pipe, 512).image_to_image(image, _params(steps=4), strength)

            pipe.transformer.assert_not_called()
            pipe.scheduler.set_begin_index.assert_called_once_with(4 - expected_steps)
            assert len(list(steps)) == expected_steps
            assert pipe.transformer.call_count == expected_steps

    def test_source_is_encoded_and_noised(self):
        with _MockContext():
            pipe = _flux_pipeline()
            image = np.zeros((64, 64, 3), dtype=np.float32)
            _FluxSession(pipe, 512).image_to_image(image, _params(steps=4), 0.5)

            pixels = pipe.vae.encode.call_args.args[0]
            assert pixels.shape == (1, 3, 64, 64)

            sample, timestep, _ = pipe.scheduler.scale_noise.call_args.args
            # (0 - shift_factor) * scaling_factor
            np.testing.assert_allclose(sample.array, np.full((1, 16, 8, 8), -0.05), rtol=1e-6)
            np.testing.assert_allclose(timestep.array, [500.0])
            pipe._pack_latents.assert_called_once_with(sample, 1, 16, 8, 8)

    def test_resized_source_is_interpolated(self):
        with _MockContext() as ctx:
            pipe = _flux_pipeline()
            image = np.zeros((32, 32, 3), dtype=np.float32)
            _FluxSession(pipe, 512).image_to_image(image, _params(), 0.5)

            interpolate = ctx.mock_torch.nn.functional.interpolate
            interpolate.assert_called_once()
            assert interpolate.call_args.kwargs["size"] == (64, 64)


class TestSessionDecode:
    """Latents are unscaled, decoded and returned as NHWC in [0, 1]."""

    def test_decode_layout_and_scaling(self):
        rng = np.random.default_rng(0)
        latents = rng.standard_normal((1, 8, 8, 16)).astype(np.float32)
        decoded = rng.uniform(-2, 2, size=(1, 3, 64, 64)).astype(np.float32)
        seen = []

        def vae_decode(tensor, return_dict=False):
            seen.append(tensor.array)
            return (_NumpyTensor(decoded),)

        with _MockContext():
            pipe = _flux_pipeline()
            pipe.vae.decode.side_effect = vae_decode
            result = _FluxSession(pipe, 512).decode(latents)

        np.testing.assert_allclose(seen[0], latents.transpose(0, 3, 1, 2) / 0.5 + 0.1, rtol=1e-6)
        assert result.shape == (1, 64, 64, 3)
        assert result.min() >= 0.0 and result.max() <= 1.0
        np.testing.assert_allclose(result, np.clip(decoded / 2 + 0.5, 0, 1).transpose(0, 2, 3, 1), rtol=1e-6)

    @pytest.mark.parametrize("shape", [(1, 8, 8, 4), (8, 8, 16)])
    def test_decode_rejects_bad_layout(self, shape):
        with _MockContext():
            pipe = _flux_pipeline()
            with pytest.raises(GenerationError, match="Expected"):
                _FluxSession(pipe, 512).decode(np.zeros(shape, dtype=np.float32))

            pipe.vae.decode.assert_not_called()
