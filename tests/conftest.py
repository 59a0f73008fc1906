"""Shared pytest fixtures for FluxServe tests.

No test loads a real model: the job machinery is exercised against
:class:`FakeEngine`, which follows the engine contract (lazy step iterator,
``force``, ``decode``) with small numpy arrays.
"""

import shutil
import tempfile
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

import numpy as np
import pytest
from fastapi.testclient import TestClient

from fluxserve.api.main import create_app
from fluxserve.core.config import FluxServeConfig


class FakeSession:
    """Engine session that records its calls on the owning engine."""

    def __init__(self, engine: "FakeEngine") -> None:
        self._engine = engine

    def text_to_image(self, params):
        self._engine.calls.append(("text_to_image", params))
        return self._engine.step_sequence(params)

    def image_to_image(self, image, params, strength):
        self._engine.calls.append(("image_to_image", params, strength))
        self._engine.source_images.append(image)
        return self._engine.step_sequence(params)

    def force(self, latents):
        self._engine.forced += 1
        return np.asarray(latents, dtype=np.float32)

    def decode(self, latents):
        self._engine.decoded_shapes.append(latents.shape)
        _, h, w, _ = latents.shape
        return np.full((1, h * 8, w * 8, 3), 0.5, dtype=np.float32)


class FakeEngine:
    """In-memory stand-in for :class:`DiffusersFluxEngine`.

    Args:
        steps: Number of steps to yield; defaults to ``params.steps``.
        fail_with: Exception raised when a session is opened.
    """

    def __init__(self, steps: int | None = None, fail_with: Exception | None = None) -> None:
        self.steps = steps
        self.fail_with = fail_with
        self.load_configs = []
        self.calls = []
        self.source_images = []
        self.decoded_shapes = []
        self.forced = 0

    @contextmanager
    def session(self, load_config):
        self.load_configs.append(load_config)
        if self.fail_with is not None:
            raise self.fail_with
        yield FakeSession(self)

    def step_sequence(self, params):
        count = params.steps if self.steps is None else self.steps
        tokens = (params.height // 16) * (params.width // 16)
        for index in range(count):
            self.before_step(index)
            yield np.full((1, tokens, 64), float(index), dtype=np.float32)

    def before_step(self, index: int) -> None:
        pass


class GatedEngine(FakeEngine):
    """A :class:`FakeEngine` whose steps only run once the test releases them."""

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self._gate = threading.Semaphore(0)

    def release(self, steps: int = 1) -> None:
        for _ in range(steps):
            self._gate.release()

    def release_all(self) -> None:
        self.release(100)

    def before_step(self, index: int) -> None:
        if not self._gate.acquire(timeout=10):
            raise RuntimeError("Step gate was never released")


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files.

    Yields:
        Path to temporary directory

    Cleanup:
        Directory is removed after test completes
    """
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> FluxServeConfig:
    """Create a test configuration rooted in a temporary directory.

    Args:
        temp_dir: Temporary directory from fixture

    Returns:
        FluxServeConfig instance for testing (directories already created)
    """
    cfg = FluxServeConfig(
        _env_file=None,
        public_dir=temp_dir / "Public",
        models_dir=temp_dir / "models",
        device="cpu",
        retention_policy="timer",
        retention_seconds=3600,
    )
    cfg.ensure_directories()
    return cfg


@pytest.fixture
def fake_engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def make_client(test_config: FluxServeConfig):
    """Factory for started ``TestClient`` instances.

    ``make_client(engine=None, **config_overrides)`` builds the app with
    the given engine (a fresh :class:`FakeEngine` by default) and enters
    the client so the lifespan runs and background jobs keep executing.
    Gated engines are released before the clients shut down.
    """
    started: list[tuple[TestClient, FakeEngine]] = []

    def _make(engine: FakeEngine | None = None, **overrides) -> TestClient:
        engine = engine if engine is not None else FakeEngine()
        settings = test_config.model_copy(update=overrides) if overrides else test_config
        client = TestClient(create_app(settings, engine))
        client.__enter__()
        started.append((client, engine))
        return client

    yield _make

    for client, engine in reversed(started):
        if isinstance(engine, GatedEngine):
            engine.release_all()
        client.__exit__(None, None, None)


@pytest.fixture
def test_client(make_client) -> TestClient:
    return make_client()


@pytest.fixture
def wait_for_status():
    """Poll ``/status/{id}`` until ``predicate(response)`` holds.

    Returns the last response.  Fails the test after ``timeout`` seconds.
    """

    def _wait(client: TestClient, job_id: str, predicate, timeout: float = 10.0):
        deadline = time.monotonic() + timeout
        while True:
            response = client.get(f"/status/{job_id}")
            if predicate(response):
                return response
            if time.monotonic() > deadline:
                raise AssertionError(
                    f"Timed out waiting for job {job_id}: "
                    f"{response.status_code} {response.text}"
                )
            time.sleep(0.01)

    return _wait
