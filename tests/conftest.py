"""Shared pytest fixtures for EdgeAI Gateway tests.

No test loads a real model.  The session manager and the HTTP application
are built with :class:`FakeEngineFactory`, a scripted stand-in for the
``transformers`` backend that records what it was asked to do.
"""

import base64
import io
import json
import shutil
import tempfile
import threading
import time
from pathlib import Path
from typing import Generator

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from edgeai.api.main import create_app
from edgeai.core.bridge import SyncBridge
from edgeai.core.config import EdgeAIConfig
from edgeai.core.engine import (
    EngineOptions,
    InferenceEngine,
    InferenceSession,
    SessionOptions,
)
from edgeai.core.registry import ModelRegistry
from edgeai.core.service import InferenceService
from edgeai.core.session_manager import SessionManager

DEFAULT_PIECES = ("Hello", ", ", "world")

TEST_CATALOG = {
    "models": [
        {
            "name": "text_embedder",
            "model_id": "acme/text-embedder",
            "tasks": ["embedding"],
        },
        {
            "name": "vision_llm",
            "model_id": "acme/vision-llm",
            "llm_support_image": True,
            "tasks": ["llm_chat", "llm_ask_image"],
            "generation_config": {
                "max_tokens": 256,
                "top_k": 20,
                "top_p": 0.8,
                "temperature": 0.2,
                "accelerator": "cpu",
            },
        },
        {
            "name": "text_llm",
            "model_id": "acme/text-llm",
            "llm_prompt_templates": [],
            "tasks": ["llm_chat"],
            "generation_config": {"max_tokens": 128, "accelerator": "cpu"},
        },
    ]
}


# ---------------------------------------------------------------------------
# Fake engine binding.
# ---------------------------------------------------------------------------


class FakeSession(InferenceSession):
    """Session that replays scripted pieces from a worker thread."""

    def __init__(self, engine: "FakeEngine", options: SessionOptions):
        self.engine = engine
        self.options = options
        self.chunks: list[str] = []
        self.images: list[Image.Image] = []
        self.cancelled = threading.Event()
        self.close_calls = 0

    def add_query_chunk(self, text):
        self.chunks.append(text)

    def add_image(self, image):
        self.images.append(image)

    def generate_response_async(self, result_listener, error_listener=None):
        factory = self.engine.factory
        factory.record_generation("".join(self.chunks), len(self.images))
        if factory.start_error:
            raise RuntimeError(factory.start_error)

        pieces = factory.next_pieces()

        def worker():
            if factory.delay:
                time.sleep(factory.delay)
            if factory.hang or pieces is None:
                result_listener("partial", False)
                self.cancelled.wait(timeout=5)
                return
            for piece in pieces:
                result_listener(piece, False)
            if factory.generation_error:
                error_listener(RuntimeError(factory.generation_error))
                return
            result_listener("", True)

        threading.Thread(target=worker, daemon=True).start()

    def cancel_generate_response_async(self):
        self.cancelled.set()

    def close(self):
        self.close_calls += 1
        self.cancelled.set()
        if self.engine.factory.close_error:
            raise RuntimeError("session close failed")


class FakeEngine(InferenceEngine):
    def __init__(self, factory: "FakeEngineFactory", options: EngineOptions):
        self.factory = factory
        self.options = options
        self.sessions: list[FakeSession] = []
        self.close_calls = 0

    def create_session(self, options):
        if self.factory.session_error:
            raise RuntimeError(self.factory.session_error)
        session = FakeSession(self, options)
        self.sessions.append(session)
        return session

    def close(self):
        self.close_calls += 1
        if self.close_calls == 1:
            self.factory.engine_closed()
        if self.factory.close_error:
            raise RuntimeError("engine close failed")


class FakeEngineFactory:
    """Callable engine factory with scripted behaviour.

    Attributes:
        script: Piece lists returned by successive generations; the
            default pieces are used once it is exhausted.  A ``None`` entry
            makes that generation hang like ``hang``.
        init_error / session_error / start_error / generation_error:
            When set, the corresponding step raises (or reports) that message.
        close_error: Make every ``close()`` raise after doing its work.
        hang: Emit ``"partial"`` and never finish until cancelled.
        delay: Seconds to sleep before emitting pieces.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.engines: list[FakeEngine] = []
        self.prompts: list[str] = []
        self.image_counts: list[int] = []
        self.script: list[list[str] | None] = []
        self.init_error = None
        self.session_error = None
        self.start_error = None
        self.generation_error = None
        self.close_error = False
        self.hang = False
        self.delay = 0.0
        self.live_engines = 0
        self.max_live_engines = 0

    def __call__(self, options: EngineOptions) -> FakeEngine:
        if self.init_error:
            raise RuntimeError(self.init_error)
        engine = FakeEngine(self, options)
        with self._lock:
            self.engines.append(engine)
            self.live_engines += 1
            self.max_live_engines = max(self.max_live_engines, self.live_engines)
        return engine

    def engine_closed(self):
        with self._lock:
            self.live_engines -= 1

    def record_generation(self, prompt: str, image_count: int):
        with self._lock:
            self.prompts.append(prompt)
            self.image_counts.append(image_count)

    def next_pieces(self) -> list[str] | None:
        with self._lock:
            if self.script:
                return self.script.pop(0)
        return list(DEFAULT_PIECES)


# ---------------------------------------------------------------------------
# Fixtures.
# ---------------------------------------------------------------------------


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
def test_config(temp_dir: Path) -> EdgeAIConfig:
    """Create a test configuration with temporary directories and catalog.

    Args:
        temp_dir: Temporary directory from fixture

    Returns:
        EdgeAIConfig instance for testing
    """
    models_file = temp_dir / "models.json"
    models_file.write_text(json.dumps(TEST_CATALOG))

    return EdgeAIConfig(
        _env_file=None,
        images_dir=temp_dir / "images",
        models_dir=temp_dir / "models",
        models_file=models_file,
        inference_timeout_seconds=5.0,
        image_retention_hours=24.0,
        max_image_count=4,
    )


@pytest.fixture
def engine_factory() -> FakeEngineFactory:
    return FakeEngineFactory()


@pytest.fixture
def registry(test_config: EdgeAIConfig) -> ModelRegistry:
    return ModelRegistry.from_file(test_config.models_file)


@pytest.fixture
def session_manager(test_config, engine_factory) -> Generator[SessionManager, None, None]:
    manager = SessionManager(test_config, engine_factory)
    try:
        yield manager
    finally:
        manager.shutdown()


@pytest.fixture
def service(registry, session_manager) -> InferenceService:
    return InferenceService(registry, session_manager, SyncBridge(timeout_seconds=5.0))


@pytest.fixture
def test_client(test_config, engine_factory) -> Generator[TestClient, None, None]:
    """TestClient over an application wired to the fake engine factory.

    Used as a context manager so that the lifespan (catalog loading,
    service wiring) runs.
    """
    app = create_app(test_config, engine_factory=engine_factory)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def sample_image() -> Image.Image:
    return Image.new("RGB", (32, 24), color=(200, 30, 30))


@pytest.fixture
def png_base64(sample_image: Image.Image) -> str:
    """Base64-encoded PNG of :func:`sample_image`."""
    buffer = io.BytesIO()
    sample_image.save(buffer, format="PNG")
    return base64.b64encode(buffer.getvalue()).decode("ascii")
