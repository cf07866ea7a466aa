"""Local test configuration for the orchestration service."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest
from fastapi.testclient import TestClient

# -- Path management ------------------------------------------------------
# The service uses a classic ``app/`` package layout instead of the ``src/``
# layout that editable installs automatically expose on ``sys.path``. Adding
# the service root as the very first entry lets ``import app`` resolve when
# pytest runs from a clean checkout.
SERVICE_ROOT = Path(__file__).resolve().parent.parent
if str(SERVICE_ROOT) not in sys.path:
    sys.path.insert(0, str(SERVICE_ROOT))

from app.config import OrchestratorSettings
from app.main import create_app
from app.models.provider import GenerationResult, ModelConfig, ProviderModelConfig
from app.providers.base import GenerationClient, GenerationProvider
from app.workflows.dispatcher import StepDispatcher
from app.workflows.engine import WorkflowEngine
from app.workflows.state_manager import InMemoryRunStateStore


class FakeClock:
    """Manually advanced replacement for ``time.time``."""

    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeGenerationClient(GenerationClient):
    """Deterministic generation backend recording every call.

    ``failures[kind]`` makes the next N calls of that kind raise.
    """

    def __init__(self) -> None:
        self.calls: List[Tuple[str, str, Any]] = []
        self.failures: Dict[str, int] = {}

    def _record(self, kind: str, model_id: str, payload: Any) -> None:
        self.calls.append((kind, model_id, payload))
        remaining = self.failures.get(kind, 0)
        if remaining:
            self.failures[kind] = remaining - 1
            raise RuntimeError(f"{kind} backend error")

    def calls_of(self, kind: str) -> List[Tuple[str, str, Any]]:
        return [call for call in self.calls if call[0] == kind]

    async def generate_text(
        self, model_id: str, prompt: str, options: Dict[str, Any]
    ) -> GenerationResult:
        self._record("llm", model_id, prompt)
        return GenerationResult(text=f"generated: {prompt}", provider="fake-llm", credits_used=0.01)

    async def generate_image(
        self,
        model_id: str,
        prompt: str,
        options: Dict[str, Any],
        input_images: Optional[List[str]] = None,
    ) -> GenerationResult:
        self._record("image", model_id, prompt)
        return GenerationResult(
            url=f"https://cdn.example.com/{len(self.calls)}.png",
            provider="fake-image",
            credits_used=0.05,
        )

    async def generate_video(
        self,
        model_id: str,
        prompt: str,
        options: Dict[str, Any],
        input_images: Optional[List[str]] = None,
    ) -> GenerationResult:
        self._record("video", model_id, prompt)
        return GenerationResult(urls=["https://cdn.example.com/clip.mp4"], credits_used=0.5)

    async def embed(
        self, model_id: str, text: str, options: Dict[str, Any]
    ) -> GenerationResult:
        self._record("embedding", model_id, text)
        return GenerationResult(vector=[float(len(text)), 1.0], credits_used=0.001)


class FakeProvider(GenerationProvider):
    """Provider adapter with switchable availability and failures."""

    def __init__(self, name: str, available: bool = True, fail: bool = False) -> None:
        self.name = name
        self.available = available
        self.fail = fail
        self.calls = 0

    async def is_available(self) -> bool:
        return self.available

    async def generate_image(self, model, provider_config, prompt, options, input_images):
        self.calls += 1
        if self.fail:
            raise RuntimeError(f"{self.name} returned 503")
        return GenerationResult(url=f"https://{self.name}.example.com/out.png")

    async def generate_text(self, model, provider_config, prompt, options):
        self.calls += 1
        if self.fail:
            raise RuntimeError(f"{self.name} returned 503")
        return GenerationResult(text=f"{self.name}: {prompt}", credits_used=0.002)


@pytest.fixture
def test_settings() -> OrchestratorSettings:
    """Provide test-specific settings with retry backoff disabled."""
    return OrchestratorSettings(
        app_name="genflow-orchestrator-test",
        cors_origins=["http://localhost:3000", "http://localhost:8000"],
        redis_url=None,
        retry_backoff_seconds=0.0,
        retry_max_delay_seconds=0.0,
        loop_max_parallel=2,
    )


@pytest.fixture
def app(test_settings):
    """Create FastAPI app with test settings."""
    return create_app(test_settings)


@pytest.fixture
def client(app):
    """Provide TestClient for the orchestration service."""
    return TestClient(app)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def generation_client() -> FakeGenerationClient:
    return FakeGenerationClient()


@pytest.fixture
def dispatcher(test_settings, generation_client) -> StepDispatcher:
    return StepDispatcher(test_settings, generation_client)


@pytest.fixture
def state_store() -> InMemoryRunStateStore:
    return InMemoryRunStateStore()


@pytest.fixture
def engine(state_store, dispatcher, test_settings) -> WorkflowEngine:
    """Engine wired to the in-memory store and the fake generation backend."""
    return WorkflowEngine(state_store, dispatcher, test_settings)


@pytest.fixture
def image_model() -> ModelConfig:
    """Image model served by three redundant providers."""
    return ModelConfig(
        id="flux-pro",
        type="image",
        baseCost=0.05,
        providers={
            "replicate": ProviderModelConfig(cost=0.055),
            "fal": ProviderModelConfig(),
            "self-hosted": ProviderModelConfig(cost=0.01),
        },
        defaultProvider="replicate",
        fallbackOrder=["fal", "self-hosted"],
    )


@pytest.fixture
def provider_factory():
    """Build :class:`FakeProvider` adapters by name."""
    return FakeProvider
