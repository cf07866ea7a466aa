"""Interfaces for generation backends and the collaborators that use them."""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from ..models.provider import GenerationResult, ModelConfig, ProviderModelConfig


class GenerationProvider(ABC):
    """
    Base class for a generation backend (hosted API, self-hosted cluster...).

    Concrete adapters translate the unified call into the backend's payload.
    Methods a backend does not support keep the default implementation and
    raise ``NotImplementedError``, which the router treats as a failure.
    """

    name: str = "base"

    @abstractmethod
    async def is_available(self) -> bool:
        """Cheap availability probe. Must not consume credits."""

    async def generate_image(
        self,
        model: ModelConfig,
        provider_config: ProviderModelConfig,
        prompt: str,
        options: Dict[str, Any],
        input_images: List[str],
    ) -> GenerationResult:
        raise NotImplementedError(f"{self.name} does not support image generation")

    async def generate_video(
        self,
        model: ModelConfig,
        provider_config: ProviderModelConfig,
        prompt: str,
        options: Dict[str, Any],
        input_images: List[str],
    ) -> GenerationResult:
        raise NotImplementedError(f"{self.name} does not support video generation")

    async def generate_text(
        self,
        model: ModelConfig,
        provider_config: ProviderModelConfig,
        prompt: str,
        options: Dict[str, Any],
    ) -> GenerationResult:
        raise NotImplementedError(f"{self.name} does not support text generation")

    async def embed(
        self,
        model: ModelConfig,
        provider_config: ProviderModelConfig,
        text: str,
        options: Dict[str, Any],
    ) -> GenerationResult:
        raise NotImplementedError(f"{self.name} does not support embeddings")

    async def upscale_image(
        self,
        model: ModelConfig,
        provider_config: ProviderModelConfig,
        image_url: str,
        options: Dict[str, Any],
    ) -> GenerationResult:
        raise NotImplementedError(f"{self.name} does not support upscaling")


class GenerationClient(ABC):
    """What the step dispatcher calls for generation steps.

    Each call is one opaque, bounded async operation per step.
    """

    @abstractmethod
    async def generate_text(
        self, model_id: str, prompt: str, options: Dict[str, Any]
    ) -> GenerationResult:
        ...

    @abstractmethod
    async def generate_image(
        self,
        model_id: str,
        prompt: str,
        options: Dict[str, Any],
        input_images: Optional[List[str]] = None,
    ) -> GenerationResult:
        ...

    @abstractmethod
    async def generate_video(
        self,
        model_id: str,
        prompt: str,
        options: Dict[str, Any],
        input_images: Optional[List[str]] = None,
    ) -> GenerationResult:
        ...

    @abstractmethod
    async def embed(
        self, model_id: str, text: str, options: Dict[str, Any]
    ) -> GenerationResult:
        ...
