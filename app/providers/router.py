"""Provider failover router."""

from typing import Any, Dict, List, Mapping, Optional

from loguru import logger

from ..errors import ProviderUnavailableError
from ..models.provider import (
    GenerationResult,
    ModelConfig,
    ProviderAttempt,
    ProviderHealth,
    RouteResult,
)
from .base import GenerationProvider
from .health import ProviderHealthTracker
from .registry import ModelRegistry

CALL_TYPES = ("image", "video", "llm", "embedding", "upscale")


class ProviderRouter:
    """
    Routes one generation call across a model's redundant providers.

    Candidates are tried in order ``[default_provider] + fallback_order``:
    - an unhealthy provider is skipped without any network call
    - a failed availability probe counts as a provider failure
    - a successful call resets the provider's health and is returned
    - an exception counts as a provider failure and the next candidate is tried

    When every candidate is exhausted a :class:`ProviderUnavailableError`
    carries the last underlying error and the attempted providers.
    """

    def __init__(
        self,
        registry: ModelRegistry,
        providers: Mapping[str, GenerationProvider],
        health: ProviderHealthTracker,
    ) -> None:
        self.registry = registry
        self.providers = dict(providers)
        self.health = health

    async def route(
        self, model_id: str, call_type: str, params: Dict[str, Any]
    ) -> RouteResult:
        """Run ``call_type`` for ``model_id`` on the first provider that succeeds."""
        if call_type not in CALL_TYPES:
            raise ValueError(f"Unknown generation type: {call_type}")

        model = self.registry.get(model_id)
        candidates = model.candidate_providers()

        attempts: List[ProviderAttempt] = []
        last_error: Optional[BaseException] = None

        for provider_id in candidates:
            if not self.health.is_healthy(provider_id):
                attempts.append(
                    ProviderAttempt(provider=provider_id, skipped=True, reason="unhealthy")
                )
                continue

            provider = self.providers.get(provider_id)
            if provider is None:
                attempts.append(
                    ProviderAttempt(provider=provider_id, skipped=True, reason="not_configured")
                )
                continue

            try:
                available = await provider.is_available()
            except Exception as e:
                logger.warning(f"Availability probe failed for {provider_id}: {e}")
                available = False
                last_error = e

            if not available:
                self.health.mark_failure(provider_id)
                attempts.append(
                    ProviderAttempt(provider=provider_id, skipped=True, reason="unavailable")
                )
                continue

            try:
                result = await self._call(provider, model, provider_id, call_type, params)
            except Exception as e:
                last_error = e
                self.health.mark_failure(provider_id)
                attempts.append(
                    ProviderAttempt(
                        provider=provider_id,
                        error=str(e),
                        status=getattr(e, "status", None),
                    )
                )
                next_index = len(attempts)
                next_provider = candidates[next_index] if next_index < len(candidates) else None
                logger.warning(
                    f"Provider failover for {model_id}: {provider_id} failed ({e}), "
                    f"next: {next_provider or 'none'}"
                )
                continue

            self.health.mark_success(provider_id)
            logger.info(f"Model {model_id} served by {provider_id}")
            return RouteResult(
                provider=provider_id,
                result=result,
                attempts=attempts,
                cost=self.registry.cost(model_id, provider_id),
            )

        raise ProviderUnavailableError(
            model_id, [a.model_dump() for a in attempts], last_error
        )

    async def _call(
        self,
        provider: GenerationProvider,
        model: ModelConfig,
        provider_id: str,
        call_type: str,
        params: Dict[str, Any],
    ) -> GenerationResult:
        provider_config = model.providers[provider_id]
        prompt = params.get("prompt", "")
        options = params.get("options") or {}
        input_images = params.get("input_images") or []

        if call_type == "image":
            return await provider.generate_image(model, provider_config, prompt, options, input_images)
        if call_type == "video":
            return await provider.generate_video(model, provider_config, prompt, options, input_images)
        if call_type == "llm":
            return await provider.generate_text(model, provider_config, prompt, options)
        if call_type == "embedding":
            return await provider.embed(model, provider_config, params.get("text", prompt), options)
        if not input_images:
            raise ValueError("Upscale requires a source image")
        return await provider.upscale_image(model, provider_config, input_images[0], options)

    async def get_best_provider(self, model_id: str) -> Optional[str]:
        """First healthy, available candidate for ``model_id`` without calling it."""
        model = self.registry.get(model_id)
        for provider_id in model.candidate_providers():
            provider = self.providers.get(provider_id)
            if provider is None or not self.health.is_healthy(provider_id):
                continue
            try:
                if await provider.is_available():
                    return provider_id
            except Exception as e:
                logger.warning(f"Availability probe failed for {provider_id}: {e}")
        return None

    async def check_provider_health(self, provider_id: str) -> bool:
        """Probe a provider now and record the outcome."""
        provider = self.providers.get(provider_id)
        if provider is None:
            raise KeyError(f"Provider not configured: {provider_id}")
        try:
            available = await provider.is_available()
        except Exception as e:
            logger.warning(f"Health check failed for {provider_id}: {e}")
            available = False

        if available:
            self.health.mark_success(provider_id)
        else:
            self.health.mark_failure(provider_id)
        return available

    def get_health_status(self) -> Dict[str, ProviderHealth]:
        return self.health.status()
