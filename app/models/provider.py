"""Provider, model registry and routing models."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ProviderModelConfig(BaseModel):
    """Provider-specific settings for one model (endpoint, version, cost...)."""

    model_config = ConfigDict(extra="allow")

    cost: Optional[float] = Field(None, ge=0.0)
    endpoint: Optional[str] = None
    version: Optional[str] = None


class ModelConfig(BaseModel):
    """A provider-agnostic model with per-provider configuration."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: Optional[str] = None
    type: str = Field(..., description="image, video, llm, embedding, upscale")
    base_cost: float = Field(default=0.0, ge=0.0, alias="baseCost")
    providers: Dict[str, ProviderModelConfig] = Field(default_factory=dict)
    default_provider: Optional[str] = Field(None, alias="defaultProvider")
    fallback_order: List[str] = Field(default_factory=list, alias="fallbackOrder")

    def candidate_providers(self) -> List[str]:
        """Default provider first, then fallbacks, limited to supported providers."""
        ordered: List[str] = []
        for provider_id in [self.default_provider, *self.fallback_order]:
            if provider_id and provider_id in self.providers and provider_id not in ordered:
                ordered.append(provider_id)
        return ordered


class ProviderHealth(BaseModel):
    """Circuit breaker state for one provider. Process-local, never persisted."""

    healthy: bool = True
    consecutive_failures: int = 0
    last_failure_time: Optional[float] = None
    successes: int = 0


class GenerationResult(BaseModel):
    """Normalized result of a generation call."""

    model_config = ConfigDict(extra="allow")

    url: Optional[str] = None
    urls: List[str] = Field(default_factory=list)
    text: Optional[str] = None
    vector: Optional[List[float]] = None
    credits_used: Optional[float] = None
    provider: Optional[str] = None
    raw: Any = None

    @property
    def primary_url(self) -> Optional[str]:
        return self.url or (self.urls[0] if self.urls else None)


class ProviderAttempt(BaseModel):
    """One candidate provider considered during routing."""

    provider: str
    skipped: bool = False
    reason: Optional[str] = None
    error: Optional[str] = None
    status: Optional[int] = None


class RouteResult(BaseModel):
    """Result of a routed call, tagged with the provider that served it."""

    provider: str
    result: GenerationResult
    attempts: List[ProviderAttempt] = Field(default_factory=list)
    cost: float = 0.0
