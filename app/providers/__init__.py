"""Generation providers, model registry and failover routing."""

from .base import GenerationClient, GenerationProvider
from .client import RoutedGenerationClient
from .health import ProviderHealthTracker
from .registry import ModelRegistry
from .router import ProviderRouter

__all__ = [
    "GenerationClient",
    "GenerationProvider",
    "ModelRegistry",
    "ProviderHealthTracker",
    "ProviderRouter",
    "RoutedGenerationClient",
]
