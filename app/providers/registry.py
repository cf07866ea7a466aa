"""Model registry: which providers can serve which model, and in what order."""

from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import yaml
from loguru import logger

from ..errors import UnknownModelError
from ..models.provider import ModelConfig


class ModelRegistry:
    """Lookup of provider-agnostic model configurations."""

    def __init__(self, models: Optional[Iterable[ModelConfig]] = None) -> None:
        self._models: Dict[str, ModelConfig] = {}
        for model in models or []:
            self.register(model)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModelRegistry":
        """Build from ``{model_id: {type, providers, defaultProvider, ...}}``."""
        return cls(
            ModelConfig(id=model_id, **config) for model_id, config in data.items()
        )

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "ModelRegistry":
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
        registry = cls.from_dict(data.get("models", data))
        logger.info(f"Loaded {len(registry)} models from {path}")
        return registry

    def register(self, model: ModelConfig) -> None:
        self._models[model.id] = model

    def get(self, model_id: str) -> ModelConfig:
        model = self._models.get(model_id)
        if model is None:
            raise UnknownModelError(f"Unknown model: {model_id}")
        return model

    def list_models(self, model_type: Optional[str] = None) -> List[ModelConfig]:
        return [m for m in self._models.values() if not model_type or m.type == model_type]

    def cost(self, model_id: str, provider_id: str) -> float:
        """Provider-specific cost if declared, else the model's base cost."""
        model = self.get(model_id)
        provider_config = model.providers.get(provider_id)
        if provider_config is not None and provider_config.cost is not None:
            return provider_config.cost
        return model.base_cost

    def __contains__(self, model_id: object) -> bool:
        return model_id in self._models

    def __len__(self) -> int:
        return len(self._models)
