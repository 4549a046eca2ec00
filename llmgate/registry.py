"""Model registry: pricing, limits and capabilities per provider/model."""
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from core.errors import ConfigError
from core.logging import logger

DEFAULT_CATALOG = Path(__file__).resolve().parent / "models.yml"

# YAML flag name -> ModelCapabilities field
_CAPABILITY_FLAGS = {
    "json": "supports_json",
    "images": "supports_images",
    "functions": "supports_functions",
    "streaming": "supports_streaming",
    "thinking": "supports_thinking",
}


class ModelCapabilities(BaseModel):
    """Feature flags of a model."""
    model_config = ConfigDict(frozen=True)

    supports_json: bool = True
    supports_images: bool = False
    supports_functions: bool = True
    supports_streaming: bool = True
    supports_thinking: bool = False


class ModelSpec(BaseModel):
    """A registered model with its pricing metadata."""
    model_config = ConfigDict(frozen=True)

    provider: str
    name: str
    api_name: str
    context_window: int = Field(..., gt=0)
    max_tokens: int = Field(..., gt=0)
    input_cost_per_million: float = Field(..., ge=0)
    output_cost_per_million: float = Field(..., ge=0)
    capabilities: ModelCapabilities = Field(default_factory=ModelCapabilities)
    cached_input_discount: Optional[float] = Field(None, ge=0, le=1)


class ModelRegistry:
    """Read-only lookup over a set of ModelSpecs."""

    def __init__(self, specs: Iterable[ModelSpec], defaults: Optional[Dict[str, str]] = None):
        self._models: Dict[str, Dict[str, ModelSpec]] = {}
        for spec in specs:
            self._models.setdefault(spec.provider, {})[spec.name] = spec
        self._defaults = dict(defaults or {})

    # ------------------------------------------------------------------
    @classmethod
    def from_dict(cls, data: dict) -> "ModelRegistry":
        specs: List[ModelSpec] = []
        try:
            for provider, models in (data.get("providers") or {}).items():
                for name, entry in (models or {}).items():
                    specs.append(_spec_from_entry(provider, name, dict(entry)))
        except (ValidationError, KeyError, TypeError) as e:
            raise ConfigError(f"Invalid model catalog: {e}") from e
        return cls(specs, data.get("defaults") or {})

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "ModelRegistry":
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Could not read model catalog {path}: {e}") from e
        registry = cls.from_dict(data)
        logger.debug(f"Loaded {len(registry.all_models())} models from {path}")
        return registry

    # ------------------------------------------------------------------
    def lookup(self, provider: str, model: str) -> Optional[ModelSpec]:
        models = self._models.get(provider, {})
        spec = models.get(model)
        if spec is not None:
            return spec
        for candidate in models.values():
            if candidate.api_name == model:
                return candidate
        return None

    def provider_models(self, provider: str) -> List[ModelSpec]:
        return list(self._models.get(provider, {}).values())

    def providers(self) -> List[str]:
        return sorted(self._models)

    def all_models(self) -> List[ModelSpec]:
        return [spec for models in self._models.values() for spec in models.values()]

    def default_model(self, provider: str) -> Optional[ModelSpec]:
        name = self._defaults.get(provider)
        if name is None:
            return None
        return self.lookup(provider, name)

    def models_by_capability(self, capability: str, value: bool = True) -> List[ModelSpec]:
        """Models whose capability flag (e.g. ``supports_thinking`` or ``thinking``) equals ``value``."""
        field = _CAPABILITY_FLAGS.get(capability, capability)
        if field not in ModelCapabilities.model_fields:
            raise ValueError(f"unknown capability '{capability}'")
        return [m for m in self.all_models() if getattr(m.capabilities, field) == value]

    def models_by_cost_range(
        self, max_input_cost: float, max_output_cost: Optional[float] = None
    ) -> List[ModelSpec]:
        return [
            m for m in self.all_models()
            if m.input_cost_per_million <= max_input_cost
            and (max_output_cost is None or m.output_cost_per_million <= max_output_cost)
        ]


def _spec_from_entry(provider: str, name: str, entry: dict) -> ModelSpec:
    flags = {field: entry.pop(flag) for flag, field in _CAPABILITY_FLAGS.items() if flag in entry}
    return ModelSpec(
        provider=provider,
        name=name,
        api_name=entry.pop("api_name", name),
        context_window=entry["context_window"],
        max_tokens=entry["max_tokens"],
        input_cost_per_million=entry["input"],
        output_cost_per_million=entry["output"],
        capabilities=ModelCapabilities(**flags),
        cached_input_discount=entry.get("cached_input_discount"),
    )


_default_registry: Optional[ModelRegistry] = None


def load_default_registry() -> ModelRegistry:
    """Registry built from the packaged catalog, loaded once."""
    global _default_registry
    if _default_registry is None:
        _default_registry = ModelRegistry.from_yaml(DEFAULT_CATALOG)
    return _default_registry
