"""
Model catalog.

Lists the models a user can select and the generation parameters each one
accepts. Only models whose provider has an API key configured are offered.
"""

from typing import Any, Dict, List, Optional

from siftstream.core.enums import ParameterType, ProviderType
from siftstream.core.exceptions import InvalidModelError, ValidationError, ErrorCode
from siftstream.core.logging import get_logger
from siftstream.models.catalog import ModelConfig, ModelParameter
from siftstream.services.prompt_service import prompt_service
from siftstream.services.providers import ProviderRegistry, provider_registry

logger = get_logger(__name__)


def _temperature(max_value: float) -> ModelParameter:
    return ModelParameter(
        key="temperature",
        label="Temperature",
        type=ParameterType.SLIDER,
        min=0,
        max=max_value,
        step=0.01,
        default_value=0.7,
        description="Controls randomness. Lower for more predictable, higher for more creative.",
    )


def _top_p() -> ModelParameter:
    return ModelParameter(
        key="top_p",
        label="Top-P",
        type=ParameterType.SLIDER,
        min=0,
        max=1,
        step=0.01,
        default_value=0.95,
        description="Nucleus sampling. Considers tokens with probability mass adding up to top_p.",
    )


def _top_k() -> ModelParameter:
    return ModelParameter(
        key="top_k",
        label="Top-K",
        type=ParameterType.SLIDER,
        min=1,
        max=100,
        step=1,
        default_value=40,
        description="Considers the top K most probable tokens.",
    )


def _max_tokens(limit: int) -> ModelParameter:
    return ModelParameter(
        key="max_tokens",
        label="Max Tokens",
        type=ParameterType.SLIDER,
        min=50,
        max=min(limit, 32000),
        step=50,
        default_value=max(limit // 4, 1024),
        description="Maximum number of tokens to generate in the completion.",
    )


def _default_models() -> List[ModelConfig]:
    system_prompt = prompt_service.get_system_prompt()
    return [
        ModelConfig(
            id="claude-sonnet-4-5-20250929",
            name="Claude Sonnet 4.5",
            provider=ProviderType.ANTHROPIC,
            supports_vision=True,
            default_system_prompt=system_prompt,
            parameters=[_temperature(1), _top_p(), _top_k()],
        ),
        ModelConfig(
            id="claude-3-5-haiku-20241022",
            name="Claude Haiku 3.5",
            provider=ProviderType.ANTHROPIC,
            supports_vision=True,
            default_system_prompt=system_prompt,
            parameters=[_temperature(1), _top_p(), _top_k()],
        ),
        ModelConfig(
            id="gpt-4o",
            name="GPT-4o",
            provider=ProviderType.OPENAI,
            supports_vision=True,
            default_system_prompt=system_prompt,
            parameters=[_temperature(2), _top_p(), _max_tokens(16384)],
        ),
        ModelConfig(
            id="gpt-4o-mini",
            name="GPT-4o mini",
            provider=ProviderType.OPENAI,
            supports_vision=True,
            default_system_prompt=system_prompt,
            parameters=[_temperature(2), _top_p(), _max_tokens(16384)],
        ),
        ModelConfig(
            id="perplexity/sonar",
            name="Perplexity Sonar (OpenRouter)",
            provider=ProviderType.OPENROUTER,
            supports_web_search=True,
            default_system_prompt=system_prompt,
            parameters=[_temperature(1), _top_p(), _max_tokens(8000)],
        ),
        ModelConfig(
            id="google/gemini-2.5-flash",
            name="Gemini 2.5 Flash (OpenRouter)",
            provider=ProviderType.OPENROUTER,
            supports_vision=True,
            default_system_prompt=system_prompt,
            parameters=[_temperature(1), _top_p(), _max_tokens(32000)],
        ),
    ]


class ModelCatalog:
    """Known models, filtered by which providers are configured."""

    def __init__(
        self,
        models: Optional[List[ModelConfig]] = None,
        registry: Optional[ProviderRegistry] = None,
    ):
        self._models = {m.id: m for m in (models if models is not None else _default_models())}
        self._registry = registry or provider_registry

    def list_available(self) -> List[ModelConfig]:
        """Models whose provider API key is configured."""
        return [m for m in self._models.values() if self._registry.is_configured(m.provider)]

    def get(self, model_id: str) -> ModelConfig:
        """Look up a model by id, raising InvalidModelError when unknown."""
        model = self._models.get(model_id)
        if model is None:
            raise InvalidModelError(model_id)
        return model

    def validate_params(self, model: ModelConfig, params: Dict[str, Any]) -> Dict[str, Any]:
        """
        Check submitted parameters against the model's declared ranges.

        Unknown keys are dropped with a warning; out-of-range values are
        rejected.
        """
        accepted: Dict[str, Any] = {}
        for key, value in params.items():
            parameter = model.parameter(key)
            if parameter is None:
                logger.warning(f"Ignoring unknown parameter {key!r} for {model.id}")
                continue
            if not parameter.accepts(value):
                raise ValidationError(
                    code=ErrorCode.INVALID_PARAMETERS,
                    message=f"Invalid value for {parameter.label}",
                    details={"key": key, "min": parameter.min, "max": parameter.max},
                )
            accepted[key] = value
        return accepted


# Global catalog instance
model_catalog = ModelCatalog()
