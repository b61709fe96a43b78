"""Model catalog models."""

from typing import List, Optional, Union

from pydantic import BaseModel, Field

from siftstream.core.enums import ParameterType, ProviderType


class ModelParameter(BaseModel):
    """A tunable generation parameter shown to the user."""

    key: str = Field(..., description="Parameter name sent back in model_config_params")
    label: str
    type: ParameterType = ParameterType.SLIDER
    min: Optional[float] = None
    max: Optional[float] = None
    step: Optional[float] = None
    default_value: Union[int, float]
    description: Optional[str] = None

    def accepts(self, value: object) -> bool:
        """Check a submitted value is numeric and inside [min, max]."""
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return False
        if self.min is not None and value < self.min:
            return False
        if self.max is not None and value > self.max:
            return False
        return True


class ModelConfig(BaseModel):
    """A selectable AI model."""

    id: str = Field(..., description="Model identifier passed to the provider")
    name: str = Field(..., description="Display name")
    provider: ProviderType
    supports_vision: bool = False
    supports_web_search: bool = False
    default_system_prompt: str = ""
    parameters: List[ModelParameter] = []

    def parameter(self, key: str) -> Optional[ModelParameter]:
        return next((p for p in self.parameters if p.key == key), None)


class ModelsConfigResponse(BaseModel):
    """Response of ``GET /api/models/config``."""

    models: List[ModelConfig]
