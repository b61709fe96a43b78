"""Data models."""

# Export request/response models
from siftstream.models.analysis import (
    AnalysisRequest,
    ChatRequest,
    HistoryMessage,
    InitiateResponse,
    SessionInfo,
)

# Export catalog models
from siftstream.models.catalog import (
    ModelConfig,
    ModelParameter,
    ModelsConfigResponse,
)
