"""Model catalog API routes."""

from fastapi import APIRouter

from siftstream.core.logging import get_logger
from siftstream.models.catalog import ModelsConfigResponse
from siftstream.services.model_catalog import model_catalog

logger = get_logger(__name__)

router = APIRouter(prefix="/api/models", tags=["models"])


@router.get("/config", response_model=ModelsConfigResponse)
async def get_models_config():
    """
    List selectable models and their tunable parameters.

    Only models whose provider API key is configured are returned.
    """
    models = model_catalog.list_available()
    if not models:
        logger.warning("No AI provider API keys configured; model list is empty")
    return ModelsConfigResponse(models=models)
