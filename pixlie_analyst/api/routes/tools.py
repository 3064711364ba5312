"""
Tool schema export.
"""

from fastapi import APIRouter, Depends

from pixlie_analyst.api.deps import get_coordinator
from pixlie_analyst.core.coordinator import ObjectiveCoordinator
from pixlie_analyst.models.contracts import ToolSchemaResponse

router = APIRouter()


@router.get("/tools", response_model=ToolSchemaResponse)
async def list_tools(coordinator: ObjectiveCoordinator = Depends(get_coordinator)) -> ToolSchemaResponse:
    """Descriptors and JSON Schemas of every registered tool."""
    return ToolSchemaResponse(tools=coordinator.registry.descriptors())
