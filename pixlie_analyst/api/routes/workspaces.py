"""
Workspace routes.
"""

from typing import Any, Dict, List

from fastapi import APIRouter, Depends

from pixlie_analyst.api.deps import get_coordinator
from pixlie_analyst.core.coordinator import ObjectiveCoordinator
from pixlie_analyst.models.contracts import WorkspaceSummary

router = APIRouter()


@router.get("/workspaces", response_model=List[WorkspaceSummary])
async def list_workspaces(coordinator: ObjectiveCoordinator = Depends(get_coordinator)) -> List[WorkspaceSummary]:
    return [WorkspaceSummary.from_workspace(w) for w in coordinator.list_workspaces()]


@router.get("/workspaces/{name}", response_model=WorkspaceSummary)
async def get_workspace(name: str, coordinator: ObjectiveCoordinator = Depends(get_coordinator)) -> WorkspaceSummary:
    return WorkspaceSummary.from_workspace(await coordinator.get_workspace(name))


@router.post("/workspaces/{name}/resume")
async def resume_workspace(name: str, coordinator: ObjectiveCoordinator = Depends(get_coordinator)) -> Dict[str, Any]:
    """Restart the active objectives of a stored workspace."""
    resumed = await coordinator.resume_workspace(name)
    return {"workspace": name, "resumed": resumed}


@router.delete("/workspaces/{name}")
async def delete_workspace(name: str, coordinator: ObjectiveCoordinator = Depends(get_coordinator)) -> Dict[str, Any]:
    await coordinator.delete_workspace(name)
    return {"workspace": name, "deleted": True}
