"""
Objective routes: start, continue, inspect, cancel and stream.
"""

import json
from typing import Any, Dict

from fastapi import APIRouter, Depends, status
from fastapi.responses import StreamingResponse
import structlog

from pixlie_analyst.api.deps import get_coordinator
from pixlie_analyst.core.coordinator import ObjectiveCoordinator
from pixlie_analyst.core.ledger import LedgerEvent, Subscription
from pixlie_analyst.models.contracts import (
    ObjectiveMetricsResponse,
    ObjectiveResponse,
    StartObjectiveRequest,
    UserMessageRequest,
)

logger = structlog.get_logger(__name__)
router = APIRouter()


@router.post("/objectives", response_model=ObjectiveResponse, status_code=status.HTTP_201_CREATED)
async def start_objective(
    request: StartObjectiveRequest,
    coordinator: ObjectiveCoordinator = Depends(get_coordinator),
) -> ObjectiveResponse:
    """
    Start a new objective in a workspace.

    The analysis runs in the background; follow it with the stream endpoint.
    """
    objective = await coordinator.create_objective(request.workspace, request.objective)
    return ObjectiveResponse.from_objective(objective)


@router.post("/objectives/{objective_id}/messages", response_model=ObjectiveResponse)
async def post_message(
    objective_id: str,
    request: UserMessageRequest,
    coordinator: ObjectiveCoordinator = Depends(get_coordinator),
) -> ObjectiveResponse:
    """Answer a pending question or add context to a running objective (409 once it ended)."""
    objective = await coordinator.submit_user_response(objective_id, request.text)
    return ObjectiveResponse.from_objective(objective)


@router.get("/objectives/{objective_id}", response_model=ObjectiveResponse)
async def get_objective(
    objective_id: str,
    coordinator: ObjectiveCoordinator = Depends(get_coordinator),
) -> ObjectiveResponse:
    return ObjectiveResponse.from_objective(coordinator.get_objective(objective_id))


@router.get("/objectives/{objective_id}/metrics", response_model=ObjectiveMetricsResponse)
async def get_objective_metrics(
    objective_id: str,
    coordinator: ObjectiveCoordinator = Depends(get_coordinator),
) -> ObjectiveMetricsResponse:
    """Tool execution counts and timings of an objective."""
    objective = coordinator.get_objective(objective_id)
    return ObjectiveMetricsResponse(
        objective_id=objective.id,
        status=objective.status,
        iterations=objective.conversation.iterations,
        step_count=len(objective.conversation.steps),
        tools=coordinator.execution_metrics(objective_id),
    )


@router.delete("/objectives/{objective_id}")
async def cancel_objective(
    objective_id: str,
    purge: bool = False,
    coordinator: ObjectiveCoordinator = Depends(get_coordinator),
) -> Dict[str, Any]:
    """Cancel an objective; with ``purge=true`` also delete it and its ledger."""
    if purge:
        await coordinator.delete_objective(objective_id)
        return {"objective_id": objective_id, "deleted": True}

    objective = await coordinator.cancel(objective_id)
    return ObjectiveResponse.from_objective(objective).model_dump(mode="json")


def _sse(payload: Any) -> str:
    return f"data: {json.dumps(payload, default=str)}\n\n"


def event_payload(event: LedgerEvent) -> Any:
    """
    Map a ledger event to its SSE payload.

    Only finished steps are sent; content chunks are sent as they arrive.
    """
    if event.type == "content":
        return {"type": "content", "content": event.content, "step_id": event.step_id}
    if event.type == "step" and event.step is not None and event.step.status.is_final:
        return {"type": "tool_execution", "step": event.step.model_dump(mode="json")}
    if event.type == "status":
        return {
            "type": "status",
            "status": event.status.value if event.status else None,
            "terminal_reason": event.terminal_reason,
        }
    return None


async def sse_events(subscription: Subscription):
    """Generate SSE frames for one subscription, ending with [DONE]."""
    try:
        async for event in subscription:
            if event.type == "closed":
                break
            payload = event_payload(event)
            if payload is not None:
                yield _sse(payload)
        if subscription.dropped:
            yield _sse({"type": "error", "error": "stream fell behind and was dropped; reconnect to replay"})
        yield "data: [DONE]\n\n"
    finally:
        subscription.close()


@router.get("/objectives/{objective_id}/stream")
async def stream_objective(
    objective_id: str,
    coordinator: ObjectiveCoordinator = Depends(get_coordinator),
):
    """
    Stream the objective's ledger as Server-Sent Events.

    Existing steps are replayed first, so reconnecting is safe.
    """
    subscription = coordinator.subscribe(objective_id, replay=True)
    logger.info("Stream subscribed", objective_id=objective_id)
    return StreamingResponse(
        sse_events(subscription),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        },
    )
