"""Request dependencies."""

from fastapi import Request

from pixlie_analyst.core.coordinator import ObjectiveCoordinator


def get_coordinator(request: Request) -> ObjectiveCoordinator:
    return request.app.state.coordinator
