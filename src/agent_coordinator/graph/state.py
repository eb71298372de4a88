"""Typed state contract for the planning workflow."""

from typing import Any, TypedDict


class PlanningState(TypedDict, total=False):
    request_id: str
    user_input: str
    project_context: dict[str, Any]
    cancel_token: Any
    understanding: Any
    plan: Any
    subtasks: list[Any]
    enqueued: int
    telemetry: list[Any]


def initial_state(
    request_id: str,
    user_input: str,
    project_context: dict[str, Any] | None = None,
    *,
    cancel_token: Any = None,
    telemetry: list[Any] | None = None,
) -> PlanningState:
    return {
        "request_id": request_id,
        "user_input": user_input,
        "project_context": dict(project_context or {}),
        "cancel_token": cancel_token,
        "understanding": None,
        "plan": None,
        "subtasks": [],
        "enqueued": 0,
        "telemetry": telemetry if telemetry is not None else [],
    }
