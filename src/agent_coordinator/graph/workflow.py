"""LangGraph assembly of the understand, plan, breakdown and enqueue stages."""

from __future__ import annotations

from typing import TYPE_CHECKING

from langgraph.graph import END, StateGraph

from agent_coordinator.graph.state import PlanningState

if TYPE_CHECKING:
    from agent_coordinator.orchestrator import RequestOrchestrator


def build_planning_graph(orchestrator: RequestOrchestrator):
    """Compile a linear graph. A node raising aborts the run before later nodes."""

    def understand(state: PlanningState) -> PlanningState:
        understanding = orchestrator.understand_request(
            state.get("user_input", ""),
            state.get("project_context", {}),
            cancel_token=state.get("cancel_token"),
            telemetry=state.get("telemetry"),
        )
        return {"understanding": understanding}

    def plan(state: PlanningState) -> PlanningState:
        strategic_plan = orchestrator.develop_strategic_plan(
            state.get("understanding"),
            cancel_token=state.get("cancel_token"),
            telemetry=state.get("telemetry"),
        )
        return {"plan": strategic_plan}

    def breakdown(state: PlanningState) -> PlanningState:
        subtasks = orchestrator.breakdown_plan_into_subtasks(
            state.get("plan"),
            state.get("understanding"),
            cancel_token=state.get("cancel_token"),
            telemetry=state.get("telemetry"),
        )
        return {"subtasks": subtasks}

    def enqueue(state: PlanningState) -> PlanningState:
        subtasks = list(state.get("subtasks", []))
        orchestrator.task_queue.enqueue_many(subtasks)
        return {"enqueued": len(subtasks)}

    graph = StateGraph(PlanningState)

    graph.add_node("understand_request", understand)
    graph.add_node("develop_plan", plan)
    graph.add_node("breakdown_subtasks", breakdown)
    graph.add_node("enqueue_subtasks", enqueue)

    graph.set_entry_point("understand_request")
    graph.add_edge("understand_request", "develop_plan")
    graph.add_edge("develop_plan", "breakdown_subtasks")
    graph.add_edge("breakdown_subtasks", "enqueue_subtasks")
    graph.add_edge("enqueue_subtasks", END)

    return graph.compile()
