from __future__ import annotations

import json
from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from agent_coordinator.api.main import create_app
from agent_coordinator.config.settings import Settings
from agent_coordinator.errors import LLMRequestError
from agent_coordinator.runtime import CoordinatorRuntime, build_runtime
from agent_coordinator.storage.memory import (
    InMemoryAnalysisQueue,
    InMemoryExperienceStore,
    InMemoryInsightStore,
    InMemoryTaskQueue,
)

UNDERSTANDING = json.dumps({"parsed_intent": "Build a todo API"})
PLAN = json.dumps({"project_title": "Todo API"})
BREAKDOWN = json.dumps(
    [
        {"subtask_id": "T1", "title": "Create schema", "persona": "backend"},
        {"subtask_id": "T2", "title": "Write tests", "persona": "qa"},
    ]
)


def _make_runtime(llm, *, provider: str = "openai") -> CoordinatorRuntime:
    settings = Settings(database_url="", openai_api_key="", llm_provider=provider)
    return build_runtime(
        settings,
        llm_client=llm,
        code_llm_client=llm,
        task_queue=InMemoryTaskQueue(),
        experience_store=InMemoryExperienceStore(),
        analysis_queue=InMemoryAnalysisQueue(),
        insight_store=InMemoryInsightStore(),
    )


@pytest.fixture
def make_client() -> Iterator:
    runtimes: list[CoordinatorRuntime] = []

    def _make(llm=None, *, provider: str = "openai") -> TestClient:
        runtime = _make_runtime(llm, provider=provider)
        runtimes.append(runtime)
        return TestClient(create_app(runtime=runtime))

    yield _make
    for runtime in runtimes:
        runtime.close()


def _experience_payload(**outcome) -> dict[str, object]:
    return {
        "type": "AI_PROMPT_EXECUTION",
        "context": {"prompt_id": "p1", "model_name": "m", "project_name": "demo"},
        "outcome": {"status": "SUCCESS", "duration_ms": 120.0, **outcome},
        "metadata": {"source_component": "executor", "tags": ["api"]},
    }


def test_health(make_client, scripted_llm) -> None:
    client = make_client(scripted_llm([]))

    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_plan_request_then_pull_tasks(make_client, scripted_llm) -> None:
    client = make_client(scripted_llm([UNDERSTANDING, PLAN, BREAKDOWN]))

    response = client.post(
        "/requests",
        json={"user_input": "Build a todo API", "project_context": {"project_name": "todo"}},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["count"] == 2
    assert [item["subtask_id"] for item in body["subtasks"]] == ["T1", "T2"]
    assert client.get("/tasks/size").json() == {"size": 2}

    first = client.post("/tasks/next")
    assert first.status_code == 200
    assert first.json()["persona"] == "backend"
    assert client.post("/tasks/next").json()["persona"] == "qa"
    assert client.post("/tasks/next").status_code == 404


def test_plan_request_parse_error_is_bad_gateway(make_client, scripted_llm) -> None:
    client = make_client(scripted_llm(["sorry, no plan"]))

    response = client.post("/requests", json={"user_input": "Build a todo API"})

    assert response.status_code == 502
    detail = response.json()["detail"]
    assert detail["stage"] == "request_understanding"
    assert detail["code"] == "RESPONSE_PARSE_ERROR"
    assert client.get("/tasks/size").json() == {"size": 0}


def test_plan_request_llm_error_is_bad_gateway(make_client, scripted_llm) -> None:
    client = make_client(scripted_llm([LLMRequestError("upstream 500")]))

    response = client.post("/requests", json={"user_input": "Build a todo API"})

    assert response.status_code == 502


def test_plan_request_without_planner_is_unavailable(make_client) -> None:
    client = make_client(None, provider="disabled")

    response = client.post("/requests", json={"user_input": "Build a todo API"})

    assert response.status_code == 503


def test_plan_request_validates_input(make_client, scripted_llm) -> None:
    client = make_client(scripted_llm([]))

    response = client.post("/requests", json={"user_input": ""})

    assert response.status_code == 422


def test_log_and_fetch_experience(make_client, scripted_llm) -> None:
    client = make_client(scripted_llm([]))

    created = client.post("/experiences", json=_experience_payload())
    assert created.status_code == 201
    experience_id = created.json()["id"]

    fetched = client.get(f"/experiences/{experience_id}")
    assert fetched.status_code == 200
    assert fetched.json()["id"] == experience_id
    assert fetched.json()["context"]["prompt_id"] == "p1"

    listed = client.get("/experiences", params={"prompt_id": "p1", "outcome_status": "SUCCESS"})
    assert [item["id"] for item in listed.json()] == [experience_id]
    assert client.get("/experiences/unknown").status_code == 404


def test_log_experience_rejects_unknown_fields(make_client, scripted_llm) -> None:
    client = make_client(scripted_llm([]))
    payload = _experience_payload()
    payload["id"] = "caller-chosen"

    response = client.post("/experiences", json=payload)

    assert response.status_code == 422


def test_learning_cycle_and_insight_usage(make_client, scripted_llm) -> None:
    client = make_client(scripted_llm([]))
    for _ in range(3):
        client.post("/experiences", json=_experience_payload())
    for _ in range(3):
        client.post(
            "/experiences",
            json=_experience_payload(
                status="FAILURE", error={"code": "STAGE_TIMEOUT", "message": "slow"}
            ),
        )

    stats = client.post("/learning/process")
    assert stats.status_code == 200
    assert stats.json()["experiences_processed"] == 6
    assert stats.json()["insights_generated"] == 2

    insights = client.get(
        "/insights",
        params={"type": "PROMPT_EFFECTIVENESS", "sort_by": "confidence", "sort_order": "desc"},
    )
    assert insights.status_code == 200
    assert len(insights.json()) == 1
    insight = insights.json()[0]
    assert insight["pattern_details"]["observed_metrics"]["success_rate"] == pytest.approx(0.5)

    usage = client.post(f"/insights/{insight['id']}/usage", json={"succeeded": False})
    assert usage.status_code == 200
    assert usage.json()["evaluation"]["times_applied_failed"] == 1
    missing = client.post("/insights/unknown/usage", json={"succeeded": True})
    assert missing.status_code == 404
