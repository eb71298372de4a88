"""FastAPI app entrypoint for agent-coordinator."""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any, Literal

from fastapi import FastAPI, HTTPException, Query, Request
from pydantic import BaseModel, Field

from agent_coordinator.config.settings import Settings, get_settings
from agent_coordinator.errors import (
    LLMRequestError,
    PlannerUnavailableError,
    ResponseParseError,
    StageCancelledError,
    StageTimeoutError,
    StoreError,
)
from agent_coordinator.learning.models import (
    ExperienceData,
    ExperienceFilter,
    ExperienceType,
    InsightFilter,
    InsightStatus,
    InsightType,
    LearnedInsight,
    NewExperience,
    OutcomeStatus,
)
from agent_coordinator.runtime import CoordinatorRuntime, build_runtime


class PlanRequest(BaseModel):
    user_input: str = Field(min_length=1)
    project_context: dict[str, Any] = Field(default_factory=dict)


class PlanResponse(BaseModel):
    request_id: str
    count: int
    subtasks: list[dict[str, Any]]


class UsageRequest(BaseModel):
    succeeded: bool


def _ensure_runtime_state(
    app: FastAPI,
    *,
    settings: Settings,
    runtime_override: CoordinatorRuntime | None,
) -> None:
    if not hasattr(app.state, "runtime"):
        app.state.runtime = runtime_override or build_runtime(settings)
    if not hasattr(app.state, "settings"):
        app.state.settings = settings


def create_app(
    *,
    runtime: CoordinatorRuntime | None = None,
    settings_override: Settings | None = None,
) -> FastAPI:
    settings = settings_override or (runtime.settings if runtime else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _ensure_runtime_state(app, settings=settings, runtime_override=runtime)
        yield
        app.state.runtime.close()

    app_lifespan = lifespan if runtime is None else None
    app = FastAPI(title=settings.app_name, lifespan=app_lifespan)

    # Keep test paths reliable when lifespan is not executed by the client.
    if runtime is not None:
        _ensure_runtime_state(app, settings=settings, runtime_override=runtime)

    def _get_runtime(request: Request) -> CoordinatorRuntime:
        if not hasattr(request.app.state, "runtime"):
            _ensure_runtime_state(request.app, settings=settings, runtime_override=runtime)
        return request.app.state.runtime

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.app_name}

    @app.post("/requests", response_model=PlanResponse)
    def plan_request(payload: PlanRequest, request: Request) -> PlanResponse:
        coordinator = _get_runtime(request)
        try:
            result = coordinator.handle_request(payload.user_input, payload.project_context)
        except PlannerUnavailableError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        except ResponseParseError as exc:
            raise HTTPException(
                status_code=502,
                detail={"stage": exc.stage, "reason": exc.reason, "code": exc.code},
            ) from exc
        except StageTimeoutError as exc:
            raise HTTPException(
                status_code=504,
                detail={"stage": exc.stage, "timeout_s": exc.timeout_s, "code": exc.code},
            ) from exc
        except StageCancelledError as exc:
            raise HTTPException(status_code=409, detail={"stage": exc.stage}) from exc
        except LLMRequestError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        except StoreError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc

        return PlanResponse(
            request_id=result.request_id,
            count=len(result.subtasks),
            subtasks=[item.payload() for item in result.subtasks],
        )

    @app.post("/tasks/next")
    def next_task(request: Request) -> dict[str, Any]:
        subtask = _get_runtime(request).task_queue.dequeue_one()
        if subtask is None:
            raise HTTPException(status_code=404, detail="Task queue is empty")
        return subtask.payload()

    @app.get("/tasks/size")
    def task_queue_size(request: Request) -> dict[str, int]:
        return {"size": _get_runtime(request).task_queue.size()}

    @app.post("/experiences", status_code=201)
    def log_experience(payload: NewExperience, request: Request) -> dict[str, str]:
        try:
            experience_id = _get_runtime(request).learning.log_experience(payload)
        except StoreError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return {"id": experience_id}

    @app.get("/experiences/{experience_id}", response_model=ExperienceData)
    def get_experience(experience_id: str, request: Request) -> ExperienceData:
        record = _get_runtime(request).learning.experience_store.get_experience_by_id(
            experience_id
        )
        if record is None:
            raise HTTPException(status_code=404, detail="Experience not found")
        return record

    @app.get("/experiences", response_model=list[ExperienceData])
    def list_experiences(
        request: Request,
        type: ExperienceType | None = None,
        outcome_status: OutcomeStatus | None = None,
        prompt_id: str | None = None,
        project_name: str | None = None,
        limit: int = Query(default=100, ge=1, le=1000),
        offset: int = Query(default=0, ge=0),
    ) -> list[ExperienceData]:
        experience_filter = ExperienceFilter(
            type=type,
            outcome_status=outcome_status,
            prompt_id=prompt_id,
            project_name=project_name,
        )
        store = _get_runtime(request).learning.experience_store
        return store.find_experiences(experience_filter, limit=limit, offset=offset)

    @app.get("/insights", response_model=list[LearnedInsight])
    def list_insights(
        request: Request,
        type: InsightType | None = None,
        status: InsightStatus | None = None,
        min_confidence: float | None = Query(default=None, ge=0.0, le=1.0),
        prompt_id: str | None = None,
        sort_by: Literal["confidence", "discovered_at", "last_validated_at"] = "discovered_at",
        sort_order: Literal["asc", "desc"] = "desc",
        limit: int = Query(default=100, ge=1, le=1000),
        offset: int = Query(default=0, ge=0),
    ) -> list[LearnedInsight]:
        insight_filter = InsightFilter(
            type=type,
            status=status,
            min_confidence=min_confidence,
            related_to_prompt_id=prompt_id,
            sort_by=sort_by,
            sort_order=sort_order,
        )
        return _get_runtime(request).learning.get_learned_insights(
            insight_filter, limit=limit, offset=offset
        )

    @app.post("/insights/{insight_id}/usage", response_model=LearnedInsight)
    def record_insight_usage(
        insight_id: str, payload: UsageRequest, request: Request
    ) -> LearnedInsight:
        updated = _get_runtime(request).learning.increment_insight_usage(
            insight_id, payload.succeeded
        )
        if updated is None:
            raise HTTPException(status_code=404, detail="Insight not found")
        return updated

    @app.post("/learning/process")
    def process_experiences(request: Request) -> dict[str, Any]:
        stats = _get_runtime(request).learning.process_experiences()
        return asdict(stats)

    return app


app = create_app()
