"""Request orchestration: understand, plan, break down, enqueue."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from agent_coordinator.errors import (
    CoordinatorError,
    ResponseParseError,
    StageCancelledError,
    StageTimeoutError,
)
from agent_coordinator.graph.state import initial_state
from agent_coordinator.graph.workflow import build_planning_graph
from agent_coordinator.llm import GenerationOptions, LLMClient
from agent_coordinator.parsing import parse_llm_json_response
from agent_coordinator.prompts import (
    PROMPT_IDS,
    build_request_understanding_prompt,
    build_strategic_plan_prompt,
    build_subtask_breakdown_prompt,
)
from agent_coordinator.repository import RepositoryAnalysis, RepositoryAnalyzer
from agent_coordinator.storage.base import TaskQueue
from agent_coordinator.storage.models import SubTask

logger = logging.getLogger(__name__)

STAGE_UNDERSTANDING = "request_understanding"
STAGE_PLAN = "strategic_plan"
STAGE_BREAKDOWN = "subtask_breakdown_list"
STAGE_REPOSITORY = "repository_analysis"

DEFAULT_STAGE_OPTIONS: dict[str, GenerationOptions] = {
    STAGE_UNDERSTANDING: GenerationOptions(temperature=0.3, max_output_tokens=1024),
    STAGE_PLAN: GenerationOptions(temperature=0.2, max_output_tokens=2048),
    STAGE_BREAKDOWN: GenerationOptions(temperature=0.2, max_output_tokens=2048),
}

_SUBTASK_LIST_KEYS = ("subtasks", "tasks")


class CancellationToken:
    """Cooperative cancellation checked before each stage starts."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class StageTelemetry:
    stage: str
    prompt_id: str | None = None
    model_name: str | None = None
    temperature: float | None = None
    max_output_tokens: int | None = None
    duration_ms: float = 0.0
    raw_response_chars: int | None = None
    status: str = "success"
    error_code: str | None = None
    error_message: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class PlanningResult:
    request_id: str
    subtasks: list[SubTask]
    telemetry: list[StageTelemetry]
    understanding: Any = None
    plan: Any = None


class RequestOrchestrator:
    """Drive a natural-language request through three LLM stages into the task queue.

    Stages run strictly in order and any failure aborts the rest, so nothing
    is enqueued unless every stage parsed. The orchestrator never logs
    experiences itself; callers read ``StageTelemetry`` records instead.
    """

    def __init__(
        self,
        llm_client: LLMClient,
        task_queue: TaskQueue,
        *,
        repository_analyzer: RepositoryAnalyzer | None = None,
        stage_timeout_s: float = 60.0,
        default_persona: str = "generalist",
        stage_options: dict[str, GenerationOptions] | None = None,
    ) -> None:
        if stage_timeout_s <= 0:
            raise ValueError("stage_timeout_s must be > 0")
        self.llm_client = llm_client
        self.task_queue = task_queue
        self.repository_analyzer = repository_analyzer
        self.stage_timeout_s = stage_timeout_s
        self.default_persona = default_persona
        self.stage_options = {**DEFAULT_STAGE_OPTIONS, **(stage_options or {})}
        self._graph = build_planning_graph(self)

    def understand_request(
        self,
        user_input: str,
        project_context: dict[str, Any] | None = None,
        *,
        cancel_token: CancellationToken | None = None,
        telemetry: list[StageTelemetry] | None = None,
    ) -> Any:
        context: dict[str, Any] = {"user_input": user_input, **(project_context or {})}
        repository_url = context.get("repository_url")
        if repository_url and context.get("analysis_needed_for_modification"):
            if self.repository_analyzer is None:
                logger.warning(
                    "coordinator event=repository_analysis_skipped reason=no_analyzer url=%s",
                    repository_url,
                )
            else:
                _check_cancelled(cancel_token, STAGE_REPOSITORY)
                analysis = self._analyze_repository(
                    self.repository_analyzer, str(repository_url), telemetry
                )
                context["preliminary_code_understanding"] = analysis.to_context()

        prompt = build_request_understanding_prompt(context)
        return self._run_stage(STAGE_UNDERSTANDING, prompt, cancel_token, telemetry)

    def develop_strategic_plan(
        self,
        understanding: Any,
        *,
        cancel_token: CancellationToken | None = None,
        telemetry: list[StageTelemetry] | None = None,
    ) -> Any:
        prompt = build_strategic_plan_prompt(understanding)
        return self._run_stage(STAGE_PLAN, prompt, cancel_token, telemetry)

    def breakdown_plan_into_subtasks(
        self,
        plan: Any,
        understanding: Any,
        *,
        cancel_token: CancellationToken | None = None,
        telemetry: list[StageTelemetry] | None = None,
    ) -> list[SubTask]:
        prompt = build_subtask_breakdown_prompt(plan, understanding)
        parsed = self._run_stage(STAGE_BREAKDOWN, prompt, cancel_token, telemetry)
        return self._coerce_subtasks(parsed)

    def process_user_request_to_tasks(
        self,
        user_input: str,
        project_context: dict[str, Any] | None = None,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> list[SubTask]:
        return self.run_request(user_input, project_context, cancel_token=cancel_token).subtasks

    def run_request(
        self,
        user_input: str,
        project_context: dict[str, Any] | None = None,
        *,
        cancel_token: CancellationToken | None = None,
        telemetry: list[StageTelemetry] | None = None,
        request_id: str | None = None,
    ) -> PlanningResult:
        """Run the full pipeline. ``telemetry`` collects stage records even on failure."""
        records = telemetry if telemetry is not None else []
        resolved_id = request_id or str(uuid4())
        state = initial_state(
            resolved_id,
            user_input,
            project_context,
            cancel_token=cancel_token,
            telemetry=records,
        )
        final_state = self._graph.invoke(state)
        subtasks = list(final_state.get("subtasks", []))
        logger.info(
            "coordinator event=request_planned request_id=%s subtasks=%d",
            resolved_id,
            len(subtasks),
        )
        return PlanningResult(
            request_id=resolved_id,
            subtasks=subtasks,
            telemetry=records,
            understanding=final_state.get("understanding"),
            plan=final_state.get("plan"),
        )

    def get_next_task(self) -> SubTask | None:
        return self.task_queue.dequeue_one()

    def _run_stage(
        self,
        stage: str,
        prompt: str,
        cancel_token: CancellationToken | None,
        telemetry: list[StageTelemetry] | None,
    ) -> Any:
        _check_cancelled(cancel_token, stage)
        options = self.stage_options[stage]
        record = StageTelemetry(
            stage=stage,
            prompt_id=PROMPT_IDS.get(stage),
            model_name=getattr(self.llm_client, "model_name", None),
            temperature=options.temperature,
            max_output_tokens=options.max_output_tokens,
        )
        started_at = time.perf_counter()
        try:
            raw = self._generate_with_timeout(stage, prompt, options)
            record.raw_response_chars = len(raw)
            parsed = parse_llm_json_response(raw, stage)
        except Exception as exc:
            record.status = "timed_out" if isinstance(exc, StageTimeoutError) else "failure"
            record.error_code = _error_code(exc)
            record.error_message = str(exc)
            logger.warning(
                "coordinator event=stage_failed stage=%s status=%s error=%s",
                stage,
                record.status,
                exc,
            )
            raise
        finally:
            record.duration_ms = _duration_ms(started_at)
            if telemetry is not None:
                telemetry.append(record)

        logger.info(
            "coordinator event=stage_completed stage=%s duration_ms=%.2f chars=%d",
            stage,
            record.duration_ms,
            record.raw_response_chars or 0,
        )
        return parsed

    def _generate_with_timeout(self, stage: str, prompt: str, options: GenerationOptions) -> str:
        # No context manager: leaving it would block on a hung LLM call.
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"stage-{stage}")
        try:
            future = pool.submit(self.llm_client.generate_text, prompt, options)
            try:
                return future.result(timeout=self.stage_timeout_s)
            except FutureTimeoutError as exc:
                if future.done():
                    raise
                future.cancel()
                raise StageTimeoutError(stage, self.stage_timeout_s) from exc
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

    def _analyze_repository(
        self,
        analyzer: RepositoryAnalyzer,
        repository_url: str,
        telemetry: list[StageTelemetry] | None,
    ) -> RepositoryAnalysis:
        record = StageTelemetry(
            stage=STAGE_REPOSITORY,
            prompt_id=PROMPT_IDS["code_analysis"],
            model_name=getattr(analyzer.llm_client, "model_name", None),
            details={"repository_url": repository_url},
        )
        started_at = time.perf_counter()
        try:
            analysis = analyzer.analyze(repository_url)
        except Exception as exc:
            record.status = "failure"
            record.error_code = _error_code(exc)
            record.error_message = str(exc)
            raise
        finally:
            record.duration_ms = _duration_ms(started_at)
            if telemetry is not None:
                telemetry.append(record)

        record.details.update(
            {
                "partial_analysis": analysis.partial_analysis,
                "files_analyzed": len(analysis.analyses),
            }
        )
        if analysis.partial_analysis:
            record.status = "partial_success"
            record.error_message = analysis.error
        return analysis

    def _coerce_subtasks(self, parsed: Any) -> list[SubTask]:
        items = parsed
        if isinstance(parsed, dict):
            for key in _SUBTASK_LIST_KEYS:
                if isinstance(parsed.get(key), list):
                    items = parsed[key]
                    break
        if not isinstance(items, list):
            raise ResponseParseError(
                STAGE_BREAKDOWN,
                repr(parsed)[:2000],
                f"expected a JSON array of sub-tasks, got {type(parsed).__name__}",
            )

        subtasks: list[SubTask] = []
        for index, item in enumerate(items):
            if not isinstance(item, dict):
                raise ResponseParseError(
                    STAGE_BREAKDOWN,
                    repr(parsed)[:2000],
                    f"sub-task at index {index} is not an object",
                )
            payload = dict(item)
            persona = (
                payload.get("persona") or payload.get("assigned_persona") or self.default_persona
            )
            payload["persona"] = str(persona)
            payload["title"] = str(payload.get("title") or payload.get("description") or "")
            if payload.get("subtask_id") is not None:
                payload["subtask_id"] = str(payload["subtask_id"])
            subtasks.append(SubTask.model_validate(payload))
        return subtasks


def _check_cancelled(cancel_token: CancellationToken | None, stage: str) -> None:
    if cancel_token is not None and cancel_token.cancelled:
        logger.info("coordinator event=stage_cancelled stage=%s", stage)
        raise StageCancelledError(stage)


def _error_code(exc: Exception) -> str:
    return exc.code if isinstance(exc, CoordinatorError) else type(exc).__name__


def _duration_ms(started_at: float) -> float:
    return round((time.perf_counter() - started_at) * 1000.0, 2)
