"""Explicitly constructed runtime: settings, LLM clients, stores, orchestrator, learning."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from agent_coordinator.config.settings import Settings, get_settings
from agent_coordinator.errors import CoordinatorError, PlannerUnavailableError, StageTimeoutError
from agent_coordinator.learning.engine import LearningConfig
from agent_coordinator.learning.models import (
    ExperienceContext,
    ExperienceMetadata,
    ExperienceOutcome,
    ExperienceType,
    NewExperience,
    OutcomeError,
    OutcomeStatus,
)
from agent_coordinator.learning.system import LearningSystem
from agent_coordinator.llm import LLMClient, build_llm_client
from agent_coordinator.orchestrator import (
    STAGE_REPOSITORY,
    CancellationToken,
    PlanningResult,
    RequestOrchestrator,
    StageTelemetry,
)
from agent_coordinator.repository import GitRepositoryAccess, RepositoryAccess, RepositoryAnalyzer
from agent_coordinator.storage.base import AnalysisQueue, ExperienceStore, InsightStore, TaskQueue
from agent_coordinator.storage.postgres import (
    PostgresAnalysisQueue,
    PostgresExperienceStore,
    PostgresInsightStore,
    PostgresTaskQueue,
)

logger = logging.getLogger(__name__)

SOURCE_COMPONENT = "RequestOrchestrator"

_TELEMETRY_STATUS = {
    "success": OutcomeStatus.SUCCESS,
    "partial_success": OutcomeStatus.PARTIAL_SUCCESS,
    "failure": OutcomeStatus.FAILURE,
    "timed_out": OutcomeStatus.TIMED_OUT,
}


@dataclass
class CoordinatorRuntime:
    settings: Settings
    task_queue: TaskQueue
    learning: LearningSystem
    orchestrator: RequestOrchestrator | None = None

    def handle_request(
        self,
        user_input: str,
        project_context: dict[str, Any] | None = None,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> PlanningResult:
        """Plan a request and report what happened to the learning loop."""
        if self.orchestrator is None:
            raise PlannerUnavailableError(
                "No LLM client configured. Set AGENT_COORDINATOR_OPENAI_API_KEY "
                "or OPENAI_API_KEY to enable planning."
            )

        context = dict(project_context or {})
        request_id = str(uuid4())
        telemetry: list[StageTelemetry] = []
        started_at = time.perf_counter()
        try:
            result = self.orchestrator.run_request(
                user_input,
                context,
                cancel_token=cancel_token,
                telemetry=telemetry,
                request_id=request_id,
            )
        except Exception as exc:
            timed_out = isinstance(exc, StageTimeoutError)
            status = OutcomeStatus.TIMED_OUT if timed_out else OutcomeStatus.FAILURE
            self._report(
                request_id=request_id,
                context=context,
                telemetry=telemetry,
                status=status,
                duration_ms=_duration_ms(started_at),
                subtask_count=0,
                error=exc,
            )
            raise

        self._report(
            request_id=request_id,
            context=context,
            telemetry=telemetry,
            status=OutcomeStatus.SUCCESS,
            duration_ms=_duration_ms(started_at),
            subtask_count=len(result.subtasks),
            error=None,
        )
        return result

    def close(self) -> None:
        self.learning.shutdown()

    def _report(
        self,
        *,
        request_id: str,
        context: dict[str, Any],
        telemetry: list[StageTelemetry],
        status: OutcomeStatus,
        duration_ms: float,
        subtask_count: int,
        error: Exception | None,
    ) -> None:
        project_name = context.get("project_name")
        project_name = str(project_name) if project_name else None
        model_name = None
        if self.orchestrator is not None:
            model_name = getattr(self.orchestrator.llm_client, "model_name", None)

        for record in telemetry:
            self.learning.record_experience(
                _stage_experience(record, request_id=request_id, project_name=project_name)
            )

        extensions: dict[str, Any] = {"subtask_count": subtask_count}
        if context.get("repository_url"):
            extensions["repository_url"] = str(context["repository_url"])
        self.learning.record_experience(
            NewExperience(
                type=ExperienceType.PROJECT_ANALYSIS_ORCHESTRATION,
                context=ExperienceContext(
                    project_name=project_name,
                    request_id=request_id,
                    model_name=model_name,
                    extensions=extensions,
                ),
                outcome=ExperienceOutcome(
                    status=status,
                    details=f"{subtask_count} sub-tasks enqueued",
                    duration_ms=duration_ms,
                    error=_outcome_error(error) if error is not None else None,
                ),
                metadata=ExperienceMetadata(source_component=SOURCE_COMPONENT, tags=["planning"]),
            )
        )


def _stage_experience(
    record: StageTelemetry, *, request_id: str | None, project_name: str | None
) -> NewExperience:
    status = _TELEMETRY_STATUS.get(record.status, OutcomeStatus.FAILURE)
    error = None
    if record.error_code is not None:
        error = OutcomeError(code=record.error_code, message=record.error_message or "")
    elif record.status == "partial_success" and record.error_message:
        error = OutcomeError(code="REPOSITORY_ACCESS_ERROR", message=record.error_message)

    if record.stage == STAGE_REPOSITORY:
        experience_type = ExperienceType.REPOSITORY_ANALYSIS
        parameters = None
    else:
        experience_type = ExperienceType.AI_PROMPT_EXECUTION
        parameters = {
            "temperature": record.temperature,
            "max_output_tokens": record.max_output_tokens,
        }

    extensions: dict[str, Any] = {"stage": record.stage, **record.details}
    if record.raw_response_chars is not None:
        extensions["raw_response_chars"] = record.raw_response_chars
    return NewExperience(
        type=experience_type,
        context=ExperienceContext(
            project_name=project_name,
            request_id=request_id,
            prompt_id=record.prompt_id,
            model_name=record.model_name,
            model_parameters_used=parameters,
            extensions=extensions,
        ),
        outcome=ExperienceOutcome(status=status, duration_ms=record.duration_ms, error=error),
        metadata=ExperienceMetadata(source_component=SOURCE_COMPONENT, tags=[record.stage]),
    )


def _outcome_error(exc: Exception) -> OutcomeError:
    code = exc.code if isinstance(exc, CoordinatorError) else type(exc).__name__
    return OutcomeError(code=code, message=str(exc)[:1000])


def build_runtime(
    settings: Settings | None = None,
    *,
    llm_client: LLMClient | None = None,
    code_llm_client: LLMClient | None = None,
    task_queue: TaskQueue | None = None,
    experience_store: ExperienceStore | None = None,
    analysis_queue: AnalysisQueue | None = None,
    insight_store: InsightStore | None = None,
    repository_access: RepositoryAccess | None = None,
    initialize: bool = True,
) -> CoordinatorRuntime:
    settings = settings or get_settings()
    if (
        task_queue is None
        or experience_store is None
        or analysis_queue is None
        or insight_store is None
    ):
        database_url = settings.resolved_database_url()
        if not database_url:
            raise RuntimeError(
                "Missing database URL. Set AGENT_COORDINATOR_DATABASE_URL "
                "or ORCHESTRATOR_DATABASE_URL, or pass every store explicitly."
            )
        task_queue = task_queue or PostgresTaskQueue(database_url)
        experience_store = experience_store or PostgresExperienceStore(database_url)
        analysis_queue = analysis_queue or PostgresAnalysisQueue(database_url)
        insight_store = insight_store or PostgresInsightStore(database_url)

    learning = LearningSystem(
        experience_store,
        analysis_queue,
        insight_store,
        LearningConfig.from_settings(settings),
    )

    chat_client = llm_client or build_llm_client(settings)
    orchestrator: RequestOrchestrator | None = None
    if chat_client is None:
        logger.warning("runtime event=planner_disabled reason=no_llm_client")
    else:
        code_client = code_llm_client or build_llm_client(settings, code_model=True) or chat_client
        analyzer = RepositoryAnalyzer(
            repository_access
            or GitRepositoryAccess(
                settings.repo_workdir or None,
                clone_timeout_s=settings.repo_clone_timeout_s,
                main_files_limit=settings.repo_main_files_limit,
                max_file_bytes=settings.repo_max_file_bytes,
            ),
            code_client,
            max_concurrency=settings.repo_analysis_max_concurrency,
        )
        orchestrator = RequestOrchestrator(
            chat_client,
            task_queue,
            repository_analyzer=analyzer,
            stage_timeout_s=settings.stage_timeout_s,
            default_persona=settings.default_persona,
        )

    if initialize:
        task_queue.migrate()
        learning.initialize()

    return CoordinatorRuntime(
        settings=settings,
        task_queue=task_queue,
        learning=learning,
        orchestrator=orchestrator,
    )


def _duration_ms(started_at: float) -> float:
    return round((time.perf_counter() - started_at) * 1000.0, 2)
