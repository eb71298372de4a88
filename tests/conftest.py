from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterator
from datetime import datetime
from typing import Any

import pytest

from agent_coordinator.learning.engine import LearningConfig
from agent_coordinator.learning.models import (
    ExperienceContext,
    ExperienceMetadata,
    ExperienceOutcome,
    ExperienceType,
    NewExperience,
    OutcomeError,
    OutcomeMetrics,
    OutcomeStatus,
    TokenUsage,
)
from agent_coordinator.learning.system import LearningSystem
from agent_coordinator.llm import GenerationOptions
from agent_coordinator.storage.memory import (
    InMemoryAnalysisQueue,
    InMemoryExperienceStore,
    InMemoryInsightStore,
    InMemoryTaskQueue,
)


class ScriptedLLM:
    """Test-only LLM double that replays canned responses in call order."""

    def __init__(self, responses: list[Any], *, model_name: str = "test-model") -> None:
        self.model_name = model_name
        self._responses = list(responses)
        self._lock = threading.Lock()
        self.prompts: list[str] = []
        self.options: list[GenerationOptions] = []

    def generate_text(self, prompt: str, options: GenerationOptions) -> str:
        with self._lock:
            self.prompts.append(prompt)
            self.options.append(options)
            if not self._responses:
                raise AssertionError("ScriptedLLM ran out of responses")
            response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(prompt)
        return response


class SlowLLM:
    def __init__(self, delay_s: float, response: str = "{}") -> None:
        self.model_name = "slow-model"
        self.delay_s = delay_s
        self.response = response

    def generate_text(self, prompt: str, options: GenerationOptions) -> str:
        time.sleep(self.delay_s)
        return self.response


@pytest.fixture
def task_queue() -> InMemoryTaskQueue:
    return InMemoryTaskQueue()


@pytest.fixture
def experience_store() -> InMemoryExperienceStore:
    return InMemoryExperienceStore()


@pytest.fixture
def analysis_queue() -> InMemoryAnalysisQueue:
    return InMemoryAnalysisQueue()


@pytest.fixture
def insight_store() -> InMemoryInsightStore:
    return InMemoryInsightStore()


@pytest.fixture
def learning_config() -> LearningConfig:
    return LearningConfig(system_version="test-1.0")


@pytest.fixture
def learning(
    experience_store: InMemoryExperienceStore,
    analysis_queue: InMemoryAnalysisQueue,
    insight_store: InMemoryInsightStore,
    learning_config: LearningConfig,
) -> Iterator[LearningSystem]:
    system = LearningSystem(experience_store, analysis_queue, insight_store, learning_config)
    system.initialize()
    yield system
    system.shutdown()


@pytest.fixture
def make_experience() -> Callable[..., NewExperience]:
    def _make(
        *,
        type: ExperienceType = ExperienceType.AI_PROMPT_EXECUTION,
        status: OutcomeStatus = OutcomeStatus.SUCCESS,
        prompt_id: str | None = "request_understanding.v1",
        model_name: str | None = "test-model",
        subtask_type: str | None = None,
        project_name: str | None = "demo",
        duration_ms: float | None = 100.0,
        error_code: str | None = None,
        recovery_strategy: str | None = None,
        recovery_outcome: Any = None,
        tokens: int | None = None,
        tags: list[str] | None = None,
        timestamp: datetime | None = None,
    ) -> NewExperience:
        error = None
        if error_code is not None:
            error = OutcomeError(
                code=error_code,
                message=f"{error_code} happened",
                severity="HIGH",
                recovery_strategy_attempted=recovery_strategy,
                recovery_attempt_outcome=recovery_outcome,
            )
        metrics = None
        if tokens is not None:
            metrics = OutcomeMetrics(tokens_used=TokenUsage(total=tokens))
        return NewExperience(
            type=type,
            timestamp=timestamp,
            context=ExperienceContext(
                project_name=project_name,
                prompt_id=prompt_id,
                model_name=model_name,
                subtask_type=subtask_type,
            ),
            outcome=ExperienceOutcome(
                status=status,
                duration_ms=duration_ms,
                error=error,
                metrics=metrics,
            ),
            metadata=ExperienceMetadata(source_component="tests", tags=tags or []),
        )

    return _make


@pytest.fixture
def scripted_llm() -> type[ScriptedLLM]:
    return ScriptedLLM


@pytest.fixture
def slow_llm() -> type[SlowLLM]:
    return SlowLLM
