"""Error types shared by the planning pipeline, repository analysis and stores."""

from __future__ import annotations

from typing import Any

RAW_RESPONSE_PREVIEW_CHARS = 400


class CoordinatorError(Exception):
    """Base error carrying a machine-readable code and diagnostic context."""

    default_code = "COORDINATOR_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code or self.default_code
        self.context = dict(context or {})


class ResponseParseError(CoordinatorError):
    """LLM output for a stage was not JSON-shaped or failed to decode."""

    default_code = "RESPONSE_PARSE_ERROR"

    def __init__(self, stage: str, raw_response: str, reason: str) -> None:
        super().__init__(
            f"LLM response for {stage} was not valid JSON: {reason}",
            context={"stage": stage},
        )
        self.stage = stage
        self.raw_response = raw_response
        self.reason = reason

    @property
    def raw_preview(self) -> str:
        return self.raw_response[:RAW_RESPONSE_PREVIEW_CHARS]


class StageTimeoutError(CoordinatorError):
    default_code = "STAGE_TIMEOUT"

    def __init__(self, stage: str, timeout_s: float) -> None:
        super().__init__(
            f"Stage '{stage}' timed out after {timeout_s:.2f}s",
            context={"stage": stage, "timeout_s": timeout_s},
        )
        self.stage = stage
        self.timeout_s = timeout_s


class StageCancelledError(CoordinatorError):
    default_code = "STAGE_CANCELLED"

    def __init__(self, stage: str) -> None:
        super().__init__(f"Stage '{stage}' was cancelled", context={"stage": stage})
        self.stage = stage


class LLMRequestError(CoordinatorError):
    default_code = "LLM_REQUEST_ERROR"


class RepositoryAccessError(CoordinatorError):
    """Clone, listing or read failure against a repository."""

    default_code = "REPOSITORY_ACCESS_ERROR"

    def __init__(self, operation: str, target: str, reason: str) -> None:
        super().__init__(
            f"Repository {operation} failed for {target}: {reason}",
            context={"operation": operation, "target": target},
        )
        self.operation = operation
        self.target = target


class StoreError(CoordinatorError):
    default_code = "STORE_ERROR"


class StoreWriteError(StoreError):
    default_code = "STORE_WRITE_ERROR"


class StoreReadError(StoreError):
    default_code = "STORE_READ_ERROR"


class InsightTransitionError(CoordinatorError):
    default_code = "INSIGHT_TRANSITION_ERROR"


class LearningSystemError(CoordinatorError):
    default_code = "LEARNING_SYSTEM_ERROR"


class PlannerUnavailableError(CoordinatorError):
    """Planning was requested but no LLM client is configured."""

    default_code = "PLANNER_UNAVAILABLE"
