"""Experience and insight records shared by stores, engine and API."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from agent_coordinator.errors import InsightTransitionError


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class ExperienceType(str, Enum):
    SUBTASK_EXECUTION = "SUBTASK_EXECUTION"
    PROJECT_ANALYSIS_ORCHESTRATION = "PROJECT_ANALYSIS_ORCHESTRATION"
    AI_PROMPT_EXECUTION = "AI_PROMPT_EXECUTION"
    ERROR_RECOVERY_ATTEMPT = "ERROR_RECOVERY_ATTEMPT"
    REPOSITORY_ANALYSIS = "REPOSITORY_ANALYSIS"
    SYSTEM_HEALTH_EVENT = "SYSTEM_HEALTH_EVENT"


class OutcomeStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    PARTIAL_SUCCESS = "PARTIAL_SUCCESS"
    SKIPPED = "SKIPPED"
    IN_PROGRESS = "IN_PROGRESS"
    TIMED_OUT = "TIMED_OUT"


class RecoveryOutcome(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    NOT_ATTEMPTED = "NOT_ATTEMPTED"
    ESCALATED = "ESCALATED"


class InsightType(str, Enum):
    PROMPT_EFFECTIVENESS = "PROMPT_EFFECTIVENESS"
    ERROR_FREQUENCY_PATTERN = "ERROR_FREQUENCY_PATTERN"
    TASK_DURATION_ANOMALY = "TASK_DURATION_ANOMALY"
    RECOVERY_STRATEGY_SUCCESS_RATE = "RECOVERY_STRATEGY_SUCCESS_RATE"
    RESOURCE_USAGE_PATTERN = "RESOURCE_USAGE_PATTERN"


class InsightStatus(str, Enum):
    NEW = "NEW"
    VALIDATED = "VALIDATED"
    ACTION_SUGGESTED = "ACTION_SUGGESTED"
    APPLIED = "APPLIED"
    REJECTED = "REJECTED"
    STALE = "STALE"


class InsightAction(str, Enum):
    SUGGEST_PROMPT_MODIFICATION = "SUGGEST_PROMPT_MODIFICATION"
    FLAG_PROMPT_FOR_REVIEW = "FLAG_PROMPT_FOR_REVIEW"
    ADJUST_RECOVERY_STRATEGY_WEIGHT = "ADJUST_RECOVERY_STRATEGY_WEIGHT"
    FLAG_TASK_TYPE_FOR_REVIEW = "FLAG_TASK_TYPE_FOR_REVIEW"
    RECOMMEND_PARAMETER_TUNING = "RECOMMEND_PARAMETER_TUNING"
    IDENTIFY_BOTTLENECK = "IDENTIFY_BOTTLENECK"
    UPDATE_INTERNAL_KNOWLEDGE_BASE = "UPDATE_INTERNAL_KNOWLEDGE_BASE"


class ValidationMethod(str, Enum):
    AUTOMATED_STATISTICAL = "AUTOMATED_STATISTICAL"
    HEURISTIC_CHECK = "HEURISTIC_CHECK"
    HUMAN_REVIEW = "HUMAN_REVIEW"


class ValidationResult(str, Enum):
    CONFIRMED_VALID = "CONFIRMED_VALID"
    POTENTIALLY_VALID = "POTENTIALLY_VALID"
    REJECTED_INVALID = "REJECTED_INVALID"
    NEEDS_MORE_DATA = "NEEDS_MORE_DATA"


class StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


# Experiences


class ErrorClassification(StrictModel):
    classified_type: str
    severity: str
    original_error_code: str | None = None


class ExperienceContext(StrictModel):
    """Known context fields plus an opaque ``extensions`` bag for anything else."""

    project_name: str | None = None
    request_id: str | None = None
    session_id: str | None = None
    subtask_id: str | None = None
    subtask_title: str | None = None
    subtask_type: str | None = None
    agent_persona: str | None = None
    prompt_id: str | None = None
    prompt_hash: str | None = None
    model_name: str | None = None
    model_parameters_used: dict[str, Any] | None = None
    error_classification: ErrorClassification | None = None
    extensions: dict[str, Any] = Field(default_factory=dict)


class OutcomeError(StrictModel):
    code: str
    message: str
    severity: str | None = None
    stack_preview: str | None = None
    recovery_strategy_attempted: str | None = None
    recovery_attempt_outcome: RecoveryOutcome | None = None


class Artifact(StrictModel):
    type: str
    path: str | None = None
    identifier: str | None = None
    size_bytes: int | None = Field(default=None, ge=0)
    validation_status: Literal["passed", "failed", "not_applicable"] | None = None


class TokenUsage(StrictModel):
    input: int = Field(default=0, ge=0)
    output: int = Field(default=0, ge=0)
    total: int = Field(default=0, ge=0)


class OutcomeMetrics(StrictModel):
    tokens_used: TokenUsage | None = None
    code_quality_score: float | None = None
    test_coverage_achieved: float | None = None
    retry_attempts: int | None = Field(default=None, ge=0)
    custom: dict[str, float] = Field(default_factory=dict)


class ExperienceOutcome(StrictModel):
    status: OutcomeStatus
    details: str | None = None
    duration_ms: float | None = Field(default=None, ge=0)
    error: OutcomeError | None = None
    artifacts: list[Artifact] = Field(default_factory=list)
    metrics: OutcomeMetrics | None = None


class ExperienceMetadata(StrictModel):
    source_component: str
    system_version: str | None = None
    tags: list[str] = Field(default_factory=list)
    notes: str | None = None


class NewExperience(StrictModel):
    """Caller-side experience. Ids are never chosen by callers."""

    type: ExperienceType
    context: ExperienceContext = Field(default_factory=ExperienceContext)
    outcome: ExperienceOutcome
    metadata: ExperienceMetadata
    timestamp: datetime | None = None

    @field_validator("timestamp")
    @classmethod
    def _normalize_timestamp(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value) if value is not None else None


class ExperienceData(StrictModel):
    """A logged experience. Immutable once the store has assigned its id."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str
    timestamp: datetime
    type: ExperienceType
    context: ExperienceContext
    outcome: ExperienceOutcome
    metadata: ExperienceMetadata

    @field_validator("timestamp")
    @classmethod
    def _normalize_timestamp(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @classmethod
    def from_new(cls, experience: NewExperience, *, experience_id: str) -> ExperienceData:
        return cls(
            id=experience_id,
            timestamp=experience.timestamp or utc_now(),
            type=experience.type,
            context=experience.context.model_copy(deep=True),
            outcome=experience.outcome.model_copy(deep=True),
            metadata=experience.metadata.model_copy(deep=True),
        )


class ExperienceFilter(StrictModel):
    type: ExperienceType | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    project_name: str | None = None
    subtask_type: str | None = None
    outcome_status: OutcomeStatus | None = None
    tags: list[str] | None = None
    min_duration_ms: float | None = None
    prompt_id: str | None = None
    error_code: str | None = None
    ids: list[str] | None = None

    def matches(self, experience: ExperienceData) -> bool:
        if self.ids is not None and experience.id not in set(self.ids):
            return False
        if self.type is not None and experience.type != self.type:
            return False
        if self.start_date is not None and experience.timestamp < ensure_utc(self.start_date):
            return False
        if self.end_date is not None and experience.timestamp > ensure_utc(self.end_date):
            return False
        context = experience.context
        if self.project_name is not None and context.project_name != self.project_name:
            return False
        if self.subtask_type is not None and context.subtask_type != self.subtask_type:
            return False
        if self.prompt_id is not None and context.prompt_id != self.prompt_id:
            return False
        outcome = experience.outcome
        if self.outcome_status is not None and outcome.status != self.outcome_status:
            return False
        if self.min_duration_ms is not None:
            if outcome.duration_ms is None or outcome.duration_ms < self.min_duration_ms:
                return False
        if self.error_code is not None:
            if outcome.error is None or outcome.error.code != self.error_code:
                return False
        if self.tags:
            if not set(self.tags).intersection(experience.metadata.tags):
                return False
        return True


# Insights

LIFECYCLE_ORDER = (
    InsightStatus.NEW,
    InsightStatus.VALIDATED,
    InsightStatus.ACTION_SUGGESTED,
    InsightStatus.APPLIED,
)
TERMINAL_STATUSES = frozenset({InsightStatus.REJECTED, InsightStatus.STALE})


def validate_status_transition(current: InsightStatus, new: InsightStatus) -> None:
    """Lifecycle moves forward only; REJECTED and STALE are terminal exits."""
    if current == new:
        return
    if current in TERMINAL_STATUSES:
        raise InsightTransitionError(
            f"Insight status {current.value} is terminal; cannot move to {new.value}",
            context={"current": current.value, "requested": new.value},
        )
    if new in TERMINAL_STATUSES:
        return
    if LIFECYCLE_ORDER.index(new) < LIFECYCLE_ORDER.index(current):
        raise InsightTransitionError(
            f"Insight status cannot move backwards from {current.value} to {new.value}",
            context={"current": current.value, "requested": new.value},
        )


def advance_status(current: InsightStatus, target: InsightStatus) -> InsightStatus:
    """Return whichever of ``current``/``target`` is further along the lifecycle."""
    if current in TERMINAL_STATUSES or target in TERMINAL_STATUSES:
        return current
    if LIFECYCLE_ORDER.index(target) > LIFECYCLE_ORDER.index(current):
        return target
    return current


class FailureCodeFrequency(StrictModel):
    code: str
    frequency: int = Field(ge=0)


class ObservedMetrics(StrictModel):
    sample_count: int = Field(default=0, ge=0)
    success_rate: float | None = Field(default=None, ge=0.0, le=1.0)
    avg_duration_ms: float | None = None
    duration_std_ms: float | None = None
    max_duration_ms: float | None = None
    anomalous_count: int | None = None
    avg_tokens_used: float | None = None
    tokens_std: float | None = None
    common_failure_codes: list[FailureCodeFrequency] = Field(default_factory=list)


class PatternDetails(StrictModel):
    prompt_id: str | None = None
    model_name: str | None = None
    error_code: str | None = None
    error_severity: str | None = None
    subtask_type: str | None = None
    recovery_strategy: str | None = None
    observed_metrics: ObservedMetrics = Field(default_factory=ObservedMetrics)
    triggering_context: dict[str, Any] = Field(default_factory=dict)
    frequency: int = Field(default=0, ge=0)


class Recommendation(StrictModel):
    action: InsightAction
    parameters: dict[str, Any] = Field(default_factory=dict)
    justification: str
    expected_impact: str | None = None


class InsightEvaluation(StrictModel):
    times_applied: int = Field(default=0, ge=0)
    successful_applications: int = Field(default=0, ge=0)
    times_applied_failed: int = Field(default=0, ge=0)
    effectiveness_score: float | None = Field(default=None, ge=0.0, le=1.0)
    last_applied_at: datetime | None = None

    @model_validator(mode="after")
    def _check_counters(self) -> InsightEvaluation:
        if self.successful_applications + self.times_applied_failed > self.times_applied:
            raise ValueError(
                "successful_applications + times_applied_failed must not exceed times_applied"
            )
        return self

    def record_application(
        self, succeeded: bool, *, at: datetime | None = None
    ) -> InsightEvaluation:
        times_applied = self.times_applied + 1
        successful = self.successful_applications + (1 if succeeded else 0)
        failed = self.times_applied_failed + (0 if succeeded else 1)
        return InsightEvaluation(
            times_applied=times_applied,
            successful_applications=successful,
            times_applied_failed=failed,
            effectiveness_score=successful / times_applied,
            last_applied_at=at or utc_now(),
        )


class ValidationRecord(StrictModel):
    timestamp: datetime = Field(default_factory=utc_now)
    method: ValidationMethod
    result: ValidationResult
    notes: str | None = None


class LearnedInsight(StrictModel):
    id: str | None = None
    type: InsightType
    description: str
    confidence: float = Field(ge=0.0, le=1.0)
    discovered_at: datetime = Field(default_factory=utc_now)
    last_validated_at: datetime | None = None
    status: InsightStatus = InsightStatus.NEW
    derivation_key: str
    pattern_details: PatternDetails = Field(default_factory=PatternDetails)
    recommendation: Recommendation | None = None
    evaluation: InsightEvaluation | None = None
    validation_history: list[ValidationRecord] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def with_updates(self, updates: Mapping[str, Any]) -> LearnedInsight:
        """Return a re-validated copy with ``updates`` applied. The id never changes."""
        changes = {key: value for key, value in updates.items() if key != "id"}
        if "status" in changes:
            validate_status_transition(self.status, InsightStatus(changes["status"]))
        merged = self.model_dump()
        merged.update(changes)
        return LearnedInsight.model_validate(merged)

    def with_usage_recorded(self, succeeded: bool, *, at: datetime | None = None) -> LearnedInsight:
        evaluation = (self.evaluation or InsightEvaluation()).record_application(succeeded, at=at)
        status = self.status
        if status in (InsightStatus.VALIDATED, InsightStatus.ACTION_SUGGESTED):
            status = InsightStatus.APPLIED
        return self.model_copy(update={"evaluation": evaluation, "status": status}, deep=True)


InsightSortField = Literal["confidence", "discovered_at", "last_validated_at"]


class InsightFilter(StrictModel):
    type: InsightType | None = None
    min_confidence: float | None = None
    status: InsightStatus | None = None
    related_to_prompt_id: str | None = None
    derivation_key: str | None = None
    sort_by: InsightSortField = "discovered_at"
    sort_order: Literal["asc", "desc"] = "desc"

    def matches(self, insight: LearnedInsight) -> bool:
        if self.type is not None and insight.type != self.type:
            return False
        if self.status is not None and insight.status != self.status:
            return False
        if self.min_confidence is not None and insight.confidence < self.min_confidence:
            return False
        if (
            self.related_to_prompt_id is not None
            and insight.pattern_details.prompt_id != self.related_to_prompt_id
        ):
            return False
        if self.derivation_key is not None and insight.derivation_key != self.derivation_key:
            return False
        return True

    def sort_value(self, insight: LearnedInsight) -> Any:
        if self.sort_by == "confidence":
            return insight.confidence
        if self.sort_by == "last_validated_at":
            return insight.last_validated_at or datetime.min.replace(tzinfo=UTC)
        return insight.discovered_at
