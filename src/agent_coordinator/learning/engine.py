"""Insight derivation from batches of logged experiences."""

from __future__ import annotations

import logging
import math
import threading
import time
from collections import Counter, defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from agent_coordinator.config.settings import Settings
from agent_coordinator.errors import InsightTransitionError, StoreError, StoreReadError
from agent_coordinator.learning.models import (
    TERMINAL_STATUSES,
    ExperienceData,
    ExperienceFilter,
    FailureCodeFrequency,
    InsightAction,
    InsightFilter,
    InsightStatus,
    InsightType,
    LearnedInsight,
    ObservedMetrics,
    OutcomeStatus,
    PatternDetails,
    Recommendation,
    RecoveryOutcome,
    ValidationMethod,
    ValidationRecord,
    ValidationResult,
    advance_status,
    ensure_utc,
    utc_now,
)

if TYPE_CHECKING:
    from agent_coordinator.storage.base import AnalysisQueue, ExperienceStore, InsightStore

logger = logging.getLogger(__name__)

DEQUEUE_CHUNK_SIZE = 100
_UPDATE_ATTEMPTS = 3
_COMMON_FAILURE_CODES = 3
_UNSETTLED_STATUSES = frozenset({OutcomeStatus.IN_PROGRESS, OutcomeStatus.SKIPPED})


@dataclass(frozen=True)
class LearningConfig:
    experience_retention_days: int = 30
    min_confidence_for_insight_action: float = 0.7
    periodic_analysis_interval_s: float = 3600.0
    max_experiences_per_analysis_batch: int = 100
    stale_insight_threshold_days: int = 90
    system_version: str = "0.1.0-dev"
    validated_confidence_threshold: float = 0.5
    min_samples_for_insight: int = 3
    confidence_prior_weight: float = 5.0
    low_success_rate_threshold: float = 0.6
    high_token_usage_threshold: float = 4000.0
    experience_log_workers: int = 2

    @classmethod
    def from_settings(cls, settings: Settings) -> LearningConfig:
        return cls(
            experience_retention_days=settings.experience_retention_days,
            min_confidence_for_insight_action=settings.min_confidence_for_insight_action,
            periodic_analysis_interval_s=settings.periodic_analysis_interval_s,
            max_experiences_per_analysis_batch=settings.max_experiences_per_analysis_batch,
            stale_insight_threshold_days=settings.stale_insight_threshold_days,
            system_version=settings.system_version,
            validated_confidence_threshold=settings.validated_confidence_threshold,
            min_samples_for_insight=settings.min_samples_for_insight,
            confidence_prior_weight=settings.confidence_prior_weight,
            low_success_rate_threshold=settings.low_success_rate_threshold,
            high_token_usage_threshold=settings.high_token_usage_threshold,
            experience_log_workers=settings.experience_log_workers,
        )


@dataclass
class AnalysisStats:
    experiences_processed: int = 0
    missing_experiences: int = 0
    insights_generated: int = 0
    insights_updated: int = 0
    insights_skipped: int = 0
    duration_ms: float = 0.0


@dataclass
class Observation:
    """One aggregated group from a single cycle, keyed for matching against stored insights."""

    type: InsightType
    derivation_key: str
    pattern: PatternDetails


# Confidence


def compute_confidence(
    sample_count: int,
    *,
    prior_weight: float,
    rate: float | None = None,
    coefficient_of_variation: float | None = None,
) -> float:
    """``n / (n + k)`` scaled by a stability term; never decreases as ``n`` grows."""
    if sample_count <= 0:
        return 0.0
    n = float(sample_count)
    confidence = n / (n + max(prior_weight, 0.0))
    if rate is not None:
        p = min(max(rate, 0.0), 1.0)
        confidence *= 1.0 - math.sqrt(p * (1.0 - p) / n)
    elif coefficient_of_variation is not None:
        confidence *= 1.0 / (1.0 + max(coefficient_of_variation, 0.0) / math.sqrt(n))
    return min(max(confidence, 0.0), 1.0)


# Aggregation helpers


def _mean_std(values: list[float]) -> tuple[float | None, float | None]:
    if not values:
        return None, None
    mean = sum(values) / len(values)
    variance = sum((value - mean) ** 2 for value in values) / len(values)
    return mean, math.sqrt(variance)


def _most_common(values: Iterable[str | None]) -> str | None:
    counts = Counter(value for value in values if value)
    if not counts:
        return None
    return counts.most_common(1)[0][0]


def _prompt_key(experience: ExperienceData) -> str:
    return f"{experience.context.prompt_id}|{experience.context.model_name or 'unknown'}"


def _tokens_total(experience: ExperienceData) -> float | None:
    metrics = experience.outcome.metrics
    if metrics is None or metrics.tokens_used is None:
        return None
    usage = metrics.tokens_used
    return float(usage.total or (usage.input + usage.output))


# Analyzers


def analyze_prompt_effectiveness(experiences: list[ExperienceData]) -> list[Observation]:
    groups: dict[str, list[ExperienceData]] = defaultdict(list)
    for experience in experiences:
        if experience.context.prompt_id and experience.outcome.status not in _UNSETTLED_STATUSES:
            groups[_prompt_key(experience)].append(experience)

    observations: list[Observation] = []
    for key, members in groups.items():
        successes = sum(1 for item in members if item.outcome.status == OutcomeStatus.SUCCESS)
        durations = [
            item.outcome.duration_ms for item in members if item.outcome.duration_ms is not None
        ]
        tokens = [value for value in (_tokens_total(item) for item in members) if value is not None]
        failure_codes = Counter(
            item.outcome.error.code
            for item in members
            if item.outcome.status != OutcomeStatus.SUCCESS and item.outcome.error is not None
        )
        avg_duration, duration_std = _mean_std(durations)
        avg_tokens, tokens_std = _mean_std(tokens)
        first = members[0].context
        observations.append(
            Observation(
                type=InsightType.PROMPT_EFFECTIVENESS,
                derivation_key=key,
                pattern=PatternDetails(
                    prompt_id=first.prompt_id,
                    model_name=first.model_name,
                    frequency=len(members),
                    observed_metrics=ObservedMetrics(
                        sample_count=len(members),
                        success_rate=successes / len(members),
                        avg_duration_ms=avg_duration,
                        duration_std_ms=duration_std,
                        avg_tokens_used=avg_tokens,
                        tokens_std=tokens_std,
                        common_failure_codes=[
                            FailureCodeFrequency(code=code, frequency=count)
                            for code, count in failure_codes.most_common(_COMMON_FAILURE_CODES)
                        ],
                    ),
                ),
            )
        )
    return observations


def analyze_error_frequency(experiences: list[ExperienceData]) -> list[Observation]:
    groups: dict[str, list[ExperienceData]] = defaultdict(list)
    for experience in experiences:
        if experience.outcome.error is not None:
            groups[experience.outcome.error.code].append(experience)

    observations: list[Observation] = []
    for code, members in groups.items():
        severity = _most_common(
            item.outcome.error.severity for item in members if item.outcome.error
        )
        triggering_context = {
            "subtask_type": _most_common(item.context.subtask_type for item in members),
            "agent_persona": _most_common(item.context.agent_persona for item in members),
            "source_component": _most_common(item.metadata.source_component for item in members),
        }
        observations.append(
            Observation(
                type=InsightType.ERROR_FREQUENCY_PATTERN,
                derivation_key=code,
                pattern=PatternDetails(
                    error_code=code,
                    error_severity=severity,
                    subtask_type=triggering_context["subtask_type"],
                    frequency=len(members),
                    triggering_context={k: v for k, v in triggering_context.items() if v},
                    observed_metrics=ObservedMetrics(sample_count=len(members)),
                ),
            )
        )
    return observations


def analyze_task_duration(experiences: list[ExperienceData]) -> list[Observation]:
    groups: dict[str, list[float]] = defaultdict(list)
    for experience in experiences:
        if experience.context.subtask_type and experience.outcome.duration_ms is not None:
            groups[experience.context.subtask_type].append(experience.outcome.duration_ms)

    observations: list[Observation] = []
    for subtask_type, durations in groups.items():
        mean, std = _mean_std(durations)
        if mean is None:
            continue
        anomalous = 0
        if len(durations) >= 2 and std:
            anomalous = sum(1 for value in durations if value > mean + 2 * std)
        observations.append(
            Observation(
                type=InsightType.TASK_DURATION_ANOMALY,
                derivation_key=subtask_type,
                pattern=PatternDetails(
                    subtask_type=subtask_type,
                    frequency=len(durations),
                    observed_metrics=ObservedMetrics(
                        sample_count=len(durations),
                        avg_duration_ms=mean,
                        duration_std_ms=std,
                        max_duration_ms=max(durations),
                        anomalous_count=anomalous,
                    ),
                ),
            )
        )
    return observations


def analyze_recovery_strategies(experiences: list[ExperienceData]) -> list[Observation]:
    groups: dict[str, list[RecoveryOutcome]] = defaultdict(list)
    for experience in experiences:
        error = experience.outcome.error
        if error is None or not error.recovery_strategy_attempted:
            continue
        if error.recovery_attempt_outcome in (None, RecoveryOutcome.NOT_ATTEMPTED):
            continue
        groups[error.recovery_strategy_attempted].append(error.recovery_attempt_outcome)

    observations: list[Observation] = []
    for strategy, outcomes in groups.items():
        successes = sum(1 for outcome in outcomes if outcome == RecoveryOutcome.SUCCESS)
        observations.append(
            Observation(
                type=InsightType.RECOVERY_STRATEGY_SUCCESS_RATE,
                derivation_key=strategy,
                pattern=PatternDetails(
                    recovery_strategy=strategy,
                    frequency=len(outcomes),
                    observed_metrics=ObservedMetrics(
                        sample_count=len(outcomes),
                        success_rate=successes / len(outcomes),
                    ),
                ),
            )
        )
    return observations


def analyze_resource_usage(experiences: list[ExperienceData]) -> list[Observation]:
    groups: dict[str, list[ExperienceData]] = defaultdict(list)
    for experience in experiences:
        if experience.context.prompt_id and _tokens_total(experience) is not None:
            groups[_prompt_key(experience)].append(experience)

    observations: list[Observation] = []
    for key, members in groups.items():
        tokens = [_tokens_total(item) or 0.0 for item in members]
        mean, std = _mean_std(tokens)
        first = members[0].context
        observations.append(
            Observation(
                type=InsightType.RESOURCE_USAGE_PATTERN,
                derivation_key=key,
                pattern=PatternDetails(
                    prompt_id=first.prompt_id,
                    model_name=first.model_name,
                    frequency=len(members),
                    observed_metrics=ObservedMetrics(
                        sample_count=len(members),
                        avg_tokens_used=mean,
                        tokens_std=std,
                    ),
                ),
            )
        )
    return observations


ANALYZERS: tuple[Callable[[list[ExperienceData]], list[Observation]], ...] = (
    analyze_prompt_effectiveness,
    analyze_error_frequency,
    analyze_task_duration,
    analyze_recovery_strategies,
    analyze_resource_usage,
)


# Merging


def _weighted(old: float | None, old_n: int, new: float | None, new_n: int) -> float | None:
    if old is None or old_n <= 0:
        return new
    if new is None or new_n <= 0:
        return old
    return (old * old_n + new * new_n) / (old_n + new_n)


def _pooled_std(
    old_mean: float | None,
    old_std: float | None,
    old_n: int,
    new_mean: float | None,
    new_std: float | None,
    new_n: int,
) -> float | None:
    if old_mean is None or old_std is None or old_n <= 0:
        return new_std
    if new_mean is None or new_std is None or new_n <= 0:
        return old_std
    total = old_n + new_n
    mean = (old_mean * old_n + new_mean * new_n) / total
    old_moment = old_n * (old_std**2 + old_mean**2)
    new_moment = new_n * (new_std**2 + new_mean**2)
    second_moment = (old_moment + new_moment) / total
    return math.sqrt(max(second_moment - mean**2, 0.0))


def merge_patterns(existing: PatternDetails, fresh: PatternDetails) -> PatternDetails:
    """Fold one cycle's observation into stored details, weighting by sample count."""
    old = existing.observed_metrics
    new = fresh.observed_metrics
    old_n, new_n = old.sample_count, new.sample_count

    codes: Counter[str] = Counter()
    for item in [*old.common_failure_codes, *new.common_failure_codes]:
        codes[item.code] += item.frequency

    max_duration = [
        value for value in (old.max_duration_ms, new.max_duration_ms) if value is not None
    ]
    anomalous = [value for value in (old.anomalous_count, new.anomalous_count) if value is not None]
    merged_metrics = ObservedMetrics(
        sample_count=old_n + new_n,
        success_rate=_weighted(old.success_rate, old_n, new.success_rate, new_n),
        avg_duration_ms=_weighted(old.avg_duration_ms, old_n, new.avg_duration_ms, new_n),
        duration_std_ms=_pooled_std(
            old.avg_duration_ms,
            old.duration_std_ms,
            old_n,
            new.avg_duration_ms,
            new.duration_std_ms,
            new_n,
        ),
        max_duration_ms=max(max_duration) if max_duration else None,
        anomalous_count=sum(anomalous) if anomalous else None,
        avg_tokens_used=_weighted(old.avg_tokens_used, old_n, new.avg_tokens_used, new_n),
        tokens_std=_pooled_std(
            old.avg_tokens_used,
            old.tokens_std,
            old_n,
            new.avg_tokens_used,
            new.tokens_std,
            new_n,
        ),
        common_failure_codes=[
            FailureCodeFrequency(code=code, frequency=count)
            for code, count in codes.most_common(_COMMON_FAILURE_CODES)
        ],
    )
    triggering_context = {**existing.triggering_context, **fresh.triggering_context}
    return fresh.model_copy(
        update={
            "observed_metrics": merged_metrics,
            "frequency": existing.frequency + fresh.frequency,
            "triggering_context": triggering_context,
            "error_severity": fresh.error_severity or existing.error_severity,
            "subtask_type": fresh.subtask_type or existing.subtask_type,
        },
        deep=True,
    )


class InsightEngine:
    """Turn queued experiences into insights and keep their lifecycle moving.

    Each cycle drains up to ``max_experiences_per_analysis_batch`` ids, runs
    every analyzer over the loaded experiences, and merges the resulting
    observations into the insight store by ``(type, derivation_key)``.
    """

    def __init__(
        self,
        experience_store: ExperienceStore,
        analysis_queue: AnalysisQueue,
        insight_store: InsightStore,
        config: LearningConfig | None = None,
    ) -> None:
        self.experience_store = experience_store
        self.analysis_queue = analysis_queue
        self.insight_store = insight_store
        self.config = config or LearningConfig()
        self._insight_discovered: list[Callable[[LearnedInsight], None]] = []
        self._analysis_completed: list[Callable[[AnalysisStats], None]] = []
        self._cycle_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def on_insight_discovered(self, callback: Callable[[LearnedInsight], None]) -> None:
        self._insight_discovered.append(callback)

    def on_analysis_completed(self, callback: Callable[[AnalysisStats], None]) -> None:
        self._analysis_completed.append(callback)

    def run_cycle(self, now: datetime | None = None) -> AnalysisStats:
        with self._cycle_lock:
            stats = self._run_cycle(ensure_utc(now) if now is not None else utc_now())
        self._emit(self._analysis_completed, stats, "on_analysis_completed")
        return stats

    def _run_cycle(self, now: datetime) -> AnalysisStats:
        started_at = time.perf_counter()
        stats = AnalysisStats()
        experiences = self._drain_queue(stats)
        if experiences:
            observations: list[Observation] = []
            for analyzer in ANALYZERS:
                observations.extend(analyzer(experiences))
            try:
                for observation in observations:
                    self._merge_observation(observation, now, stats)
            except Exception:
                # The batch was already dequeued; hand it back for the next cycle.
                self.analysis_queue.enqueue_batch([item.id for item in experiences])
                raise

        stats.duration_ms = round((time.perf_counter() - started_at) * 1000.0, 2)
        logger.info(
            "learning event=cycle_completed processed=%d missing=%d generated=%d "
            "updated=%d skipped=%d duration_ms=%.2f",
            stats.experiences_processed,
            stats.missing_experiences,
            stats.insights_generated,
            stats.insights_updated,
            stats.insights_skipped,
            stats.duration_ms,
        )
        return stats

    def _drain_queue(self, stats: AnalysisStats) -> list[ExperienceData]:
        remaining = self.config.max_experiences_per_analysis_batch
        experiences: list[ExperienceData] = []
        while remaining > 0:
            ids = self.analysis_queue.dequeue(min(DEQUEUE_CHUNK_SIZE, remaining))
            if not ids:
                break
            remaining -= len(ids)
            try:
                loaded = self.experience_store.find_experiences(
                    ExperienceFilter(ids=ids), limit=len(ids)
                )
            except StoreError:
                # Put the chunk back so it is retried next cycle.
                self.analysis_queue.enqueue_batch(ids)
                raise
            stats.experiences_processed += len(loaded)
            stats.missing_experiences += len(ids) - len(loaded)
            experiences.extend(loaded)
        return experiences

    def _merge_observation(
        self, observation: Observation, now: datetime, stats: AnalysisStats
    ) -> None:
        matches = self.insight_store.find_insights(
            InsightFilter(type=observation.type, derivation_key=observation.derivation_key),
            limit=1000,
        )
        active = [item for item in matches if item.status not in TERMINAL_STATUSES]
        if not active and any(item.status == InsightStatus.REJECTED for item in matches):
            stats.insights_skipped += 1
            return

        if active:
            current = active[0]
            pattern = merge_patterns(current.pattern_details, observation.pattern)
            description, recommendation, confidence = self._assess(observation.type, pattern)
            status = self._target_status(current.status, pattern, confidence, recommendation)
            record = self._validation_record(pattern, confidence, now)
            history = [*current.validation_history, record]
            if current.id is None:
                raise StoreReadError(
                    "Stored insight has no id",
                    context={"derivation_key": observation.derivation_key},
                )
            changes = {
                "description": description,
                "pattern_details": pattern,
                "recommendation": recommendation,
                "confidence": confidence,
                "last_validated_at": now,
                "validation_history": history,
            }
            if self._update_with_status(current.id, changes, status):
                stats.insights_updated += 1
            else:
                stats.insights_skipped += 1
            return

        pattern = observation.pattern
        if not self._is_noteworthy(observation.type, pattern):
            return
        description, recommendation, confidence = self._assess(observation.type, pattern)
        insight = LearnedInsight(
            type=observation.type,
            description=description,
            confidence=confidence,
            discovered_at=now,
            last_validated_at=now,
            status=self._target_status(InsightStatus.NEW, pattern, confidence, recommendation),
            derivation_key=observation.derivation_key,
            pattern_details=pattern,
            recommendation=recommendation,
            validation_history=[self._validation_record(pattern, confidence, now)],
        )
        insight_id = self.insight_store.save_insight(insight)
        stats.insights_generated += 1
        saved = insight.model_copy(update={"id": insight_id})
        logger.info(
            "learning event=insight_discovered insight_id=%s type=%s key=%s confidence=%.3f",
            insight_id,
            observation.type.value,
            observation.derivation_key,
            confidence,
        )
        self._emit(self._insight_discovered, saved, "on_insight_discovered")

    def _update_with_status(
        self, insight_id: str, changes: dict[str, Any], status: InsightStatus
    ) -> bool:
        """Write a merge result, re-basing the status if the insight moved meanwhile.

        Returns False when the insight disappeared or became terminal.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                updated = self.insight_store.update_insight(
                    insight_id, {**changes, "status": status}
                )
                return updated is not None
            except InsightTransitionError:
                fresh = self.insight_store.get_insight_by_id(insight_id)
                if fresh is None or fresh.is_terminal:
                    logger.info(
                        "learning event=insight_merge_skipped insight_id=%s reason=%s",
                        insight_id,
                        "deleted" if fresh is None else fresh.status.value,
                    )
                    return False
                if attempt >= _UPDATE_ATTEMPTS:
                    raise
                logger.info(
                    "learning event=insight_status_rebased insight_id=%s from=%s to=%s",
                    insight_id,
                    status.value,
                    advance_status(fresh.status, status).value,
                )
                status = advance_status(fresh.status, status)

    def _is_noteworthy(self, insight_type: InsightType, pattern: PatternDetails) -> bool:
        if insight_type == InsightType.RESOURCE_USAGE_PATTERN:
            avg_tokens = pattern.observed_metrics.avg_tokens_used or 0.0
            return avg_tokens > self.config.high_token_usage_threshold
        return True

    def _assess(
        self, insight_type: InsightType, pattern: PatternDetails
    ) -> tuple[str, Recommendation | None, float]:
        metrics = pattern.observed_metrics
        n = metrics.sample_count
        k = self.config.confidence_prior_weight

        if insight_type == InsightType.PROMPT_EFFECTIVENESS:
            rate = metrics.success_rate or 0.0
            description = (
                f"Prompt {pattern.prompt_id} on {pattern.model_name or 'unknown'} succeeded "
                f"in {rate:.0%} of {n} executions"
            )
            recommendation = None
            if rate < self.config.low_success_rate_threshold:
                recommendation = Recommendation(
                    action=InsightAction.SUGGEST_PROMPT_MODIFICATION,
                    parameters={
                        "prompt_id": pattern.prompt_id,
                        "model_name": pattern.model_name,
                        "success_rate": rate,
                        "common_failure_codes": [
                            item.code for item in metrics.common_failure_codes
                        ],
                    },
                    justification=(
                        f"Success rate {rate:.0%} is below the "
                        f"{self.config.low_success_rate_threshold:.0%} threshold"
                    ),
                    expected_impact="Higher first-attempt parse and task success",
                )
            return description, recommendation, compute_confidence(n, prior_weight=k, rate=rate)

        if insight_type == InsightType.ERROR_FREQUENCY_PATTERN:
            where = pattern.subtask_type or pattern.triggering_context.get("source_component")
            description = f"Error {pattern.error_code} observed {pattern.frequency} times"
            if where:
                description += f", mostly in {where}"
            recommendation = Recommendation(
                action=InsightAction.FLAG_TASK_TYPE_FOR_REVIEW,
                parameters={
                    "error_code": pattern.error_code,
                    "subtask_type": pattern.subtask_type,
                    "severity": pattern.error_severity,
                },
                justification=(
                    f"Recurring error {pattern.error_code} ({pattern.frequency} occurrences)"
                ),
            )
            return description, recommendation, compute_confidence(n, prior_weight=k)

        if insight_type == InsightType.TASK_DURATION_ANOMALY:
            mean = metrics.avg_duration_ms or 0.0
            std = metrics.duration_std_ms or 0.0
            anomalous = metrics.anomalous_count or 0
            description = (
                f"Sub-tasks of type {pattern.subtask_type} take {mean:.0f}ms on average "
                f"(std {std:.0f}ms, {anomalous} anomalous of {n})"
            )
            recommendation = None
            if anomalous > 0:
                recommendation = Recommendation(
                    action=InsightAction.RECOMMEND_PARAMETER_TUNING,
                    parameters={
                        "subtask_type": pattern.subtask_type,
                        "avg_duration_ms": mean,
                        "max_duration_ms": metrics.max_duration_ms,
                    },
                    justification=f"{anomalous} executions exceeded mean + 2 standard deviations",
                )
            cv = std / mean if mean > 0 else 0.0
            return (
                description,
                recommendation,
                compute_confidence(n, prior_weight=k, coefficient_of_variation=cv),
            )

        if insight_type == InsightType.RECOVERY_STRATEGY_SUCCESS_RATE:
            rate = metrics.success_rate or 0.0
            description = (
                f"Recovery strategy {pattern.recovery_strategy} succeeded in {rate:.0%} "
                f"of {n} attempts"
            )
            recommendation = Recommendation(
                action=InsightAction.ADJUST_RECOVERY_STRATEGY_WEIGHT,
                parameters={
                    "recovery_strategy": pattern.recovery_strategy,
                    "success_rate": rate,
                    "direction": "increase" if rate >= 0.5 else "decrease",
                },
                justification=f"Observed recovery success rate {rate:.0%}",
            )
            return description, recommendation, compute_confidence(n, prior_weight=k, rate=rate)

        avg_tokens = metrics.avg_tokens_used or 0.0
        description = (
            f"Prompt {pattern.prompt_id} on {pattern.model_name or 'unknown'} uses "
            f"{avg_tokens:.0f} tokens on average over {n} executions"
        )
        recommendation = None
        if avg_tokens > self.config.high_token_usage_threshold:
            recommendation = Recommendation(
                action=InsightAction.RECOMMEND_PARAMETER_TUNING,
                parameters={
                    "prompt_id": pattern.prompt_id,
                    "model_name": pattern.model_name,
                    "avg_tokens_used": avg_tokens,
                },
                justification=(
                    f"Average token usage exceeds {self.config.high_token_usage_threshold:.0f}"
                ),
            )
        cv = (metrics.tokens_std or 0.0) / avg_tokens if avg_tokens > 0 else 0.0
        return (
            description,
            recommendation,
            compute_confidence(n, prior_weight=k, coefficient_of_variation=cv),
        )

    def _target_status(
        self,
        current: InsightStatus,
        pattern: PatternDetails,
        confidence: float,
        recommendation: Recommendation | None,
    ) -> InsightStatus:
        if pattern.observed_metrics.sample_count < self.config.min_samples_for_insight:
            return current
        target = InsightStatus.NEW
        if confidence >= self.config.validated_confidence_threshold:
            target = InsightStatus.VALIDATED
        if (
            recommendation is not None
            and confidence >= self.config.min_confidence_for_insight_action
        ):
            target = InsightStatus.ACTION_SUGGESTED
        return advance_status(current, target)

    def _validation_record(
        self, pattern: PatternDetails, confidence: float, now: datetime
    ) -> ValidationRecord:
        n = pattern.observed_metrics.sample_count
        if n < self.config.min_samples_for_insight:
            result = ValidationResult.NEEDS_MORE_DATA
        elif confidence >= self.config.validated_confidence_threshold:
            result = ValidationResult.CONFIRMED_VALID
        else:
            result = ValidationResult.POTENTIALLY_VALID
        return ValidationRecord(
            timestamp=now,
            method=ValidationMethod.AUTOMATED_STATISTICAL,
            result=result,
            notes=f"samples={n} confidence={confidence:.3f}",
        )

    def mark_stale_insights(self, now: datetime | None = None) -> int:
        """Move insights not validated within the stale threshold to STALE."""
        current_time = ensure_utc(now) if now is not None else utc_now()
        cutoff = current_time - timedelta(days=self.config.stale_insight_threshold_days)
        page_size = 500
        offset = 0
        stale_ids: list[str] = []
        while True:
            page = self.insight_store.find_insights(
                InsightFilter(sort_by="discovered_at", sort_order="asc"),
                limit=page_size,
                offset=offset,
            )
            for insight in page:
                if insight.status in TERMINAL_STATUSES or insight.id is None:
                    continue
                reference = insight.last_validated_at or insight.discovered_at
                if ensure_utc(reference) < cutoff:
                    stale_ids.append(insight.id)
            if len(page) < page_size:
                break
            offset += page_size

        for insight_id in stale_ids:
            self.insight_store.update_insight(insight_id, {"status": InsightStatus.STALE})
        if stale_ids:
            logger.info("learning event=insights_marked_stale count=%d", len(stale_ids))
        return len(stale_ids)

    def increment_insight_usage(self, insight_id: str, succeeded: bool) -> LearnedInsight | None:
        return self.insight_store.increment_insight_usage(insight_id, succeeded)

    def start_periodic_analysis(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._periodic_loop, name="insight-engine", daemon=True
        )
        self._thread.start()
        logger.info(
            "learning event=periodic_started interval_s=%s",
            self.config.periodic_analysis_interval_s,
        )

    def stop_periodic_analysis(self, timeout_s: float | None = 5.0) -> None:
        self._stop_event.set()
        thread = self._thread
        self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout_s)
            logger.info("learning event=periodic_stopped")

    @property
    def periodic_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _periodic_loop(self) -> None:
        while not self._stop_event.wait(self.config.periodic_analysis_interval_s):
            try:
                self.run_cycle()
            except Exception as exc:  # noqa: BLE001
                logger.error("learning event=periodic_cycle_failed error=%s", exc, exc_info=True)

    @staticmethod
    def _emit(callbacks: list[Callable[[Any], None]], payload: Any, hook: str) -> None:
        for callback in list(callbacks):
            try:
                callback(payload)
            except Exception as exc:  # noqa: BLE001
                logger.error("learning event=hook_failed hook=%s error=%s", hook, exc)
