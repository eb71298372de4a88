from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta

import pytest
from pydantic import ValidationError

from agent_coordinator.errors import InsightTransitionError
from agent_coordinator.learning.models import (
    InsightEvaluation,
    InsightFilter,
    InsightStatus,
    InsightType,
    LearnedInsight,
    PatternDetails,
)
from agent_coordinator.storage.memory import InMemoryInsightStore

NOW = datetime(2026, 3, 1, tzinfo=UTC)


def _insight(
    *,
    key: str = "p1|m",
    confidence: float = 0.6,
    status: InsightStatus = InsightStatus.NEW,
    discovered_at: datetime = NOW,
    prompt_id: str | None = "p1",
) -> LearnedInsight:
    return LearnedInsight(
        type=InsightType.PROMPT_EFFECTIVENESS,
        description="Prompt p1 on m succeeded in 60% of 10 executions",
        confidence=confidence,
        status=status,
        discovered_at=discovered_at,
        derivation_key=key,
        pattern_details=PatternDetails(prompt_id=prompt_id, model_name="m"),
    )


def test_save_assigns_id_and_get_returns_copy(insight_store: InMemoryInsightStore) -> None:
    insight_id = insight_store.save_insight(_insight())

    stored = insight_store.get_insight_by_id(insight_id)
    assert stored is not None
    assert stored.id == insight_id
    stored.description = "mutated"

    again = insight_store.get_insight_by_id(insight_id)
    assert again is not None
    assert again.description != "mutated"


def test_find_filters_and_sorts(insight_store: InMemoryInsightStore) -> None:
    low = insight_store.save_insight(_insight(key="a", confidence=0.2, discovered_at=NOW))
    high = insight_store.save_insight(
        _insight(key="b", confidence=0.9, discovered_at=NOW - timedelta(days=1))
    )
    insight_store.save_insight(_insight(key="c", confidence=0.5, prompt_id="p2"))

    by_confidence = insight_store.find_insights(
        InsightFilter(sort_by="confidence", sort_order="desc")
    )
    assert [item.confidence for item in by_confidence] == [0.9, 0.5, 0.2]

    confident = insight_store.find_insights(InsightFilter(min_confidence=0.5))
    assert {item.derivation_key for item in confident} == {"b", "c"}

    for_prompt = insight_store.find_insights(
        InsightFilter(related_to_prompt_id="p1", sort_by="discovered_at", sort_order="asc")
    )
    assert [item.id for item in for_prompt] == [high, low]

    by_key = insight_store.find_insights(InsightFilter(derivation_key="a"))
    assert [item.id for item in by_key] == [low]


def test_update_merges_fields_and_keeps_id(insight_store: InMemoryInsightStore) -> None:
    insight_id = insight_store.save_insight(_insight())

    updated = insight_store.update_insight(
        insight_id,
        {"id": "other", "confidence": 0.8, "status": InsightStatus.VALIDATED},
    )

    assert updated is not None
    assert updated.id == insight_id
    assert updated.confidence == 0.8
    assert updated.status == InsightStatus.VALIDATED
    assert insight_store.update_insight("missing", {"confidence": 0.1}) is None


def test_update_rejects_backward_and_terminal_transitions(
    insight_store: InMemoryInsightStore,
) -> None:
    insight_id = insight_store.save_insight(_insight(status=InsightStatus.ACTION_SUGGESTED))

    with pytest.raises(InsightTransitionError):
        insight_store.update_insight(insight_id, {"status": InsightStatus.NEW})

    insight_store.update_insight(insight_id, {"status": InsightStatus.REJECTED})
    with pytest.raises(InsightTransitionError):
        insight_store.update_insight(insight_id, {"status": InsightStatus.VALIDATED})

    stored = insight_store.get_insight_by_id(insight_id)
    assert stored is not None
    assert stored.status == InsightStatus.REJECTED
    assert stored.is_terminal


def test_update_rejects_invalid_values(insight_store: InMemoryInsightStore) -> None:
    insight_id = insight_store.save_insight(_insight())

    with pytest.raises(ValidationError):
        insight_store.update_insight(insight_id, {"confidence": 1.5})


def test_delete_insight(insight_store: InMemoryInsightStore) -> None:
    insight_id = insight_store.save_insight(_insight())

    assert insight_store.delete_insight(insight_id) is True
    assert insight_store.delete_insight(insight_id) is False
    assert insight_store.get_insight_by_id(insight_id) is None


def test_increment_usage_tracks_effectiveness(insight_store: InMemoryInsightStore) -> None:
    insight_id = insight_store.save_insight(_insight(status=InsightStatus.VALIDATED))

    insight_store.increment_insight_usage(insight_id, True)
    insight_store.increment_insight_usage(insight_id, True)
    updated = insight_store.increment_insight_usage(insight_id, False)

    assert updated is not None
    assert updated.status == InsightStatus.APPLIED
    assert updated.evaluation is not None
    assert updated.evaluation.times_applied == 3
    assert updated.evaluation.successful_applications == 2
    assert updated.evaluation.times_applied_failed == 1
    assert updated.evaluation.effectiveness_score == pytest.approx(2 / 3)
    assert updated.evaluation.last_applied_at is not None
    assert insight_store.increment_insight_usage("missing", True) is None


def test_increment_usage_keeps_new_status(insight_store: InMemoryInsightStore) -> None:
    insight_id = insight_store.save_insight(_insight(status=InsightStatus.NEW))

    updated = insight_store.increment_insight_usage(insight_id, True)

    assert updated is not None
    assert updated.status == InsightStatus.NEW


def test_concurrent_increments_are_not_lost(insight_store: InMemoryInsightStore) -> None:
    insight_id = insight_store.save_insight(_insight(status=InsightStatus.VALIDATED))

    def apply(succeeded: bool) -> None:
        for _ in range(25):
            insight_store.increment_insight_usage(insight_id, succeeded)

    workers = [threading.Thread(target=apply, args=(index % 2 == 0,)) for index in range(8)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join(timeout=5)

    stored = insight_store.get_insight_by_id(insight_id)
    assert stored is not None and stored.evaluation is not None
    assert stored.evaluation.times_applied == 200
    assert stored.evaluation.successful_applications == 100
    assert stored.evaluation.times_applied_failed == 100


def test_evaluation_counters_must_be_consistent() -> None:
    with pytest.raises(ValidationError):
        InsightEvaluation(times_applied=1, successful_applications=1, times_applied_failed=1)
