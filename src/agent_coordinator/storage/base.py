"""Storage interfaces for the task queue and the learning loop."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any, Protocol

from agent_coordinator.learning.models import (
    ExperienceData,
    ExperienceFilter,
    InsightFilter,
    LearnedInsight,
    NewExperience,
)
from agent_coordinator.storage.models import SubTask


class TaskQueue(Protocol):
    def migrate(self) -> None: ...

    def enqueue_many(self, subtasks: Iterable[SubTask]) -> None: ...

    def dequeue_one(self) -> SubTask | None: ...

    def size(self) -> int: ...

    def is_empty(self) -> bool: ...


class ExperienceStore(Protocol):
    def migrate(self) -> None: ...

    def log_experience(self, experience: NewExperience) -> str: ...

    def get_experience_by_id(self, experience_id: str) -> ExperienceData | None: ...

    def find_experiences(
        self,
        experience_filter: ExperienceFilter,
        limit: int = 100,
        offset: int = 0,
    ) -> list[ExperienceData]: ...

    def count_experiences(self, experience_filter: ExperienceFilter) -> int: ...

    def prune_old_experiences(self, older_than: datetime) -> int: ...


class AnalysisQueue(Protocol):
    def migrate(self) -> None: ...

    def enqueue(self, experience_id: str) -> None: ...

    def enqueue_batch(self, experience_ids: Iterable[str]) -> None: ...

    def dequeue(self, batch_size: int) -> list[str]: ...

    def size(self) -> int: ...

    def is_empty(self) -> bool: ...


class InsightStore(Protocol):
    def migrate(self) -> None: ...

    def save_insight(self, insight: LearnedInsight) -> str: ...

    def get_insight_by_id(self, insight_id: str) -> LearnedInsight | None: ...

    def find_insights(
        self,
        insight_filter: InsightFilter,
        limit: int = 100,
        offset: int = 0,
    ) -> list[LearnedInsight]: ...

    def update_insight(
        self, insight_id: str, updates: Mapping[str, Any]
    ) -> LearnedInsight | None: ...

    def delete_insight(self, insight_id: str) -> bool: ...

    def increment_insight_usage(
        self, insight_id: str, succeeded: bool
    ) -> LearnedInsight | None: ...
