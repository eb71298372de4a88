"""In-memory backends for tests and single-process deployments."""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any
from uuid import uuid4

from agent_coordinator.learning.models import (
    ExperienceData,
    ExperienceFilter,
    InsightFilter,
    LearnedInsight,
    NewExperience,
    ensure_utc,
)
from agent_coordinator.storage.models import SubTask


class InMemoryTaskQueue:
    """FIFO queue of sub-tasks guarded by a single lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: deque[SubTask] = deque()

    def migrate(self) -> None:
        return None

    def enqueue_many(self, subtasks: Iterable[SubTask]) -> None:
        batch = [item.model_copy(deep=True) for item in subtasks]
        with self._lock:
            self._items.extend(batch)

    def dequeue_one(self) -> SubTask | None:
        with self._lock:
            if not self._items:
                return None
            return self._items.popleft()

    def size(self) -> int:
        with self._lock:
            return len(self._items)

    def is_empty(self) -> bool:
        return self.size() == 0


class InMemoryExperienceStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._experiences: dict[str, ExperienceData] = {}

    def migrate(self) -> None:
        return None

    def log_experience(self, experience: NewExperience) -> str:
        experience_id = str(uuid4())
        record = ExperienceData.from_new(experience, experience_id=experience_id)
        with self._lock:
            self._experiences[experience_id] = record
        return experience_id

    def get_experience_by_id(self, experience_id: str) -> ExperienceData | None:
        with self._lock:
            record = self._experiences.get(experience_id)
        return record.model_copy(deep=True) if record is not None else None

    def find_experiences(
        self,
        experience_filter: ExperienceFilter,
        limit: int = 100,
        offset: int = 0,
    ) -> list[ExperienceData]:
        with self._lock:
            matched = [
                item for item in self._experiences.values() if experience_filter.matches(item)
            ]
        matched.sort(key=lambda item: item.timestamp, reverse=True)
        window = matched[max(0, offset) : max(0, offset) + max(0, limit)]
        return [item.model_copy(deep=True) for item in window]

    def count_experiences(self, experience_filter: ExperienceFilter) -> int:
        with self._lock:
            return sum(1 for item in self._experiences.values() if experience_filter.matches(item))

    def prune_old_experiences(self, older_than: datetime) -> int:
        cutoff = ensure_utc(older_than)
        with self._lock:
            expired = [key for key, item in self._experiences.items() if item.timestamp < cutoff]
            for key in expired:
                del self._experiences[key]
        return len(expired)


class InMemoryAnalysisQueue:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ids: deque[str] = deque()

    def migrate(self) -> None:
        return None

    def enqueue(self, experience_id: str) -> None:
        with self._lock:
            self._ids.append(experience_id)

    def enqueue_batch(self, experience_ids: Iterable[str]) -> None:
        batch = list(experience_ids)
        with self._lock:
            self._ids.extend(batch)

    def dequeue(self, batch_size: int) -> list[str]:
        with self._lock:
            count = min(max(0, batch_size), len(self._ids))
            return [self._ids.popleft() for _ in range(count)]

    def size(self) -> int:
        with self._lock:
            return len(self._ids)

    def is_empty(self) -> bool:
        return self.size() == 0


class InMemoryInsightStore:
    """Insight records keyed by id; every mutation is a locked read-modify-write."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._insights: dict[str, LearnedInsight] = {}

    def migrate(self) -> None:
        return None

    def save_insight(self, insight: LearnedInsight) -> str:
        insight_id = insight.id or str(uuid4())
        record = insight.model_copy(update={"id": insight_id}, deep=True)
        with self._lock:
            self._insights[insight_id] = record
        return insight_id

    def get_insight_by_id(self, insight_id: str) -> LearnedInsight | None:
        with self._lock:
            record = self._insights.get(insight_id)
        return record.model_copy(deep=True) if record is not None else None

    def find_insights(
        self,
        insight_filter: InsightFilter,
        limit: int = 100,
        offset: int = 0,
    ) -> list[LearnedInsight]:
        with self._lock:
            matched = [item for item in self._insights.values() if insight_filter.matches(item)]
        matched.sort(key=insight_filter.sort_value, reverse=insight_filter.sort_order == "desc")
        window = matched[max(0, offset) : max(0, offset) + max(0, limit)]
        return [item.model_copy(deep=True) for item in window]

    def update_insight(self, insight_id: str, updates: Mapping[str, Any]) -> LearnedInsight | None:
        with self._lock:
            current = self._insights.get(insight_id)
            if current is None:
                return None
            updated = current.with_updates(updates)
            self._insights[insight_id] = updated
        return updated.model_copy(deep=True)

    def delete_insight(self, insight_id: str) -> bool:
        with self._lock:
            return self._insights.pop(insight_id, None) is not None

    def increment_insight_usage(self, insight_id: str, succeeded: bool) -> LearnedInsight | None:
        with self._lock:
            current = self._insights.get(insight_id)
            if current is None:
                return None
            updated = current.with_usage_recorded(succeeded)
            self._insights[insight_id] = updated
        return updated.model_copy(deep=True)
