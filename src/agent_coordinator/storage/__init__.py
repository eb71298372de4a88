"""Storage backends for the task queue, experiences, analysis queue and insights."""

from agent_coordinator.storage.base import AnalysisQueue, ExperienceStore, InsightStore, TaskQueue
from agent_coordinator.storage.memory import (
    InMemoryAnalysisQueue,
    InMemoryExperienceStore,
    InMemoryInsightStore,
    InMemoryTaskQueue,
)
from agent_coordinator.storage.models import SubTask
from agent_coordinator.storage.postgres import (
    PostgresAnalysisQueue,
    PostgresExperienceStore,
    PostgresInsightStore,
    PostgresTaskQueue,
)

__all__ = [
    "AnalysisQueue",
    "ExperienceStore",
    "InMemoryAnalysisQueue",
    "InMemoryExperienceStore",
    "InMemoryInsightStore",
    "InMemoryTaskQueue",
    "InsightStore",
    "PostgresAnalysisQueue",
    "PostgresExperienceStore",
    "PostgresInsightStore",
    "PostgresTaskQueue",
    "SubTask",
    "TaskQueue",
]
