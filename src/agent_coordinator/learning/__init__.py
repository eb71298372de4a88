"""Experience logging, insight derivation and insight lifecycle."""

from agent_coordinator.learning.models import (
    ExperienceData,
    ExperienceFilter,
    ExperienceType,
    InsightFilter,
    InsightStatus,
    InsightType,
    LearnedInsight,
    NewExperience,
    OutcomeStatus,
)
from agent_coordinator.learning.engine import (
    AnalysisStats,
    InsightEngine,
    LearningConfig,
    compute_confidence,
)
from agent_coordinator.learning.system import LearningSystem

__all__ = [
    "AnalysisStats",
    "ExperienceData",
    "ExperienceFilter",
    "ExperienceType",
    "InsightEngine",
    "InsightFilter",
    "InsightStatus",
    "InsightType",
    "LearnedInsight",
    "LearningConfig",
    "LearningSystem",
    "NewExperience",
    "OutcomeStatus",
    "compute_confidence",
]
