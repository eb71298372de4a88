"""Learning facade: experience intake, analysis cycles and insight access."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from agent_coordinator.errors import LearningSystemError
from agent_coordinator.learning.engine import AnalysisStats, InsightEngine, LearningConfig
from agent_coordinator.learning.models import (
    InsightFilter,
    LearnedInsight,
    NewExperience,
    ensure_utc,
    utc_now,
)

if TYPE_CHECKING:
    from agent_coordinator.storage.base import AnalysisQueue, ExperienceStore, InsightStore

logger = logging.getLogger(__name__)


class LearningSystem:
    """Entry point for producers of experiences and consumers of insights.

    ``log_experience`` writes to the store and then enqueues the id for
    analysis. The two steps fail independently: a store failure propagates,
    an enqueue failure is logged and the experience simply is not analysed.
    """

    def __init__(
        self,
        experience_store: ExperienceStore,
        analysis_queue: AnalysisQueue,
        insight_store: InsightStore,
        config: LearningConfig | None = None,
        *,
        engine: InsightEngine | None = None,
    ) -> None:
        self.config = config or LearningConfig()
        self.experience_store = experience_store
        self.analysis_queue = analysis_queue
        self.insight_store = insight_store
        self.engine = engine or InsightEngine(
            experience_store, analysis_queue, insight_store, self.config
        )
        self._initialized = False
        self._state_lock = threading.Lock()
        self._executor: ThreadPoolExecutor | None = None

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self, *, start_periodic: bool = False) -> None:
        with self._state_lock:
            if self._initialized:
                return
            self.experience_store.migrate()
            self.analysis_queue.migrate()
            self.insight_store.migrate()
            self._executor = ThreadPoolExecutor(
                max_workers=max(1, self.config.experience_log_workers),
                thread_name_prefix="experience-log",
            )
            self._initialized = True
        if start_periodic:
            self.engine.start_periodic_analysis()
        logger.info(
            "learning event=initialized system_version=%s periodic=%s",
            self.config.system_version,
            start_periodic,
        )

    def shutdown(self) -> None:
        with self._state_lock:
            if not self._initialized:
                return
            executor, self._executor = self._executor, None
        self.engine.stop_periodic_analysis()
        # Pending background writes still go through before the facade closes.
        if executor is not None:
            executor.shutdown(wait=True)
        with self._state_lock:
            self._initialized = False
        logger.info("learning event=shutdown")

    def log_experience(self, experience: NewExperience) -> str:
        self._require_initialized("log_experience")
        return self._write_experience(experience)

    def _write_experience(self, experience: NewExperience) -> str:
        if experience.metadata.system_version is None:
            metadata = experience.metadata.model_copy(
                update={"system_version": self.config.system_version}
            )
            experience = experience.model_copy(update={"metadata": metadata})

        experience_id = self.experience_store.log_experience(experience)
        try:
            self.analysis_queue.enqueue(experience_id)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "learning event=enqueue_failed experience_id=%s error=%s",
                experience_id,
                exc,
            )
        logger.debug(
            "learning event=experience_logged experience_id=%s type=%s status=%s",
            experience_id,
            experience.type.value,
            experience.outcome.status.value,
        )
        return experience_id

    def record_experience(self, experience: NewExperience) -> Future[str | None]:
        """Log without blocking the caller. The future resolves to the id, or None on failure."""
        executor = self._executor
        if not self._initialized or executor is None:
            logger.warning(
                "learning event=experience_dropped reason=not_initialized type=%s",
                experience.type.value,
            )
            dropped: Future[str | None] = Future()
            dropped.set_result(None)
            return dropped
        return executor.submit(self._log_quietly, experience)

    def _log_quietly(self, experience: NewExperience) -> str | None:
        try:
            return self._write_experience(experience)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "learning event=experience_log_failed type=%s error=%s",
                experience.type.value,
                exc,
            )
            return None

    def process_experiences(self, now: datetime | None = None) -> AnalysisStats:
        self._require_initialized("process_experiences")
        return self.engine.run_cycle(now)

    def prune_old_experiences(self, now: datetime | None = None) -> int:
        self._require_initialized("prune_old_experiences")
        current_time = ensure_utc(now) if now is not None else utc_now()
        cutoff = current_time - timedelta(days=self.config.experience_retention_days)
        removed = self.experience_store.prune_old_experiences(cutoff)
        logger.info(
            "learning event=experiences_pruned removed=%d cutoff=%s",
            removed,
            cutoff.isoformat(),
        )
        return removed

    def mark_stale_insights(self, now: datetime | None = None) -> int:
        self._require_initialized("mark_stale_insights")
        return self.engine.mark_stale_insights(now)

    def get_learned_insights(
        self,
        insight_filter: InsightFilter | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[LearnedInsight]:
        self._require_initialized("get_learned_insights")
        return self.insight_store.find_insights(insight_filter or InsightFilter(), limit, offset)

    def increment_insight_usage(self, insight_id: str, succeeded: bool) -> LearnedInsight | None:
        self._require_initialized("increment_insight_usage")
        return self.engine.increment_insight_usage(insight_id, succeeded)

    def _require_initialized(self, operation: str) -> None:
        if not self._initialized:
            raise LearningSystemError(
                f"LearningSystem.{operation} called before initialize()",
                context={"operation": operation},
            )
