"""PostgreSQL-backed stores with automatic table migration."""

from __future__ import annotations

import json
import threading
import uuid
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any

from agent_coordinator.errors import StoreReadError, StoreWriteError
from agent_coordinator.learning.models import (
    ExperienceData,
    ExperienceFilter,
    InsightEvaluation,
    InsightFilter,
    LearnedInsight,
    NewExperience,
    ensure_utc,
)
from agent_coordinator.storage.models import SubTask


class _PostgresBackend:
    """Connection handling shared by every PostgreSQL store."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("AGENT_COORDINATOR_DATABASE_URL is required")
        self.database_url = database_url
        self._lock = threading.Lock()
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    def _connect(self) -> Any:
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    @contextmanager
    def _writing(self, operation: str) -> Iterator[Any]:
        try:
            with self._connect() as conn:
                yield conn
                conn.commit()
        except self._psycopg.Error as exc:
            raise StoreWriteError(
                f"{type(self).__name__}.{operation} failed: {exc}",
                context={"operation": operation},
            ) from exc

    @contextmanager
    def _reading(self, operation: str) -> Iterator[Any]:
        try:
            with self._connect() as conn:
                yield conn
        except self._psycopg.Error as exc:
            raise StoreReadError(
                f"{type(self).__name__}.{operation} failed: {exc}",
                context={"operation": operation},
            ) from exc

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover
            raise RuntimeError(
                "PostgreSQL storage requires psycopg. "
                'Install with: python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json

    @staticmethod
    def _parse_json(raw: Any) -> Any:
        if isinstance(raw, str):
            return json.loads(raw)
        return raw

    @staticmethod
    def _parse_datetime(raw: Any) -> datetime | None:
        if raw is None:
            return None
        if isinstance(raw, datetime):
            return ensure_utc(raw)
        if isinstance(raw, str):
            return ensure_utc(datetime.fromisoformat(raw))
        raise TypeError(f"Unsupported datetime value: {type(raw)!r}")


class PostgresTaskQueue(_PostgresBackend):
    """Sub-task FIFO; concurrent consumers never receive the same row."""

    def migrate(self) -> None:
        with self._lock, self._writing("migrate") as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS task_queue (
                    seq BIGSERIAL PRIMARY KEY,
                    payload_json JSONB NOT NULL,
                    enqueued_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """)

    def enqueue_many(self, subtasks: Iterable[SubTask]) -> None:
        rows = [(self._json_wrapper(item.payload()),) for item in subtasks]
        if not rows:
            return
        with self._lock, self._writing("enqueue_many") as conn:
            with conn.cursor() as cur:
                cur.executemany("INSERT INTO task_queue (payload_json) VALUES (%s)", rows)

    def dequeue_one(self) -> SubTask | None:
        with self._lock, self._writing("dequeue_one") as conn:
            row = conn.execute("""
                WITH picked AS (
                    SELECT seq
                    FROM task_queue
                    ORDER BY seq
                    FOR UPDATE SKIP LOCKED
                    LIMIT 1
                )
                DELETE FROM task_queue q
                USING picked
                WHERE q.seq = picked.seq
                RETURNING q.payload_json
                """).fetchone()
        if row is None:
            return None
        return SubTask.model_validate(self._parse_json(row["payload_json"]))

    def size(self) -> int:
        with self._lock, self._reading("size") as conn:
            row = conn.execute("SELECT COUNT(*) AS total FROM task_queue").fetchone()
        return int(row["total"]) if row else 0

    def is_empty(self) -> bool:
        return self.size() == 0


class PostgresExperienceStore(_PostgresBackend):
    """Experiences as JSONB documents with indexed scalar columns for filtering."""

    def migrate(self) -> None:
        with self._lock, self._writing("migrate") as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS experiences (
                    experience_id UUID PRIMARY KEY,
                    type TEXT NOT NULL,
                    occurred_at TIMESTAMPTZ NOT NULL,
                    project_name TEXT,
                    subtask_type TEXT,
                    prompt_id TEXT,
                    outcome_status TEXT NOT NULL,
                    duration_ms DOUBLE PRECISION,
                    error_code TEXT,
                    tags TEXT[] NOT NULL DEFAULT '{}',
                    context_json JSONB NOT NULL,
                    outcome_json JSONB NOT NULL,
                    metadata_json JSONB NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_experiences_occurred_at
                ON experiences(occurred_at DESC)
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_experiences_type
                ON experiences(type)
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_experiences_prompt_id
                ON experiences(prompt_id)
                """)

    def log_experience(self, experience: NewExperience) -> str:
        experience_id = uuid.uuid4()
        record = ExperienceData.from_new(experience, experience_id=str(experience_id))
        outcome = record.outcome
        with self._lock, self._writing("log_experience") as conn:
            conn.execute(
                """
                INSERT INTO experiences (
                    experience_id,
                    type,
                    occurred_at,
                    project_name,
                    subtask_type,
                    prompt_id,
                    outcome_status,
                    duration_ms,
                    error_code,
                    tags,
                    context_json,
                    outcome_json,
                    metadata_json
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    experience_id,
                    record.type.value,
                    record.timestamp,
                    record.context.project_name,
                    record.context.subtask_type,
                    record.context.prompt_id,
                    outcome.status.value,
                    outcome.duration_ms,
                    outcome.error.code if outcome.error else None,
                    list(record.metadata.tags),
                    self._json_wrapper(record.context.model_dump(mode="json")),
                    self._json_wrapper(outcome.model_dump(mode="json")),
                    self._json_wrapper(record.metadata.model_dump(mode="json")),
                ),
            )
        return str(experience_id)

    def get_experience_by_id(self, experience_id: str) -> ExperienceData | None:
        with self._lock, self._reading("get_experience_by_id") as conn:
            row = conn.execute(
                "SELECT * FROM experiences WHERE experience_id::text = %s",
                (experience_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_experience(row)

    def find_experiences(
        self,
        experience_filter: ExperienceFilter,
        limit: int = 100,
        offset: int = 0,
    ) -> list[ExperienceData]:
        where, params = self._where_clause(experience_filter)
        with self._lock, self._reading("find_experiences") as conn:
            rows = conn.execute(
                f"""
                SELECT *
                FROM experiences
                {where}
                ORDER BY occurred_at DESC
                LIMIT %s OFFSET %s
                """,
                (*params, max(0, limit), max(0, offset)),
            ).fetchall()
        return [self._row_to_experience(row) for row in rows]

    def count_experiences(self, experience_filter: ExperienceFilter) -> int:
        where, params = self._where_clause(experience_filter)
        with self._lock, self._reading("count_experiences") as conn:
            row = conn.execute(
                f"SELECT COUNT(*) AS total FROM experiences {where}",
                tuple(params),
            ).fetchone()
        return int(row["total"]) if row else 0

    def prune_old_experiences(self, older_than: datetime) -> int:
        with self._lock, self._writing("prune_old_experiences") as conn:
            cursor = conn.execute(
                "DELETE FROM experiences WHERE occurred_at < %s",
                (ensure_utc(older_than),),
            )
            deleted = cursor.rowcount
        return max(0, deleted)

    @staticmethod
    def _where_clause(experience_filter: ExperienceFilter) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        status = experience_filter.outcome_status
        scalar_columns = (
            ("type", experience_filter.type.value if experience_filter.type else None),
            ("project_name", experience_filter.project_name),
            ("subtask_type", experience_filter.subtask_type),
            ("prompt_id", experience_filter.prompt_id),
            ("outcome_status", status.value if status else None),
            ("error_code", experience_filter.error_code),
        )
        for column, value in scalar_columns:
            if value is not None:
                clauses.append(f"{column} = %s")
                params.append(value)
        if experience_filter.start_date is not None:
            clauses.append("occurred_at >= %s")
            params.append(ensure_utc(experience_filter.start_date))
        if experience_filter.end_date is not None:
            clauses.append("occurred_at <= %s")
            params.append(ensure_utc(experience_filter.end_date))
        if experience_filter.min_duration_ms is not None:
            clauses.append("duration_ms >= %s")
            params.append(experience_filter.min_duration_ms)
        if experience_filter.tags:
            clauses.append("tags && %s::text[]")
            params.append(list(experience_filter.tags))
        if experience_filter.ids is not None:
            clauses.append("experience_id::text = ANY(%s)")
            params.append(list(experience_filter.ids))
        if not clauses:
            return "", params
        return "WHERE " + " AND ".join(clauses), params

    @classmethod
    def _row_to_experience(cls, row: Any) -> ExperienceData:
        return ExperienceData.model_validate(
            {
                "id": str(row["experience_id"]),
                "timestamp": cls._parse_datetime(row["occurred_at"]),
                "type": row["type"],
                "context": cls._parse_json(row["context_json"]),
                "outcome": cls._parse_json(row["outcome_json"]),
                "metadata": cls._parse_json(row["metadata_json"]),
            }
        )


class PostgresAnalysisQueue(_PostgresBackend):
    """Experience ids awaiting analysis, dequeued in insertion order."""

    def migrate(self) -> None:
        with self._lock, self._writing("migrate") as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS analysis_queue (
                    seq BIGSERIAL PRIMARY KEY,
                    experience_id TEXT NOT NULL,
                    enqueued_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """)

    def enqueue(self, experience_id: str) -> None:
        self.enqueue_batch([experience_id])

    def enqueue_batch(self, experience_ids: Iterable[str]) -> None:
        rows = [(experience_id,) for experience_id in experience_ids]
        if not rows:
            return
        with self._lock, self._writing("enqueue_batch") as conn:
            with conn.cursor() as cur:
                cur.executemany("INSERT INTO analysis_queue (experience_id) VALUES (%s)", rows)

    def dequeue(self, batch_size: int) -> list[str]:
        if batch_size <= 0:
            return []
        with self._lock, self._writing("dequeue") as conn:
            rows = conn.execute(
                """
                WITH picked AS (
                    SELECT seq
                    FROM analysis_queue
                    ORDER BY seq
                    FOR UPDATE SKIP LOCKED
                    LIMIT %s
                )
                DELETE FROM analysis_queue q
                USING picked
                WHERE q.seq = picked.seq
                RETURNING q.seq, q.experience_id
                """,
                (batch_size,),
            ).fetchall()
        # RETURNING does not guarantee order.
        rows.sort(key=lambda row: int(row["seq"]))
        return [str(row["experience_id"]) for row in rows]

    def size(self) -> int:
        with self._lock, self._reading("size") as conn:
            row = conn.execute("SELECT COUNT(*) AS total FROM analysis_queue").fetchone()
        return int(row["total"]) if row else 0

    def is_empty(self) -> bool:
        return self.size() == 0


_INSIGHT_SORT_COLUMNS = {
    "confidence": "confidence",
    "discovered_at": "discovered_at",
    "last_validated_at": "last_validated_at",
}


class PostgresInsightStore(_PostgresBackend):
    """Insights with status and usage counters as columns so usage updates stay atomic."""

    def migrate(self) -> None:
        with self._lock, self._writing("migrate") as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS insights (
                    insight_id TEXT PRIMARY KEY,
                    type TEXT NOT NULL,
                    status TEXT NOT NULL,
                    confidence DOUBLE PRECISION NOT NULL,
                    derivation_key TEXT NOT NULL,
                    prompt_id TEXT,
                    discovered_at TIMESTAMPTZ NOT NULL,
                    last_validated_at TIMESTAMPTZ,
                    has_evaluation BOOLEAN NOT NULL DEFAULT FALSE,
                    times_applied INTEGER NOT NULL DEFAULT 0,
                    successful_applications INTEGER NOT NULL DEFAULT 0,
                    times_applied_failed INTEGER NOT NULL DEFAULT 0,
                    effectiveness_score DOUBLE PRECISION,
                    last_applied_at TIMESTAMPTZ,
                    body_json JSONB NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_insights_type_key
                ON insights(type, derivation_key)
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_insights_status
                ON insights(status)
                """)

    def save_insight(self, insight: LearnedInsight) -> str:
        insight_id = insight.id or str(uuid.uuid4())
        record = insight.model_copy(update={"id": insight_id})
        with self._lock, self._writing("save_insight") as conn:
            conn.execute(
                """
                INSERT INTO insights (
                    insight_id,
                    type,
                    status,
                    confidence,
                    derivation_key,
                    prompt_id,
                    discovered_at,
                    last_validated_at,
                    has_evaluation,
                    times_applied,
                    successful_applications,
                    times_applied_failed,
                    effectiveness_score,
                    last_applied_at,
                    body_json
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (insight_id) DO UPDATE SET
                    type = EXCLUDED.type,
                    status = EXCLUDED.status,
                    confidence = EXCLUDED.confidence,
                    derivation_key = EXCLUDED.derivation_key,
                    prompt_id = EXCLUDED.prompt_id,
                    discovered_at = EXCLUDED.discovered_at,
                    last_validated_at = EXCLUDED.last_validated_at,
                    has_evaluation = EXCLUDED.has_evaluation,
                    times_applied = EXCLUDED.times_applied,
                    successful_applications = EXCLUDED.successful_applications,
                    times_applied_failed = EXCLUDED.times_applied_failed,
                    effectiveness_score = EXCLUDED.effectiveness_score,
                    last_applied_at = EXCLUDED.last_applied_at,
                    body_json = EXCLUDED.body_json
                """,
                self._insight_params(record),
            )
        return insight_id

    def get_insight_by_id(self, insight_id: str) -> LearnedInsight | None:
        with self._lock, self._reading("get_insight_by_id") as conn:
            row = conn.execute(
                "SELECT * FROM insights WHERE insight_id = %s",
                (insight_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_insight(row)

    def find_insights(
        self,
        insight_filter: InsightFilter,
        limit: int = 100,
        offset: int = 0,
    ) -> list[LearnedInsight]:
        clauses: list[str] = []
        params: list[Any] = []
        if insight_filter.type is not None:
            clauses.append("type = %s")
            params.append(insight_filter.type.value)
        if insight_filter.status is not None:
            clauses.append("status = %s")
            params.append(insight_filter.status.value)
        if insight_filter.min_confidence is not None:
            clauses.append("confidence >= %s")
            params.append(insight_filter.min_confidence)
        if insight_filter.related_to_prompt_id is not None:
            clauses.append("prompt_id = %s")
            params.append(insight_filter.related_to_prompt_id)
        if insight_filter.derivation_key is not None:
            clauses.append("derivation_key = %s")
            params.append(insight_filter.derivation_key)
        where = ("WHERE " + " AND ".join(clauses)) if clauses else ""
        column = _INSIGHT_SORT_COLUMNS[insight_filter.sort_by]
        direction = "DESC NULLS LAST" if insight_filter.sort_order == "desc" else "ASC NULLS FIRST"
        with self._lock, self._reading("find_insights") as conn:
            rows = conn.execute(
                f"""
                SELECT *
                FROM insights
                {where}
                ORDER BY {column} {direction}
                LIMIT %s OFFSET %s
                """,
                (*params, max(0, limit), max(0, offset)),
            ).fetchall()
        return [self._row_to_insight(row) for row in rows]

    def update_insight(self, insight_id: str, updates: Mapping[str, Any]) -> LearnedInsight | None:
        with self._lock, self._writing("update_insight") as conn:
            row = conn.execute(
                "SELECT * FROM insights WHERE insight_id = %s FOR UPDATE",
                (insight_id,),
            ).fetchone()
            if row is None:
                return None
            updated = self._row_to_insight(row).with_updates(updates)
            params = self._insight_params(updated)
            conn.execute(
                """
                UPDATE insights
                SET type = %s,
                    status = %s,
                    confidence = %s,
                    derivation_key = %s,
                    prompt_id = %s,
                    discovered_at = %s,
                    last_validated_at = %s,
                    has_evaluation = %s,
                    times_applied = %s,
                    successful_applications = %s,
                    times_applied_failed = %s,
                    effectiveness_score = %s,
                    last_applied_at = %s,
                    body_json = %s
                WHERE insight_id = %s
                """,
                (*params[1:], insight_id),
            )
        return updated

    def delete_insight(self, insight_id: str) -> bool:
        with self._lock, self._writing("delete_insight") as conn:
            cursor = conn.execute("DELETE FROM insights WHERE insight_id = %s", (insight_id,))
            deleted = cursor.rowcount
        return deleted > 0

    def increment_insight_usage(self, insight_id: str, succeeded: bool) -> LearnedInsight | None:
        success_delta = 1 if succeeded else 0
        with self._lock, self._writing("increment_insight_usage") as conn:
            row = conn.execute(
                """
                UPDATE insights
                SET times_applied = times_applied + 1,
                    successful_applications = successful_applications + %(success)s,
                    times_applied_failed = times_applied_failed + %(failure)s,
                    effectiveness_score =
                        (successful_applications + %(success)s)::double precision
                        / (times_applied + 1),
                    last_applied_at = %(now)s,
                    has_evaluation = TRUE,
                    status = CASE
                        WHEN status IN ('VALIDATED', 'ACTION_SUGGESTED') THEN 'APPLIED'
                        ELSE status
                    END
                WHERE insight_id = %(insight_id)s
                RETURNING *
                """,
                {
                    "success": success_delta,
                    "failure": 1 - success_delta,
                    "now": datetime.now(tz=UTC),
                    "insight_id": insight_id,
                },
            ).fetchone()
        if row is None:
            return None
        return self._row_to_insight(row)

    def _insight_params(self, insight: LearnedInsight) -> tuple[Any, ...]:
        evaluation = insight.evaluation
        body = insight.model_dump(mode="json", exclude={"id", "status", "evaluation"})
        return (
            insight.id,
            insight.type.value,
            insight.status.value,
            insight.confidence,
            insight.derivation_key,
            insight.pattern_details.prompt_id,
            insight.discovered_at,
            insight.last_validated_at,
            evaluation is not None,
            evaluation.times_applied if evaluation else 0,
            evaluation.successful_applications if evaluation else 0,
            evaluation.times_applied_failed if evaluation else 0,
            evaluation.effectiveness_score if evaluation else None,
            evaluation.last_applied_at if evaluation else None,
            self._json_wrapper(body),
        )

    @classmethod
    def _row_to_insight(cls, row: Any) -> LearnedInsight:
        body = dict(cls._parse_json(row["body_json"]) or {})
        body["id"] = str(row["insight_id"])
        body["status"] = row["status"]
        body["confidence"] = float(row["confidence"])
        body["last_validated_at"] = cls._parse_datetime(row["last_validated_at"])
        if row["has_evaluation"]:
            body["evaluation"] = InsightEvaluation(
                times_applied=int(row["times_applied"]),
                successful_applications=int(row["successful_applications"]),
                times_applied_failed=int(row["times_applied_failed"]),
                effectiveness_score=row["effectiveness_score"],
                last_applied_at=cls._parse_datetime(row["last_applied_at"]),
            )
        return LearnedInsight.model_validate(body)
