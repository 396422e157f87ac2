"""
Workflow Store

SQLite-based persistence for workflows, their suspension snapshots, per
iteration node scores, disagreements, learning events and everything the
learning engine derives from them.

Every write is a transaction; `publish_iteration` writes the full set of node
scores of one iteration together with the updated workflow so readers never
observe a partially written iteration.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generator, Iterable

from dualval.config import get_settings
from dualval.core.enums import (
    EventSourceType,
    LearningEventType,
    WorkflowStatus,
)
from dualval.core.exceptions import StorageError
from dualval.core.schemas import (
    Disagreement,
    DisagreementFilter,
    LearningEvent,
    LearningInsight,
    NodeScore,
    RetrainingRequest,
    ReviewItem,
    ValidationWorkflow,
    WorkflowSnapshot,
)

logger = logging.getLogger(__name__)


def _ts(value: datetime) -> str:
    """ISO timestamp in UTC so that string comparison orders correctly."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


class WorkflowStore:
    """
    SQLite-based validation state persistence.

    Tables:
        - workflows: Workflow aggregate and status
        - snapshots: Durable state written before every suspension
        - node_scores / iterations: Published per-iteration scoring records
        - disagreements: Disagreement state machine records
        - learning_events / insights: Learning loop inputs and outputs
        - review_queue: Escalated disagreements awaiting human review
        - retraining_requests: Recorded retraining requests
    """

    def __init__(self, db_path: Path | None = None) -> None:
        """
        Initialize workflow store.

        Args:
            db_path: Path to SQLite database. Defaults to config.
        """
        self._db_path = db_path or get_settings().storage.db_path
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    @property
    def db_path(self) -> Path:
        """Get database path."""
        return self._db_path

    @contextmanager
    def _connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connection."""
        conn = sqlite3.connect(self._db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA busy_timeout = 30000")  # 30s wait on lock
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(f"Database error: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        """Initialize database schema."""
        with self._connection() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS workflows (
                    workflow_id TEXT PRIMARY KEY,
                    artifact_id TEXT NOT NULL,
                    artifact_kind TEXT NOT NULL,
                    status TEXT NOT NULL,
                    current_iteration INTEGER NOT NULL DEFAULT 1,
                    final_confidence REAL,
                    workflow_json TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS snapshots (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    workflow_id TEXT NOT NULL,
                    iteration INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    snapshot_json TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (workflow_id) REFERENCES workflows(workflow_id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS iterations (
                    workflow_id TEXT NOT NULL,
                    iteration INTEGER NOT NULL,
                    confidence REAL NOT NULL,
                    node_count INTEGER NOT NULL,
                    published_at TEXT NOT NULL,
                    PRIMARY KEY (workflow_id, iteration),
                    FOREIGN KEY (workflow_id) REFERENCES workflows(workflow_id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS node_scores (
                    workflow_id TEXT NOT NULL,
                    node_id TEXT NOT NULL,
                    iteration INTEGER NOT NULL,
                    overall REAL NOT NULL,
                    passed INTEGER NOT NULL,
                    score_json TEXT NOT NULL,
                    PRIMARY KEY (workflow_id, node_id, iteration),
                    FOREIGN KEY (workflow_id, iteration)
                        REFERENCES iterations(workflow_id, iteration) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS disagreements (
                    disagreement_id TEXT PRIMARY KEY,
                    workflow_id TEXT NOT NULL,
                    node_id TEXT NOT NULL,
                    disagreement_type TEXT NOT NULL,
                    severity TEXT NOT NULL,
                    status TEXT NOT NULL,
                    disagreement_json TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS learning_events (
                    event_id TEXT PRIMARY KEY,
                    event_type TEXT NOT NULL,
                    source_type TEXT NOT NULL,
                    source_id TEXT NOT NULL,
                    category TEXT NOT NULL,
                    impact REAL NOT NULL,
                    priority REAL NOT NULL,
                    event_json TEXT NOT NULL,
                    processed INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS insights (
                    insight_id TEXT PRIMARY KEY,
                    source_type TEXT NOT NULL,
                    category TEXT NOT NULL,
                    insight_json TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS review_queue (
                    disagreement_id TEXT PRIMARY KEY,
                    priority INTEGER NOT NULL,
                    item_json TEXT NOT NULL,
                    enqueued_at TEXT NOT NULL,
                    resolved_at TEXT
                );

                CREATE TABLE IF NOT EXISTS retraining_requests (
                    request_id TEXT PRIMARY KEY,
                    target_model TEXT NOT NULL,
                    request_json TEXT NOT NULL,
                    requested_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_workflows_status ON workflows(status);
                CREATE INDEX IF NOT EXISTS idx_snapshots_workflow ON snapshots(workflow_id);
                CREATE INDEX IF NOT EXISTS idx_disagreements_status ON disagreements(status);
                CREATE INDEX IF NOT EXISTS idx_disagreements_workflow ON disagreements(workflow_id);
                CREATE INDEX IF NOT EXISTS idx_events_processed ON learning_events(processed);
                CREATE INDEX IF NOT EXISTS idx_retraining_target
                    ON retraining_requests(target_model);
            """)

    # ==================== Workflows ====================

    def save_workflow(self, workflow: ValidationWorkflow) -> None:
        """Insert or update a workflow."""
        with self._connection() as conn:
            self._upsert_workflow(conn, workflow)

    def _upsert_workflow(self, conn: sqlite3.Connection, workflow: ValidationWorkflow) -> None:
        conn.execute(
            """
            INSERT INTO workflows
            (workflow_id, artifact_id, artifact_kind, status, current_iteration,
             final_confidence, workflow_json, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(workflow_id) DO UPDATE SET
                status = excluded.status,
                current_iteration = excluded.current_iteration,
                final_confidence = excluded.final_confidence,
                workflow_json = excluded.workflow_json,
                updated_at = excluded.updated_at
            """,
            (
                workflow.workflow_id,
                workflow.artifact_id,
                workflow.artifact_kind.value,
                workflow.status.value,
                workflow.current_iteration,
                workflow.final_confidence,
                workflow.model_dump_json(),
                _ts(workflow.created_at),
                _ts(workflow.updated_at),
            ),
        )

    def get_workflow(self, workflow_id: str) -> ValidationWorkflow | None:
        """Get a workflow by id."""
        with self._connection() as conn:
            row = conn.execute(
                "SELECT workflow_json FROM workflows WHERE workflow_id = ?", (workflow_id,)
            ).fetchone()
            if row is None:
                return None
            return ValidationWorkflow.model_validate_json(row["workflow_json"])

    def list_workflows(
        self,
        status: WorkflowStatus | None = None,
        artifact_id: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 100,
    ) -> list[ValidationWorkflow]:
        """List workflows, newest first, with optional filters."""
        clauses: list[str] = []
        params: list[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if artifact_id is not None:
            clauses.append("artifact_id = ?")
            params.append(artifact_id)
        if since is not None:
            clauses.append("created_at >= ?")
            params.append(_ts(since))
        if until is not None:
            clauses.append("created_at <= ?")
            params.append(_ts(until))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connection() as conn:
            rows = conn.execute(
                f"SELECT workflow_json FROM workflows {where} ORDER BY created_at DESC LIMIT ?",
                (*params, limit),
            ).fetchall()
            return [ValidationWorkflow.model_validate_json(r["workflow_json"]) for r in rows]

    # ==================== Snapshots ====================

    def save_snapshot(self, snapshot: WorkflowSnapshot) -> None:
        """Persist a snapshot together with its workflow."""
        workflow = snapshot.workflow
        with self._connection() as conn:
            self._upsert_workflow(conn, workflow)
            conn.execute(
                """
                INSERT INTO snapshots (workflow_id, iteration, status, snapshot_json, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    workflow.workflow_id,
                    workflow.current_iteration,
                    workflow.status.value,
                    snapshot.model_dump_json(),
                    _ts(datetime.now(timezone.utc)),
                ),
            )

    def get_latest_snapshot(self, workflow_id: str) -> WorkflowSnapshot | None:
        """Get the latest snapshot for a workflow."""
        with self._connection() as conn:
            row = conn.execute(
                """
                SELECT snapshot_json FROM snapshots
                WHERE workflow_id = ?
                ORDER BY id DESC
                LIMIT 1
                """,
                (workflow_id,),
            ).fetchone()
            if row is None:
                return None
            return WorkflowSnapshot.model_validate_json(row["snapshot_json"])

    def count_snapshots(self, workflow_id: str) -> int:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS count FROM snapshots WHERE workflow_id = ?", (workflow_id,)
            ).fetchone()
            return row["count"] if row else 0

    # ==================== Iterations ====================

    def publish_iteration(
        self,
        workflow: ValidationWorkflow,
        iteration: int,
        scores: dict[str, NodeScore],
        confidence: float,
    ) -> None:
        """
        Publish every node score of one iteration and the workflow atomically.

        Raises:
            StorageError: if the iteration was already published.
        """
        now = _ts(datetime.now(timezone.utc))
        with self._connection() as conn:
            self._upsert_workflow(conn, workflow)
            conn.execute(
                """
                INSERT INTO iterations
                (workflow_id, iteration, confidence, node_count, published_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (workflow.workflow_id, iteration, confidence, len(scores), now),
            )
            conn.executemany(
                """
                INSERT INTO node_scores
                (workflow_id, node_id, iteration, overall, passed, score_json)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        workflow.workflow_id,
                        node_id,
                        iteration,
                        score.overall,
                        int(score.passed),
                        score.model_dump_json(),
                    )
                    for node_id, score in scores.items()
                ],
            )
        logger.debug(
            "Published iteration %d of %s (%d nodes)", iteration, workflow.workflow_id, len(scores)
        )

    def get_node_scores(self, workflow_id: str, iteration: int) -> dict[str, NodeScore]:
        """All node scores of a published iteration."""
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT node_id, score_json FROM node_scores "
                "WHERE workflow_id = ? AND iteration = ?",
                (workflow_id, iteration),
            ).fetchall()
            return {r["node_id"]: NodeScore.model_validate_json(r["score_json"]) for r in rows}

    def get_node_history(self, workflow_id: str, node_id: str) -> list[NodeScore]:
        """Scores of one node across iterations, oldest first."""
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT score_json FROM node_scores
                WHERE workflow_id = ? AND node_id = ?
                ORDER BY iteration
                """,
                (workflow_id, node_id),
            ).fetchall()
            return [NodeScore.model_validate_json(r["score_json"]) for r in rows]

    def list_iterations(self, workflow_id: str) -> list[dict[str, Any]]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM iterations WHERE workflow_id = ? ORDER BY iteration",
                (workflow_id,),
            ).fetchall()
            return [
                {
                    "iteration": r["iteration"],
                    "confidence": r["confidence"],
                    "node_count": r["node_count"],
                    "published_at": r["published_at"],
                }
                for r in rows
            ]

    # ==================== Disagreements ====================

    def save_disagreement(self, disagreement: Disagreement) -> None:
        """Insert or update a disagreement."""
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO disagreements
                (disagreement_id, workflow_id, node_id, disagreement_type, severity, status,
                 disagreement_json, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(disagreement_id) DO UPDATE SET
                    status = excluded.status,
                    severity = excluded.severity,
                    disagreement_json = excluded.disagreement_json,
                    updated_at = excluded.updated_at
                """,
                (
                    disagreement.disagreement_id,
                    disagreement.workflow_id,
                    disagreement.node_id,
                    disagreement.disagreement_type.value,
                    disagreement.severity.value,
                    disagreement.status.value,
                    disagreement.model_dump_json(),
                    _ts(disagreement.created_at),
                    _ts(disagreement.updated_at),
                ),
            )

    def get_disagreement(self, disagreement_id: str) -> Disagreement | None:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT disagreement_json FROM disagreements WHERE disagreement_id = ?",
                (disagreement_id,),
            ).fetchone()
            if row is None:
                return None
            return Disagreement.model_validate_json(row["disagreement_json"])

    def list_disagreements(self, query: DisagreementFilter | None = None) -> list[Disagreement]:
        """Disagreements matching the filter, newest first."""
        query = query or DisagreementFilter()
        clauses: list[str] = []
        params: list[Any] = []
        if query.status is not None:
            clauses.append("status = ?")
            params.append(query.status.value)
        if query.severity is not None:
            clauses.append("severity = ?")
            params.append(query.severity.value)
        if query.disagreement_type is not None:
            clauses.append("disagreement_type = ?")
            params.append(query.disagreement_type.value)
        if query.workflow_id is not None:
            clauses.append("workflow_id = ?")
            params.append(query.workflow_id)
        if query.since is not None:
            clauses.append("created_at >= ?")
            params.append(_ts(query.since))
        if query.until is not None:
            clauses.append("created_at <= ?")
            params.append(_ts(query.until))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connection() as conn:
            rows = conn.execute(
                f"""
                SELECT disagreement_json FROM disagreements {where}
                ORDER BY created_at DESC LIMIT ?
                """,
                (*params, query.limit),
            ).fetchall()
            return [Disagreement.model_validate_json(r["disagreement_json"]) for r in rows]

    # ==================== Learning Events ====================

    def add_event(self, event: LearningEvent) -> None:
        """Append a learning event. Events are never updated."""
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO learning_events
                (event_id, event_type, source_type, source_id, category, impact, priority,
                 event_json, processed, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, ?)
                """,
                (
                    event.event_id,
                    event.event_type.value,
                    event.source_type.value,
                    event.source_id,
                    event.category,
                    event.impact,
                    event.processing_priority,
                    event.model_dump_json(),
                    _ts(event.created_at),
                ),
            )

    def get_event(self, event_id: str) -> LearningEvent | None:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT event_json FROM learning_events WHERE event_id = ?", (event_id,)
            ).fetchone()
            return LearningEvent.model_validate_json(row["event_json"]) if row else None

    def list_events(
        self,
        source_id: str | None = None,
        event_type: LearningEventType | None = None,
        source_type: EventSourceType | None = None,
        processed: bool | None = None,
        limit: int = 1000,
    ) -> list[LearningEvent]:
        """Learning events in creation order."""
        clauses: list[str] = []
        params: list[Any] = []
        if source_id is not None:
            clauses.append("source_id = ?")
            params.append(source_id)
        if event_type is not None:
            clauses.append("event_type = ?")
            params.append(event_type.value)
        if source_type is not None:
            clauses.append("source_type = ?")
            params.append(source_type.value)
        if processed is not None:
            clauses.append("processed = ?")
            params.append(int(processed))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connection() as conn:
            rows = conn.execute(
                f"SELECT event_json FROM learning_events {where} "
                "ORDER BY created_at, rowid LIMIT ?",
                (*params, limit),
            ).fetchall()
            return [LearningEvent.model_validate_json(r["event_json"]) for r in rows]

    def next_unprocessed_events(self, limit: int) -> list[LearningEvent]:
        """Highest processing priority first."""
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT event_json FROM learning_events
                WHERE processed = 0
                ORDER BY priority DESC, created_at
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
            return [LearningEvent.model_validate_json(r["event_json"]) for r in rows]

    def mark_events_processed(self, event_ids: Iterable[str]) -> None:
        ids = [(event_id,) for event_id in event_ids]
        with self._connection() as conn:
            conn.executemany("UPDATE learning_events SET processed = 1 WHERE event_id = ?", ids)

    def count_unprocessed_events(self) -> int:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS count FROM learning_events WHERE processed = 0"
            ).fetchone()
            return row["count"] if row else 0

    # ==================== Insights ====================

    def add_insights(self, insights: Iterable[LearningInsight]) -> None:
        with self._connection() as conn:
            conn.executemany(
                """
                INSERT INTO insights (insight_id, source_type, category, insight_json, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                [
                    (
                        i.insight_id,
                        i.source_type.value,
                        i.category,
                        i.model_dump_json(),
                        _ts(i.created_at),
                    )
                    for i in insights
                ],
            )

    def list_insights(self, category: str | None = None, limit: int = 100) -> list[LearningInsight]:
        """Insights, newest first."""
        with self._connection() as conn:
            if category:
                rows = conn.execute(
                    """
                    SELECT insight_json FROM insights WHERE category = ?
                    ORDER BY created_at DESC LIMIT ?
                    """,
                    (category, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT insight_json FROM insights ORDER BY created_at DESC LIMIT ?", (limit,)
                ).fetchall()
            return [LearningInsight.model_validate_json(r["insight_json"]) for r in rows]

    # ==================== Review Queue ====================

    def enqueue_review(self, item: ReviewItem) -> None:
        with self._connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO review_queue
                (disagreement_id, priority, item_json, enqueued_at, resolved_at)
                VALUES (?, ?, ?, ?, NULL)
                """,
                (
                    item.disagreement_id,
                    item.priority,
                    item.model_dump_json(),
                    _ts(item.enqueued_at),
                ),
            )

    def list_review_queue(
        self, include_resolved: bool = False, limit: int = 100
    ) -> list[ReviewItem]:
        """Review items ordered by priority (1 first), then age."""
        where = "" if include_resolved else "WHERE resolved_at IS NULL"
        with self._connection() as conn:
            rows = conn.execute(
                f"SELECT item_json FROM review_queue {where} "
                "ORDER BY priority, enqueued_at LIMIT ?",
                (limit,),
            ).fetchall()
            return [ReviewItem.model_validate_json(r["item_json"]) for r in rows]

    def mark_review_resolved(self, disagreement_id: str) -> bool:
        with self._connection() as conn:
            cursor = conn.execute(
                "UPDATE review_queue SET resolved_at = ? WHERE disagreement_id = ? "
                "AND resolved_at IS NULL",
                (_ts(datetime.now(timezone.utc)), disagreement_id),
            )
            return cursor.rowcount > 0

    # ==================== Retraining Requests ====================

    def add_retraining_request(self, request: RetrainingRequest) -> None:
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO retraining_requests
                (request_id, target_model, request_json, requested_at)
                VALUES (?, ?, ?, ?)
                """,
                (
                    request.request_id,
                    request.target_model,
                    request.model_dump_json(),
                    _ts(request.requested_at),
                ),
            )

    def get_last_retraining(self, target_model: str) -> RetrainingRequest | None:
        with self._connection() as conn:
            row = conn.execute(
                """
                SELECT request_json FROM retraining_requests
                WHERE target_model = ?
                ORDER BY requested_at DESC LIMIT 1
                """,
                (target_model,),
            ).fetchone()
            return RetrainingRequest.model_validate_json(row["request_json"]) if row else None

    def list_retraining_requests(self, target_model: str | None = None) -> list[RetrainingRequest]:
        with self._connection() as conn:
            if target_model:
                rows = conn.execute(
                    "SELECT request_json FROM retraining_requests WHERE target_model = ? "
                    "ORDER BY requested_at",
                    (target_model,),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT request_json FROM retraining_requests ORDER BY requested_at"
                ).fetchall()
            return [RetrainingRequest.model_validate_json(r["request_json"]) for r in rows]
