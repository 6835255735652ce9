"""Repository pattern for database access."""
from typing import Any, Dict, List, Optional
from datetime import datetime
import json
import logging

from gantry.database import Database
from gantry.pipeline.schema import PipelineRun

logger = logging.getLogger(__name__)


class RunRepository:
    """Repository for run snapshots, keyed by run id."""

    def __init__(self, db: Database):
        self.db = db

    def save(
        self,
        run: PipelineRun,
        request: Optional[Dict[str, Any]] = None,
        definition: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Insert or update the snapshot of a run.

        Args:
            run: Run to persist
            request: Original run request (kept from the first save if omitted)
            definition: Pipeline definition as a dict (kept from the first save if omitted)
        """
        snapshot = run.snapshot()
        with self.db.get_connection() as conn:
            conn.execute("""
                INSERT INTO runs (run_id, pipeline_name, status, cause, exit_code, error,
                                  snapshot_json, request_json, definition_json, finished_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(run_id) DO UPDATE SET
                    status = excluded.status,
                    cause = excluded.cause,
                    exit_code = excluded.exit_code,
                    error = excluded.error,
                    snapshot_json = excluded.snapshot_json,
                    request_json = COALESCE(excluded.request_json, runs.request_json),
                    definition_json = COALESCE(excluded.definition_json, runs.definition_json),
                    finished_at = excluded.finished_at,
                    updated_at = ?
            """, (
                run.run_id,
                run.pipeline_name,
                snapshot["status"],
                snapshot.get("cause"),
                run.exit_code if run.status.is_terminal else None,
                run.error,
                json.dumps(snapshot),
                json.dumps(request) if request is not None else None,
                json.dumps(definition) if definition is not None else None,
                run.finished_at,
                datetime.now(),
            ))
            conn.commit()

    def get(self, run_id: str) -> Optional[Dict[str, Any]]:
        """Get a run row with its snapshot, request and definition decoded."""
        with self.db.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM runs WHERE run_id = ?", (run_id,))
            row = cursor.fetchone()
            return self._decode(row) if row else None

    def list_recent(self, limit: int = 50) -> List[Dict[str, Any]]:
        with self.db.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                SELECT run_id, pipeline_name, status, cause, exit_code, error,
                       created_at, updated_at, finished_at
                FROM runs
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?
            """, (limit,))
            return [dict(row) for row in cursor.fetchall()]

    def list_by_statuses(self, statuses: List[str], limit: int = 100) -> List[Dict[str, Any]]:
        """List runs matching any of the provided statuses."""
        if not statuses:
            return []
        placeholders = ",".join(["?"] * len(statuses))
        with self.db.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(f"""
                SELECT * FROM runs
                WHERE status IN ({placeholders})
                ORDER BY created_at ASC, rowid ASC
                LIMIT ?
            """, (*statuses, limit))
            return [self._decode(row) for row in cursor.fetchall()]

    def update_status(self, run_id: str, status: str, cause: Optional[str] = None, error: Optional[str] = None):
        """Overwrite the status of a stored run (snapshot included)."""
        record = self.get(run_id)
        if record is None:
            logger.warning(f"Cannot update status of unknown run {run_id}")
            return
        snapshot = record["snapshot"]
        snapshot["status"] = status
        snapshot["cause"] = cause
        if error is not None:
            snapshot["error"] = error
        if status in ("SUCCESS", "FAILURE", "ABORTED"):
            snapshot["finished_at"] = snapshot.get("finished_at") or datetime.now().isoformat()
            snapshot["pending_gates"] = {}

        with self.db.get_connection() as conn:
            conn.execute("""
                UPDATE runs
                SET status = ?, cause = ?, error = COALESCE(?, error), snapshot_json = ?,
                    finished_at = ?, updated_at = ?
                WHERE run_id = ?
            """, (status, cause, error, json.dumps(snapshot), snapshot.get("finished_at"), datetime.now(), run_id))
            conn.commit()

    def delete(self, run_id: str) -> bool:
        with self.db.get_connection() as conn:
            cursor = conn.execute("DELETE FROM runs WHERE run_id = ?", (run_id,))
            conn.commit()
            return cursor.rowcount > 0

    @staticmethod
    def _decode(row) -> Dict[str, Any]:
        result = dict(row)
        result["snapshot"] = json.loads(result.pop("snapshot_json") or "{}")
        result["request"] = json.loads(result.pop("request_json") or "null")
        result["definition"] = json.loads(result.pop("definition_json") or "null")
        return result
