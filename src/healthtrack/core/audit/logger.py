"""Audit logger — PHI-free operation trail for the health engine.

Records every engine operation and deletion event in the ``audit_log``
table. Raw health values never reach the trail:

* ``tool_input_hash`` — SHA-256 of canonical JSON of the request.
* ``entity_id``       — the id of the row the operation touched, if any.
* ``error_type``      — the engine error code on failure.
"""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from healthtrack.core.storage.database import HealthDatabase

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Input hashing
# ---------------------------------------------------------------------------

def _hash_input(data: Any) -> str:
    """SHA-256 hash of canonical JSON.

    Args:
        data: Request payload to hash. Non-JSON values are stringified.

    Returns:
        Hex-encoded SHA-256 digest, or empty string on failure.
    """
    try:
        canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
        return hashlib.sha256(canonical.encode()).hexdigest()
    except (TypeError, ValueError):
        return ""


# ---------------------------------------------------------------------------
# AuditEvent dataclass
# ---------------------------------------------------------------------------

@dataclass
class AuditEvent:
    """A single audit log entry."""

    action: str                          # 'engine_operation' | 'data_delete'
    tool_name: str = ""
    tool_input_hash: str = ""
    entity_id: str | None = None
    duration_ms: float | None = None
    status: str = "success"              # 'success' | 'failure'
    error_type: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# AuditLogger
# ---------------------------------------------------------------------------

class AuditLogger:
    """Records audit events to the ``audit_log`` SQLite table.

    Each write runs as its own statement outside any engine transaction, so
    a rolled-back operation still leaves its failure entry.

    Usage::

        audit = AuditLogger(health_db)
        event_id = audit.log_operation(
            tool_name="log_measurement",
            tool_input={"user_id": "u1", "modality": "weight"},
            entity_id=measurement_id,
        )
    """

    def __init__(self, database: HealthDatabase) -> None:
        self._db = database

    # ---------------------------------------------------------------
    # Write
    # ---------------------------------------------------------------

    def log_event(self, event: AuditEvent) -> str:
        """Insert an audit event and return its UUID.

        Returns:
            The generated event ID, or empty string if the write failed.
        """
        event_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc).isoformat()

        metadata_json = (
            json.dumps(event.metadata, separators=(",", ":"), default=str)
            if event.metadata
            else None
        )

        try:
            self._db.execute(
                """INSERT INTO audit_log
                   (id, timestamp, action, tool_name, tool_input_hash,
                    entity_id, duration_ms, status, error_type, metadata_json)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    event_id,
                    now,
                    event.action,
                    event.tool_name or None,
                    event.tool_input_hash or None,
                    event.entity_id,
                    event.duration_ms,
                    event.status,
                    event.error_type,
                    metadata_json,
                ),
            )
        except Exception:
            logger.exception("Failed to write audit event, event lost")
            return ""

        return event_id

    def log_operation(
        self,
        tool_name: str,
        tool_input: Any = None,
        *,
        entity_id: str | None = None,
        duration_ms: float | None = None,
        status: str = "success",
        error_type: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Convenience wrapper for logging one engine operation.

        Args:
            tool_name: Name of the MCP tool / facade operation.
            tool_input: Request data (hashed, never stored raw).
            entity_id: Id of the created or modified entity.
            duration_ms: Execution duration in milliseconds.
            status: 'success' or 'failure'.
            error_type: Engine error code on failure.
            metadata: Additional non-PHI metadata.

        Returns:
            The generated event ID.
        """
        return self.log_event(AuditEvent(
            action="engine_operation",
            tool_name=tool_name,
            tool_input_hash=_hash_input(tool_input) if tool_input else "",
            entity_id=entity_id,
            duration_ms=duration_ms,
            status=status,
            error_type=error_type,
            metadata=metadata or {},
        ))

    def log_data_delete(
        self,
        *,
        tool_name: str = "",
        entity_id: str | None = None,
        count: int = 0,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Log a data deletion event."""
        return self.log_event(AuditEvent(
            action="data_delete",
            tool_name=tool_name,
            entity_id=entity_id,
            metadata={**(metadata or {}), "records_deleted": count},
        ))

    # ---------------------------------------------------------------
    # Read
    # ---------------------------------------------------------------

    def get_events(
        self,
        *,
        action: str | None = None,
        tool_name: str | None = None,
        status: str | None = None,
        since: str | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        """Query audit events with optional filters.

        Args:
            action: Filter by action type.
            tool_name: Filter by tool name.
            status: Filter by 'success' / 'failure'.
            since: ISO 8601 timestamp lower bound.
            limit: Maximum events to return.

        Returns:
            List of event dicts, newest first.
        """
        conditions: list[str] = []
        params: list[Any] = []

        if action:
            conditions.append("action = ?")
            params.append(action)
        if tool_name:
            conditions.append("tool_name = ?")
            params.append(tool_name)
        if status:
            conditions.append("status = ?")
            params.append(status)
        if since:
            conditions.append("timestamp >= ?")
            params.append(since)

        where = (" WHERE " + " AND ".join(conditions)) if conditions else ""
        query = f"SELECT * FROM audit_log{where} ORDER BY timestamp DESC LIMIT ?"
        params.append(limit)

        return [dict(row) for row in self._db.query(query, params)]

    def count_events(self, *, since: str | None = None) -> int:
        """Count total audit events, optionally since a timestamp."""
        if since:
            row = self._db.query(
                "SELECT COUNT(*) FROM audit_log WHERE timestamp >= ?", (since,)
            )[0]
        else:
            row = self._db.query("SELECT COUNT(*) FROM audit_log")[0]
        return row[0]

    def count_failures(self, *, since: str | None = None) -> int:
        """Count operations that ended with an engine error."""
        if since:
            row = self._db.query(
                "SELECT COUNT(*) FROM audit_log WHERE status = 'failure' AND timestamp >= ?",
                (since,),
            )[0]
        else:
            row = self._db.query(
                "SELECT COUNT(*) FROM audit_log WHERE status = 'failure'"
            )[0]
        return row[0]

    def tool_breakdown(self, *, since: str | None = None) -> dict[str, dict[str, Any]]:
        """Per-tool call counts, failure counts and mean duration.

        Returns:
            ``{tool_name: {"calls": n, "failures": n, "mean_duration_ms": x}}``
            ordered by call count, busiest first.
        """
        where = " WHERE tool_name IS NOT NULL"
        params: list[Any] = []
        if since:
            where += " AND timestamp >= ?"
            params.append(since)
        rows = self._db.query(
            f"""SELECT tool_name,
                       COUNT(*) AS calls,
                       SUM(CASE WHEN status = 'failure' THEN 1 ELSE 0 END) AS failures,
                       AVG(duration_ms) AS mean_duration_ms
                FROM audit_log{where}
                GROUP BY tool_name
                ORDER BY calls DESC, tool_name""",
            params,
        )
        return {
            row["tool_name"]: {
                "calls": row["calls"],
                "failures": row["failures"],
                "mean_duration_ms": (
                    round(row["mean_duration_ms"], 1) if row["mean_duration_ms"] is not None else None
                ),
            }
            for row in rows
        }
