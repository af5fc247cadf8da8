"""MCP tools for reviewing the audit trail.

The audit log is PHI-free: it records which operations ran, when, how long
they took and whether they failed, with inputs reduced to a hash.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from fastmcp import Context, FastMCP

if TYPE_CHECKING:
    from healthtrack.core.audit.logger import AuditLogger

logger = logging.getLogger(__name__)

_EVENT_FIELDS = (
    "timestamp", "action", "tool_name", "entity_id", "status", "error_type", "duration_ms",
)


def register_audit_tools(
    mcp: FastMCP,
    audit_logger: AuditLogger,
) -> None:
    """Register audit trail tools on the MCP server."""

    @mcp.tool
    async def audit_summary(
        ctx: Context,
        days: int = 30,
        tool_name: str = "",
        failures_only: bool = False,
        limit: int = 20,
    ) -> str:
        """Review recent engine operations, deletions and failures.

        Args:
            days: Number of days to look back (default: 30).
            tool_name: Only list events of this tool.
            failures_only: Only list operations that failed.
            limit: Maximum number of recent events to list.
        """
        since = (datetime.now(timezone.utc) - timedelta(days=max(days, 1))).isoformat()

        recent_events = audit_logger.get_events(
            tool_name=tool_name or None,
            status="failure" if failures_only else None,
            since=since,
            limit=max(1, min(limit, 200)),
        )

        return json.dumps({
            "status": "ok",
            "period_days": days,
            "total_events": audit_logger.count_events(since=since),
            "failures": audit_logger.count_failures(since=since),
            "by_tool": audit_logger.tool_breakdown(since=since),
            "recent_events": [
                {name: event.get(name) for name in _EVENT_FIELDS} for event in recent_events
            ],
            "note": "This audit trail contains no health values, only hashed inputs.",
        }, indent=2)
