"""Health tracker MCP server — application factory.

This module provides:
- create_app() for testability (integration tests create fresh server instances)
- Module-level `mcp` variable for FastMCP discovery
"""

from __future__ import annotations

import logging

from fastmcp import FastMCP

from healthtrack.core.audit.logger import AuditLogger
from healthtrack.core.config.settings import get_settings
from healthtrack.core.storage.database import HealthDatabase
from healthtrack.core.storage.encryption import FieldEncryptor
from healthtrack.core.storage.repository import TrackerRepository
from healthtrack.domains.tracker.domain_logic.engine import HealthEngine
from healthtrack.domains.tracker.domain_logic.reference_data import load_reference_ranges
from healthtrack.domains.tracker.tools.audit_tools import register_audit_tools
from healthtrack.domains.tracker.tools.data_management_tools import (
    register_data_management_tools,
)
from healthtrack.domains.tracker.tools.engine_tools import register_engine_tools

logger = logging.getLogger(__name__)

_VERSION = "0.1.0"


def build_engine() -> HealthEngine:
    """Create the storage layer and engine from settings.

    Without an ``ENCRYPTION_KEY`` the engine runs on an in-memory database
    with a throwaway key, so nothing survives a restart.
    """
    settings = get_settings()

    if settings.encryption_key:
        encryptor = FieldEncryptor(settings.encryption_key)
        health_db = HealthDatabase(settings.db_path)
    else:
        logger.warning(
            "No ENCRYPTION_KEY configured; using an in-memory store. "
            "Set ENCRYPTION_KEY to persist health data to %s.",
            settings.db_path,
        )
        encryptor = FieldEncryptor(FieldEncryptor.generate_key())
        health_db = HealthDatabase(":memory:")

    health_db.initialize()
    repository = TrackerRepository(health_db, encryptor)
    engine = HealthEngine(
        repository,
        load_reference_ranges(settings.biomarker_ranges_path or None),
        anomaly_threshold_percent=settings.weight_anomaly_threshold_percent,
        unique_goal_types=settings.unique_active_goal_types,
        milestone_percentages=settings.milestone_percentages,
    )
    engine.sync_reference_ranges()
    logger.info(
        "Health record store initialized (schema v%d)", health_db.get_schema_version()
    )
    return engine


def create_app(
    *,
    engine_override: HealthEngine | None = None,
) -> FastMCP:
    """Create and configure the health tracker MCP server.

    This is the main application factory. It:
    1. Creates the FastMCP server instance
    2. Initializes the record store, reference ranges and engine
    3. Registers engine, data management and audit tools
    """
    server = FastMCP(
        "Health Tracker",
        instructions=(
            "Personal health tracker engine. Logs weight, nutrition, exercise, "
            "hydration, sleep, heart rate, HRV and lab results; keeps recipe "
            "nutrition, goal progress and classifications up to date."
        ),
    )

    engine = engine_override if engine_override is not None else build_engine()
    audit_logger = AuditLogger(engine.repository.database)

    @server.tool
    def health_check() -> dict:
        """Check server health and return basic status information."""
        return {
            "status": "ok",
            "server": "Health Tracker",
            "version": _VERSION,
            "biomarker_ranges_loaded": len(engine.classifier.ranges),
            "measurements_stored": engine.repository.count_measurements(),
        }

    register_engine_tools(server, engine, audit_logger)
    register_data_management_tools(server, engine, audit_logger)
    register_audit_tools(server, audit_logger)
    logger.info("Engine, data management and audit tools registered")

    return server


# Module-level instance for FastMCP discovery.
# Lazy: only created when this module is loaded directly (not when tests import create_app).
def __getattr__(name: str):
    if name == "mcp":
        global mcp  # noqa: PLW0603
        mcp = create_app()
        return mcp
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
