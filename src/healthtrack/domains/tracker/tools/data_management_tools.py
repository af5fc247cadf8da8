"""MCP tools for health data management (deletion).

These tools implement the user's right to delete their health data. Derived
state that depended on the deleted rows (goal progress, recipe totals) is
re-derived in the same transaction. All deletions are audit-logged.
"""

from __future__ import annotations

import json
import logging
import time
from typing import TYPE_CHECKING

from fastmcp import Context, FastMCP

from healthtrack.core.errors import HealthEngineError

if TYPE_CHECKING:
    from healthtrack.core.audit.logger import AuditLogger
    from healthtrack.domains.tracker.domain_logic.engine import HealthEngine

logger = logging.getLogger(__name__)


def _error(exc: HealthEngineError) -> str:
    return json.dumps({"status": "error", "error_type": exc.code, "message": str(exc)})


def register_data_management_tools(
    mcp: FastMCP,
    engine: HealthEngine,
    audit_logger: AuditLogger | None = None,
) -> None:
    """Register data management tools on the MCP server."""

    @mcp.tool
    async def delete_measurement(
        ctx: Context,
        measurement_id: str,
    ) -> str:
        """Delete a single raw log and re-derive the goals that tracked it.

        Args:
            measurement_id: The UUID of the measurement to delete.
        """
        start_time = time.monotonic()
        try:
            updated = engine.delete_measurement(measurement_id)
        except HealthEngineError as exc:
            return _error(exc)
        elapsed_ms = (time.monotonic() - start_time) * 1000

        if audit_logger is not None:
            audit_logger.log_data_delete(
                tool_name="delete_measurement",
                entity_id=measurement_id,
                count=1,
            )
        return json.dumps({
            "status": "deleted",
            "measurement_id": measurement_id,
            "goals_updated": [g.id for g in updated],
            "duration_ms": round(elapsed_ms, 1),
        })

    @mcp.tool
    async def delete_food_item(
        ctx: Context,
        food_item_id: str,
    ) -> str:
        """Remove a food from the catalog; recipes using it are recomputed.

        Args:
            food_item_id: The UUID of the food item to delete.
        """
        try:
            affected = engine.delete_food_item(food_item_id)
        except HealthEngineError as exc:
            return _error(exc)

        if audit_logger is not None:
            audit_logger.log_data_delete(
                tool_name="delete_food_item",
                entity_id=food_item_id,
                count=1,
                metadata={"recipes_recomputed": len(affected)},
            )
        return json.dumps({
            "status": "deleted",
            "food_item_id": food_item_id,
            "recipes_recomputed": affected,
        })

    @mcp.tool
    async def delete_recipe(
        ctx: Context,
        recipe_id: str,
    ) -> str:
        """Delete a recipe and its ingredient list.

        Args:
            recipe_id: The UUID of the recipe to delete.
        """
        if not engine.delete_recipe(recipe_id):
            return json.dumps({
                "status": "not_found",
                "recipe_id": recipe_id,
                "message": "No recipe found with that ID.",
            })
        if audit_logger is not None:
            audit_logger.log_data_delete(tool_name="delete_recipe", entity_id=recipe_id, count=1)
        return json.dumps({"status": "deleted", "recipe_id": recipe_id})

    @mcp.tool
    async def delete_all_user_data(
        ctx: Context,
        user_id: str,
        confirm: str = "",
    ) -> str:
        """Permanently delete a user and ALL of their health data.

        Removes every log, recipe, goal, biomarker result and zone profile the
        user owns. It cannot be undone.

        Args:
            user_id: The user whose data is deleted.
            confirm: Must be exactly 'DELETE_ALL' to proceed. Safety gate.
        """
        if confirm != "DELETE_ALL":
            return json.dumps({
                "status": "cancelled",
                "message": (
                    "To delete all of this user's health data, call this tool with "
                    "confirm='DELETE_ALL'. This action cannot be undone."
                ),
            })

        start_time = time.monotonic()
        count = engine.repository.count_measurements(user_id)
        deleted = engine.delete_user(user_id)
        elapsed_ms = (time.monotonic() - start_time) * 1000

        if not deleted:
            return json.dumps({
                "status": "not_found",
                "user_id": user_id,
                "message": "No user found with that ID.",
            })

        if audit_logger is not None:
            audit_logger.log_data_delete(
                tool_name="delete_all_user_data",
                entity_id=user_id,
                count=count,
                metadata={"confirmed": True},
            )
        logger.warning("All health data deleted for user %s (%d measurements)", user_id, count)
        return json.dumps({
            "status": "all_deleted",
            "user_id": user_id,
            "measurements_deleted": count,
            "duration_ms": round(elapsed_ms, 1),
            "message": "All health data for this user has been permanently deleted.",
        })
