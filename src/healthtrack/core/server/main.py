"""Server entry point — ``python -m healthtrack.core.server.main``."""

from __future__ import annotations

import logging
from ipaddress import ip_address

from healthtrack.core.config.settings import get_settings
from healthtrack.core.server.app import create_app


def _is_loopback_host(host: str) -> bool:
    if host in {"localhost"}:
        return True
    try:
        return ip_address(host).is_loopback
    except ValueError:
        return False


def run() -> None:
    """Start the health tracker MCP server with Streamable HTTP transport."""
    settings = get_settings()
    logging.basicConfig(level=getattr(logging, settings.ht_log_level.upper(), logging.INFO))

    logger = logging.getLogger(__name__)
    if not settings.ht_allow_insecure_bind and not _is_loopback_host(settings.ht_host):
        raise RuntimeError(
            "Refusing to bind the health tracker to a non-loopback host without an auth layer. "
            "Set HT_ALLOW_INSECURE_BIND=true to override (unsafe)."
        )
    logger.info("Starting Health Tracker server on %s:%d", settings.ht_host, settings.ht_port)

    mcp = create_app()
    mcp.run(
        transport="streamable-http",
        host=settings.ht_host,
        port=settings.ht_port,
    )


if __name__ == "__main__":
    run()
