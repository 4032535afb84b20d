"""
League Assembly — process entrypoint.

Startup:
1. Configure structured logging
2. Connect to the durable store and create the schema
3. Build the governance services and the live session hub
4. Serve the HTTP / WebSocket API with uvicorn

Usage:
    python -m league_assembly.server
"""

from __future__ import annotations

import logging
import sys

import structlog
import uvicorn

from league_assembly.config import settings

logger = logging.getLogger(__name__)

SERVICE_NAME = "league-assembly"


def configure_logging() -> None:
    """
    Configure structured logging.

    Every event carries the service name and the treaty under deliberation,
    bound once through structlog's context variables.
    """
    logging.basicConfig(
        level=logging.getLevelName(settings.log_level),
        format="%(message)s",
        stream=sys.stdout,
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            (
                structlog.dev.ConsoleRenderer()
                if settings.log_format != "json"
                else structlog.processors.JSONRenderer()
            ),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(settings.log_level)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        service=SERVICE_NAME,
        treaty=settings.default_treaty_slug,
    )


def main() -> None:
    configure_logging()
    log = structlog.get_logger()

    log.info(
        "league_assembly.server.starting",
        host=settings.api_host,
        port=settings.api_port,
        voting_hours=settings.amendment_voting_hours,
        threshold=str(settings.amendment_threshold),
    )

    from league_assembly.api.app import AppState, create_app

    try:
        state = AppState(settings).build()
    except Exception as e:
        log.exception("league_assembly.server.store_unavailable", error=str(e))
        sys.exit(1)
    log.info("league_assembly.server.store_ready", database=state.database.engine.url.render_as_string())

    app = create_app(state)
    log.info("league_assembly.server.running", message="Assembly in session")

    try:
        uvicorn.run(app, host=settings.api_host, port=settings.api_port, log_config=None)
    except KeyboardInterrupt:
        log.info("league_assembly.server.shutdown")
    finally:
        state.database.dispose()


if __name__ == "__main__":
    main()
