"""Structured logging setup for the release pipeline.

Every component logs through structlog with snake_case event names and
keyword context, e.g.:
  {"event": "build_failed", "job": "ubuntu-latest x86_64-unknown-linux-gnu",
   "tag": "v1.4.0", "returncode": 101}

In CI the pipeline runs with ENVIRONMENT=production and emits one JSON object
per line on stderr; locally it prints colourised console output.

Usage:
    from release_pipeline.logging_config import setup_logging, get_logger

    setup_logging()
    logger = get_logger(__name__)
    logger.info("run_started", tag="v1.4.0", jobs=4)
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Any

import structlog


def setup_logging(
    environment: str | None = None,
    log_level: str | None = None,
) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        environment: "development" or "production". Reads from the
                     ENVIRONMENT env var if not provided.
        log_level: DEBUG, INFO, WARNING or ERROR. Reads from the
                   LOG_LEVEL env var if not provided.
    """
    env = environment or os.environ.get("ENVIRONMENT", "development")
    level = getattr(logging, (log_level or os.environ.get("LOG_LEVEL", "INFO")).upper())

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    if env == "production":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    # httpx and uvicorn log through the stdlib. stdout is left for the
    # CLI's JSON summary.
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=level,
    )


def bind_job_context(**context: Any) -> None:
    """Attach context to every log line emitted by the current task.

    asyncio tasks copy the contextvars of their creator, so context bound
    inside a job task never leaks into sibling jobs.
    """
    structlog.contextvars.bind_contextvars(**context)


def get_logger(name: str) -> Any:
    """Get a structured logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        A structlog bound logger
    """
    return structlog.get_logger(name)
