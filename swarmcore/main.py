"""
Entry point for the ``swarmcore`` command.

Sets up structlog over standard-library logging, then hands control to the
Click command group in swarmcore.cli.
"""

from __future__ import annotations

import logging
import os

import structlog

_logging_configured = False

_TRUNCATED_KEYS = {"description", "content", "result", "payload", "error"}
_MAX_DISPLAY_LEN = 120


def _truncate_payload_fields(logger, method_name, event_dict):
    """
    Structlog processor that shortens free-form task and result text.

    Task descriptions and worker results can be arbitrarily long; only the
    head of each is worth a log line.
    """
    for key in _TRUNCATED_KEYS:
        if key in event_dict:
            val = event_dict[key]
            if not isinstance(val, str):
                val = repr(val)
            if len(val) > _MAX_DISPLAY_LEN:
                event_dict[key] = val[:_MAX_DISPLAY_LEN] + "... [truncated]"
    return event_dict


def configure_logging(level: str | None = None) -> None:
    """Configure structlog and standard-library logging.

    Safe to call more than once; subsequent calls are no-ops. The level
    comes from *level* or ``SWARM_LOG_LEVEL`` (default WARNING).
    """
    global _logging_configured  # noqa: PLW0603
    if _logging_configured:
        return
    _logging_configured = True

    name = (level or os.environ.get("SWARM_LOG_LEVEL", "WARNING")).upper()
    logging.basicConfig(format="%(message)s", level=getattr(logging, name, logging.WARNING))

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            _truncate_payload_fields,
            structlog.dev.ConsoleRenderer(colors=True),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )


def main() -> None:
    """Entry point for the swarmcore command."""
    configure_logging()
    from swarmcore.cli.app import cli

    cli(obj={})


if __name__ == "__main__":
    main()
