"""structlog setup.

Learn: Every module just calls structlog.get_logger() and logs dotted
events ("auth.sign_in", "notifier.send_failed"). This module decides how
those events look:
- development: colored key=value lines with pretty tracebacks
- anywhere else: one JSON object per line for the log pipeline

merge_contextvars pulls in the request_id bound by RequestIdMiddleware.
Secrets never reach the logger: services log ids and error strings only.
"""

import logging

import structlog


def configure_logging(level: str = "INFO", json_logs: bool = False) -> None:
    """Configure structlog once at app startup."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if json_logs:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        cache_logger_on_first_use=True,
    )
