"""System-error reporting.

Learn: When a request was valid but persisting its result failed, the
caller only sees a neutral failure (None/False). The details go here
instead, logged with the traceback so the error tracker picks them up.
"""

import structlog

logger = structlog.get_logger()


def report_error(exc: BaseException, event: str = "system_error", **context) -> None:
    """Record an unexpected failure with its traceback and context."""
    logger.error(
        event,
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=exc,
        **context,
    )
