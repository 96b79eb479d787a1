"""
Structured logging for the report engine (structlog over stdlib logging).

Log lines carry job and request identity through contextvars, so code deep
inside a report job does not have to pass job_id around to log it.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.stdlib import LoggerFactory

_SECRET_FIELDS = {"access_token", "refresh_token", "authorization", "signature", "api_key"}

_NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def _redact_secrets(logger, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Never let raw credentials reach the log sink."""
    for key in _SECRET_FIELDS.intersection(event_dict):
        event_dict[key] = "***"
    return event_dict


def setup_logging(log_level: str = "INFO", json_logs: bool = True) -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        json_logs: JSON lines for production, colored console output otherwise
    """
    renderer = (
        structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            _redact_secrets,
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind_job_context(job_id: str, user_id: str, report_type: str) -> None:
    """Attach job identity to every log line emitted while the job runs."""
    structlog.contextvars.bind_contextvars(
        job_id=job_id, user_id=user_id, report_type=report_type
    )


def bind_request_context(request_id: str) -> None:
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id)


def clear_job_context() -> None:
    structlog.contextvars.unbind_contextvars("job_id", "user_id", "report_type")


def log_health_check(service: str, healthy: bool, latency_ms: float, error: str = None):
    logger = get_logger("health")
    fields = {"service": service, "healthy": healthy, "latency_ms": latency_ms}
    if error:
        fields["error"] = error

    if healthy:
        logger.info("Health check passed", **fields)
    else:
        logger.error("Health check failed", **fields)
