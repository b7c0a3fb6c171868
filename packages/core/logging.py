"""Structured logging with structlog.

JSON lines for batch runs, colorized console for local work. Logs go to
stderr so the CLIs can print their JSON results on stdout.

Usage:
    import structlog
    logger = structlog.get_logger(__name__)
    logger.info("event_name", key="value", count=42)
"""

import logging
import sys

import structlog

# Statement text can carry names and account numbers; keep log lines short
TRUNCATED_FIELDS = ("description", "text", "raw_payload", "pattern")
MAX_FIELD_CHARS = 80


def truncate_statement_text(_logger, _method_name, event_dict):
    """structlog processor: clip free-text statement fields."""
    for key in TRUNCATED_FIELDS:
        value = event_dict.get(key)
        if isinstance(value, str) and len(value) > MAX_FIELD_CHARS:
            event_dict[key] = value[:MAX_FIELD_CHARS] + "..."
    return event_dict


def setup_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structured logging for the pipeline.

    Args:
        log_level: Python log level string (DEBUG, INFO, WARNING, ERROR).
            Unknown names fall back to INFO.
        json_output: JSON lines when True, console renderer otherwise.
    """
    level = getattr(logging, str(log_level).upper(), None)
    if not isinstance(level, int):
        level = logging.INFO

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        truncate_statement_text,
    ]

    if json_output:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(ensure_ascii=False),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level)
    logging.getLogger().setLevel(level)
    # pdfminer is chatty at DEBUG about every content stream it parses
    logging.getLogger("pdfminer").setLevel(max(level, logging.WARNING))
