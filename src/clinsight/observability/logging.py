"""
Structured Logging

structlog configuration shared by the API and the analytics engine:
JSON (or console) output, ISO timestamps and redaction of fields that may
carry protected health information.
"""

import logging
import sys
from typing import Any, Iterable

import structlog

REDACTED = "[REDACTED]"


def make_redaction_processor(fields: Iterable[str]):
    """
    Build a processor that masks the given event keys.

    Nested dicts are walked so ``data={"clinical_narrative": ...}`` is masked
    as well.
    """
    redact = frozenset(fields)

    def _mask(value: Any) -> Any:
        if isinstance(value, dict):
            return {k: REDACTED if k in redact else _mask(v) for k, v in value.items()}
        return value

    def redaction_processor(logger, method_name, event_dict):
        for key in list(event_dict):
            if key in redact:
                event_dict[key] = REDACTED
            elif isinstance(event_dict[key], dict):
                event_dict[key] = _mask(event_dict[key])
        return event_dict

    return redaction_processor


def configure_logging(settings) -> None:
    """Configure stdlib logging and structlog from application settings."""
    level = getattr(logging, settings.app.log_level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
        force=True,
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if settings.app.log_json
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            make_redaction_processor(settings.app.log_redact_fields),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
