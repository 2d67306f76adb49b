import logging
import re

import structlog

from settings import LOG_LEVEL

REDACTED = "[REDACTED]"
PII_KEYS = {"email", "phone"}
# free-text fields that may quote user data, e.g. a DuplicateKeyError naming the email
TEXT_KEYS = {"error", "exception", "event"}
EMAIL_RE = re.compile(r"[\w.+-]+@[\w-]+(\.[\w-]+)+")
PHONE_RE = re.compile(r"(?<!\d)\d{10}(?!\d)")


def scrub_text(text: str) -> str:
    return PHONE_RE.sub(REDACTED, EMAIL_RE.sub(REDACTED, text))


def _redact(value):
    if isinstance(value, dict):
        return {k: (REDACTED if k in PII_KEYS and v else _redact(v)) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_redact(v) for v in value]
    return value


def redact_pii(logger, method_name, event_dict):
    """Mask email and phone values anywhere in the event before rendering."""
    for key, value in list(event_dict.items()):
        if key in PII_KEYS and value:
            event_dict[key] = REDACTED
        elif key in TEXT_KEYS and isinstance(value, str):
            event_dict[key] = scrub_text(value)
        else:
            event_dict[key] = _redact(value)
    return event_dict


def configure_logging(level: str = LOG_LEVEL) -> None:
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            # after format_exc_info so the rendered traceback is scrubbed too
            redact_pii,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(level.upper())),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def bind_request(request_id: str, **values) -> None:
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id, **values)
