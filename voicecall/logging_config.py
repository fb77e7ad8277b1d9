"""
Structured Logging Configuration

Configures structlog on top of stdlib logging for the voicecall bridge.
Every record carries the service name, the emitting component and, while
an event for a call is being dispatched, the call id. Output is JSON by
default or a colorized console rendering when LOG_FORMAT=console.
"""

import contextvars
import logging
import os
import sys
from logging.handlers import RotatingFileHandler

import structlog
from structlog import dev as structlog_dev

SERVICE_NAME = "voicecall-bridge"

# Call id of the event currently being dispatched
call_id_var = contextvars.ContextVar("call_id", default=None)

REDACTED = "***REDACTED***"

SENSITIVE_KEYS = frozenset({
    "api_key", "apikey", "api_keys",
    "token", "access_token", "refresh_token", "auth_token", "bearer",
    "password", "passwd", "pwd",
    "authorization", "auth",
    "credential", "credentials", "secret", "secrets",
    "private_key", "client_secret",
})

_NORMALIZED_SENSITIVE = frozenset(k.replace("_", "").replace("-", "") for k in SENSITIVE_KEYS)


def bind_call_id(call_id):
    """Bind a call id to the current context; returns the reset token."""
    return call_id_var.set(call_id)


def reset_call_id(token) -> None:
    call_id_var.reset(token)


def add_call_id(logger, method_name, event_dict):
    """Add the dispatching call id unless the log call already set one."""
    call_id = call_id_var.get()
    if call_id and "call_id" not in event_dict:
        event_dict["call_id"] = call_id
    return event_dict


def add_service_context(logger, method_name, event_dict):
    event_dict["service"] = SERVICE_NAME
    component = event_dict.get("logger")
    if not component:
        component = getattr(getattr(logger, "logger", None), "name", None) or getattr(logger, "name", "unknown")
    event_dict["component"] = component
    return event_dict


def _is_sensitive(key) -> bool:
    normalized = str(key).lower().replace("_", "").replace("-", "")
    # Suffix match catches compound keys like "bridge_api_key"
    return any(normalized == k or normalized.endswith(k) for k in _NORMALIZED_SENSITIVE)


def _redact(value):
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, str):
        if not value:
            return ""
        # Keep a two character prefix so key families stay recognizable
        return f"{value[:2]}{REDACTED}" if len(value) > 4 else REDACTED
    if isinstance(value, (list, tuple)):
        return [_redact(v) for v in value]
    if isinstance(value, dict):
        return {k: _redact(v) for k, v in value.items()}
    return REDACTED


def _sanitize(mapping):
    sanitized = {}
    for key, value in mapping.items():
        if _is_sensitive(key):
            sanitized[key] = _redact(value)
        elif isinstance(value, dict):
            sanitized[key] = _sanitize(value)
        elif isinstance(value, (list, tuple)):
            sanitized[key] = [_sanitize(v) if isinstance(v, dict) else v for v in value]
        else:
            sanitized[key] = value
    return sanitized


def sanitize_secrets(logger, method_name, event_dict):
    """
    Redact credentials from log events.

    The bridge bearer token travels in request headers and config dumps;
    any key that names a credential (api_key, authorization, token, ...)
    has its value replaced, at any nesting depth.
    """
    return _sanitize(event_dict)


def configure_logging(log_level="INFO", log_to_file=False, log_file_path="voicecall.log"):
    """
    Set up structured logging.

    Environment overrides:
      - LOG_LEVEL: debug|info|warning|error|critical
      - LOG_FORMAT: json|console (default: json)
      - LOG_COLOR: 0|1 (console only; default: 1)
      - LOG_TO_FILE: 0|1 (default: 0)
      - LOG_FILE_PATH: path (default: voicecall.log)
    """
    env_level = os.getenv("LOG_LEVEL")
    if env_level:
        log_level = env_level.upper()
    if os.getenv("LOG_TO_FILE") is not None:
        log_to_file = os.getenv("LOG_TO_FILE", "0").strip() in ("1", "true", "True")
    log_file_path = os.getenv("LOG_FILE_PATH", log_file_path)
    log_format = os.getenv("LOG_FORMAT", "json").strip().lower()
    log_color = os.getenv("LOG_COLOR", "1").strip() not in ("0", "false", "False")

    if isinstance(log_level, str):
        level_value = getattr(logging, log_level.upper(), logging.INFO)
    else:
        level_value = int(log_level)
    show_tracebacks = level_value <= logging.DEBUG

    def suppress_exc_info_if_disabled(logger, method_name, event_dict):
        """Only render stack traces at debug level."""
        if not show_tracebacks and event_dict.get("exc_info"):
            event_dict.pop("exc_info", None)
        return event_dict

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            add_service_context,
            add_call_id,
            sanitize_secrets,
            suppress_exc_info_if_disabled,
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    renderer = structlog_dev.ConsoleRenderer(colors=log_color) if log_format == "console" else structlog.processors.JSONRenderer()
    processor_formatter = structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=[
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
        ],
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(level_value)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(processor_formatter)
    root_logger.addHandler(console_handler)

    if log_to_file:
        try:
            directory = os.path.dirname(log_file_path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            file_handler = RotatingFileHandler(log_file_path, maxBytes=10 * 1024 * 1024, backupCount=5)
            file_handler.setFormatter(processor_formatter)
            root_logger.addHandler(file_handler)
        except OSError as e:
            root_logger.warning("File logging disabled (%s); continuing with console only", e)

    for noisy in ("websockets", "websockets.client", "aiohttp", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str):
    """Get a structlog logger."""
    return structlog.get_logger(name)
