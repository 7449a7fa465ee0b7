"""
Structured logging for the voice agent.

structlog is layered on top of stdlib logging so that our own loggers and
third-party loggers (aiohttp, websockets) share one formatter. Each record is
tagged with the service, the emitting component and, inside a call, the call
id of the session that produced it.
"""

import contextvars
import logging
import os
import sys
import time
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional

import structlog
from structlog import dev as structlog_dev

SERVICE_NAME = "voice-agent"

# Call id of the session currently running on this task (asyncio copies the
# context into every task it creates, so child tasks inherit it).
call_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("call_id", default=None)

SENSITIVE_KEYS = {
    "api_key", "apikey", "api_keys", "xi_api_key",
    "token", "access_token", "refresh_token", "auth_token", "bearer",
    "password", "passwd", "pwd", "pass",
    "authorization", "auth", "auth_id",
    "credential", "credentials", "secret", "secrets",
    "private_key", "client_secret",
}
_NORMALIZED_SENSITIVE = {k.replace("_", "").replace("-", "") for k in SENSITIVE_KEYS}


def get_call_id() -> Optional[str]:
    return call_id_var.get()


def bind_call_id(call_id: Optional[str]) -> None:
    """Attach a call id to every record logged from the current task."""
    call_id_var.set(call_id or None)


def add_call_id(logger, method_name, event_dict):
    call_id = get_call_id()
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


def _is_sensitive(key: Any) -> bool:
    # Exact or suffix match only, so "passthrough" survives while
    # "user_password" does not.
    normalized = str(key).lower().replace("_", "").replace("-", "")
    return any(normalized == p or normalized.endswith(p) for p in _NORMALIZED_SENSITIVE)


def _redact(value: Any) -> Any:
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, str):
        if not value:
            return ""
        if len(value) > 4:
            return f"{value[:2]}***REDACTED***"
        return "***REDACTED***"
    if isinstance(value, (list, tuple)):
        return [_redact(v) for v in value]
    if isinstance(value, dict):
        return {k: _redact(v) if _is_sensitive(k) else v for k, v in value.items()}
    return "***REDACTED***"


def _sanitize(data: Dict[Any, Any]) -> Dict[Any, Any]:
    sanitized = {}
    for key, value in data.items():
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
    Redact provider credentials from log events.

    Deepgram, OpenAI, ElevenLabs and Plivo credentials travel through adapter
    options and request headers; any key that looks like a credential is
    replaced with a redacted marker that keeps the first two characters.
    """
    return _sanitize(event_dict)


def _resolve_log_file(path: str) -> str:
    ts = time.strftime("%Y%m%d-%H%M%S")
    if path.endswith(os.sep) or os.path.isdir(path):
        return os.path.join(path, f"{SERVICE_NAME}-{ts}.log")
    return path.replace("{ts}", ts)


def configure_logging(log_level: Any = "INFO", log_to_file: bool = False, log_file_path: str = "voice-agent.log") -> None:
    """
    Configure structlog + stdlib logging.

    Environment overrides:
      - LOG_LEVEL: debug|info|warning|error|critical
      - LOG_FORMAT: json|console (default: json)
      - LOG_COLOR: 0|1 (console only; default: 1)
      - LOG_TO_FILE: 0|1
      - LOG_FILE_PATH: file path, directory, or template containing {ts}
      - LOG_SHOW_TRACEBACKS: auto|always|never (auto = only at DEBUG)
    """
    env_level = os.getenv("LOG_LEVEL")
    if env_level:
        log_level = env_level
    if os.getenv("LOG_TO_FILE") is not None:
        log_to_file = os.getenv("LOG_TO_FILE", "0").strip() in ("1", "true", "True")
    log_file_path = os.getenv("LOG_FILE_PATH", log_file_path)
    log_format = os.getenv("LOG_FORMAT", "json").strip().lower()
    log_color = os.getenv("LOG_COLOR", "1").strip() not in ("0", "false", "False")

    if isinstance(log_level, str):
        level_name = log_level.upper()
        level_value = getattr(logging, level_name, logging.INFO)
    else:
        level_value = int(log_level)
        level_name = logging.getLevelName(level_value)

    tb_mode = os.getenv("LOG_SHOW_TRACEBACKS", "auto").strip().lower()
    if tb_mode == "always":
        show_tracebacks = True
    elif tb_mode == "never":
        show_tracebacks = False
    else:
        show_tracebacks = level_name == "DEBUG"

    def suppress_exc_info_if_disabled(logger, method_name, event_dict):
        if not show_tracebacks:
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

    renderer = (
        structlog_dev.ConsoleRenderer(colors=log_color)
        if log_format == "console"
        else structlog.processors.JSONRenderer(ensure_ascii=False)
    )
    formatter = structlog.stdlib.ProcessorFormatter(
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
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_to_file:
        path = _resolve_log_file(log_file_path)
        try:
            directory = os.path.dirname(path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            file_handler = RotatingFileHandler(path, maxBytes=10 * 1024 * 1024, backupCount=5)
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)
        except OSError as exc:
            get_logger(__name__).warning(
                "File logging disabled; continuing with console only",
                error=str(exc),
                configured_path=log_file_path,
            )

    for noisy in ("websockets", "websockets.client", "aiohttp", "aiohttp.access", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str):
    """Get a structlog logger."""
    return structlog.get_logger(name)
