"""Structured logging configuration for the credential broker.

Configures loguru to output JSON lines compatible with Google Cloud Logging in
production and human-readable colored output in development. Credential
material that ends up in a log call's ``extra`` is masked before it is
written.
"""

import json
import logging
import sys
import traceback
from typing import Any

from loguru import logger

SERVICE_NAME = "credential-broker"

# Keys whose values must never reach a log sink
SENSITIVE_KEYS = frozenset(
    {
        "access_token",
        "refresh_token",
        "assertion",
        "client_secret",
        "private_key",
        "code",
        "token",
        "state",
    }
)

_SEVERITY = {
    "TRACE": "DEBUG",
    "DEBUG": "DEBUG",
    "INFO": "INFO",
    "SUCCESS": "INFO",
    "WARNING": "WARNING",
    "ERROR": "ERROR",
    "CRITICAL": "CRITICAL",
}


def redact(value: Any) -> Any:
    """Mask sensitive keys in (possibly nested) log context."""
    if isinstance(value, dict):
        return {
            k: "***" if k in SENSITIVE_KEYS and v else redact(v) for k, v in value.items()
        }
    if isinstance(value, list | tuple):
        return [redact(v) for v in value]
    return value


def _redact_record(record: dict[str, Any]) -> None:
    record["extra"].update(redact(dict(record["extra"])))


def _cloud_logging_serializer(record: dict[str, Any]) -> str:
    """Serialize a log record to Google Cloud Logging's JSON format.

    Additional fields from ``extra`` are included at the top level.
    """
    log_entry: dict[str, Any] = {
        "severity": _SEVERITY.get(record["level"].name, "INFO"),
        "message": record["message"],
        "time": record["time"].isoformat(),
        "service": SERVICE_NAME,
    }

    if record["level"].no >= 40:  # ERROR and above
        log_entry["logging.googleapis.com/sourceLocation"] = {
            "file": record["file"].path,
            "line": str(record["line"]),
            "function": record["function"],
        }

    if record["exception"] is not None:
        exc_info = record["exception"]
        tb_str = None
        if exc_info.traceback:
            tb_str = "".join(
                traceback.format_exception(exc_info.type, exc_info.value, exc_info.traceback)
            )
        log_entry["exception"] = {
            "type": exc_info.type.__name__ if exc_info.type else None,
            "value": str(exc_info.value) if exc_info.value else None,
            "traceback": tb_str,
        }

    for key, value in record.get("extra", {}).items():
        if key.startswith("_"):
            continue
        # logger.info("...", extra={...}) lands as a nested "extra" dict
        if key == "extra" and isinstance(value, dict):
            log_entry.update(value)
        else:
            log_entry[key] = value

    return json.dumps(log_entry, default=str)


def _json_sink(message: Any) -> None:
    """Sink that writes serialized JSON to stdout."""
    sys.stdout.write(_cloud_logging_serializer(message.record) + "\n")
    sys.stdout.flush()


def configure_logging(*, is_production: bool, log_level: str = "INFO") -> None:
    """Configure loguru for the application.

    Args:
        is_production: If True, output JSON for Cloud Logging. If False, use
            human-readable colored output for development.
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
    """
    logger.remove()
    logger.configure(patcher=_redact_record)

    if is_production:
        logger.add(
            _json_sink,
            level=log_level,
            format="{message}",  # Format is handled by the sink
            backtrace=False,
            diagnose=False,  # Never render local variables: they hold tokens
        )
    else:
        logger.add(
            sys.stderr,
            level=log_level,
            format=(
                "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
                "<level>{level: <8}</level> | "
                "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
                "<level>{message}</level> {extra}"
                "\n{exception}"
            ),
            colorize=True,
            backtrace=True,
            diagnose=False,
        )

    _intercept_standard_logging(log_level)


class InterceptHandler(logging.Handler):
    """Route standard library log records to loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Find caller from where the logged message originated
        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def _intercept_standard_logging(log_level: str) -> None:
    """Capture logs from uvicorn, httpx and the Firestore client."""
    logging.basicConfig(handlers=[InterceptHandler()], level=log_level, force=True)

    for name in ["uvicorn", "uvicorn.error", "uvicorn.access", "httpx", "httpcore"]:
        logging.getLogger(name).setLevel(log_level)
        logging.getLogger(name).handlers = [InterceptHandler()]

    # httpx logs full request URLs at INFO; keep it quieter than the app
    logging.getLogger("httpx").setLevel(max(logging.WARNING, logging.getLevelName(log_level)))
