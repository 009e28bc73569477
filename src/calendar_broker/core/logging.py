"""Structured logging for the calendar broker.

structlog's ProcessorFormatter renders every ``logging.getLogger(__name__)``
record, so call sites stay plain stdlib logging. Each record carries three
call-context fields taken from structlog's context variables:

- ``broker``: bound once per process by :func:`configure_logging`
- ``tool``: bound by :func:`tool_call` around each MCP tool invocation
- ``account_id``: bound by :func:`account_scope` around each per-account
  sub-request

Sub-requests running under ``asyncio.gather`` each get their own context, so
one account's binding never shows up on another account's records. Token and
secret values are redacted from messages before rendering.

Console output always goes to stderr: under the ``stdio`` transport stdout
carries MCP frames. With ``log_root`` set, a JSON-lines copy of everything
is written to ``<log_root>/<broker>.jsonl``.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import structlog
from opentelemetry import trace

from calendar_broker.client import redact_credential_values

CALL_CONTEXT_KEYS = ("broker", "tool", "account_id")
DEFAULT_LOG_NAME = "calendar-broker"

_NOISE_LOGGERS = (
    "mcp.server.lowlevel.server",
    "uvicorn.access",
    "uvicorn.error",
    "httpx",
    "httpcore",
)


def bind_broker(name: str) -> None:
    """Tag every record logged from this context onwards with the broker name."""
    structlog.contextvars.bind_contextvars(broker=name)


@contextmanager
def tool_call(tool: str) -> Iterator[None]:
    with structlog.contextvars.bound_contextvars(tool=tool):
        yield


@contextmanager
def account_scope(account_id: str) -> Iterator[None]:
    with structlog.contextvars.bound_contextvars(account_id=account_id):
        yield


# ---------------------------------------------------------------------------
# Structlog processors
# ---------------------------------------------------------------------------


def fill_call_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Give every record the same call-context keys, ``None`` when unbound."""
    for key in CALL_CONTEXT_KEYS:
        event_dict.setdefault(key, None)
    return event_dict


def redact_secrets(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    for key in ("event", "exception"):
        value = event_dict.get(key)
        if isinstance(value, str):
            event_dict[key] = redact_credential_values(value)
    return event_dict


def add_otel_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Add ``trace_id`` and ``span_id`` when a recording span is current."""
    ctx = trace.get_current_span().get_span_context()
    if ctx.is_valid:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def _pre_chain(time_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        fill_call_context,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=time_fmt),
        add_otel_context,
    ]


def _make_formatter(fmt: str) -> structlog.stdlib.ProcessorFormatter:
    if fmt == "json":
        processors: list[structlog.types.Processor] = [
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            redact_secrets,
            structlog.processors.JSONRenderer(),
        ]
        pre_chain = _pre_chain("iso")
    else:
        processors = [
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            redact_secrets,
            structlog.dev.ConsoleRenderer(),
        ]
        pre_chain = _pre_chain("%H:%M:%S")
    return structlog.stdlib.ProcessorFormatter(processors=processors, foreign_pre_chain=pre_chain)


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | None = None,
    broker_name: str | None = None,
) -> None:
    """Configure structured logging for the process.

    Parameters
    ----------
    level:
        Root log level (e.g. "DEBUG", "INFO", "WARNING").
    fmt:
        ``"text"`` for colored console output, ``"json"`` for JSON lines.
    log_root:
        Directory for the JSON-lines log file.
    broker_name:
        Bound as ``broker`` on every record and used as the file name.
    """
    if broker_name:
        bind_broker(broker_name)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(_make_formatter(fmt))

    root = logging.getLogger()
    # Avoid duplicate output on reconfiguration
    root.handlers.clear()
    root.addHandler(console_handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _NOISE_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if log_root is not None:
        log_root = Path(log_root)
        log_root.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(
            log_root / f"{broker_name or DEFAULT_LOG_NAME}.jsonl", encoding="utf-8"
        )
        file_handler.setFormatter(_make_formatter("json"))
        root.addHandler(file_handler)
