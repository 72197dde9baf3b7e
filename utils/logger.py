"""
Structured logging for the describe pipeline.

structlog renders JSON for log shippers or a colored console view
for local runs; stage timings and decode progress are emitted as
keyword fields (latency_ms, step, tokens) rather than formatted text.
"""

from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from typing import Iterator, Optional

import structlog

# onnxruntime and httpx log at INFO on every session load / request
_NOISY_LOGGERS = ("httpx", "httpcore", "onnxruntime")


def setup_logging(
    *,
    level: Optional[str] = None,
    json_output: Optional[bool] = None,
) -> None:
    """
    Call once at process startup. Configures both stdlib logging
    and structlog. Unset arguments fall back to LOG_LEVEL / LOG_JSON.
    """
    if level is None or json_output is None:
        from configs.settings import get_settings

        cfg = get_settings()
        level = cfg.log_level if level is None else level
        json_output = cfg.log_json if json_output is None else json_output

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json_output:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a named, bound logger."""
    return structlog.get_logger(name)


@contextmanager
def image_context(**fields) -> Iterator[None]:
    """
    Attach per-image fields (image id, worker) to every log line inside
    the block. Only these keys are removed on exit; anything the caller
    bound before stays in place.
    """
    with structlog.contextvars.bound_contextvars(**fields):
        yield
