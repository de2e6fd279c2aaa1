from __future__ import annotations

import logging
from logging.config import dictConfig
from typing import Any, Iterable, Sequence

from settings import get_settings

# Record attributes appended to log lines, in this order, when present.
CONTEXT_KEYS = (
    "dataset_id",
    "tier",
    "field",
    "area_id",
    "resolution",
    "row_count",
    "offset",
    "capacity",
    "elapsed_ms",
    "reason",
)

_configured = False


def _render_value(value: Any) -> str:
    if isinstance(value, float):
        return f"{value:.1f}"
    if isinstance(value, (list, tuple, set, frozenset)):
        return ",".join(str(item) for item in value)
    return str(value)


class ContextualFormatter(logging.Formatter):
    """Formatter that appends ``key=value`` pairs for known context attributes."""

    def __init__(
        self,
        fmt: str | None = None,
        datefmt: str | None = None,
        style: str = "%",
        context_keys: Iterable[str] | None = None,
    ) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt, style=style)
        self._context_keys: Sequence[str] = tuple(context_keys or CONTEXT_KEYS)

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        pairs = [
            f"{key}={_render_value(record.__dict__[key])}"
            for key in self._context_keys
            if record.__dict__.get(key) is not None
        ]
        return f"{message} | {' '.join(pairs)}" if pairs else message


class ContextAdapter(logging.LoggerAdapter):
    """Logger adapter whose bound context is merged under per-call extras."""

    def process(self, msg, kwargs):
        extra = dict(self.extra or {})
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs


def get_logger(name: str, **context: object) -> ContextAdapter:
    """Return a logger that stamps ``context`` onto every record it emits."""
    return ContextAdapter(logging.getLogger(name), context)


def configure_logging(level: str | int | None = None, *, force: bool = False) -> None:
    """Install the root handler once per process; ``force`` reapplies it."""
    global _configured
    if _configured and not force:
        return

    root_level = level if level is not None else get_settings().log_level
    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "contextual": {
                    "()": ContextualFormatter,
                    "fmt": "%(asctime)sZ %(levelname)-7s %(name)s: %(message)s",
                    "datefmt": "%Y-%m-%dT%H:%M:%S",
                    "context_keys": list(CONTEXT_KEYS),
                }
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "contextual",
                }
            },
            "root": {"handlers": ["console"], "level": root_level},
            # httpx logs every request at INFO; pages are logged by the client.
            "loggers": {"httpx": {"level": "WARNING"}},
        }
    )
    _configured = True
