"""Logging setup for the pricing engine.

Log lines carry a component prefix (``"Prices: ..."``, ``"Portfolio: ..."``);
the JSON formatter lifts it into its own field so machine logs can be filtered
per layer.  Repeated upstream failures go through :class:`WarningThrottle`.
"""

from __future__ import annotations

import logging
import re
import sys
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Mapping, Tuple

import orjson

DEFAULT_FORMAT = "%(asctime)sZ [%(levelname)s] %(name)s:%(lineno)d | %(message)s"
DEFAULT_DATEFMT = "%Y-%m-%d %H:%M:%S"

_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "aiohttp.access")

_STDOUT_SENTINEL = "_alphfolio_stdout_handler"

# "Prices: ...", "Wallet API: ..."
_COMPONENT_RE = re.compile(r"^([A-Z][A-Za-z]*(?: [A-Z][A-Za-z]*)?): (.*)$", re.DOTALL)

_STANDARD_ATTRS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime"}


class _UTCFormatter(logging.Formatter):
    converter = time.gmtime


class JsonFormatter(_UTCFormatter):
    """One orjson-encoded object per record.

    ``static_fields`` are merged into every payload (deployment name, host).
    A leading component prefix in the message becomes ``component``; extras
    passed through ``logger.x(..., extra={...})`` are copied verbatim.
    """

    def __init__(self, static_fields: Mapping[str, Any] | None = None) -> None:
        super().__init__(datefmt=DEFAULT_DATEFMT)
        self.static_fields = dict(static_fields or {})

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        component = None
        match = _COMPONENT_RE.match(message)
        if match:
            component, message = match.group(1).lower().replace(" ", "_"), match.group(2)

        payload: Dict[str, Any] = dict(self.static_fields)
        payload.update(
            ts=f"{self.formatTime(record)}.{int(record.msecs):03d}Z",
            level=record.levelname,
            logger=record.name,
            line=record.lineno,
            msg=message,
        )
        if component is not None:
            payload["component"] = component
        if record.exc_info:
            payload["exc_type"] = record.exc_info[0].__name__ if record.exc_info[0] else None
            payload["exc_info"] = self.formatException(record.exc_info)
        if record.stack_info:
            payload["stack_info"] = record.stack_info
        payload.update(
            (key, value)
            for key, value in record.__dict__.items()
            if key not in _STANDARD_ATTRS and not key.startswith("_") and key not in payload
        )
        return orjson.dumps(payload, default=str).decode()


def setup_stdout_logging(
    *,
    level: int = logging.INFO,
    json: bool = False,
    fmt: str | None = None,
    datefmt: str | None = None,
    propagate_off: Iterable[str] = _NOISY_LOGGERS,
    static_fields: Mapping[str, Any] | None = None,
) -> logging.StreamHandler:
    """Ensure a single ``StreamHandler`` to ``sys.stdout`` exists on the root logger."""

    root = logging.getLogger()
    root.setLevel(level)

    handler = getattr(root, _STDOUT_SENTINEL, None)
    if handler is None or handler not in root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        root.addHandler(handler)
        setattr(root, _STDOUT_SENTINEL, handler)

    if json:
        handler.setFormatter(JsonFormatter(static_fields))
    else:
        handler.setFormatter(_UTCFormatter(fmt or DEFAULT_FORMAT, datefmt or DEFAULT_DATEFMT))
    handler.setLevel(level)

    for name in propagate_off:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
    return handler


@dataclass(slots=True)
class _Window:
    emitted_at: float
    suppressed: int = 0


class WarningThrottle:
    """Let one warning per key through each interval and count the rest.

    Keys are scoped by logger name.  When a key is let through again, the
    number of warnings swallowed since the last one is appended to it.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self.clock = clock
        self._lock = threading.Lock()
        self._windows: Dict[Tuple[str, str], _Window] = {}

    def warn(
        self,
        interval: float,
        key: str,
        logger: logging.Logger,
        message: str,
        *args: Any,
        **kwargs: Any,
    ) -> bool:
        scoped = (logger.name, key)
        now = self.clock()
        with self._lock:
            window = self._windows.get(scoped)
            if window is not None and interval > 0 and now - window.emitted_at < interval:
                window.suppressed += 1
                return False
            suppressed = window.suppressed if window is not None else 0
            self._windows[scoped] = _Window(now)
        if suppressed:
            message = f"{message} (%d similar suppressed)"
            args = (*args, suppressed)
        logger.warning(message, *args, **kwargs)
        return True

    def suppressed(self) -> Dict[str, int]:
        with self._lock:
            return {f"{name}:{key}": w.suppressed for (name, key), w in self._windows.items() if w.suppressed}

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()


_THROTTLE = WarningThrottle()


def warn_once_per(
    minutes: float,
    key: str,
    message: str,
    *args: Any,
    logger: logging.Logger | None = None,
    **kwargs: Any,
) -> bool:
    """Warn at most once per *minutes* for *key*; returns whether it was logged."""

    return _THROTTLE.warn(max(0.0, minutes) * 60.0, key, logger or logging.getLogger(), message, *args, **kwargs)


def suppressed_warnings() -> Dict[str, int]:
    return _THROTTLE.suppressed()


def reset_warn_once_cache() -> None:
    _THROTTLE.reset()


__all__ = [
    "JsonFormatter",
    "WarningThrottle",
    "reset_warn_once_cache",
    "setup_stdout_logging",
    "suppressed_warnings",
    "warn_once_per",
]
