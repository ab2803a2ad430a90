from __future__ import annotations

import asyncio
import logging
import os
import random
import weakref
from typing import Any, Dict, Mapping, MutableMapping

import aiohttp
import orjson

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "Alphfolio/1.0 (+https://local)"


class HTTPError(Exception):
    """Raised when an HTTP request returns a non-success status code."""


class UpstreamError(HTTPError):
    """Transport or HTTP failure talking to a price provider.

    ``status`` is ``None`` for network errors and timeouts.
    """

    def __init__(
        self,
        provider: str,
        message: str,
        *,
        status: int | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.status = status
        self.headers: Dict[str, str] = dict(headers or {})

    @property
    def retry_after(self) -> float | None:
        raw = self.headers.get("Retry-After") or self.headers.get("retry-after")
        if not raw:
            return None
        try:
            return float(raw)
        except ValueError:
            return None


def dumps(obj: object) -> bytes:
    return orjson.dumps(obj)


def loads(data: str | bytes) -> Any:
    if isinstance(data, str):
        data = data.encode()
    return orjson.loads(data)


# Maintain a session per event loop to avoid cross-loop usage errors when
# running multiple asyncio loops in different threads.
_SESSIONS: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, aiohttp.ClientSession]" = (
    weakref.WeakKeyDictionary()
)


async def get_session(timeout: float | None = None) -> aiohttp.ClientSession:
    """Return an aiohttp session bound to the current event loop."""

    loop = asyncio.get_running_loop()
    sess = _SESSIONS.get(loop)
    if sess is None or sess.closed:
        ua = os.getenv("HTTP_USER_AGENT", DEFAULT_USER_AGENT)
        if timeout is None:
            try:
                timeout = float(os.getenv("HTTP_TIMEOUT_SEC", "10") or 10)
            except ValueError:
                timeout = 10.0
        sess = aiohttp.ClientSession(
            headers={"User-Agent": ua},
            timeout=aiohttp.ClientTimeout(total=timeout),
            json_serialize=lambda obj: dumps(obj).decode(),
        )
        _SESSIONS[loop] = sess
    return sess


async def close_session() -> None:
    """Close all known aiohttp sessions."""

    to_close = list(_SESSIONS.values())
    _SESSIONS.clear()
    for sess in to_close:
        if not sess.closed:
            try:
                await sess.close()
            except (aiohttp.ClientError, RuntimeError) as exc:
                logger.debug("HTTP: failed to close session: %s", exc)


async def request_json(
    session: aiohttp.ClientSession,
    url: str,
    provider: str,
    *,
    params: MutableMapping[str, Any] | None = None,
    headers: Mapping[str, str] | None = None,
    attempts: int = 3,
    backoff: float = 0.5,
    timeout: float | None = None,
) -> Any:
    """GET ``url`` and decode the JSON body.

    Network errors, timeouts and 5xx responses are retried up to ``attempts``
    times with jittered exponential back-off.  Any non-2xx status that
    survives the retries (and every 4xx immediately) is raised as
    :class:`UpstreamError` carrying the status.
    """

    attempts = max(1, int(attempts))
    last_error: UpstreamError | None = None
    for attempt in range(attempts):
        try:
            async with session.get(
                url,
                params=params,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=timeout) if timeout else None,
            ) as resp:
                status = getattr(resp, "status", 200)
                if status >= 400:
                    text = await resp.text()
                    error = UpstreamError(
                        provider,
                        f"HTTP {status}: {text[:200]}",
                        status=status,
                        headers=getattr(resp, "headers", None),
                    )
                    if status < 500:
                        raise error
                    last_error = error
                else:
                    body = await resp.read()
                    if not body:
                        return None
                    try:
                        return loads(body)
                    except orjson.JSONDecodeError as exc:
                        raise UpstreamError(
                            provider, f"invalid JSON: {exc}", status=status
                        ) from exc
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            last_error = UpstreamError(
                provider,
                f"{exc.__class__.__name__}: {exc}",
                status=getattr(exc, "status", None),
            )
            last_error.__cause__ = exc
        if attempt == attempts - 1:
            break
        delay = backoff * (2 ** attempt)
        jitter = random.uniform(0.05, 0.25) if backoff > 0 else 0.0
        logger.debug(
            "HTTP: %s attempt %d/%d failed (%s); retrying in %.2fs",
            provider,
            attempt + 1,
            attempts,
            last_error,
            delay + jitter,
        )
        await asyncio.sleep(delay + jitter)
    assert last_error is not None
    raise last_error


__all__ = [
    "HTTPError",
    "UpstreamError",
    "close_session",
    "dumps",
    "get_session",
    "loads",
    "request_json",
]
