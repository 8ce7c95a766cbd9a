"""HTTP retry helper for tide and weather data sources.

Retries transient failures only (timeouts, connection errors, 429 and 5xx)
with exponential backoff. Client errors such as 400/404 are raised at once
because retrying a bad station id or malformed query never helps.

Usage:
    from app.utils.http_retry import retry_request

    resp = retry_request(client.get, url, params=params)
"""
from __future__ import annotations

import logging
import time
from typing import Any, Callable

import httpx

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({429, 500, 502, 503, 504})

_RETRYABLE_EXCEPTIONS = (httpx.ConnectError, httpx.TimeoutException, OSError)

# Upper bound for a single Retry-After wait; data sources feed a 10 s tick
_MAX_RETRY_AFTER_SECONDS = 30.0


def backoff_delays(base: float = 0.5, attempts: int = 3, factor: float = 2.0) -> list[float]:
    """Exponential backoff schedule, e.g. base=0.5 → [0.5, 1.0, 2.0]."""
    return [base * factor ** i for i in range(attempts)]


DEFAULT_DELAYS: list[float] = backoff_delays()


def retry_request(
    request_fn: Callable[..., httpx.Response],
    *args: Any,
    delays: list[float] | None = None,
    **kwargs: Any,
) -> httpx.Response:
    """Run an httpx request callable, retrying transient failures.

    Args:
        request_fn: Bound method like ``client.get``.
        *args: Positional args forwarded to request_fn (typically the URL).
        delays: Backoff delays in seconds; ``len(delays)`` is the retry budget.
        **kwargs: Keyword args forwarded to request_fn.

    Returns:
        httpx.Response with a status code below 400.

    Raises:
        httpx.HTTPStatusError: Non-retryable status, or retryable status after
            the budget is spent.
        httpx.ConnectError / httpx.TimeoutException: After all retries.
    """
    if delays is None:
        delays = DEFAULT_DELAYS

    for attempt in range(1 + len(delays)):
        try:
            resp = request_fn(*args, **kwargs)
        except _RETRYABLE_EXCEPTIONS as exc:
            if attempt >= len(delays):
                raise
            _sleep_before_retry(delays[attempt], type(exc).__name__, args, attempt, len(delays))
            continue

        if resp.status_code < 400:
            return resp
        if resp.status_code not in _RETRYABLE_STATUS_CODES or attempt >= len(delays):
            resp.raise_for_status()

        delay = delays[attempt]
        if resp.status_code == 429:
            delay = max(delay, _parse_retry_after(resp.headers.get("Retry-After")))
        _sleep_before_retry(delay, f"HTTP {resp.status_code}", args, attempt, len(delays))

    raise RuntimeError("retry_request exhausted retries without result")


def _parse_retry_after(value: str | None) -> float:
    if not value:
        return 0.0
    try:
        return min(float(value), _MAX_RETRY_AFTER_SECONDS)
    except (TypeError, ValueError):
        return 0.0


def _sleep_before_retry(delay: float, reason: str, args: tuple, attempt: int, budget: int) -> None:
    logger.warning(
        "%s from %s — retrying in %.1fs (attempt %d/%d)",
        reason,
        _url_for_log(args),
        delay,
        attempt + 1,
        budget,
    )
    time.sleep(delay)


def _url_for_log(args: tuple) -> str:
    """Extract a loggable URL from request args."""
    if args and isinstance(args[0], (str, httpx.URL)):
        return str(args[0])[:120]
    return "<unknown>"
