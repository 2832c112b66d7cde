"""
Chart Patterns — Observability

Timed spans for the detection pipeline, reported through structlog.

Usage:
    with trace_span("pattern_engine.detect", metadata={"bars": 250}) as span:
        ...
    span["elapsed_ms"]  # filled in on exit
"""

from __future__ import annotations

import functools
import time
from contextlib import contextmanager
from typing import Any, Callable, Optional

import structlog

from chartpatterns.config import get_settings

logger = structlog.get_logger(__name__)


@contextmanager
def trace_span(
    name: str,
    metadata: Optional[dict] = None,
    slow_threshold_s: Optional[float] = None,
):
    """Context manager timing a block of work.

    Yields a dict whose ``elapsed_ms`` key is set when the block exits, so
    callers can copy the timing into their own diagnostics.

    Args:
        name: Span name (e.g., "pattern_engine.detect").
        metadata: Extra key/values attached to both log events.
        slow_threshold_s: Emit a warning above this duration. Defaults to
            ``Settings.slow_scan_warning_s``.
    """
    extra = {"span_name": name, **(metadata or {})}
    threshold = slow_threshold_s if slow_threshold_s is not None else get_settings().slow_scan_warning_s
    span: dict[str, Any] = {"elapsed_ms": None}
    start = time.perf_counter()
    logger.debug("trace_span_start", **extra)
    try:
        yield span
    finally:
        elapsed = time.perf_counter() - start
        span["elapsed_ms"] = round(elapsed * 1000, 2)
        logger.debug("trace_span_end", elapsed_ms=span["elapsed_ms"], **extra)
        if elapsed > threshold:
            logger.warning("trace_span_slow", elapsed_s=round(elapsed, 2), **extra)


def traced(name: Optional[str] = None):
    """Decorator wrapping a function call in ``trace_span``.

    Usage:
        @traced("pattern_engine.backtest")
        def backtest(...):
            ...
    """
    def decorator(func: Callable) -> Callable:
        span_name = name or f"{func.__module__}.{func.__qualname__}"

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            with trace_span(span_name):
                return func(*args, **kwargs)

        return wrapper

    return decorator
