import os
from typing import Any

from ddtrace.trace import tracer


def configure_tracing():
    # Tracing stays off unless explicitly requested
    enabled = os.getenv("GIFTASSIST_TRACE_ENABLED") or os.getenv(
        "DD_TRACE_ENABLED", "false"
    )
    tracer.enabled = enabled.lower() in ("true", "1")


def tag_current_span(**tags: Any) -> None:
    """Sets tags (strings) and metrics (numbers) on the active span, if any."""
    span = tracer.current_span()
    if span is None:
        return
    for key, value in tags.items():
        if isinstance(value, bool) or not isinstance(value, int | float):
            span.set_tag(key, value)
        else:
            span.set_metric(key, value)
