"""Observability helpers."""

from coachdash.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_tool_result,
    record_token_usage,
    record_reality_check,
    record_agent_run,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_tool_result",
    "record_token_usage",
    "record_reality_check",
    "record_agent_run",
]
