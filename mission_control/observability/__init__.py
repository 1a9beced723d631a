"""Observability helpers."""

from mission_control.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_sync_outcome,
    record_conflicts,
    record_parser_failure,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_sync_outcome",
    "record_conflicts",
    "record_parser_failure",
]
