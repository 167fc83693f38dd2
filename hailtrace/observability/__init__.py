"""Observability helpers."""

from hailtrace.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_parse,
    record_adapter_failure,
    record_unmapped_record,
    record_synthetic_task_end,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_parse",
    "record_adapter_failure",
    "record_unmapped_record",
    "record_synthetic_task_end",
]
