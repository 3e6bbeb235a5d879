"""Observability helpers."""

from contract_sync.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_job_outcome,
    record_storage_fallback,
    record_sync_cycle,
    record_upload_result,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_job_outcome",
    "record_storage_fallback",
    "record_sync_cycle",
    "record_upload_result",
]
