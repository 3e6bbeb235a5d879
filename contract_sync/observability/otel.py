"""OpenTelemetry + Prometheus fallback wiring for the contract sync service."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

from fastapi import FastAPI

from contract_sync import config

logger = logging.getLogger("contract_sync.observability")

# name -> (kind, unit, description, label name)
_METRICS: dict[str, tuple[str, str, str, str]] = {
    "contract_sync_job_outcomes_total": ("counter", "1", "Terminal outcomes of tracked analysis jobs", "outcome"),
    "contract_sync_job_polls": ("histogram", "1", "Polls consumed by an analysis job before it terminated", "outcome"),
    "contract_sync_sync_cycles_total": ("counter", "1", "Local/remote reconciliation cycles", "result"),
    "contract_sync_sync_items_total": (
        "counter",
        "1",
        "Sessions pulled from or pushed to the remote collection",
        "direction",
    ),
    "contract_sync_sync_latency_ms": ("histogram", "ms", "Duration of reconciliation cycles", "result"),
    "contract_sync_storage_fallbacks_total": (
        "counter",
        "1",
        "Secure store operations that fell back to the general store",
        "operation",
    ),
    "contract_sync_uploads_total": ("counter", "1", "Background upload attempts by result", "result"),
}

_initialized = False
_enabled = False
_tracer: Any | None = None
_trace_provider: Any | None = None
_meter_provider: Any | None = None
_fastapi_instrumentor: Any | None = None
_otel_instruments: dict[str, Any] = {}
_prom_instruments: dict[str, Any] = {}


def _normalize_otlp_endpoint(base_endpoint: str, signal_path: str) -> str:
    endpoint = (base_endpoint or "").strip().rstrip("/")
    if not endpoint:
        return ""
    if endpoint.endswith(signal_path):
        return endpoint
    if endpoint.endswith("/v1"):
        endpoint = endpoint[: -len("/v1")]
    return f"{endpoint}{signal_path}"


def _label(value: str) -> str:
    return (value or "").strip() or "unknown"


def _start_prometheus() -> None:
    try:
        from prometheus_client import Counter, Histogram, start_http_server

        start_http_server(config.PROM_PORT)
        for name, (kind, _unit, description, label) in _METRICS.items():
            factory = Counter if kind == "counter" else Histogram
            _prom_instruments[name] = factory(name, description, [label])
        logger.info("Prometheus fallback metrics server listening on port %s", config.PROM_PORT)
    except Exception as exc:  # noqa: BLE001
        _prom_instruments.clear()
        logger.warning("Prometheus fallback not started: %s", exc)


def initialize(app: FastAPI | None = None) -> None:
    global _initialized, _enabled, _tracer, _trace_provider, _meter_provider, _fastapi_instrumentor

    if _initialized:
        if _enabled and app and _fastapi_instrumentor:
            _fastapi_instrumentor.instrument_app(app)
        return
    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (CONTRACT_SYNC_OTEL_ENABLED=false)")
        return

    try:
        from opentelemetry import metrics, trace
        from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
        from opentelemetry.sdk.metrics import MeterProvider
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError as exc:
        logger.warning("OpenTelemetry dependencies unavailable: %s", exc)
        return

    service_name = config.OTEL_SERVICE_NAME or "contract-sync"
    resource = Resource.create({"service.name": service_name, "service.namespace": "contract_sync"})

    _trace_provider = TracerProvider(resource=resource)
    traces_endpoint = _normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/traces")
    _trace_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=traces_endpoint or None)))
    trace.set_tracer_provider(_trace_provider)
    _tracer = trace.get_tracer("contract_sync")

    metrics_endpoint = _normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/metrics")
    reader = PeriodicExportingMetricReader(OTLPMetricExporter(endpoint=metrics_endpoint or None))
    _meter_provider = MeterProvider(resource=resource, metric_readers=[reader])
    metrics.set_meter_provider(_meter_provider)
    meter = metrics.get_meter("contract_sync")
    for name, (kind, unit, description, _label_name) in _METRICS.items():
        create = meter.create_counter if kind == "counter" else meter.create_histogram
        _otel_instruments[name] = create(name, unit=unit, description=description)

    _fastapi_instrumentor = FastAPIInstrumentor()
    _enabled = True
    if app:
        _fastapi_instrumentor.instrument_app(app)

    if config.PROM_PORT > 0:
        _start_prometheus()

    logger.info("OpenTelemetry initialized (service=%s endpoint=%s)", service_name, config.OTEL_ENDPOINT)


def shutdown(app: FastAPI | None = None) -> None:
    global _enabled
    if not _initialized:
        return
    try:
        if app and _fastapi_instrumentor:
            _fastapi_instrumentor.uninstrument_app(app)
    except Exception:
        logger.debug("FastAPI uninstrumentation failed", exc_info=True)
    for provider in (_meter_provider, _trace_provider):
        try:
            if provider is not None:
                provider.shutdown()
        except Exception:
            logger.debug("Telemetry provider shutdown failed", exc_info=True)
    _enabled = False


@contextmanager
def start_span(name: str, attributes: dict[str, Any] | None = None):
    if not _enabled or _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(name) as span:
        for key, value in (attributes or {}).items():
            if value is not None:
                span.set_attribute(key, value)
        yield span


def _emit(name: str, amount: float, label_value: str) -> None:
    label = _METRICS[name][3]
    kind = _METRICS[name][0]
    otel = _otel_instruments.get(name) if _enabled else None
    if otel is not None:
        if kind == "counter":
            otel.add(amount, {label: label_value})
        else:
            otel.record(amount, {label: label_value})
    prom = _prom_instruments.get(name)
    if prom is not None:
        if kind == "counter":
            prom.labels(**{label: label_value}).inc(amount)
        else:
            prom.labels(**{label: label_value}).observe(amount)


def record_job_outcome(outcome: str, retries: int) -> None:
    outcome = _label(outcome)
    _emit("contract_sync_job_outcomes_total", 1, outcome)
    _emit("contract_sync_job_polls", max(0, int(retries)), outcome)


def record_sync_cycle(result: str, pulled: int, pushed: int, duration_ms: float) -> None:
    result = _label(result)
    _emit("contract_sync_sync_cycles_total", 1, result)
    _emit("contract_sync_sync_latency_ms", max(0.0, float(duration_ms)), result)
    if pulled > 0:
        _emit("contract_sync_sync_items_total", int(pulled), "pull")
    if pushed > 0:
        _emit("contract_sync_sync_items_total", int(pushed), "push")


def record_storage_fallback(operation: str) -> None:
    _emit("contract_sync_storage_fallbacks_total", 1, _label(operation))


def record_upload_result(result: str) -> None:
    _emit("contract_sync_uploads_total", 1, _label(result))
