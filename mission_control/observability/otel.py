"""OpenTelemetry + Prometheus fallback wiring for the Mission Control backend."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

from fastapi import FastAPI

from mission_control import config

logger = logging.getLogger("mission_control.observability")


_initialized = False
_enabled = False
_tracer: Any | None = None
_trace_provider: Any | None = None
_meter_provider: Any | None = None
_fastapi_instrumentor: Any | None = None

_sync_counter: Any | None = None
_sync_latency_hist: Any | None = None
_conflict_counter: Any | None = None
_parser_failure_counter: Any | None = None

_prom_enabled = False
_prom_sync_counter: Any | None = None
_prom_sync_latency_hist: Any | None = None
_prom_conflict_counter: Any | None = None
_prom_parser_failure_counter: Any | None = None


def _normalize_otlp_endpoint(base_endpoint: str, signal_path: str) -> str:
    endpoint = (base_endpoint or "").strip()
    if not endpoint:
        return ""
    if endpoint.endswith(signal_path):
        return endpoint
    if endpoint.endswith("/"):
        endpoint = endpoint[:-1]
    if endpoint.endswith("/v1"):
        return f"{endpoint}{signal_path[3:]}"
    return f"{endpoint}{signal_path}"


def _label(value: str) -> str:
    return (value or "").strip() or "unknown"


def initialize(app: FastAPI | None = None) -> None:
    global _initialized, _enabled, _tracer, _trace_provider, _meter_provider, _fastapi_instrumentor
    global _sync_counter, _sync_latency_hist, _conflict_counter, _parser_failure_counter
    global _prom_enabled, _prom_sync_counter, _prom_sync_latency_hist
    global _prom_conflict_counter, _prom_parser_failure_counter

    if _initialized:
        if _enabled and app and _fastapi_instrumentor:
            _fastapi_instrumentor.instrument_app(app)
        return

    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (MC_OTEL_ENABLED=false)")
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

    traces_endpoint = _normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/traces")
    metrics_endpoint = _normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/metrics")
    service_name = config.OTEL_SERVICE_NAME or "mission-control-backend"

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.namespace": "mission_control",
        }
    )

    trace_provider = TracerProvider(resource=resource)
    trace_exporter = OTLPSpanExporter(endpoint=traces_endpoint or None)
    trace_provider.add_span_processor(BatchSpanProcessor(trace_exporter))
    trace.set_tracer_provider(trace_provider)
    tracer = trace.get_tracer("mission_control.backend")

    metric_reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=metrics_endpoint or None)
    )
    meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("mission_control.backend")

    _sync_counter = meter.create_counter(
        "mc_sync_events_total",
        unit="1",
        description="Phase sync passes by source and outcome",
    )
    _sync_latency_hist = meter.create_histogram(
        "mc_sync_latency_ms",
        unit="ms",
        description="Latency of phase sync passes",
    )
    _conflict_counter = meter.create_counter(
        "mc_sync_conflicts_total",
        unit="1",
        description="Field conflicts detected or resolved",
    )
    _parser_failure_counter = meter.create_counter(
        "mc_parser_failures_total",
        unit="1",
        description="Count of phase file parse failures",
    )

    _trace_provider = trace_provider
    _meter_provider = meter_provider
    _tracer = tracer
    _fastapi_instrumentor = FastAPIInstrumentor()
    _enabled = True

    if app:
        _fastapi_instrumentor.instrument_app(app)

    if config.PROM_PORT > 0:
        try:
            from prometheus_client import Counter, Histogram, start_http_server

            start_http_server(config.PROM_PORT)
            _prom_enabled = True
            _prom_sync_counter = Counter(
                "mc_sync_events_total",
                "Phase sync passes by source and outcome",
                ["source", "outcome"],
            )
            _prom_sync_latency_hist = Histogram(
                "mc_sync_latency_ms",
                "Latency of phase sync passes",
                ["source", "outcome"],
            )
            _prom_conflict_counter = Counter(
                "mc_sync_conflicts_total",
                "Field conflicts detected or resolved",
                ["field", "event"],
            )
            _prom_parser_failure_counter = Counter(
                "mc_parser_failures_total",
                "Count of phase file parse failures",
                ["parser"],
            )
            logger.info("Prometheus fallback metrics server listening on port %s", config.PROM_PORT)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Prometheus fallback not started: %s", exc)
            _prom_enabled = False

    logger.info(
        "OpenTelemetry initialized (service=%s endpoint=%s)",
        service_name,
        config.OTEL_ENDPOINT,
    )


def shutdown(app: FastAPI | None = None) -> None:
    global _enabled
    if not _initialized:
        return
    try:
        if app and _fastapi_instrumentor:
            _fastapi_instrumentor.uninstrument_app(app)
    except Exception:
        logger.debug("FastAPI uninstrument failed", exc_info=True)
    try:
        if _meter_provider is not None:
            _meter_provider.shutdown()
    except Exception:
        logger.debug("Meter provider shutdown failed", exc_info=True)
    try:
        if _trace_provider is not None:
            _trace_provider.shutdown()
    except Exception:
        logger.debug("Trace provider shutdown failed", exc_info=True)
    _enabled = False


@contextmanager
def start_span(name: str, attributes: dict[str, Any] | None = None):
    if not _enabled or _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(name) as span:
        if attributes:
            for key, value in attributes.items():
                if value is not None:
                    span.set_attribute(key, value)
        yield span


def record_sync_outcome(source: str, outcome: str, duration_ms: float = 0.0) -> None:
    labels = {"source": _label(source), "outcome": _label(outcome)}
    if _enabled and _sync_counter is not None:
        _sync_counter.add(1, labels)
    if _enabled and _sync_latency_hist is not None and duration_ms > 0:
        _sync_latency_hist.record(float(duration_ms), labels)
    if _prom_enabled and _prom_sync_counter is not None:
        _prom_sync_counter.labels(**labels).inc()
    if _prom_enabled and _prom_sync_latency_hist is not None and duration_ms > 0:
        _prom_sync_latency_hist.labels(**labels).observe(float(duration_ms))


def record_conflicts(fields: list[str], event: str) -> None:
    for field in fields:
        labels = {"field": _label(field), "event": _label(event)}
        if _enabled and _conflict_counter is not None:
            _conflict_counter.add(1, labels)
        if _prom_enabled and _prom_conflict_counter is not None:
            _prom_conflict_counter.labels(**labels).inc()


def record_parser_failure(parser: str) -> None:
    labels = {"parser": _label(parser)}
    if _enabled and _parser_failure_counter is not None:
        _parser_failure_counter.add(1, labels)
    if _prom_enabled and _prom_parser_failure_counter is not None:
        _prom_parser_failure_counter.labels(**labels).inc()
