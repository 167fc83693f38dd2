"""OpenTelemetry + Prometheus fallback wiring for the HAIL trace engine."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator

from hailtrace import config

logger = logging.getLogger("hailtrace.observability")


_initialized = False
_enabled = False
_tracer: Any | None = None
_trace_provider: Any | None = None
_meter_provider: Any | None = None

_parse_counter: Any | None = None
_parse_latency_hist: Any | None = None
_event_counter: Any | None = None
_adapter_failure_counter: Any | None = None
_unmapped_counter: Any | None = None
_synthetic_end_counter: Any | None = None

_prom_enabled = False
_prom_parse_counter: Any | None = None
_prom_parse_latency_hist: Any | None = None
_prom_adapter_failure_counter: Any | None = None
_prom_unmapped_counter: Any | None = None
_prom_synthetic_end_counter: Any | None = None


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


def _labels(**values: str) -> dict[str, str]:
    return {key: (value or "").strip() or "unknown" for key, value in values.items()}


def initialize() -> None:
    global _initialized, _enabled, _tracer, _trace_provider, _meter_provider
    global _parse_counter, _parse_latency_hist, _event_counter
    global _adapter_failure_counter, _unmapped_counter, _synthetic_end_counter
    global _prom_enabled, _prom_parse_counter, _prom_parse_latency_hist
    global _prom_adapter_failure_counter, _prom_unmapped_counter, _prom_synthetic_end_counter

    if _initialized:
        return
    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (HAILTRACE_OTEL_ENABLED=false)")
        return

    try:
        from opentelemetry import metrics, trace
        from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
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
    service_name = config.OTEL_SERVICE_NAME or "hailtrace"

    resource = Resource.create({"service.name": service_name, "service.namespace": "hailtrace"})

    trace_provider = TracerProvider(resource=resource)
    trace_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=traces_endpoint or None)))
    trace.set_tracer_provider(trace_provider)
    tracer = trace.get_tracer("hailtrace")

    metric_reader = PeriodicExportingMetricReader(OTLPMetricExporter(endpoint=metrics_endpoint or None))
    meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("hailtrace")

    _parse_counter = meter.create_counter(
        "hailtrace_parses_total",
        unit="1",
        description="Transcripts normalized into sessions",
    )
    _parse_latency_hist = meter.create_histogram(
        "hailtrace_parse_latency_ms",
        unit="ms",
        description="Adapter plus normalization latency per transcript",
    )
    _event_counter = meter.create_counter(
        "hailtrace_events_total",
        unit="1",
        description="Canonical events produced",
    )
    _adapter_failure_counter = meter.create_counter(
        "hailtrace_adapter_failures_total",
        unit="1",
        description="Transcripts an adapter could not turn into a session",
    )
    _unmapped_counter = meter.create_counter(
        "hailtrace_unmapped_records_total",
        unit="1",
        description="Raw records mapped to Custom events",
    )
    _synthetic_end_counter = meter.create_counter(
        "hailtrace_synthetic_task_ends_total",
        unit="1",
        description="TaskEnd markers inserted to close unterminated tasks",
    )

    _trace_provider = trace_provider
    _meter_provider = meter_provider
    _tracer = tracer
    _enabled = True

    if config.PROM_PORT > 0:
        try:
            from prometheus_client import Counter, Histogram, start_http_server

            start_http_server(config.PROM_PORT)
            _prom_enabled = True
            _prom_parse_counter = Counter(
                "hailtrace_parses_total",
                "Transcripts normalized into sessions",
                ["adapter", "result"],
            )
            _prom_parse_latency_hist = Histogram(
                "hailtrace_parse_latency_ms",
                "Adapter plus normalization latency per transcript",
                ["adapter"],
            )
            _prom_adapter_failure_counter = Counter(
                "hailtrace_adapter_failures_total",
                "Transcripts an adapter could not turn into a session",
                ["adapter", "error"],
            )
            _prom_unmapped_counter = Counter(
                "hailtrace_unmapped_records_total",
                "Raw records mapped to Custom events",
                ["adapter", "raw_type"],
            )
            _prom_synthetic_end_counter = Counter(
                "hailtrace_synthetic_task_ends_total",
                "TaskEnd markers inserted to close unterminated tasks",
                ["adapter"],
            )
            logger.info("Prometheus fallback metrics server listening on port %s", config.PROM_PORT)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Prometheus fallback not started: %s", exc)
            _prom_enabled = False

    logger.info("OpenTelemetry initialized (service=%s endpoint=%s)", service_name, config.OTEL_ENDPOINT)


def shutdown() -> None:
    global _enabled
    if not _initialized:
        return
    for provider in (_meter_provider, _trace_provider):
        if provider is None:
            continue
        try:
            provider.shutdown()
        except Exception as exc:  # noqa: BLE001
            logger.debug("OpenTelemetry provider shutdown failed: %s", exc)
    _enabled = False


@contextmanager
def start_span(name: str, attributes: dict[str, Any] | None = None) -> Iterator[Any]:
    if not _enabled or _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(name) as span:
        if attributes:
            for key, value in attributes.items():
                if value is not None:
                    span.set_attribute(key, value)
        yield span


def record_parse(adapter: str, duration_ms: float, event_count: int) -> None:
    labels = _labels(adapter=adapter, result="ok")
    if _enabled and _parse_counter is not None:
        _parse_counter.add(1, labels)
    if _enabled and _parse_latency_hist is not None:
        _parse_latency_hist.record(max(0.0, float(duration_ms)), _labels(adapter=adapter))
    if _enabled and _event_counter is not None and event_count > 0:
        _event_counter.add(int(event_count), _labels(adapter=adapter))
    if _prom_enabled and _prom_parse_counter is not None:
        _prom_parse_counter.labels(**labels).inc()
    if _prom_enabled and _prom_parse_latency_hist is not None:
        _prom_parse_latency_hist.labels(**_labels(adapter=adapter)).observe(max(0.0, float(duration_ms)))


def record_adapter_failure(adapter: str, error: str) -> None:
    labels = _labels(adapter=adapter, error=error)
    if _enabled and _adapter_failure_counter is not None:
        _adapter_failure_counter.add(1, labels)
    if _enabled and _parse_counter is not None:
        _parse_counter.add(1, _labels(adapter=adapter, result="error"))
    if _prom_enabled and _prom_adapter_failure_counter is not None:
        _prom_adapter_failure_counter.labels(**labels).inc()
    if _prom_enabled and _prom_parse_counter is not None:
        _prom_parse_counter.labels(**_labels(adapter=adapter, result="error")).inc()


def record_unmapped_record(adapter: str, raw_type: str, count: int = 1) -> None:
    safe_count = max(0, int(count))
    if safe_count == 0:
        return
    labels = _labels(adapter=adapter, raw_type=raw_type)
    if _enabled and _unmapped_counter is not None:
        _unmapped_counter.add(safe_count, labels)
    if _prom_enabled and _prom_unmapped_counter is not None:
        _prom_unmapped_counter.labels(**labels).inc(safe_count)


def record_synthetic_task_end(adapter: str, count: int = 1) -> None:
    safe_count = max(0, int(count))
    if safe_count == 0:
        return
    labels = _labels(adapter=adapter)
    if _enabled and _synthetic_end_counter is not None:
        _synthetic_end_counter.add(safe_count, labels)
    if _prom_enabled and _prom_synthetic_end_counter is not None:
        _prom_synthetic_end_counter.labels(**labels).inc(safe_count)
