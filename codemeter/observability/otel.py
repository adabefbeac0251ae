"""OpenTelemetry + Prometheus fallback wiring for CodeMeter."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

from codemeter import config

logger = logging.getLogger("codemeter.observability")


_initialized = False
_enabled = False
_tracer: Any | None = None
_trace_provider: Any | None = None
_meter_provider: Any | None = None

_sync_events_counter: Any | None = None
_sync_latency_hist: Any | None = None
_compaction_counter: Any | None = None
_compaction_latency_hist: Any | None = None
_attribution_counter: Any | None = None

_prom_enabled = False
_prom_sync_events_counter: Any | None = None
_prom_compaction_counter: Any | None = None
_prom_attribution_counter: Any | None = None


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


def confidence_tier(confidence: float) -> str:
    if confidence >= 0.9:
        return "high"
    if confidence >= 0.7:
        return "medium"
    if confidence > 0:
        return "low"
    return "none"


def initialize() -> None:
    global _initialized, _enabled, _tracer, _trace_provider, _meter_provider
    global _sync_events_counter, _sync_latency_hist, _compaction_counter
    global _compaction_latency_hist, _attribution_counter
    global _prom_enabled, _prom_sync_events_counter, _prom_compaction_counter, _prom_attribution_counter

    if _initialized:
        return
    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (CODEMETER_OTEL_ENABLED=false)")
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

    service_name = config.OTEL_SERVICE_NAME or "codemeter"
    resource = Resource.create({"service.name": service_name, "service.namespace": "codemeter"})

    trace_provider = TracerProvider(resource=resource)
    trace_exporter = OTLPSpanExporter(
        endpoint=_normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/traces") or None
    )
    trace_provider.add_span_processor(BatchSpanProcessor(trace_exporter))
    trace.set_tracer_provider(trace_provider)

    metric_reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=_normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/metrics") or None)
    )
    meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("codemeter")

    _sync_events_counter = meter.create_counter(
        "codemeter_sync_events_total",
        unit="1",
        description="Usage events fetched by sync, by source and result",
    )
    _sync_latency_hist = meter.create_histogram(
        "codemeter_sync_latency_ms",
        unit="ms",
        description="Duration of sync operations",
    )
    _compaction_counter = meter.create_counter(
        "codemeter_compactions_total",
        unit="1",
        description="Compaction attempts by kind and result",
    )
    _compaction_latency_hist = meter.create_histogram(
        "codemeter_compaction_latency_ms",
        unit="ms",
        description="Duration of compactions",
    )
    _attribution_counter = meter.create_counter(
        "codemeter_attributions_total",
        unit="1",
        description="Attribution decisions by confidence tier",
    )

    _trace_provider = trace_provider
    _meter_provider = meter_provider
    _tracer = trace.get_tracer("codemeter")
    _enabled = True

    if config.PROM_PORT > 0:
        try:
            from prometheus_client import Counter, start_http_server

            start_http_server(config.PROM_PORT)
            _prom_sync_events_counter = Counter(
                "codemeter_sync_events_total",
                "Usage events fetched by sync, by source and result",
                ["source", "result"],
            )
            _prom_compaction_counter = Counter(
                "codemeter_compactions_total",
                "Compaction attempts by kind and result",
                ["kind", "result"],
            )
            _prom_attribution_counter = Counter(
                "codemeter_attributions_total",
                "Attribution decisions by confidence tier",
                ["tier"],
            )
            _prom_enabled = True
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
        try:
            if provider is not None:
                provider.shutdown()
        except Exception as exc:  # noqa: BLE001
            logger.debug("Observability provider shutdown failed: %s", exc)
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


def record_sync(source: str, result: str, event_count: int, duration_ms: float) -> None:
    labels = {"source": source or "unknown", "result": result or "unknown"}
    if _enabled and _sync_events_counter is not None and event_count > 0:
        _sync_events_counter.add(event_count, labels)
    if _enabled and _sync_latency_hist is not None:
        _sync_latency_hist.record(max(0.0, float(duration_ms)), labels)
    if _prom_enabled and _prom_sync_events_counter is not None and event_count > 0:
        _prom_sync_events_counter.labels(**labels).inc(event_count)


def record_compaction(kind: str, result: str, duration_ms: float) -> None:
    labels = {"kind": kind or "unknown", "result": result or "unknown"}
    if _enabled and _compaction_counter is not None:
        _compaction_counter.add(1, labels)
    if _enabled and _compaction_latency_hist is not None:
        _compaction_latency_hist.record(max(0.0, float(duration_ms)), labels)
    if _prom_enabled and _prom_compaction_counter is not None:
        _prom_compaction_counter.labels(**labels).inc()


def record_attribution(confidence: float) -> None:
    tier = confidence_tier(confidence)
    if _enabled and _attribution_counter is not None:
        _attribution_counter.add(1, {"tier": tier})
    if _prom_enabled and _prom_attribution_counter is not None:
        _prom_attribution_counter.labels(tier=tier).inc()
