"""Ingestion telemetry: OpenTelemetry traces and metrics, with a Prometheus fallback.

Every instrument is declared once in ``_INSTRUMENTS`` and materialized for
whichever backends are configured. When neither is active the ``record_*``
helpers return without touching anything.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from fastapi import FastAPI

from agentlog import config

logger = logging.getLogger("agentlog.observability")


@dataclass(frozen=True)
class _Instrument:
    name: str
    kind: str  # "counter" or "histogram"
    unit: str
    description: str
    labels: tuple[str, ...]


_INSTRUMENTS = {
    spec.name: spec
    for spec in (
        _Instrument("agentlog_ingest_runs_total", "counter", "1", "Per-source ingest runs", ("source", "result")),
        _Instrument("agentlog_ingest_latency_ms", "histogram", "ms", "Per-source ingest latency", ("source", "result")),
        _Instrument("agentlog_imported_events_total", "counter", "1", "Events inserted or changed", ("source",)),
        _Instrument("agentlog_parser_failures_total", "counter", "1", "Skipped records and failed artifacts", ("source",)),
        _Instrument("agentlog_tool_calls_total", "counter", "1", "Tool call outcomes", ("tool", "status", "source")),
        _Instrument("agentlog_tool_duration_ms", "histogram", "ms", "Tool execution durations", ("tool", "source")),
        _Instrument("agentlog_tokens_total", "counter", "1", "Token totals by model", ("model", "direction", "source")),
        _Instrument("agentlog_cost_usd_total", "counter", "usd", "Cost totals by model", ("model", "source")),
    )
}


@dataclass
class _Telemetry:
    initialized: bool = False
    tracer: Any | None = None
    trace_provider: Any | None = None
    meter_provider: Any | None = None
    instrumentor: Any | None = None
    otel: dict[str, Any] = field(default_factory=dict)
    prom: dict[str, Any] = field(default_factory=dict)

    @property
    def active(self) -> bool:
        return bool(self.otel or self.prom)


_state = _Telemetry()


def _normalize_otlp_endpoint(base_endpoint: str, signal_path: str) -> str:
    """Point an OTLP/HTTP base URL at one signal, e.g. ``/v1/traces``."""
    base = (base_endpoint or "").strip().rstrip("/")
    if not base or base.endswith(signal_path):
        return base
    if base.endswith("/v1"):
        base = base[: -len("/v1")]
    return base + signal_path


def _emit(name: str, value: float, labels: dict[str, str]) -> None:
    spec = _INSTRUMENTS[name]
    clean = {key: (labels.get(key) or "").strip() or "unknown" for key in spec.labels}
    instrument = _state.otel.get(name)
    if instrument is not None:
        if spec.kind == "counter":
            instrument.add(value, clean)
        else:
            instrument.record(value, clean)
    metric = _state.prom.get(name)
    if metric is not None:
        child = metric.labels(**clean)
        if spec.kind == "counter":
            child.inc(value)
        else:
            child.observe(value)


def _start_prometheus() -> None:
    try:
        from prometheus_client import Counter, Histogram, start_http_server
    except ImportError as exc:
        logger.warning("Prometheus fallback unavailable: %s", exc)
        return
    try:
        start_http_server(config.PROM_PORT)
    except OSError as exc:
        logger.warning("Prometheus fallback not started on port %s: %s", config.PROM_PORT, exc)
        return
    for spec in _INSTRUMENTS.values():
        factory = Counter if spec.kind == "counter" else Histogram
        _state.prom[spec.name] = factory(spec.name, spec.description, list(spec.labels))
    logger.info("Prometheus metrics served on port %s", config.PROM_PORT)


def _start_otel(app: FastAPI | None) -> None:
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
        logger.warning("OpenTelemetry packages missing, install the 'otel' extra: %s", exc)
        return

    service_name = config.OTEL_SERVICE_NAME or "agentlog"
    resource = Resource.create({"service.name": service_name, "service.namespace": "agentlog"})

    span_exporter = OTLPSpanExporter(endpoint=_normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/traces") or None)
    tracer_provider = TracerProvider(resource=resource)
    tracer_provider.add_span_processor(BatchSpanProcessor(span_exporter))
    trace.set_tracer_provider(tracer_provider)

    metric_exporter = OTLPMetricExporter(
        endpoint=_normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/metrics") or None
    )
    meter_provider = MeterProvider(
        resource=resource, metric_readers=[PeriodicExportingMetricReader(metric_exporter)]
    )
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("agentlog")
    for spec in _INSTRUMENTS.values():
        create = meter.create_counter if spec.kind == "counter" else meter.create_histogram
        _state.otel[spec.name] = create(spec.name, unit=spec.unit, description=spec.description)

    _state.tracer = trace.get_tracer("agentlog")
    _state.trace_provider = tracer_provider
    _state.meter_provider = meter_provider
    _state.instrumentor = FastAPIInstrumentor()
    if app is not None:
        _state.instrumentor.instrument_app(app)
    logger.info("OpenTelemetry exporting to %s as %s", config.OTEL_ENDPOINT, service_name)


def initialize(app: FastAPI | None = None) -> None:
    """Configure telemetry once per process; later calls only instrument new apps."""
    if _state.initialized:
        if app is not None and _state.instrumentor is not None:
            _state.instrumentor.instrument_app(app)
        return
    _state.initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (AGENTLOG_OTEL_ENABLED=false)")
        return
    _start_otel(app)
    if _state.otel and config.PROM_PORT > 0:
        _start_prometheus()


def shutdown(app: FastAPI | None = None) -> None:
    if not _state.initialized:
        return
    steps = []
    if app is not None and _state.instrumentor is not None:
        steps.append(("instrumentor", lambda: _state.instrumentor.uninstrument_app(app)))
    for label, provider in (("meter provider", _state.meter_provider), ("tracer provider", _state.trace_provider)):
        if provider is not None:
            steps.append((label, provider.shutdown))
    for label, step in steps:
        try:
            step()
        except Exception as exc:  # noqa: BLE001
            logger.debug("Ignoring %s shutdown error: %s", label, exc)
    _state.otel.clear()
    _state.tracer = None


@contextmanager
def start_span(name: str, attributes: dict[str, Any] | None = None):
    if _state.tracer is None:
        yield None
        return
    with _state.tracer.start_as_current_span(name) as span:
        for key, value in (attributes or {}).items():
            if value is not None:
                span.set_attribute(key, value)
        yield span


def record_ingestion(source: str, result: str, duration_ms: float, *, imported: int = 0) -> None:
    if not _state.active:
        return
    labels = {"source": source, "result": result}
    _emit("agentlog_ingest_runs_total", 1, labels)
    _emit("agentlog_ingest_latency_ms", max(0.0, float(duration_ms)), labels)
    if imported > 0:
        _emit("agentlog_imported_events_total", int(imported), labels)


def record_parser_failure(source: str, count: int = 1) -> None:
    if _state.active and count > 0:
        _emit("agentlog_parser_failures_total", int(count), {"source": source})


def record_tool_result(tool: str, status: str, *, source: str, count: int = 1, duration_ms: float = 0.0) -> None:
    if not _state.active or count <= 0:
        return
    labels = {"tool": tool, "status": status, "source": source}
    _emit("agentlog_tool_calls_total", int(count), labels)
    if duration_ms > 0:
        _emit("agentlog_tool_duration_ms", float(duration_ms), labels)


def record_token_cost(
    *,
    source: str,
    model: str | None,
    token_input: int,
    token_output: int,
    cost_usd: float | None,
) -> None:
    if not _state.active:
        return
    labels = {"model": model or "", "source": source}
    for direction, tokens in (("input", token_input), ("output", token_output)):
        if tokens and tokens > 0:
            _emit("agentlog_tokens_total", int(tokens), {**labels, "direction": direction})
    if cost_usd and cost_usd > 0:
        _emit("agentlog_cost_usd_total", float(cost_usd), labels)
