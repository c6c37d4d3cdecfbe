"""OpenTelemetry + Prometheus fallback wiring for the CoachDash service."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

from fastapi import FastAPI

from coachdash import config

logger = logging.getLogger("coachdash.observability")


_initialized = False
_enabled = False
_tracer: Any | None = None
_trace_provider: Any | None = None
_meter_provider: Any | None = None
_fastapi_instrumentor: Any | None = None

_tool_calls_counter: Any | None = None
_tool_duration_hist: Any | None = None
_tokens_counter: Any | None = None
_discrepancy_counter: Any | None = None
_agent_runs_counter: Any | None = None
_agent_duration_hist: Any | None = None

_prom_enabled = False
_prom_tool_calls_counter: Any | None = None
_prom_tool_duration_hist: Any | None = None
_prom_tokens_counter: Any | None = None
_prom_discrepancy_counter: Any | None = None
_prom_agent_runs_counter: Any | None = None
_prom_agent_duration_hist: Any | None = None


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


def _label(value: str | None) -> str:
    return (value or "").strip() or "unknown"


def initialize(app: FastAPI | None = None) -> None:
    global _initialized, _enabled, _tracer, _trace_provider, _meter_provider, _fastapi_instrumentor
    global _tool_calls_counter, _tool_duration_hist, _tokens_counter
    global _discrepancy_counter, _agent_runs_counter, _agent_duration_hist
    global _prom_enabled
    global _prom_tool_calls_counter, _prom_tool_duration_hist, _prom_tokens_counter
    global _prom_discrepancy_counter, _prom_agent_runs_counter, _prom_agent_duration_hist

    if _initialized:
        if _enabled and app and _fastapi_instrumentor:
            _fastapi_instrumentor.instrument_app(app)
        return

    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (COACHDASH_OTEL_ENABLED=false)")
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
    service_name = config.OTEL_SERVICE_NAME or "coachdash"

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.namespace": "coachdash",
        }
    )

    trace_provider = TracerProvider(resource=resource)
    trace_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=traces_endpoint or None)))
    trace.set_tracer_provider(trace_provider)
    tracer = trace.get_tracer("coachdash.service")

    metric_reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=metrics_endpoint or None)
    )
    meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("coachdash.service")

    _tool_calls_counter = meter.create_counter(
        "coachdash_tool_calls_total",
        unit="1",
        description="Tool executions by outcome",
    )
    _tool_duration_hist = meter.create_histogram(
        "coachdash_tool_duration_ms",
        unit="ms",
        description="Tool execution latency",
    )
    _tokens_counter = meter.create_counter(
        "coachdash_context_tokens_total",
        unit="1",
        description="Tokens recorded in the context ledger by phase",
    )
    _discrepancy_counter = meter.create_counter(
        "coachdash_reality_discrepancies_total",
        unit="1",
        description="Discrepancies found by reality checks",
    )
    _agent_runs_counter = meter.create_counter(
        "coachdash_agent_runs_total",
        unit="1",
        description="Advisory agent executions by outcome",
    )
    _agent_duration_hist = meter.create_histogram(
        "coachdash_agent_duration_ms",
        unit="ms",
        description="Advisory agent execution latency",
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
            _prom_tool_calls_counter = Counter(
                "coachdash_tool_calls_total", "Tool executions by outcome", ["tool", "status"],
            )
            _prom_tool_duration_hist = Histogram(
                "coachdash_tool_duration_ms", "Tool execution latency", ["tool"],
            )
            _prom_tokens_counter = Counter(
                "coachdash_context_tokens_total", "Tokens recorded in the context ledger by phase", ["phase"],
            )
            _prom_discrepancy_counter = Counter(
                "coachdash_reality_discrepancies_total", "Discrepancies found by reality checks",
                ["check_type", "severity"],
            )
            _prom_agent_runs_counter = Counter(
                "coachdash_agent_runs_total", "Advisory agent executions by outcome", ["agent", "status"],
            )
            _prom_agent_duration_hist = Histogram(
                "coachdash_agent_duration_ms", "Advisory agent execution latency", ["agent"],
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
    except Exception as exc:  # noqa: BLE001
        logger.debug("FastAPI uninstrument failed: %s", exc)
    for provider in (_meter_provider, _trace_provider):
        try:
            if provider is not None:
                provider.shutdown()
        except Exception as exc:  # noqa: BLE001
            logger.debug("Telemetry provider shutdown failed: %s", exc)
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


def record_tool_result(tool: str, status: str, duration_ms: float = 0.0) -> None:
    labels = {"tool": _label(tool), "status": _label(status)}
    if _enabled and _tool_calls_counter is not None:
        _tool_calls_counter.add(1, labels)
    if _enabled and _tool_duration_hist is not None and duration_ms > 0:
        _tool_duration_hist.record(float(duration_ms), {"tool": _label(tool)})
    if _prom_enabled and _prom_tool_calls_counter is not None:
        _prom_tool_calls_counter.labels(**labels).inc()
    if _prom_enabled and _prom_tool_duration_hist is not None and duration_ms > 0:
        _prom_tool_duration_hist.labels(tool=_label(tool)).observe(float(duration_ms))


def record_token_usage(session_id: str, phase: str, tokens: int) -> None:
    amount = max(0, int(tokens))
    if amount == 0:
        return
    if _enabled and _tokens_counter is not None:
        _tokens_counter.add(amount, {"phase": _label(phase), "session_id": _label(session_id)})
    if _prom_enabled and _prom_tokens_counter is not None:
        # Session ids are unbounded; Prometheus only gets the phase.
        _prom_tokens_counter.labels(phase=_label(phase)).inc(amount)


def record_reality_check(check_type: str, severities: list[str]) -> None:
    for severity in severities:
        labels = {"check_type": _label(check_type), "severity": _label(severity)}
        if _enabled and _discrepancy_counter is not None:
            _discrepancy_counter.add(1, labels)
        if _prom_enabled and _prom_discrepancy_counter is not None:
            _prom_discrepancy_counter.labels(**labels).inc()


def record_agent_run(agent: str, success: bool, duration_ms: float) -> None:
    labels = {"agent": _label(agent), "status": "success" if success else "failure"}
    if _enabled and _agent_runs_counter is not None:
        _agent_runs_counter.add(1, labels)
    if _enabled and _agent_duration_hist is not None:
        _agent_duration_hist.record(max(0.0, float(duration_ms)), {"agent": _label(agent)})
    if _prom_enabled and _prom_agent_runs_counter is not None:
        _prom_agent_runs_counter.labels(**labels).inc()
    if _prom_enabled and _prom_agent_duration_hist is not None:
        _prom_agent_duration_hist.labels(agent=_label(agent)).observe(max(0.0, float(duration_ms)))
