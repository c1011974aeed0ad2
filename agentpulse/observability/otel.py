"""OpenTelemetry + Prometheus fallback wiring for agentpulse."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

from fastapi import FastAPI

from agentpulse import config

logger = logging.getLogger("agentpulse.observability")


_initialized = False
_enabled = False
_tracer: Any | None = None
_trace_provider: Any | None = None
_meter_provider: Any | None = None
_fastapi_instrumentor: Any | None = None

_tick_counter: Any | None = None
_tick_latency_hist: Any | None = None
_parser_failure_counter: Any | None = None
_tool_calls_counter: Any | None = None
_tool_duration_hist: Any | None = None
_tokens_counter: Any | None = None
_cost_counter: Any | None = None

_prom_enabled = False
_prom_tick_counter: Any | None = None
_prom_tick_latency_hist: Any | None = None
_prom_parser_failure_counter: Any | None = None
_prom_tool_calls_counter: Any | None = None
_prom_tool_duration_hist: Any | None = None
_prom_tokens_counter: Any | None = None
_prom_cost_counter: Any | None = None


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


def _label(value: str | None, default: str = "unknown") -> str:
    return (value or "").strip() or default


def initialize(app: FastAPI | None = None) -> None:
    global _initialized, _enabled, _tracer, _trace_provider, _meter_provider, _fastapi_instrumentor
    global _tick_counter, _tick_latency_hist, _parser_failure_counter
    global _tool_calls_counter, _tool_duration_hist, _tokens_counter, _cost_counter
    global _prom_enabled
    global _prom_tick_counter, _prom_tick_latency_hist, _prom_parser_failure_counter
    global _prom_tool_calls_counter, _prom_tool_duration_hist, _prom_tokens_counter, _prom_cost_counter

    if _initialized:
        return

    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (AGENTPULSE_OTEL_ENABLED=false)")
        return

    from opentelemetry import metrics, trace
    from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
    from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
    from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    traces_endpoint = _normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/traces")
    metrics_endpoint = _normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/metrics")
    service_name = config.OTEL_SERVICE_NAME or "agentpulse"

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.namespace": "agentpulse",
        }
    )

    trace_provider = TracerProvider(resource=resource)
    trace_exporter = OTLPSpanExporter(endpoint=traces_endpoint or None)
    trace_provider.add_span_processor(BatchSpanProcessor(trace_exporter))
    trace.set_tracer_provider(trace_provider)
    tracer = trace.get_tracer("agentpulse.engine")

    metric_reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=metrics_endpoint or None)
    )
    meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("agentpulse.engine")

    _tick_counter = meter.create_counter(
        "agentpulse_ticks_total",
        unit="1",
        description="Count of engine poll ticks by outcome",
    )
    _tick_latency_hist = meter.create_histogram(
        "agentpulse_tick_latency_ms",
        unit="ms",
        description="Wall-clock duration of engine poll ticks",
    )
    _parser_failure_counter = meter.create_counter(
        "agentpulse_parser_failures_total",
        unit="1",
        description="Count of skipped tick steps and parser failures",
    )
    _tool_calls_counter = meter.create_counter(
        "agentpulse_tool_calls_total",
        unit="1",
        description="Tool call outcomes observed in transcripts",
    )
    _tool_duration_hist = meter.create_histogram(
        "agentpulse_tool_duration_ms",
        unit="ms",
        description="Observed tool execution durations",
    )
    _tokens_counter = meter.create_counter(
        "agentpulse_tokens_total",
        unit="1",
        description="Token totals of sessions as they complete",
    )
    _cost_counter = meter.create_counter(
        "agentpulse_cost_usd_total",
        unit="usd",
        description="Cost totals of sessions as they complete",
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
            _prom_tick_counter = Counter(
                "agentpulse_ticks_total",
                "Count of engine poll ticks by outcome",
                ["changed"],
            )
            _prom_tick_latency_hist = Histogram(
                "agentpulse_tick_latency_ms",
                "Wall-clock duration of engine poll ticks",
                ["changed"],
            )
            _prom_parser_failure_counter = Counter(
                "agentpulse_parser_failures_total",
                "Count of skipped tick steps and parser failures",
                ["parser"],
            )
            _prom_tool_calls_counter = Counter(
                "agentpulse_tool_calls_total",
                "Tool call outcomes observed in transcripts",
                ["tool", "status"],
            )
            _prom_tool_duration_hist = Histogram(
                "agentpulse_tool_duration_ms",
                "Observed tool execution durations",
                ["tool"],
            )
            _prom_tokens_counter = Counter(
                "agentpulse_tokens_total",
                "Token totals of sessions as they complete",
                ["model", "direction"],
            )
            _prom_cost_counter = Counter(
                "agentpulse_cost_usd_total",
                "Cost totals of sessions as they complete",
                ["model"],
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
    if not _enabled:
        return
    if app is not None and _fastapi_instrumentor is not None:
        _fastapi_instrumentor.uninstrument_app(app)
    for provider in (_meter_provider, _trace_provider):
        try:
            provider.shutdown()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Observability provider shutdown failed: %s", exc)
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


def record_tick(duration_ms: float, changed: bool) -> None:
    labels = {"changed": "true" if changed else "false"}
    if _enabled and _tick_counter is not None:
        _tick_counter.add(1, labels)
    if _enabled and _tick_latency_hist is not None:
        _tick_latency_hist.record(max(0.0, float(duration_ms)), labels)
    if _prom_enabled and _prom_tick_counter is not None:
        _prom_tick_counter.labels(**labels).inc()
    if _prom_enabled and _prom_tick_latency_hist is not None:
        _prom_tick_latency_hist.labels(**labels).observe(max(0.0, float(duration_ms)))


def record_parser_failure(parser: str) -> None:
    labels = {"parser": _label(parser)}
    if _enabled and _parser_failure_counter is not None:
        _parser_failure_counter.add(1, labels)
    if _prom_enabled and _prom_parser_failure_counter is not None:
        _prom_parser_failure_counter.labels(**labels).inc()


def record_tool_result(tool: str, status: str, *, duration_ms: float = 0.0) -> None:
    labels = {"tool": _label(tool), "status": _label(status)}
    if _enabled and _tool_calls_counter is not None:
        _tool_calls_counter.add(1, labels)
    if _enabled and _tool_duration_hist is not None and duration_ms > 0:
        _tool_duration_hist.record(float(duration_ms), labels)
    if _prom_enabled and _prom_tool_calls_counter is not None:
        _prom_tool_calls_counter.labels(**labels).inc()
    if _prom_enabled and _prom_tool_duration_hist is not None and duration_ms > 0:
        _prom_tool_duration_hist.labels(tool=labels["tool"]).observe(float(duration_ms))


def record_token_cost(*, model: str, token_input: int, token_output: int, cost_usd: float) -> None:
    model_label = _label(model)
    in_tokens = max(0, int(token_input))
    out_tokens = max(0, int(token_output))
    if _enabled and _tokens_counter is not None:
        if in_tokens > 0:
            _tokens_counter.add(in_tokens, {"model": model_label, "direction": "input"})
        if out_tokens > 0:
            _tokens_counter.add(out_tokens, {"model": model_label, "direction": "output"})
    if _enabled and _cost_counter is not None and cost_usd > 0:
        _cost_counter.add(float(cost_usd), {"model": model_label})

    if _prom_enabled and _prom_tokens_counter is not None:
        if in_tokens > 0:
            _prom_tokens_counter.labels(model=model_label, direction="input").inc(in_tokens)
        if out_tokens > 0:
            _prom_tokens_counter.labels(model=model_label, direction="output").inc(out_tokens)
    if _prom_enabled and _prom_cost_counter is not None and cost_usd > 0:
        _prom_cost_counter.labels(model=model_label).inc(float(cost_usd))
