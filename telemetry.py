#!/usr/bin/env python3
"""
Tracing for the feed ticker (OpenTelemetry).

Spans cover the refresh tick, feed fetch and actualize calls, payload parsing,
cache load/save and article selection. aiohttp client requests and log
records are instrumented as well, so log lines carry the active trace id.

Spans are exported to Azure Monitor only when a connection string is set and
the optional ``azure-monitor-opentelemetry-exporter`` package is installed;
otherwise tracing stays in-process.

Environment variables:
  - APPLICATIONINSIGHTS_CONNECTION_STRING or AZURE_MONITOR_CONNECTION_STRING
  - OTEL_SERVICE_NAME (default: feed-ticker)
  - OTEL_ENVIRONMENT (maps to deployment.environment)
  - DISABLE_TELEMETRY=true to skip initialization entirely
"""

from __future__ import annotations

import atexit
import functools
import inspect
import logging
import os
import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, Optional

from opentelemetry import trace
from opentelemetry.instrumentation.aiohttp_client import AioHttpClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Status, StatusCode

try:
    # Optional extra: pip install feed-ticker[azure]
    from azure.monitor.opentelemetry.exporter import AzureMonitorTraceExporter  # type: ignore
    _EXPORTER_IMPORT_ERROR: Optional[str] = None
except ImportError as _imp_err:
    AzureMonitorTraceExporter = None  # type: ignore
    _EXPORTER_IMPORT_ERROR = repr(_imp_err)

DEFAULT_SERVICE_NAME = "feed-ticker"

_lock = threading.Lock()
_provider: Optional[TracerProvider] = None

_logger = logging.getLogger("FeedTicker.telemetry")


def telemetry_disabled() -> bool:
    return os.environ.get("DISABLE_TELEMETRY", "false").strip().lower() == "true"


def _connection_string() -> Optional[str]:
    for name in ("APPLICATIONINSIGHTS_CONNECTION_STRING", "AZURE_MONITOR_CONNECTION_STRING"):
        if os.environ.get(name):
            return os.environ[name]
    # Older deployments only provide the instrumentation key
    ikey = os.environ.get("APPLICATIONINSIGHTS_INSTRUMENTATIONKEY") or os.environ.get("APPINSIGHTS_INSTRUMENTATIONKEY")
    return f"InstrumentationKey={ikey}" if ikey else None


def _attach_exporter(provider: TracerProvider, service: str) -> None:
    conn = _connection_string()
    if not conn:
        _logger.debug(f"Tracing enabled without exporter (service={service})")
        return
    if AzureMonitorTraceExporter is None:
        _logger.warning(
            f"Connection string set but azure-monitor-opentelemetry-exporter is missing: {_EXPORTER_IMPORT_ERROR}"
        )
        return
    try:
        exporter = AzureMonitorTraceExporter.from_connection_string(conn)  # type: ignore[union-attr]
    except ValueError as e:
        _logger.warning(f"Invalid Azure Monitor connection string; spans will not be exported ({e})")
        return
    provider.add_span_processor(BatchSpanProcessor(exporter))
    _logger.info(f"Exporting traces to Azure Monitor (service={service})")


def _instrument_libraries() -> None:
    for instrumentor in (AioHttpClientInstrumentor(), LoggingInstrumentor()):
        if instrumentor.is_instrumented_by_opentelemetry:
            continue
        try:
            instrumentor.instrument()
        except Exception as e:
            _logger.debug(f"{instrumentor.__class__.__name__} skipped: {e}")


def init_telemetry(service_name: Optional[str] = None) -> None:
    """Install the tracer provider and library instrumentation once per process."""
    global _provider
    if telemetry_disabled() or _provider is not None:
        return
    with _lock:
        if _provider is not None:
            return

        service = service_name or os.environ.get("OTEL_SERVICE_NAME", DEFAULT_SERVICE_NAME)
        attributes: Dict[str, Any] = {"service.name": service}
        if os.environ.get("OTEL_ENVIRONMENT"):
            attributes["deployment.environment"] = os.environ["OTEL_ENVIRONMENT"]

        # Reuse a provider installed by auto-instrumentation
        current = trace.get_tracer_provider()
        provider = current if isinstance(current, TracerProvider) else TracerProvider(resource=Resource.create(attributes))
        _attach_exporter(provider, service)
        if provider is not current:
            trace.set_tracer_provider(provider)
        _instrument_libraries()

        _provider = provider
        # Flushes the batch processor on exit
        atexit.register(provider.shutdown)


def get_tracer(name: str = DEFAULT_SERVICE_NAME):
    return trace.get_tracer(name)


@contextmanager
def _span(tracer, name: str, attributes: Dict[str, Any]) -> Iterator[Any]:
    with tracer.start_as_current_span(name) as span:
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(key, value)
        try:
            yield span
        except Exception as e:
            span.record_exception(e)
            span.set_status(Status(StatusCode.ERROR, str(e)))
            raise


def trace_span(
    span_name: str | None = None,
    *,
    tracer_name: str | None = None,
    static_attrs: dict | None = None,
    attr_from_args: Optional[Callable] = None,
):
    """Run the decorated function (sync or async) inside a span.

    ``attr_from_args`` receives the call's arguments and returns extra span
    attributes; failures while computing them are ignored.
    """

    def decorator(func):
        name = span_name or f"{func.__module__}.{func.__name__}"
        tracer = get_tracer(tracer_name or DEFAULT_SERVICE_NAME)

        def attributes(args, kwargs) -> Dict[str, Any]:
            attrs = dict(static_attrs or {})
            if attr_from_args is not None:
                try:
                    attrs.update(attr_from_args(*args, **kwargs) or {})
                except Exception as e:
                    _logger.debug(f"Span attributes for {name} unavailable: {e}")
            return attrs

        if inspect.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                with _span(tracer, name, attributes(args, kwargs)):
                    return await func(*args, **kwargs)
            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            with _span(tracer, name, attributes(args, kwargs)):
                return func(*args, **kwargs)
        return wrapper

    return decorator
