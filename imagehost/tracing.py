from collections.abc import Iterator
from contextlib import contextmanager

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from imagehost.config import settings

# Proxy tracer: follows the provider installed by setup_tracing, no-op until then.
upload_tracer = trace.get_tracer("imagehost.uploads")

_tracing_initialized = False


def setup_tracing(app) -> bool:
    global _tracing_initialized
    if _tracing_initialized or not settings.tracing_enabled:
        return False

    provider = TracerProvider(
        resource=Resource.create({SERVICE_NAME: settings.tracing_service_name, SERVICE_VERSION: settings.app_version})
    )
    provider.add_span_processor(
        BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otlp_endpoint, insecure=settings.otlp_insecure))
    )
    trace.set_tracer_provider(provider)
    # Health checks and scrapes would drown out upload traces.
    FastAPIInstrumentor.instrument_app(app, tracer_provider=provider, excluded_urls="health,metrics")
    _tracing_initialized = True
    return True


@contextmanager
def upload_span(name: str, upload_id: str, tracer: trace.Tracer | None = None, **attributes) -> Iterator[trace.Span]:
    """Span around one step of a chunked upload, tagged ``imagehost.upload_id`` plus ``imagehost.<attr>``."""
    with (tracer or upload_tracer).start_as_current_span(name) as span:
        span.set_attribute("imagehost.upload_id", upload_id)
        for key, value in attributes.items():
            span.set_attribute(f"imagehost.{key}", value)
        yield span
