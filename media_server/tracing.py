from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from media_server.config import Settings

_provider: TracerProvider | None = None


def setup_tracing(app, config: Settings) -> None:
    """Instrument ``app`` and export spans over OTLP when tracing is enabled.

    The tracer provider is process wide, so it is created once and reused for
    every app instance built afterwards.
    """
    global _provider
    if not config.tracing_enabled:
        return

    if _provider is None:
        resource = Resource.create({SERVICE_NAME: config.tracing_service_name})
        _provider = TracerProvider(resource=resource)
        exporter = OTLPSpanExporter(endpoint=config.otlp_endpoint, insecure=config.otlp_insecure)
        _provider.add_span_processor(BatchSpanProcessor(exporter))
        trace.set_tracer_provider(_provider)
    FastAPIInstrumentor.instrument_app(app, tracer_provider=_provider)
