"""OpenTelemetry wiring for the gateway and the spans around batch execution."""

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from rewardpay.common.config import Settings


tracer = trace.get_tracer("rewardpay")


def setup_tracing(cfg: Settings) -> None:
    """Register the tracer provider; spans leave the process only when an OTLP endpoint is set."""

    resource = Resource.create({"service.name": cfg.service_name, "rewardpay.chain_id": cfg.chain_id})
    provider = TracerProvider(resource=resource)
    if cfg.otel_exporter_otlp_endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=cfg.otel_exporter_otlp_endpoint)))
    trace.set_tracer_provider(provider)


def instrument_app(app: FastAPI) -> None:
    """Request spans for every route except the scrape and probe endpoints."""

    FastAPIInstrumentor.instrument_app(app, excluded_urls="health,metrics")
