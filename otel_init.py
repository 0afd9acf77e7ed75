"""
OpenTelemetry initialization for the digest notifier service.

Traces and logs are exported over OTLP/gRPC when
`OTEL_EXPORTER_OTLP_ENDPOINT` is set. Metrics are served separately by
prometheus_client on `/metrics`.

For FastAPI/Uvicorn the OTLP log handler must be attached to BOTH the root
logger and the uvicorn loggers, because uvicorn loggers do not propagate to
the root logger. Call `attach_logging_handler()` from the startup hook.
"""

import logging
import os

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc._log_exporter import OTLPLogExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

_global_logger_provider = None
_otlp_logging_handler = None

logger = logging.getLogger(__name__)

_TRUTHY = ("true", "1", "yes")


def _env_flag(name: str, default: str = "true") -> bool:
    return os.getenv(name, default).lower() in _TRUTHY


def parse_otlp_headers(headers_env: str, signal_type: str) -> dict[str, str] | None:
    """
    Parse OTLP headers from `key1=value1,key2=value2`.

    Returns None for an empty string.
    """
    if not headers_env or not headers_env.strip():
        return None

    headers_list = [
        tuple(h.strip().split("=", 1))
        for h in headers_env.split(",")
        if "=" in h.strip()
    ]
    headers = {k.strip(): v.strip() for k, v in headers_list}

    if not headers:
        logger.warning(
            "OTEL_EXPORTER_OTLP_HEADERS provided but no valid key=value pairs "
            f"found for {signal_type}"
        )
    return headers


def build_resource(service_name: str, service_version: str) -> Resource:
    attributes = {
        "service.name": service_name,
        "service.version": service_version,
        "deployment.environment": os.getenv("ENVIRONMENT", "production"),
    }
    if os.getenv("HOSTNAME"):
        attributes["service.instance.id"] = os.getenv("HOSTNAME")

    # OTEL_RESOURCE_ATTRIBUTES wins over the defaults above.
    return Resource.create(attributes)


def setup_telemetry(
    service_name: str = "digest-notifier",
    service_version: str | None = None,
    otlp_endpoint: str | None = None,
) -> dict[str, bool]:
    """
    Configure tracing and log export. Returns which signals were enabled.

    Failures are logged and leave the no-op providers in place unless
    `OTEL_FAIL_FAST` is set.
    """
    state = {"tracing": False, "logs": False}
    if not _env_flag("ENABLE_OTEL"):
        return state

    service_version = service_version or os.getenv("OTEL_SERVICE_VERSION", "1.0.0")
    otlp_endpoint = otlp_endpoint or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if not otlp_endpoint:
        logger.info("OTLP endpoint not configured, telemetry export disabled")
        return state

    fail_fast = _env_flag("OTEL_FAIL_FAST", "false")
    resource = build_resource(service_name, service_version)
    headers_env = os.getenv("OTEL_EXPORTER_OTLP_HEADERS", "")

    if _env_flag("ENABLE_TRACES"):
        try:
            tracer_provider = TracerProvider(resource=resource)
            tracer_provider.add_span_processor(
                BatchSpanProcessor(
                    OTLPSpanExporter(
                        endpoint=otlp_endpoint,
                        headers=parse_otlp_headers(headers_env, "tracing"),
                    )
                )
            )
            trace.set_tracer_provider(tracer_provider)
            state["tracing"] = True
            logger.info(f"OpenTelemetry tracing enabled for {service_name}")
        except Exception as e:
            logger.error(f"Failed to set up OpenTelemetry tracing: {e}", exc_info=True)
            if fail_fast:
                raise

    if _env_flag("ENABLE_LOGS"):
        global _global_logger_provider
        try:
            LoggingInstrumentor().instrument(set_logging_format=False)
            logger_provider = LoggerProvider(resource=resource)
            logger_provider.add_log_record_processor(
                BatchLogRecordProcessor(
                    OTLPLogExporter(
                        endpoint=otlp_endpoint,
                        headers=parse_otlp_headers(headers_env, "logs"),
                    )
                )
            )
            _global_logger_provider = logger_provider
            state["logs"] = True
            logger.info(f"OpenTelemetry logging export configured for {service_name}")
        except Exception as e:
            logger.error(
                f"Failed to set up OpenTelemetry logging export: {e}", exc_info=True
            )
            if fail_fast:
                raise

    return state


def instrument_fastapi_app(app) -> None:
    """Instrument a FastAPI application; call after creating the app."""
    try:
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

        FastAPIInstrumentor.instrument_app(app)
        logger.info("FastAPI application instrumented")
    except Exception as e:
        logger.error(f"Failed to instrument FastAPI application: {e}", exc_info=True)
        if _env_flag("OTEL_FAIL_FAST", "false"):
            raise


def attach_logging_handler() -> bool:
    """Attach the OTLP log handler to the root and uvicorn loggers."""
    global _otlp_logging_handler

    if _global_logger_provider is None:
        logger.debug("Logger provider not configured - logging export not available")
        return False

    root_logger = logging.getLogger()
    if _otlp_logging_handler is not None and _otlp_logging_handler in root_logger.handlers:
        return True

    handler = LoggingHandler(level=logging.NOTSET, logger_provider=_global_logger_provider)
    for name in (None, "uvicorn", "uvicorn.access", "uvicorn.error"):
        logging.getLogger(name).addHandler(handler)
    _otlp_logging_handler = handler

    logger.info("OTLP logging handler attached to root and uvicorn loggers")
    return True


def get_tracer(name: str = None) -> trace.Tracer:
    return trace.get_tracer(name or "digest-notifier")
