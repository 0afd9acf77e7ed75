"""
Water-quality alert digest notifier - aggregation, cooldown and acknowledgment
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from nats import connect as nats_connect
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from apps.notifier.acknowledgment import AckError, AckResult
from apps.notifier.engine import DigestEngine
from contracts.digest import AcknowledgeRequest, AcknowledgeResponse
from core.config import DigestSettings
from core.nats.heartbeat import HeartbeatService
from core.nats.listener import RawAlertListener
from otel_init import attach_logging_handler, instrument_fastapi_app, setup_telemetry

# Setup logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Digest Notifier",
    description="Alert digest aggregation, cooldown and acknowledgment",
    version="1.0.0",
)
app.state.engine = None
app.state.nats_client = None

_ACK_STATUS = {
    None: (
        200,
        "Alert digest acknowledged successfully. "
        "You will no longer receive reminders for this issue.",
    ),
    AckError.ALREADY_ACKNOWLEDGED: (200, "Digest was already acknowledged"),
    AckError.NOT_FOUND: (404, "Digest not found"),
    AckError.INVALID_TOKEN: (403, "Invalid acknowledgement token"),
    AckError.STORE_UNAVAILABLE: (503, "Acknowledgement temporarily unavailable"),
}


@app.on_event("startup")
async def startup_event():
    """Run on startup."""
    settings = DigestSettings.from_env()
    setup_telemetry(service_name="digest-notifier", service_version=app.version)
    instrument_fastapi_app(app)
    attach_logging_handler()

    engine = DigestEngine.from_settings(settings)
    await engine.start()
    app.state.engine = engine

    if settings.nats_url:
        try:
            app.state.nats_client = await nats_connect(
                settings.nats_url, connect_timeout=1
            )
            await RawAlertListener(
                app.state.nats_client,
                engine.aggregator,
                subject=settings.alert_subject,
            ).start()
            await HeartbeatService(
                version=app.version,
                store=engine.store,
                redis_adapter=engine.redis_adapter,
                subject=settings.heartbeat_subject,
            ).start(app.state.nats_client)
            logger.info(f"Listening for raw alerts on {settings.alert_subject}")
        except Exception as exc:
            logger.warning(f"NATS alert listener disabled: {exc}")

    logger.info("Digest notifier service started")


@app.on_event("shutdown")
async def shutdown_event():
    """Stop the scheduler and close connections."""
    if app.state.nats_client is not None:
        await app.state.nats_client.close()
    if app.state.engine is not None:
        await app.state.engine.stop()


def _ack_response(result: AckResult) -> JSONResponse:
    status_code, message = _ACK_STATUS[result.error]
    body = AcknowledgeResponse(
        success=result.ok,
        message=message,
        digest_id=result.digest_id if result.ok else None,
    )
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(by_alias=True, exclude_none=True),
    )


async def _acknowledge(token: str, digest_id: str) -> JSONResponse:
    if not token or not digest_id:
        return JSONResponse(
            status_code=400,
            content=AcknowledgeResponse(
                success=False, message="Missing required parameters: token and id"
            ).model_dump(by_alias=True, exclude_none=True),
        )

    logger.info(f"Ack request for digest {digest_id}")
    engine = app.state.engine
    if engine is None:
        return _ack_response(AckResult(digest_id, AckError.STORE_UNAVAILABLE))
    result = await engine.acknowledgments.acknowledge(digest_id, token)
    return _ack_response(result)


@app.get("/acknowledge")
async def acknowledge_link(token: str = "", id: str = ""):
    """Acknowledgment via the emailed link."""
    return await _acknowledge(token, id)


@app.post("/acknowledge")
async def acknowledge_post(request: Request):
    """Acknowledgment with a JSON body, falling back to query parameters."""
    try:
        body = await request.json()
    except ValueError:
        body = {}
    try:
        payload = AcknowledgeRequest.model_validate(body)
    except ValueError:
        payload = AcknowledgeRequest()
    token = payload.token or request.query_params.get("token", "")
    digest_id = payload.digest_id or request.query_params.get("id", "")
    return await _acknowledge(token, digest_id)


@app.get("/health/liveness")
async def liveness():
    """Liveness probe."""
    return {"status": "ok"}


@app.get("/health/readiness")
async def readiness():
    """Readiness probe."""
    engine = app.state.engine
    if engine is None or not await engine.store.ping():
        return JSONResponse(status_code=503, content={"status": "unavailable"})
    return {"status": "ok"}


@app.get("/metrics")
async def metrics():
    """Prometheus exposition of digest counters."""
    engine = app.state.engine
    registry = engine.metrics.registry if engine is not None else None
    payload = generate_latest(registry) if registry is not None else generate_latest()
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)


@app.get("/")
async def root():
    """Root endpoint."""
    return {"service": "digest-notifier", "version": "1.0.0", "status": "operational"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)  # nosec
