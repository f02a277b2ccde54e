"""
WhatsApp Webhook Service

FastAPI app that receives gateway callbacks and serves the application API.

Responsibilities:
- Authenticate webhooks (origin allow-list plus a credential)
- Drop events for other accounts and events the integration does not handle
- Publish accepted webhooks to the inbound Redis Stream
- Return quickly; processing happens in the worker
"""

import json
import logging

import redis
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from wacore.clock import utcnow
from wacore.logging import setup_logging
from wacore.redis import get_redis_client, ping

from wa_integration.contracts.event_types import GatewayEvent, normalize_event_name
from wa_integration.errors import (
    AccountNotFound,
    DispatchUnavailable,
    GatewayError,
    InvalidAccountState,
    MissingCredential,
    QuotaExceeded,
    Unauthorized,
)
from wa_integration.gateway.webhook import extract_account_key
from wa_integration.security.gate import WebhookAuthGate
from wa_integration.streams.groups import ensure_integration_streams
from wa_integration.streams.producer import IntegrationStreamProducer

from whatsapp_webhook.api import api_router
from whatsapp_webhook.deps import get_gate, get_redis

setup_logging()
logger = logging.getLogger(__name__)

HANDLED_EVENTS = {event.value for event in GatewayEvent}

app = FastAPI(
    title="WhatsApp Webhook",
    description="Receives gateway webhooks and publishes them to Redis Streams",
    version="1.0.0",
)
app.include_router(api_router)


@app.on_event("startup")
async def startup():
    """Ensure Redis streams exist on startup."""
    try:
        ensure_integration_streams(get_redis_client())
        logger.info("WhatsApp webhook service started")
    except redis.RedisError as e:
        logger.error(f"Failed to initialize streams: {e}")
        raise


# =============================================================================
# Error mapping
# =============================================================================

def _error(status_code: int, detail: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail, **extra})


@app.exception_handler(Unauthorized)
async def unauthorized_handler(request: Request, exc: Unauthorized):
    return _error(403, "Forbidden")


@app.exception_handler(AccountNotFound)
async def account_not_found_handler(request: Request, exc: AccountNotFound):
    return _error(404, str(exc))


@app.exception_handler(InvalidAccountState)
async def invalid_state_handler(request: Request, exc: InvalidAccountState):
    return _error(409, str(exc))


@app.exception_handler(MissingCredential)
async def missing_credential_handler(request: Request, exc: MissingCredential):
    return _error(409, str(exc), code="MISSING_CREDENTIAL")


@app.exception_handler(QuotaExceeded)
async def quota_exceeded_handler(request: Request, exc: QuotaExceeded):
    return _error(429, str(exc), quota=exc.quota, used=exc.used, limit=exc.limit)


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError):
    logger.warning(f"Gateway error on {request.url.path}: {exc}", extra={"code": exc.code})
    return _error(502, str(exc), code=exc.code)


@app.exception_handler(DispatchUnavailable)
async def dispatch_unavailable_handler(request: Request, exc: DispatchUnavailable):
    logger.error(f"Dispatch queue unavailable on {request.url.path}: {exc}")
    return _error(503, "Dispatch queue unavailable", code="ENQUEUE_FAILED")


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return _error(422, str(exc))


# =============================================================================
# Routes
# =============================================================================

@app.get("/health")
async def health(redis_client: redis.Redis = Depends(get_redis)):
    """Health check endpoint."""
    redis_ok = ping(redis_client)
    return {
        "status": "healthy" if redis_ok else "degraded",
        "service": "whatsapp-webhook",
        "redis": redis_ok,
    }


@app.post("/webhook/{account_key}")
async def receive_webhook(
    account_key: str,
    request: Request,
    gate: WebhookAuthGate = Depends(get_gate),
    redis_client: redis.Redis = Depends(get_redis),
):
    """
    Receive a gateway callback for one account.

    Flow:
    1. Authenticate (403 on rejection, before anything else is looked at)
    2. Reject bodies that are not JSON objects
    3. Ignore events addressed to another account or not handled here
    4. Publish to the inbound stream with the receive time
    """
    received_at = utcnow()
    body = await request.body()

    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        payload = None

    peer = request.client.host if request.client else None
    gate.require(
        dict(request.headers),
        body,
        payload if isinstance(payload, dict) else {},
        peer,
        account_key=account_key,
    )

    if not isinstance(payload, dict):
        logger.warning(f"Invalid JSON payload for {account_key}")
        raise HTTPException(status_code=400, detail="Invalid JSON")

    instance = extract_account_key(payload)
    if instance and instance != account_key:
        logger.warning(f"Webhook for {instance} posted to the route of {account_key}, ignoring")
        return {"status": "ignored", "reason": "account_mismatch"}

    event_name = normalize_event_name(payload.get("event"))
    if event_name not in HANDLED_EVENTS:
        logger.debug(f"Ignoring gateway event '{event_name}' for {account_key}")
        return {"status": "ignored", "event": event_name}

    producer = IntegrationStreamProducer(redis_client)
    stream_id = producer.publish_webhook(
        account_key,
        payload,
        received_at=received_at,
        metadata={"client_address": request.headers.get("x-forwarded-for") or peer},
    )

    logger.info(
        f"Webhook accepted: {event_name}",
        extra={"account_key": account_key, "stream_id": stream_id},
    )
    return {"status": "accepted", "event": event_name}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8090)
