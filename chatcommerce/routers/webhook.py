from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from chatcommerce.logging_config import get_logger
from chatcommerce.routers.dependencies import get_container
from chatcommerce.schemas.webhook import WebhookAck, WebhookPayload
from chatcommerce.services.container import ServiceContainer
from chatcommerce.services.idempotency_service import ClaimUnavailableError
from chatcommerce.services.webhook_verifier import VerificationError, verify, verify_subscription

logger = get_logger("webhook")

router = APIRouter(tags=["webhook"])


@router.get("/webhook", response_class=PlainTextResponse)
def subscribe(
    hub_mode: Optional[str] = Query(default=None, alias="hub.mode"),
    hub_verify_token: Optional[str] = Query(default=None, alias="hub.verify_token"),
    hub_challenge: Optional[str] = Query(default=None, alias="hub.challenge"),
    container: ServiceContainer = Depends(get_container),
):
    if not verify_subscription(hub_mode, hub_verify_token, container.settings.webhook_verify_token):
        logger.warning("Webhook subscription rejected", extra={"context": {"mode": hub_mode}})
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Verification failed")
    return hub_challenge or ""


@router.post("/webhook", response_model=WebhookAck)
async def receive_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    container: ServiceContainer = Depends(get_container),
):
    """Verify, claim, acknowledge. Business processing runs after the response."""
    settings = container.settings
    max_bytes = settings.webhook_max_payload_bytes

    declared_length = request.headers.get("content-length")
    if declared_length and declared_length.isdigit() and int(declared_length) > max_bytes:
        raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="Payload too large")

    raw_body = await request.body()
    try:
        verify(raw_body, request.headers.get("X-Hub-Signature-256"), settings.webhook_app_secret, max_bytes=max_bytes)
    except VerificationError as exc:
        logger.warning(
            "Webhook rejected",
            extra={"context": {"reason": exc.code, "size": len(raw_body)}},
        )
        raise HTTPException(status_code=exc.status_code, detail=exc.code)

    try:
        payload = WebhookPayload.model_validate_json(raw_body)
    except ValidationError as exc:
        logger.warning("Webhook payload invalid", extra={"context": {"errors": exc.error_count()}})
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload")

    ack = WebhookAck(ignored=payload.status_count())
    for event in payload.inbound_events():
        try:
            claimed = await run_in_threadpool(container.gate.claim, event.event_id, customer_id=event.customer_id)
        except ClaimUnavailableError:
            # Events claimed so far still get processed; the provider redelivers the rest.
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"detail": "Claim store unavailable"},
                background=background_tasks,
            )
        if claimed:
            background_tasks.add_task(container.pipeline.process, event)
            ack.accepted += 1
        else:
            ack.duplicates += 1

    logger.info("Webhook acknowledged", extra={"context": ack.model_dump()})
    return ack
