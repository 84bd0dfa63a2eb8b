from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse
from starlette.requests import ClientDisconnect

from citizen_api.config import settings
from citizen_api.dependencies import get_processor
from citizen_api.logging_config import get_logger
from citizen_api.schemas.webhook import WebhookResponse
from citizen_api.services.webhook_service import WHATSAPP_OBJECT, WebhookProcessor

logger = get_logger("webhook")

router = APIRouter()


@router.get("/webhook")
async def verify_webhook(
    hub_mode: Optional[str] = Query(default=None, alias="hub.mode"),
    hub_verify_token: Optional[str] = Query(default=None, alias="hub.verify_token"),
    hub_challenge: Optional[str] = Query(default=None, alias="hub.challenge"),
):
    """Meta subscription handshake: echo the challenge when the verify token matches."""
    expected = settings.whatsapp_verify_token
    if hub_mode == "subscribe" and expected and hub_verify_token == expected:
        logger.info("Webhook verified")
        return PlainTextResponse(hub_challenge or "")

    logger.warning("Webhook verification failed", extra={"context": {"mode": hub_mode}})
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Verification failed")


async def _parse_webhook_request(request: Request) -> dict | WebhookResponse:
    try:
        payload = await request.json()
    except ClientDisconnect:
        logger.info("Webhook client disconnected during read")
        return WebhookResponse(success=True, message="Client disconnected")
    except Exception as exc:
        try:
            raw = await request.body()
        except ClientDisconnect:
            logger.info("Webhook client disconnected during body read")
            return WebhookResponse(success=True, message="Client disconnected")
        if not raw or not raw.strip():
            logger.info("Webhook probe with empty body")
            return WebhookResponse(success=True, message="Empty payload")

        logger.warning(
            "Webhook payload is not valid JSON",
            extra={
                "context": {
                    "error": str(exc),
                    "body_preview": raw[:200].decode("utf-8", "ignore"),
                }
            },
        )
        return WebhookResponse(success=True, message="Invalid JSON payload")

    if not isinstance(payload, dict):
        logger.warning("Webhook payload is not an object")
        return WebhookResponse(success=True, message="Invalid payload format")

    if payload.get("object") != WHATSAPP_OBJECT:
        logger.info("Ignoring non-WhatsApp webhook", extra={"context": {"object": payload.get("object")}})
        return WebhookResponse(success=True, message="Ignored")

    return payload


@router.post("/webhook", response_model=WebhookResponse)
async def receive_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    processor: WebhookProcessor = Depends(get_processor),
):
    """Receive WhatsApp Cloud API events. Always answers 200 so Meta does not redeliver."""
    parsed = await _parse_webhook_request(request)
    if isinstance(parsed, WebhookResponse):
        return parsed

    if not settings.webhook_process_inline:
        background_tasks.add_task(processor.process_payload, parsed)
        return WebhookResponse(success=True, message="Accepted")

    try:
        summary = await processor.process_payload(parsed)
    except Exception:
        logger.exception("Webhook processing crashed")
        return WebhookResponse(success=True, message="Received")

    return WebhookResponse(
        success=True,
        message="Processed",
        processed=summary.processed,
        duplicates=summary.duplicates,
        skipped=summary.skipped + summary.failed,
    )
