from fastapi import APIRouter, Request
from pydantic import ValidationError
from starlette.requests import ClientDisconnect

from frontdesk.logging_config import get_logger
from frontdesk.schemas.webhook import WebhookResponse, WhatsAppEvent

logger = get_logger("webhook")

router = APIRouter()


async def _parse_event(request: Request) -> WhatsAppEvent | WebhookResponse:
    try:
        payload = await request.json()
    except ClientDisconnect:
        logger.info("Webhook client disconnected during read")
        return WebhookResponse(success=True, message="Client disconnected")
    except Exception as exc:
        raw = await request.body()
        if not raw or not raw.strip():
            logger.info("Webhook probe with empty body")
            return WebhookResponse(success=True, message="Empty payload")
        logger.warning(
            "Webhook payload is not valid JSON",
            extra={"context": {"error": str(exc), "body_preview": raw[:200].decode("utf-8", "ignore")}},
        )
        return WebhookResponse(success=False, message="Invalid JSON payload")

    if not isinstance(payload, dict):
        return WebhookResponse(success=False, message="Invalid payload format")

    try:
        return WhatsAppEvent.model_validate(payload)
    except ValidationError as exc:
        logger.warning("Webhook payload rejected", extra={"context": {"error": str(exc)}})
        return WebhookResponse(success=False, message="Invalid event payload")


@router.post("/webhook", response_model=WebhookResponse)
async def handle_webhook(request: Request):
    """Inbound and own-account message events from the WhatsApp gateway."""
    parsed = await _parse_event(request)
    if isinstance(parsed, WebhookResponse):
        return parsed

    pipeline = request.app.state.pipeline
    try:
        outcome = await pipeline.handle_incoming(parsed)
    except Exception as exc:
        logger.exception(
            "Webhook handling failed",
            extra={"context": {"conversation_id": parsed.chat_id, "error": str(exc)}},
        )
        return WebhookResponse(success=False, message="Processing error", conversation_id=parsed.chat_id)

    return WebhookResponse(success=True, message=outcome, conversation_id=parsed.chat_id)
