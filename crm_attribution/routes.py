"""
CRM Attribution API Routes

FastAPI routes for:
- Meta webhook verification (subscription handshake)
- Meta webhook deliveries (WhatsApp, Instagram, Messenger)
"""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, Response

from .config import get_attribution_settings
from .models import WebhookAck
from .services.event_normalizer import recognized_events
from .webhooks.meta_webhook import MetaWebhookHandler, get_webhook_handler

logger = logging.getLogger(__name__)

# Create router
webhook_router = APIRouter(prefix="/api/webhooks", tags=["Webhooks"])


@webhook_router.get("/meta")
async def verify_webhook(request: Request):
    """Meta webhook verification endpoint."""
    params = request.query_params
    mode = (params.get("hub.mode") or "").strip()
    challenge = params.get("hub.challenge") or ""
    verify_token = (params.get("hub.verify_token") or "").strip()

    settings = get_attribution_settings()
    expected = (settings.meta_webhook_verify_token or "").strip()

    if mode == "subscribe" and verify_token and verify_token == expected:
        logger.info("Webhook verified successfully")
        return Response(content=challenge, media_type="text/plain")

    raise HTTPException(status_code=403, detail="Verification failed")


@webhook_router.post("/meta", response_model=WebhookAck)
async def receive_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    handler: MetaWebhookHandler = Depends(get_webhook_handler),
):
    """Receive webhook events from Meta (WhatsApp, Instagram, Messenger)."""
    # Get raw body for signature verification
    body = await request.body()
    signature = request.headers.get("X-Hub-Signature-256", "")

    if not handler.verify_signature(body, signature):
        logger.warning("Invalid webhook signature")
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON")

    results = handler.parse(payload)
    events = recognized_events(results)

    # Kommo round trips run after the response is sent
    if events:
        background_tasks.add_task(handler.handle_events, events)

    return WebhookAck(success=True, accepted=len(events))
