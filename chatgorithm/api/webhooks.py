"""WhatsApp Cloud API webhook endpoints (mounted at the root, not under /api)."""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request
from fastapi.responses import PlainTextResponse

from chatgorithm.api.deps import get_service
from chatgorithm.config import WEBHOOK_VERIFY_TOKEN
from chatgorithm.services.airtable_store import AirtableStoreError
from chatgorithm.services.inbound import parse_inbound_message, parse_template_status

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/webhook", response_class=PlainTextResponse)
async def verify_webhook(request: Request):
    """Meta's subscription handshake: echo the challenge when the token matches."""
    params = request.query_params
    if (
        WEBHOOK_VERIFY_TOKEN
        and params.get("hub.mode") == "subscribe"
        and params.get("hub.verify_token") == WEBHOOK_VERIFY_TOKEN
    ):
        return params.get("hub.challenge", "")
    raise HTTPException(status_code=403, detail="Verification failed")


def _apply_template_status(store, meta_id: str, status: str) -> None:
    try:
        if not store.update_template_status(meta_id, status):
            logger.info("Status %s for unknown template %s ignored", status, meta_id)
    except AirtableStoreError:
        logger.exception("Could not update template %s to %s", meta_id, status)


@router.post("/webhook", response_class=PlainTextResponse)
async def receive_webhook(request: Request, background_tasks: BackgroundTasks):
    """Store inbound messages and let the assistant answer in the background.

    Meta expects a quick 200; the assistant turn (Gemini + tools) runs as a
    background task after the response.
    """
    processor = get_service(request, "inbound")
    assistant = get_service(request, "assistant")
    store = get_service(request, "store")
    request_id = getattr(request.state, "request_id", "?")

    try:
        body = await request.json()
        message = parse_inbound_message(body)
        if message is not None:
            contact_name = await asyncio.to_thread(processor.handle, message)
            if contact_name is not None:
                background_tasks.add_task(
                    assistant.process,
                    message.text,
                    message.sender,
                    contact_name,
                    message.origin_phone_id,
                )

        template_status = parse_template_status(body)
        if template_status is not None:
            await asyncio.to_thread(_apply_template_status, store, *template_status)
    except Exception as e:
        logger.exception("[%s] Error processing webhook", request_id)
        raise HTTPException(status_code=500, detail="Webhook processing failed") from e

    return "EVENT_RECEIVED"
