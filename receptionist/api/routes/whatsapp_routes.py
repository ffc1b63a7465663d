"""
WhatsApp routes.
Webhook the Evolution API posts inbound WhatsApp messages to.
"""

import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request
from fastapi.responses import JSONResponse

from receptionist.core.auth import verify_evolution_key
from receptionist.services.messaging_service import handle_whatsapp, parse_whatsapp_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/whatsapp", tags=["whatsapp"])


async def _process_whatsapp(message: Dict[str, Any]):
    try:
        await handle_whatsapp(message)
    except Exception as e:
        logger.error(f"Failed to handle WhatsApp message from {message['phone']}: {e}", exc_info=True)


@router.post("/webhook")
async def handle_webhook(request: Request, background_tasks: BackgroundTasks):
    """
    Receive Evolution API webhooks.

    Only inbound one-to-one text messages are processed; everything else is
    acknowledged and ignored. The reply is sent after the acknowledgement.
    """
    try:
        body = json.loads(await request.body())
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Malformed JSON body")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Malformed JSON body")

    if not verify_evolution_key(request.headers.get("apikey") or body.get("apikey")):
        logger.warning(f"WhatsApp webhook rejected for instance {body.get('instance')}: bad apikey")
        raise HTTPException(status_code=401, detail="Invalid API key")

    message = parse_whatsapp_event(body)
    if message is None:
        logger.debug(f"Ignoring WhatsApp event {body.get('event')}")
        return JSONResponse(content={"status": "ignored"})

    logger.info(f"WhatsApp message from {message['phone']} on {message['instance']}")
    background_tasks.add_task(_process_whatsapp, message)
    return JSONResponse(content={"status": "received"})


@router.get("/webhook")
async def webhook_status():
    return {"status": "ok"}
