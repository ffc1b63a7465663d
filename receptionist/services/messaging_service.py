"""
SMS and WhatsApp text threads.

Each inbound message goes to a SessionRunner keyed by the sender and the
business line, so a thread keeps its state between messages. SMS replies
go back as TwiML; WhatsApp replies are sent through the Evolution API.
"""

import asyncio
import json
import logging
import re
from typing import Dict, Any, Optional

import aiohttp

from receptionist.config.settings import settings
from receptionist.services.web_chat_service import ChatSessionManager

logger = logging.getLogger(__name__)

# SMS threads share the voice line's channel configuration
SMS_CHANNEL = "twilio"
WHATSAPP_CHANNEL = "whatsapp"
WHATSAPP_GROUP_SUFFIX = "@g.us"


def _digits(value: Optional[str]) -> str:
    return re.sub(r"\D", "", value or "")


def sms_session_id(from_number: str, to_number: str) -> str:
    """Thread key of an SMS conversation, sms_<from digits>_<to digits>."""
    return f"sms_{_digits(from_number)}_{_digits(to_number)}"


def whatsapp_session_id(instance: str, phone: str) -> str:
    return f"whatsapp_{instance}_{_digits(phone)}"


def extract_whatsapp_text(message: Optional[Dict[str, Any]]) -> str:
    """Text of an Evolution message object: plain, extended, or a media caption."""
    if not message:
        return ""
    if message.get("conversation"):
        return message["conversation"]
    if (message.get("extendedTextMessage") or {}).get("text"):
        return message["extendedTextMessage"]["text"]
    for media in ("imageMessage", "documentMessage", "videoMessage"):
        caption = (message.get(media) or {}).get("caption")
        if caption:
            return caption
    return ""


def parse_whatsapp_event(body: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Pull the inbound text message out of an Evolution API webhook.

    Evolution names the event ``messages.upsert`` or ``MESSAGES_UPSERT``
    depending on its version; both are accepted.

    Returns:
        Dict with instance, phone, name and text, or None when the event is
        not an inbound one-to-one text message
    """
    event = (body.get("event") or "").lower().replace("_", ".")
    if event != "messages.upsert":
        return None

    data = body.get("data") or {}
    key = data.get("key") or {}
    remote_jid = key.get("remoteJid") or ""
    if key.get("fromMe") or not remote_jid or remote_jid.endswith(WHATSAPP_GROUP_SUFFIX):
        return None

    text = extract_whatsapp_text(data.get("message")).strip()
    phone = _digits(remote_jid.split("@", 1)[0])
    if not text or not phone:
        return None

    return {
        "instance": body.get("instance") or "",
        "phone": f"+{phone}",
        "name": data.get("pushName"),
        "text": text,
    }


class EvolutionClient:
    """Sends WhatsApp text through the Evolution API."""

    def __init__(self, api_url: Optional[str] = None, api_key: Optional[str] = None):
        self.api_url = (api_url if api_url is not None else settings.evolution_api_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.evolution_api_key
        self.session: Optional[aiohttp.ClientSession] = None

    async def initialize(self):
        if not self.session:
            self.session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=30))

    async def cleanup(self):
        if self.session:
            await self.session.close()
            self.session = None

    async def send_text(self, instance: str, phone: str, text: str) -> bool:
        """
        Send one WhatsApp message.

        Returns:
            True when Evolution accepted the message
        """
        if not self.api_url:
            logger.info("WhatsApp reply skipped (missing EVOLUTION_API_URL)")
            return False

        if not self.session:
            await self.initialize()

        url = f"{self.api_url}/message/sendText/{instance}"
        payload = {"number": _digits(phone), "text": text}
        headers = {"apikey": self.api_key, "Content-Type": "application/json"}
        try:
            async with self.session.post(url, data=json.dumps(payload), headers=headers) as response:
                if response.status >= 400:
                    body = await response.text()
                    logger.warning(f"Evolution send failed ({response.status}) on {instance}: {body}")
                    return False
                return True
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Evolution send failed on {instance}: {e}")
            return False


async def handle_sms(from_number: str, to_number: str, text: str, manager: Optional[ChatSessionManager] = None) -> Optional[str]:
    """Deliver one inbound SMS to its thread and return the reply text."""
    manager = manager or sms_session_manager
    reply, _ = await manager.converse(
        sms_session_id(from_number, to_number),
        to_number,
        text,
        identifier=to_number,
        kind="phone",
        from_number=from_number,
        to_number=to_number,
        direction="inbound",
        provider="twilio_sms"
    )
    return reply


async def handle_whatsapp(
    message: Dict[str, Any],
    manager: Optional[ChatSessionManager] = None,
    client: Optional[EvolutionClient] = None
) -> bool:
    """
    Deliver one inbound WhatsApp message and send the reply back.

    The Evolution instance name is the organization's routing slug.

    Returns:
        True if a reply was sent
    """
    manager = manager or whatsapp_session_manager
    client = client or evolution_client
    instance = message["instance"]

    reply, _ = await manager.converse(
        whatsapp_session_id(instance, message["phone"]),
        instance,
        message["text"],
        identifier=instance,
        kind="slug",
        from_number=message["phone"],
        direction="inbound",
        provider="evolution"
    )
    if not reply:
        logger.info(f"No WhatsApp reply for {message['phone']} on {instance}")
        return False
    return await client.send_text(instance, message["phone"], reply)


# Global instances
sms_session_manager = ChatSessionManager(idle_seconds=settings.text_session_idle_seconds, channel=SMS_CHANNEL)
whatsapp_session_manager = ChatSessionManager(idle_seconds=settings.text_session_idle_seconds, channel=WHATSAPP_CHANNEL)
evolution_client = EvolutionClient()
