"""
Retell routes.
The custom-LLM websocket Retell drives during a call, and the lifecycle
webhook it posts call_started, call_ended and call_analyzed to.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from receptionist.core.auth import verify_retell_signature
from receptionist.models.schemas import RetellWebhookEvent
from receptionist.services.organization_resolver import organization_resolver
from receptionist.services.session_events import SessionEvent
from receptionist.services.session_runner import SessionRunner
from receptionist.services.webhook_reconciler import lifecycle_from_retell, webhook_reconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/retell", tags=["retell"])

REMINDER_REPLY = "Are you still there?"


def last_user_utterance(transcript: Optional[List[Dict[str, Any]]]) -> str:
    """The latest user turn of a Retell transcript."""
    for turn in reversed(transcript or []):
        if turn.get("role") == "user" and (turn.get("content") or "").strip():
            return turn["content"].strip()
    return ""


class RetellLlmSession:
    """Translates Retell custom-LLM frames into session events for one call."""

    def __init__(self, websocket: WebSocket, call_id: str, runner_factory=SessionRunner, resolver=None):
        self.websocket = websocket
        self.call_id = call_id
        self.resolver = resolver or organization_resolver
        self.response_id = 0
        self.closed = False
        self.last_user_text: Optional[str] = None
        # The runner exists from the first frame, but tenant resolution and
        # the agents wait for call_details
        self.runner = runner_factory(call_id, "retell", self.send_response, on_end=self.on_end)
        self.runner.start()
        self.started = False

    async def send(self, message: Dict[str, Any]):
        if self.closed:
            return
        await self.websocket.send_text(json.dumps(message))

    async def send_response(self, text: str, filler: bool, response_id: Optional[int] = None):
        """
        Send agent text under the response id of the turn it answers.

        Runner output carries the turn it was produced for; a reply to a turn
        Retell has already superseded is dropped.
        """
        if response_id is None:
            response_id = self.runner.current_turn
        if response_id is None:
            response_id = self.response_id
        if response_id < self.response_id:
            logger.info(f"Dropping reply to superseded response {response_id} for Retell call {self.call_id}")
            return
        await self.send({
            "response_type": "response",
            "response_id": response_id,
            "content": f"{text} " if filler else text,
            "content_complete": not filler,
            "end_call": False,
        })

    async def on_end(self, reason: str):
        if self.closed:
            return
        # The runner ended the session itself; tell Retell to hang up
        await self.send({
            "response_type": "response",
            "response_id": self.response_id,
            "content": "",
            "content_complete": True,
            "end_call": True,
        })

    async def start_session(self, call: Dict[str, Any]):
        if self.started:
            return
        self.started = True

        metadata: Dict[str, Any] = {
            "call_id": self.call_id,
            "provider": "retell",
            "owns_timestamps": False,
            "greet": True,
        }
        for key in ("agent_id", "from_number", "to_number", "direction"):
            if call.get(key):
                metadata[key] = call[key]

        organization_id = None
        if call.get("agent_id"):
            organization_id = await self.resolver.resolve(call["agent_id"], "agent")
        if organization_id is not None:
            metadata["organization_id"] = organization_id
        else:
            metadata["identifier"] = call.get("to_number")
            metadata["kind"] = "phone"

        self.runner.submit(SessionEvent.start(self.call_id, **metadata))

    async def handle(self, message: Dict[str, Any]):
        interaction_type = message.get("interaction_type")

        if interaction_type in ("ping_pong", "ping"):
            await self.send({"response_type": "ping_pong", "timestamp": message.get("timestamp")})

        elif interaction_type == "call_details":
            logger.info(f"Call details received for Retell call {self.call_id}")
            await self.start_session(message.get("call") or {})

        elif interaction_type == "update_only":
            # Transcript updates only; turns are recorded when a response is required
            pass

        elif interaction_type in ("response_required", "reminder_required"):
            self.response_id = message.get("response_id", self.response_id)
            if not self.started:
                logger.warning(f"Retell call {self.call_id} asked for a response before call_details")
                await self.start_session({})

            text = last_user_utterance(message.get("transcript"))
            if interaction_type == "reminder_required" and (not text or text == self.last_user_text):
                self.runner.submit(SessionEvent.utterance(self.call_id, REMINDER_REPLY, role="assistant", respond=False))
                await self.send_response(REMINDER_REPLY, False, self.response_id)
                return
            if not text:
                await self.send_response("", False, self.response_id)
                return

            self.last_user_text = text
            # The runner speaks the reply through send_response
            self.runner.submit(SessionEvent.utterance(self.call_id, text, turn_id=self.response_id))

        else:
            logger.debug(f"Unknown interaction_type for Retell call {self.call_id}: {interaction_type}")

    async def close(self, reason: str):
        self.closed = True
        await self.runner.end(reason)


@router.websocket("/llm-websocket/{call_id}")
async def handle_llm_websocket(websocket: WebSocket, call_id: str):
    """Serve the Retell custom-LLM protocol for one call."""
    await websocket.accept()
    session = RetellLlmSession(websocket, call_id)
    reason = "transport_closed"

    try:
        await session.send({"response_type": "config", "config": {"auto_reconnect": True, "call_details": True}})

        async for raw in websocket.iter_text():
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning(f"Ignoring malformed Retell frame for call {call_id}")
                continue
            await session.handle(message)

    except WebSocketDisconnect:
        logger.info(f"Retell websocket disconnected for call {call_id}")
    except Exception as e:
        logger.error(f"Error in Retell websocket for call {call_id}: {e}", exc_info=True)
        reason = "transport_error"
    finally:
        await session.close(reason)


async def _reconcile_retell(payload: RetellWebhookEvent):
    event = lifecycle_from_retell(payload)
    if event is None:
        logger.info(f"Ignoring Retell event {payload.event} for {payload.call.call_id}")
        return
    try:
        await webhook_reconciler.reconcile(event)
    except Exception as e:
        logger.error(f"Failed to reconcile Retell {payload.event} for {payload.call.call_id}: {e}", exc_info=True)


@router.post("/webhook")
async def handle_webhook(request: Request, background_tasks: BackgroundTasks):
    """
    Receive Retell lifecycle webhooks.

    The signature is checked on the raw body; processing runs after the
    acknowledgement so slow work never triggers provider retries.
    """
    body = await request.body()
    if not verify_retell_signature(body, request.headers.get("x-retell-signature")):
        logger.warning("Retell webhook rejected: missing or invalid signature")
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = RetellWebhookEvent(**json.loads(body))
    except (json.JSONDecodeError, ValidationError) as e:
        logger.error(f"Malformed Retell webhook body: {e}")
        return JSONResponse(content={"received": True})

    logger.info(f"Retell webhook {payload.event} for {payload.call.call_id}")
    background_tasks.add_task(_reconcile_retell, payload)
    return JSONResponse(content={"received": True})
