"""
Twilio routes.
Inbound call webhook, the media stream bridged to the realtime front agent,
the call status callback and the inbound SMS webhook.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, Response
from twilio.twiml.messaging_response import MessagingResponse

from receptionist.services.call_analysis_service import call_analysis_service
from receptionist.services.front_agent import ASK_SUPERVISOR, front_instructions, verbatim_tool_output
from receptionist.services.messaging_service import handle_sms
from receptionist.services.realtime_bridge import RealtimeBridge
from receptionist.services.session_events import SessionEvent
from receptionist.services.session_runner import SessionRunner
from receptionist.services.twilio_service import twilio_service
from receptionist.services.webhook_reconciler import lifecycle_from_twilio, webhook_reconciler
from receptionist.db.models import ConversationStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/twilio", tags=["twilio"])

KEEPALIVE_SECONDS = 20
START_TIMEOUT_SECONDS = 10
TRANSPORT_REASONS = ("caller_hangup", "transport_closed", "transport_error")

ERROR_TWIML = """<?xml version="1.0" encoding="UTF-8"?>
<Response>
    <Say>Sorry, we're experiencing technical difficulties. Please try again later.</Say>
</Response>"""

SMS_ERROR_REPLY = "Sorry, I couldn't process your message. Please try again."


@router.post("/incoming-call")
async def handle_incoming_call(request: Request):
    """
    Handle incoming call webhook from Twilio.

    Returns TwiML that connects the call to the media stream. Tenant
    resolution waits for the stream's start frame.
    """
    try:
        form_data = await request.form()
        call_sid = form_data.get("CallSid")
        from_number = form_data.get("From")
        to_number = form_data.get("To")

        logger.info(f"Incoming call from {from_number} to {to_number}, Call SID: {call_sid}")

        twiml = twilio_service.create_stream_twiml(to_number, from_number, call_sid, host=request.url.hostname)
        return Response(content=twiml, media_type="application/xml")

    except Exception as e:
        logger.error(f"Error handling inbound call webhook: {e}")
        return Response(content=ERROR_TWIML, media_type="application/xml")


async def _analyze_and_reconcile(call_id: str):
    """Run the post-call analysis Twilio does not provide and merge it."""
    try:
        event = await call_analysis_service.analyze_call(call_id)
        if event is not None:
            await webhook_reconciler.reconcile(event)
    except Exception as e:
        logger.error(f"Post-call analysis failed for {call_id}: {e}", exc_info=True)


async def _reconcile_status(form: Dict[str, Any]):
    event = lifecycle_from_twilio(form)
    if event is None:
        logger.info(f"Ignoring Twilio status {form.get('CallStatus')} for {form.get('CallSid')}")
        return
    try:
        await webhook_reconciler.reconcile(event)
    except Exception as e:
        logger.error(f"Failed to reconcile Twilio status for {event.call_id}: {e}", exc_info=True)
        return
    if event.status == ConversationStatus.ENDED:
        await _analyze_and_reconcile(event.call_id)


@router.post("/status-callback")
async def handle_call_status(request: Request, background_tasks: BackgroundTasks):
    """
    Handle call status webhook from Twilio.

    Acknowledges immediately; reconciliation runs in the background.
    """
    form = dict(await request.form())
    signature = request.headers.get("X-Twilio-Signature")
    if signature is not None and not twilio_service.validate_request(str(request.url), form, signature):
        raise HTTPException(status_code=403, detail="Invalid Twilio signature")

    logger.info(f"Call status update: {form.get('CallSid')} - {form.get('CallStatus')}")
    background_tasks.add_task(_reconcile_status, form)
    return JSONResponse(content={"status": "received"})


@router.post("/incoming-sms")
async def handle_incoming_sms(request: Request):
    """
    Handle an inbound SMS.

    The dialed number selects the tenant and the (from, to) pair keys the
    thread. The reply goes back in the TwiML response; errors still answer
    200 so Twilio does not retry.
    """
    form = dict(await request.form())
    signature = request.headers.get("X-Twilio-Signature")
    if signature is not None and not twilio_service.validate_request(str(request.url), form, signature):
        raise HTTPException(status_code=403, detail="Invalid Twilio signature")

    body = (form.get("Body") or "").strip()
    from_number = form.get("From")
    to_number = form.get("To")
    logger.info(f"Incoming SMS from {from_number} to {to_number}, Message SID: {form.get('MessageSid')}")

    response = MessagingResponse()
    if not body or not from_number or not to_number:
        logger.warning("Ignoring SMS without body or numbers")
        return Response(content=str(response), media_type="application/xml")

    try:
        reply = await handle_sms(from_number, to_number, body)
    except Exception as e:
        logger.error(f"Error handling SMS from {from_number}: {e}", exc_info=True)
        reply = SMS_ERROR_REPLY

    if reply:
        response.message(reply)
    return Response(content=str(response), media_type="application/xml")


class MediaStreamSession:
    """Bridges one Twilio media stream to a realtime front agent and a session runner."""

    def __init__(self, websocket: WebSocket, runner_factory=SessionRunner, bridge_factory=RealtimeBridge):
        self.websocket = websocket
        self.runner_factory = runner_factory
        self.bridge_factory = bridge_factory
        self.stream_sid: Optional[str] = None
        self.call_sid: Optional[str] = None
        self.runner: Optional[SessionRunner] = None
        self.bridge: Optional[RealtimeBridge] = None
        self.transport_closed = False
        self._tasks = []

    async def send_to_twilio(self, message: Dict[str, Any]):
        if self.transport_closed or not self.stream_sid:
            return
        await self.websocket.send_json(message)

    async def on_audio(self, payload: str):
        await self.send_to_twilio({"event": "media", "streamSid": self.stream_sid, "media": {"payload": payload}})

    async def on_speech_started(self):
        # Caller barged in: drop audio Twilio has buffered
        await self.send_to_twilio({"event": "clear", "streamSid": self.stream_sid})

    async def on_user_transcript(self, text: str):
        self.runner.submit(SessionEvent.utterance(self.runner.session_id, text, respond=False))

    async def on_assistant_transcript(self, text: str):
        self.runner.submit(SessionEvent.utterance(self.runner.session_id, text, role="assistant", respond=False))

    async def on_function_call(self, name: str, arguments: Dict[str, Any]) -> Optional[str]:
        if name != ASK_SUPERVISOR:
            return json.dumps({"error": True, "message": f"Unknown function {name}. Use {ASK_SUPERVISOR}."})
        reply = await self.runner.delegate(arguments.get("relevant_context") or "")
        if reply is None:
            return None
        return verbatim_tool_output(reply)

    async def speak(self, text: str, filler: bool):
        """Runner output on a voice call is read out by the realtime model."""
        if self.bridge is not None and self.bridge.ready:
            await self.bridge.say(text)

    async def on_end(self, reason: str):
        if reason in TRANSPORT_REASONS or self.transport_closed:
            return
        # The runner closed the session itself; hang up the caller
        if self.call_sid:
            await twilio_service.end_call(self.call_sid)
        self.transport_closed = True
        await self.websocket.close()

    async def keepalive(self):
        while not self.transport_closed:
            await asyncio.sleep(KEEPALIVE_SECONDS)
            await self.send_to_twilio({"event": "mark", "streamSid": self.stream_sid, "mark": {"name": "keepalive"}})

    def handle_start(self, start: Dict[str, Any]):
        self.stream_sid = start.get("streamSid")
        parameters = start.get("customParameters") or {}
        self.call_sid = start.get("callSid") or parameters.get("CallSid")
        to_number = parameters.get("To")
        from_number = parameters.get("From")
        logger.info(f"Media stream started: {self.stream_sid} for call: {self.call_sid}")

        self.runner = self.runner_factory(self.call_sid, "twilio", self.speak, on_end=self.on_end)
        self.bridge = self.bridge_factory(
            instructions="",
            on_audio=self.on_audio,
            on_function_call=self.on_function_call,
            on_user_transcript=self.on_user_transcript,
            on_assistant_transcript=self.on_assistant_transcript,
            on_speech_started=self.on_speech_started
        )
        self.runner.start()
        self.runner.submit(SessionEvent.start(
            self.call_sid,
            call_id=self.call_sid,
            identifier=to_number,
            kind="phone",
            from_number=from_number,
            to_number=to_number,
            direction="inbound",
            provider="twilio"
        ))
        self._tasks.append(asyncio.create_task(self.connect_bridge()))
        self._tasks.append(asyncio.create_task(self.keepalive()))

    async def connect_bridge(self):
        """Open the realtime socket once the session is bound to a tenant."""
        try:
            await asyncio.wait_for(self.runner.started.wait(), timeout=START_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.error(f"Session start timed out for call {self.call_sid}")
            await self.runner.end("start_timeout")
            return
        if self.runner.is_ended:
            return

        self.bridge.instructions = front_instructions(self.runner.config)
        try:
            await self.bridge.connect(greet=True)
            await self.bridge.run()
        except Exception as e:
            logger.error(f"Realtime bridge failed for call {self.call_sid}: {e}", exc_info=True)
            await self.runner.end("realtime_error")
            return
        if not self.transport_closed:
            await self.runner.end("realtime_closed")

    async def close(self, reason: str):
        self.transport_closed = True
        for task in self._tasks:
            task.cancel()
        if self.bridge is not None:
            await self.bridge.close()
        if self.runner is not None:
            await self.runner.end(reason)


@router.websocket("/media-stream")
async def handle_media_stream(websocket: WebSocket):
    """
    Handle the Twilio media stream.

    Nothing is resolved on the handshake: the start frame carries the call
    metadata, and every path out of the loop emits session_end.
    """
    await websocket.accept()
    session = MediaStreamSession(websocket)
    reason = "transport_closed"

    try:
        async for message in websocket.iter_text():
            data = json.loads(message)
            event = data.get("event")

            if event == "start" and session.runner is None:
                session.handle_start(data.get("start") or {})

            elif event == "media" and session.bridge is not None:
                await session.bridge.send_audio(data["media"]["payload"])

            elif event == "stop":
                logger.info(f"Media stream stopped: {session.stream_sid}")
                reason = "caller_hangup"
                break

    except WebSocketDisconnect:
        logger.info("Media stream websocket disconnected")
    except Exception as e:
        logger.error(f"Error in media stream handler: {e}", exc_info=True)
        reason = "transport_error"
    finally:
        await session.close(reason)
        logger.info("Media stream connection closed")
