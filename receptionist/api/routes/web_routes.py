"""
Web chat routes.
HTTP chat webhook for embedded widgets and a JSON websocket for live web
sessions. The routing slug in the path selects the tenant.
"""

import json
import logging
import uuid

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect

from receptionist.models.schemas import ChatMessageRequest, ChatMessageResponse
from receptionist.services.session_events import SessionEvent
from receptionist.services.session_runner import SessionRunner
from receptionist.services.web_chat_service import WEB_CHANNEL, chat_session_manager, record_session_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/web", tags=["web"])


@router.post("/{slug}/messages", response_model=ChatMessageResponse, response_model_by_alias=True)
async def post_message(slug: str, request: ChatMessageRequest):
    """Send one chat message and get the agent's reply."""
    session_id, reply, fillers = await chat_session_manager.send_message(slug, request.session_id, request.message)
    return ChatMessageResponse(session_id=session_id, reply=reply, fillers=fillers)


@router.post("/{slug}/sessions/{session_id}/end")
async def end_session(slug: str, session_id: str):
    """End a chat session."""
    session = chat_session_manager.sessions.get(session_id)
    if session is None or session.scope != slug:
        raise HTTPException(status_code=404, detail="Session not found")
    await chat_session_manager.end_session(session_id, "client_end")
    return {"sessionId": session_id, "ended": True}


@router.websocket("/realtime/{slug}")
async def handle_realtime_chat(websocket: WebSocket, slug: str):
    """
    Live web session over JSON text frames.

    In: {"type": "message", "text"} and {"type": "end"}.
    Out: {"type": "agent_message", "text", "filler"} and {"type": "session_ended", "reason"}.
    """
    await websocket.accept()
    session_id = str(uuid.uuid4())
    transport_open = True

    async def send(text: str, filler: bool):
        if transport_open:
            await websocket.send_json({"type": "agent_message", "text": text, "filler": filler})

    async def on_end(reason: str):
        if transport_open:
            await websocket.send_json({"type": "session_ended", "reason": reason})

    runner = SessionRunner(record_session_id(slug, session_id), WEB_CHANNEL, send, on_end=on_end)
    runner.start()
    runner.submit(SessionEvent.start(runner.session_id, identifier=slug, kind="slug", provider="web", greet=True))
    await websocket.send_json({"type": "session_started", "sessionId": session_id})
    reason = "client_disconnect"

    try:
        async for raw in websocket.iter_text():
            try:
                frame = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning(f"Ignoring malformed frame in web session {session_id}")
                continue

            if frame.get("type") == "message" and (frame.get("text") or "").strip():
                if not runner.submit(SessionEvent.utterance(runner.session_id, frame["text"].strip())):
                    break
            elif frame.get("type") == "end":
                reason = "client_end"
                break

    except WebSocketDisconnect:
        logger.info(f"Web session {session_id} disconnected")
        transport_open = False
    except Exception as e:
        logger.error(f"Error in web session {session_id}: {e}", exc_info=True)
        reason = "transport_error"
    finally:
        await runner.end(reason)
        if transport_open:
            transport_open = False
            await websocket.close()
