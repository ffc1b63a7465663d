"""
OpenAI Realtime bridge for telephony audio.

Plays the front agent over a realtime websocket with g711 u-law audio in and
out. Audio that arrives before the socket is ready is queued (bounded).
"""

import asyncio
import json
import logging
from collections import deque
from typing import Awaitable, Callable, Dict, Any, Optional, Set

import websockets

from receptionist.config.settings import settings
from receptionist.services.front_agent import ASK_SUPERVISOR_REALTIME_TOOL

logger = logging.getLogger(__name__)

MAX_PENDING_FRAMES = 100


class RealtimeBridge:
    """One realtime model session bound to one call."""

    def __init__(
        self,
        instructions: str,
        on_audio: Callable[[str], Awaitable[None]],
        on_function_call: Callable[[str, Dict[str, Any]], Awaitable[str]],
        on_user_transcript: Optional[Callable[[str], Awaitable[None]]] = None,
        on_assistant_transcript: Optional[Callable[[str], Awaitable[None]]] = None,
        on_speech_started: Optional[Callable[[], Awaitable[None]]] = None,
        model: Optional[str] = None,
        voice: Optional[str] = None,
        url: Optional[str] = None
    ):
        self.instructions = instructions
        self.on_audio = on_audio
        self.on_function_call = on_function_call
        self.on_user_transcript = on_user_transcript
        self.on_assistant_transcript = on_assistant_transcript
        self.on_speech_started = on_speech_started
        self.model = model or settings.openai_realtime_model
        self.voice = voice or settings.openai_realtime_voice
        self.url = url or settings.openai_realtime_url
        self.ws = None
        self.ready = False
        self.closed = False
        self._pending = deque(maxlen=MAX_PENDING_FRAMES)
        self._tasks: Set[asyncio.Task] = set()

    def session_update(self) -> Dict[str, Any]:
        """The session.update message configuring audio, VAD and the single tool."""
        return {
            "type": "session.update",
            "session": {
                "modalities": ["text", "audio"],
                "instructions": self.instructions,
                "voice": self.voice,
                "input_audio_format": "g711_ulaw",
                "output_audio_format": "g711_ulaw",
                "input_audio_transcription": {"model": settings.openai_transcription_model},
                "turn_detection": {
                    "type": "server_vad",
                    "threshold": 0.5,
                    "prefix_padding_ms": 300,
                    "silence_duration_ms": 200,
                },
                "tools": [ASK_SUPERVISOR_REALTIME_TOOL],
                "tool_choice": "auto",
                "temperature": settings.openai_temperature,
            },
        }

    async def connect(self, greet: bool = True):
        """Open the realtime socket, configure the session and flush queued audio."""
        url = f"{self.url}?model={self.model}"
        headers = {
            "Authorization": f"Bearer {settings.openai_api_key}",
            "OpenAI-Beta": "realtime=v1",
        }
        self.ws = await websockets.connect(url, additional_headers=headers)
        await self._send(self.session_update())
        if greet:
            await self._send({"type": "response.create"})

        self.ready = True
        flushed = len(self._pending)
        while self._pending:
            await self._send({"type": "input_audio_buffer.append", "audio": self._pending.popleft()})
        logger.info(f"Realtime session connected ({self.model}), flushed {flushed} queued frames")

    async def send_audio(self, payload: str):
        """Forward one base64 u-law frame, queueing it until the socket is ready."""
        if self.closed:
            return
        if not self.ready:
            self._pending.append(payload)
            return
        await self._send({"type": "input_audio_buffer.append", "audio": payload})

    async def send_function_output(self, call_id: str, output: str):
        """Return a tool result and ask the model to speak."""
        await self._send({
            "type": "conversation.item.create",
            "item": {"type": "function_call_output", "call_id": call_id, "output": output},
        })
        await self._send({"type": "response.create"})

    async def say(self, text: str):
        """Have the model speak a fixed line, such as an apology before hanging up."""
        await self._send({
            "type": "response.create",
            "response": {"instructions": f"Say exactly the following to the caller, word for word: {text}"},
        })

    async def _send(self, message: Dict[str, Any]):
        if self.ws is None or self.closed:
            return
        await self.ws.send(json.dumps(message))

    async def run(self):
        """Consume realtime events until the socket closes."""
        try:
            async for raw in self.ws:
                event = json.loads(raw)
                await self._handle_event(event)
        except websockets.exceptions.ConnectionClosed as e:
            logger.info(f"Realtime socket closed: {e}")

    async def _handle_event(self, event: Dict[str, Any]):
        event_type = event.get("type")

        if event_type == "response.audio.delta":
            await self.on_audio(event.get("delta", ""))

        elif event_type == "input_audio_buffer.speech_started":
            if self.on_speech_started:
                await self.on_speech_started()

        elif event_type == "conversation.item.input_audio_transcription.completed":
            transcript = (event.get("transcript") or "").strip()
            if transcript and self.on_user_transcript:
                await self.on_user_transcript(transcript)

        elif event_type == "response.audio_transcript.done":
            transcript = (event.get("transcript") or "").strip()
            if transcript and self.on_assistant_transcript:
                await self.on_assistant_transcript(transcript)

        elif event_type == "response.function_call_arguments.done":
            # Run off the receive loop so audio keeps flowing
            task = asyncio.create_task(self._run_function_call(event))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        elif event_type == "error":
            logger.error(f"Realtime error: {event.get('error')}")

    async def _run_function_call(self, event: Dict[str, Any]):
        call_id = event.get("call_id")
        name = event.get("name")
        try:
            arguments = json.loads(event.get("arguments") or "{}")
        except json.JSONDecodeError:
            arguments = {}

        output = await self.on_function_call(name, arguments)
        if output is None or self.closed:
            return
        await self.send_function_output(call_id, output)

    async def close(self):
        """Close the realtime socket and cancel pending tool calls."""
        if self.closed:
            return
        self.closed = True
        for task in list(self._tasks):
            task.cancel()
        if self.ws is not None:
            await self.ws.close()
        logger.info("Realtime session closed")
