"""
Twilio service for inbound voice calls.
Builds the TwiML that connects a call to the media stream, validates webhook
signatures and ends calls the orchestrator has closed.
"""

import asyncio
import logging
from typing import Dict, Any, Optional

from twilio.base.exceptions import TwilioException
from twilio.request_validator import RequestValidator
from twilio.rest import Client
from twilio.twiml.voice_response import VoiceResponse, Connect, Stream

from receptionist.config.settings import settings

logger = logging.getLogger(__name__)

MEDIA_STREAM_PATH = "/api/v1/twilio/media-stream"
STATUS_CALLBACK_PATH = "/api/v1/twilio/status-callback"


class TwilioService:
    """Service class for Twilio operations."""

    def __init__(self, account_sid: Optional[str] = None, auth_token: Optional[str] = None):
        self.account_sid = account_sid or settings.twilio_account_sid
        self.auth_token = auth_token or settings.twilio_auth_token
        self.validator = RequestValidator(self.auth_token)
        self._client: Optional[Client] = None

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = Client(self.account_sid, self.auth_token)
        return self._client

    def stream_url(self, host: Optional[str] = None) -> str:
        return f"wss://{settings.domain or host}{MEDIA_STREAM_PATH}"

    def create_stream_twiml(self, to_number: str, from_number: str, call_sid: str, host: Optional[str] = None) -> str:
        """
        Create TwiML that connects the call to the media stream.

        The stream parameters carry the call metadata to the start frame,
        where the tenant is resolved.

        Returns:
            str: The TwiML XML string
        """
        response = VoiceResponse()
        connect = Connect()
        stream = Stream(url=self.stream_url(host))
        stream.parameter(name="To", value=to_number or "")
        stream.parameter(name="From", value=from_number or "")
        stream.parameter(name="CallSid", value=call_sid or "")
        connect.append(stream)
        response.append(connect)
        # Reached only when the stream closes without the caller hanging up
        response.say("Thank you for calling. Goodbye.")
        return str(response)

    def validate_request(self, url: str, params: Dict[str, Any], signature: str) -> bool:
        """Check an X-Twilio-Signature header against the request."""
        valid = self.validator.validate(url, params, signature)
        if not valid:
            logger.warning(f"Invalid Twilio signature for {url}")
        return valid

    async def end_call(self, call_sid: str) -> bool:
        """
        Hang up a live call.

        Args:
            call_sid: The call SID

        Returns:
            bool: True if Twilio accepted the update
        """
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._end_call_sync, call_sid)
            logger.info(f"Ended Twilio call {call_sid}")
            return True
        except TwilioException as e:
            logger.error(f"Twilio error ending call {call_sid}: {e}")
            return False

    def _end_call_sync(self, call_sid: str):
        self.client.calls(call_sid).update(status="completed")


# Global Twilio service instance
twilio_service = TwilioService()
