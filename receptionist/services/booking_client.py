"""
Booking API client.

Translates a catalog function name and parameters into an authenticated,
organization-scoped HTTP call. The tenant travels in a header, never in the
body, so any tenant field found in the parameters is stripped first.
"""

import asyncio
import json
import logging
import time
import uuid
from typing import Dict, Any, Optional, Tuple

import aiohttp

from receptionist.config.settings import settings
from receptionist.core.exceptions import BookingApiError
from receptionist.models.booking_schemas import BookingResult

logger = logging.getLogger(__name__)

TENANT_FIELDS = ("organization_id", "organizationId", "org_id")

INTERNAL_KEY_HEADER = "X-Internal-Key"
ORGANIZATION_HEADER = "X-Organization-Id"


def strip_tenant_fields(parameters: Optional[Dict[str, Any]]) -> Tuple[Dict[str, Any], list]:
    """
    Remove tenant identity fields from a parameter set.

    Returns:
        Tuple of (clean parameters, names of the stripped fields)
    """
    parameters = dict(parameters or {})
    stripped = [name for name in TENANT_FIELDS if name in parameters]
    for name in stripped:
        parameters.pop(name)
    return parameters, stripped


class ServiceCaller:
    """Service-to-service caller: internal key plus a pre-validated tenant header."""

    def __init__(self, organization_id: uuid.UUID, internal_key: Optional[str] = None):
        if organization_id is None:
            raise ValueError("Service calls require an organization id")
        self.organization_id = organization_id
        self.internal_key = internal_key or settings.internal_api_key

    def headers(self) -> Dict[str, str]:
        return {
            INTERNAL_KEY_HEADER: self.internal_key,
            ORGANIZATION_HEADER: str(self.organization_id),
        }

    def cookies(self) -> Optional[Dict[str, str]]:
        return None

    def __repr__(self):
        return f"<ServiceCaller(organization_id='{self.organization_id}')>"


class BrowserCaller:
    """Browser-originated caller: forwards the user's session cookie or bearer token."""

    def __init__(self, cookie: Optional[str] = None, bearer: Optional[str] = None):
        if not cookie and not bearer:
            raise ValueError("Browser calls require a session cookie or bearer token")
        self.cookie = cookie
        self.bearer = bearer

    def headers(self) -> Dict[str, str]:
        # No tenant header: the token's org claim is the only tenant source
        if self.bearer:
            return {"Authorization": f"Bearer {self.bearer}"}
        return {}

    def cookies(self) -> Optional[Dict[str, str]]:
        if self.cookie:
            return {settings.session_cookie_name: self.cookie}
        return None

    def __repr__(self):
        return "<BrowserCaller()>"


class BookingApiClient:
    """Client for POST /booking and for the scheduling backend behind it."""

    def __init__(
        self,
        booking_url: Optional[str] = None,
        backend_url: Optional[str] = None,
        retry_count: Optional[int] = None,
        timeout_seconds: Optional[int] = None
    ):
        self.booking_url = booking_url or settings.booking_api_url
        self.backend_url = backend_url or settings.scheduling_backend_url
        self.retry_count = settings.booking_retry_count if retry_count is None else retry_count
        self.timeout_seconds = timeout_seconds or settings.booking_timeout_seconds
        self.session: Optional[aiohttp.ClientSession] = None

    async def initialize(self):
        """Initialize the HTTP session."""
        if not self.session:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            self.session = aiohttp.ClientSession(timeout=timeout)
            logger.info("Booking API client initialized")

    async def cleanup(self):
        """Clean up the HTTP session."""
        if self.session:
            await self.session.close()
            self.session = None
            logger.info("Booking API client cleaned up")

    async def invoke(
        self,
        function_name: str,
        parameters: Optional[Dict[str, Any]],
        session_id: Optional[str],
        organization_id: Optional[uuid.UUID] = None,
        caller=None
    ) -> BookingResult:
        """
        Execute a booking function.

        Args:
            function_name: Catalog function name
            parameters: Function parameters; tenant fields are dropped
            session_id: Session making the call
            organization_id: Tenant, used to build a ServiceCaller when no caller is given
            caller: ServiceCaller or BrowserCaller

        Returns:
            BookingResult, never raises for API or transport failures
        """
        if not self.session:
            await self.initialize()

        if caller is None:
            caller = ServiceCaller(organization_id)

        clean_parameters, stripped = strip_tenant_fields(parameters)
        if stripped:
            logger.warning(f"Stripped tenant fields {stripped} from {function_name} parameters")

        body = {
            "functionName": function_name,
            "parameters": clean_parameters,
            "sessionId": session_id,
        }
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        headers.update(caller.headers())

        start_time = time.time()
        try:
            payload, status_code = await self._post_with_retries(
                self.booking_url, body, headers, caller.cookies(), label=function_name
            )
        except BookingApiError as e:
            duration = (time.time() - start_time) * 1000
            logger.error(f"Booking function '{function_name}' failed: {e}")
            return BookingResult(
                success=False,
                error=e.payload if e.payload is not None else str(e),
                status_code=e.status_code,
                duration_ms=duration
            )

        duration = (time.time() - start_time) * 1000
        if isinstance(payload, dict) and "success" in payload:
            success = bool(payload.get("success")) and status_code < 400
            result = payload.get("result")
            error = payload.get("error")
        else:
            success = status_code < 400
            result = payload if success else None
            error = None if success else payload

        if success:
            logger.info(f"Booking function '{function_name}' executed in {duration:.1f}ms")
        else:
            logger.warning(f"Booking function '{function_name}' rejected ({status_code}): {error}")

        return BookingResult(
            success=success,
            result=result,
            error=error,
            status_code=status_code,
            duration_ms=duration
        )

    async def forward_to_backend(
        self,
        function_name: str,
        parameters: Dict[str, Any],
        organization_id: uuid.UUID
    ) -> Tuple[Any, int]:
        """
        Forward a validated call to the scheduling backend.

        Returns:
            Tuple of (response payload, HTTP status)

        Raises:
            BookingApiError: When the backend cannot be reached
        """
        if not self.session:
            await self.initialize()

        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            ORGANIZATION_HEADER: str(organization_id),
            INTERNAL_KEY_HEADER: settings.internal_api_key,
        }
        body = {"functionName": function_name, "parameters": parameters}
        return await self._post_with_retries(self.backend_url, body, headers, None, label=function_name)

    async def _post_with_retries(
        self,
        url: str,
        body: Dict[str, Any],
        headers: Dict[str, str],
        cookies: Optional[Dict[str, str]],
        label: str
    ) -> Tuple[Any, int]:
        """POST with retry on connection errors; HTTP error statuses are returned, not retried."""
        last_exception = None

        for attempt in range(self.retry_count + 1):
            try:
                async with self.session.post(url, data=json.dumps(body), headers=headers, cookies=cookies) as response:
                    response_text = await response.text()
                    try:
                        response_data = json.loads(response_text)
                    except json.JSONDecodeError:
                        response_data = response_text
                    return response_data, response.status

            except (aiohttp.ClientConnectionError, asyncio.TimeoutError) as e:
                last_exception = e
                if attempt < self.retry_count:
                    wait_time = 2 ** attempt  # Exponential backoff
                    logger.warning(f"Booking call '{label}' attempt {attempt + 1} failed, retrying in {wait_time}s: {e}")
                    await asyncio.sleep(wait_time)
                else:
                    logger.error(f"Booking call '{label}' failed after {self.retry_count + 1} attempts: {e}")

        raise BookingApiError(
            f"Booking API unreachable: {last_exception}",
            status_code=503,
            payload=None
        )


# Global instance
booking_client = BookingApiClient()
