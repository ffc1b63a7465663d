"""
Authentication and authorization utilities.
Handles JWT token creation and validation, and the two caller conventions of
the booking route: service-to-service (internal key plus tenant header) and
browser (session cookie or bearer token carrying an org claim).
"""

import hashlib
import hmac
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Dict, Any

from fastapi import HTTPException, Request, status
from jose import JWTError, jwt

from receptionist.config.settings import settings
from receptionist.services.booking_client import INTERNAL_KEY_HEADER, ORGANIZATION_HEADER

logger = logging.getLogger(__name__)

# JWT settings - using configuration from settings
SECRET_KEY = settings.jwt_secret_key
ALGORITHM = settings.jwt_algorithm
ACCESS_TOKEN_EXPIRE_MINUTES = settings.jwt_access_token_expire_minutes


class AuthError(HTTPException):
    """Custom authentication error."""
    def __init__(self, detail: str = "Authentication failed"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"},
        )


def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """Create a JWT access token."""
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode.update({"exp": expire})
    if "org" in to_encode:
        to_encode["org"] = str(to_encode["org"])
    encoded_jwt = jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)
    return encoded_jwt


def verify_token(token: str) -> Dict[str, Any]:
    """Verify and decode a JWT token."""
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        return payload
    except JWTError as e:
        logger.warning(f"JWT verification failed: {e}")
        raise AuthError("Invalid token")


def organization_from_claims(payload: Dict[str, Any]) -> Optional[uuid.UUID]:
    """The organization named by a token's org claim, or None."""
    org_claim = payload.get("org")
    if not org_claim:
        return None
    try:
        return uuid.UUID(str(org_claim))
    except ValueError:
        logger.warning(f"Token carries a malformed org claim: {org_claim}")
        return None


@dataclass
class AuthenticatedCaller:
    """Who called the booking route, and for which tenant."""
    kind: str  # service or browser
    organization_id: uuid.UUID
    subject: Optional[str] = None


def _bearer_token(request: Request) -> Optional[str]:
    authorization = request.headers.get("Authorization") or ""
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip()
    return None


async def get_booking_caller(request: Request) -> AuthenticatedCaller:
    """
    Authenticate exactly one caller convention.

    Raises:
        HTTPException: 400 when both or neither conventions are presented,
            401 for a bad internal key or token, 403 for a token without an
            org claim
    """
    internal_key = request.headers.get(INTERNAL_KEY_HEADER)
    browser_token = _bearer_token(request) or request.cookies.get(settings.session_cookie_name)

    if internal_key and browser_token:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Present either service credentials or browser credentials, not both"
        )
    if not internal_key and not browser_token:
        raise AuthError("Missing credentials")

    if internal_key:
        if not hmac.compare_digest(internal_key, settings.internal_api_key):
            logger.warning("Booking call rejected: invalid internal key")
            raise AuthError("Invalid internal key")
        organization_header = request.headers.get(ORGANIZATION_HEADER)
        try:
            organization_id = uuid.UUID(organization_header or "")
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"{ORGANIZATION_HEADER} header must be an organization id"
            )
        return AuthenticatedCaller(kind="service", organization_id=organization_id)

    payload = verify_token(browser_token)
    organization_id = organization_from_claims(payload)
    if organization_id is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Token does not name an organization"
        )
    return AuthenticatedCaller(kind="browser", organization_id=organization_id, subject=payload.get("sub"))


def verify_retell_signature(body: bytes, signature: Optional[str], secret: Optional[str] = None) -> bool:
    """
    Check an x-retell-signature header.

    Accepts the timestamped form ``v=<ms>,d=<hex>`` (digest over body plus
    timestamp) and a bare hex digest over the body.
    """
    secret = secret if secret is not None else settings.retell_api_key
    if not signature or not secret:
        return False

    parts = dict(part.split("=", 1) for part in signature.split(",") if "=" in part)
    if "d" in parts:
        message = body + parts.get("v", "").encode()
        provided = parts["d"]
    else:
        message = body
        provided = signature

    expected = hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, provided.strip().lower())


def verify_evolution_key(provided: Optional[str], expected: Optional[str] = None) -> bool:
    """Check the apikey an Evolution API webhook carries. Open when no key is configured."""
    expected = expected if expected is not None else settings.evolution_api_key
    if not expected:
        return True
    if not provided:
        return False
    return hmac.compare_digest(expected, provided)
