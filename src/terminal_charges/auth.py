"""Authentication, caller identity and rate limiting helpers for the API."""

import secrets
import logging
from dataclasses import dataclass

from fastapi import Header, HTTPException, Request, Security
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from slowapi import Limiter
from slowapi.util import get_remote_address

logger = logging.getLogger(__name__)

security = HTTPBearer()

# Rate limiter
limiter = Limiter(key_func=get_remote_address)

CHARGE_RATE_LIMIT = "30/minute"


async def verify_api_key(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Security(security),
) -> str:
    """Verify the API key from the Authorization header.

    Args:
        request: Incoming request, used to reach the configured key.
        credentials: HTTP Bearer credentials from the request.

    Returns:
        The verified API key.

    Raises:
        HTTPException: If API key is invalid or not configured.
    """
    api_key = credentials.credentials
    expected_key = request.app.state.container.settings.api_key
    if not expected_key:
        logger.error("API_KEY is not configured")
        raise HTTPException(status_code=500, detail="Server configuration error")
    if not secrets.compare_digest(api_key.encode(), expected_key.encode()):
        raise HTTPException(status_code=401, detail="Invalid API key")
    return api_key


@dataclass(frozen=True)
class Caller:
    """User and organization a terminal request is made for."""
    user_id: str
    organization_id: str


async def get_caller(
    x_user_id: str = Header(..., min_length=1),
    x_organization_id: str = Header(..., min_length=1),
) -> Caller:
    return Caller(user_id=x_user_id, organization_id=x_organization_id)
