"""API authentication using API keys"""
import logging
from fastapi import HTTPException, Security, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from talentika_progression import config

logger = logging.getLogger(__name__)

security = HTTPBearer()


def get_api_keys() -> list[str]:
    """API keys of the services allowed to call the engine"""
    if not config.API_KEYS:
        logger.warning("No API_KEYS configured in environment")
    return config.API_KEYS


async def verify_api_key(
    credentials: HTTPAuthorizationCredentials = Security(security)
) -> str:
    """
    Verify API key from Authorization header

    Raises:
        HTTPException: 503 if no keys are configured, 401 if the key is invalid
    """
    api_key = credentials.credentials
    valid_keys = get_api_keys()

    if not valid_keys:
        logger.error("No API keys configured - rejecting all requests")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="API authentication not configured"
        )

    if api_key not in valid_keys:
        logger.warning(f"Invalid API key attempt: {api_key[:10]}...")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key"
        )

    return api_key
