# trigger_server/auth.py
import hmac
import logging
import os
from typing import Optional

from fastapi import Header, HTTPException, status

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-API-Key"


def get_api_key() -> Optional[str]:
    """Read the shared API key; unset means the trigger API is open."""
    return os.getenv("API_KEY") or None


def verify_api_key(api_key: Optional[str] = Header(None, alias=API_KEY_HEADER)) -> str:
    """
    FastAPI dependency guarding the data stream and trigger endpoints.

    Raises HTTPException 401 when the header is missing, 403 when it does not match.
    """
    expected_key = get_api_key()

    if not expected_key:
        return ""

    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Missing {API_KEY_HEADER} header",
        )

    if not hmac.compare_digest(api_key.encode(), expected_key.encode()):
        logger.warning("Rejected request with invalid %s", API_KEY_HEADER)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key",
        )

    return api_key
