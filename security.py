"""
Security utilities for the control plane and decision events
"""
import hashlib
import hmac
import asyncio
import random
from typing import Optional
from fastapi import HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from logger import get_logger

logger = get_logger(__name__)


def hash_client_id(client_id: str) -> str:
    """Anonymize a client id for events and logs"""
    return hashlib.sha256(client_id.encode('utf-8')).hexdigest()[:16]


class APIKeyAuth(HTTPBearer):
    """Bearer API key authentication for operator endpoints"""

    def __init__(self, api_key: Optional[str] = None):
        super().__init__(auto_error=True)
        self.api_key = api_key

    async def __call__(self, request: Request) -> Optional[HTTPAuthorizationCredentials]:
        if not self.api_key:
            return None

        credentials = await super().__call__(request)

        # Use constant-time comparison to prevent timing attacks
        if not hmac.compare_digest(credentials.credentials, self.api_key):
            await asyncio.sleep(random.uniform(0.01, 0.05))
            logger.warning(f"Rejected control-plane call to {request.url.path}: invalid API key")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid API key"
            )
        return credentials
