"""
Authentication dependencies for FastAPI.

Identity comes from bearer tokens issued by the external identity
provider; the ``sub`` claim is the traveler id.
"""

from typing import Optional
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from safereach.app.core.jwt import decode_access_token
from safereach.app.db.session import get_db
from safereach.app.models.traveler import Traveler

# HTTP Bearer security scheme
security = HTTPBearer()


def traveler_id_from_token(token: Optional[str]) -> Optional[str]:
    """Traveler id carried by ``token``, or None if it is missing or invalid."""
    if not token:
        return None
    payload = decode_access_token(token)
    if payload is None:
        return None
    return payload.get("sub")


async def get_current_traveler(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db)
) -> Traveler:
    """
    FastAPI dependency for JWT authentication.
    
    1. Validates JWT token signature and expiry
    2. Verifies the traveler profile exists
    
    Raises:
        HTTPException: 401 if authentication fails for any reason
    """
    traveler_id = traveler_id_from_token(credentials.credentials)
    if traveler_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    
    traveler = await db.get(Traveler, traveler_id)
    if not traveler:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Traveler not found",
            headers={"WWW-Authenticate": "Bearer"},
        )
    
    return traveler
