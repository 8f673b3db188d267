from typing import Optional
import jwt
from fastapi import HTTPException, status, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import os

# JWT Configuration (tokens are issued by the identity service; only verified here)
ALGORITHM = "HS256"


def get_secret_key() -> str:
    return os.getenv("JWT_SECRET_KEY", "your-secret-key-change-in-production-2024")


# HTTP Bearer for token extraction
security = HTTPBearer()


def decode_access_token(token: str, secret_key: Optional[str] = None) -> dict:
    """Decode and validate JWT access token"""
    try:
        payload = jwt.decode(token, secret_key or get_secret_key(), algorithms=[ALGORITHM])

        # Verify token type
        if payload.get("type", "access") != "access":
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid token type"
            )

        return payload
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Access token has expired. Please refresh."
        )
    except jwt.InvalidTokenError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials"
        )


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)):
    """Extract and validate current user from JWT token"""
    token = credentials.credentials
    payload = decode_access_token(token)

    user_id = payload.get("user_id")
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials"
        )

    return payload
