"""
JWT verification dependencies for FastAPI.
Validates Supabase-issued JWT tokens on protected endpoints.
"""

import logging
from typing import Optional
from functools import lru_cache
from fastapi import HTTPException, status, Header
from pydantic import BaseModel
import jwt
from jwt import PyJWKClient

from nodeflow.config import get_jwt_audience, get_jwt_issuer, get_supabase_url

logger = logging.getLogger(__name__)


class User(BaseModel):
    """User information extracted from JWT."""
    sub: str  # User ID (subject)
    email: Optional[str] = None
    role: Optional[str] = None


def get_supabase_jwks_url() -> str:
    supabase_url = get_supabase_url()
    if not supabase_url:
        raise ValueError("SUPABASE_URL environment variable is required")
    return f"{supabase_url}/auth/v1/.well-known/jwks.json"


@lru_cache(maxsize=1)
def get_jwks_client() -> PyJWKClient:
    """Get or create cached JWKS client."""
    jwks_url = get_supabase_jwks_url()
    logger.info("JWKS URL: %s", jwks_url)
    return PyJWKClient(jwks_url)


def verify_jwt(token: str) -> User:
    """
    Verify a Supabase JWT token and extract user information.

    Raises:
        HTTPException: 401 if the token is invalid, expired, or cannot be verified
    """
    try:
        signing_key = get_jwks_client().get_signing_key_from_jwt(token)
        payload = jwt.decode(
            token,
            signing_key.key,
            algorithms=["RS256", "ES256"],
            audience=get_jwt_audience(),
            issuer=get_jwt_issuer(),
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired"
        )
    except jwt.InvalidTokenError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid token: {str(e)}"
        )
    except Exception as e:
        # JWKS fetch errors, missing configuration
        logger.error("Token verification failed: %s", e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Token verification failed: {str(e)}"
        )

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token missing 'sub' claim"
        )

    return User(
        sub=user_id,
        email=payload.get("email"),
        role=payload.get("role", "authenticated"),
    )


async def get_current_user(authorization: str = Header(..., description="Bearer token")) -> User:
    """
    FastAPI dependency to extract and verify JWT token from Authorization header.

    Usage:
        @router.get("/protected")
        async def protected_endpoint(user: User = Depends(get_current_user)):
            return {"user_id": user.sub}
    """
    if not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header must start with 'Bearer '"
        )

    token = authorization[7:].strip()
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token is required"
        )

    return verify_jwt(token)
