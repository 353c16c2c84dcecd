from typing import Optional

from fastapi import Header, HTTPException
from jose import jwt
from jose.exceptions import JOSEError

from shop_payments.config import get_settings


def decode_token(authorization: str) -> dict:
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("unsupported scheme")
        return jwt.decode(token, get_settings().jwt_secret, algorithms=["HS256"])
    except (ValueError, TypeError, JOSEError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")


def verify_token(authorization: str = Header(...)) -> dict:
    return decode_token(authorization)


def optional_buyer(authorization: Optional[str] = Header(None)) -> Optional[dict]:
    """Claims of a signed-in buyer; anonymous checkout passes no header."""
    if not authorization:
        return None
    return decode_token(authorization)


def require_admin(authorization: str = Header(...)) -> dict:
    claims = decode_token(authorization)
    if claims.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admin access required")
    return claims
