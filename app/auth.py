import structlog
from fastapi import Header, HTTPException
from jose import JWTError, jwt

from app.config import get_settings

logger = structlog.get_logger(__name__)


def verify_token(authorization: str = Header(None)):
    """Bearer JWT (HS256) guard for the admin endpoints."""
    secret = get_settings().jwt_secret
    if not authorization or not secret:
        raise HTTPException(status_code=401, detail="Invalid or missing token")

    try:
        scheme, token = authorization.split()
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    if scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Invalid or missing token")

    try:
        claims = jwt.decode(token, secret, algorithms=["HS256"])
    except JWTError:
        logger.warning("admin_token_rejected")
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    return claims
