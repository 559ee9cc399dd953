from fastapi import Depends, Header, HTTPException
from jose import jwt
from jose.exceptions import JOSEError

from kaspa_gateway.config import Settings, get_settings


def verify_token(authorization: str = Header(...), settings: Settings = Depends(get_settings)) -> str:
    """Validate the bearer JWT and return the caller id (``sub`` claim)."""
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer" or not settings.jwt_secret:
            raise ValueError("Unsupported auth scheme")
        claims = jwt.decode(token, settings.jwt_secret, algorithms=["HS256"])
    except (ValueError, JOSEError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    return str(claims.get("sub") or "admin")
