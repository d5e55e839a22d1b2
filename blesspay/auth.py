from fastapi import Depends, Header, HTTPException
from jose import JWTError, jwt

from blesspay.config import get_settings


def verify_token(authorization: str = Header(None)) -> dict:
    """Check the bearer token issued by the auth backend and return its claims."""
    settings = get_settings()
    try:
        scheme, token = (authorization or "").split()
        if scheme.lower() != "bearer":
            raise ValueError("not a bearer token")
        claims = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            audience=settings.jwt_audience,
        )
    except (ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    if not claims.get("sub"):
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    return claims


def current_user(claims: dict = Depends(verify_token)) -> str:
    return claims["sub"]
