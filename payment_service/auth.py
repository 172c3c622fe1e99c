from typing import Optional

from fastapi import Header, HTTPException, Request
from jose import JWTError, jwt


def verify_token(request: Request, authorization: Optional[str] = Header(None)):
    """Check a bearer token issued by the auth service."""
    secret = request.app.state.settings.jwt_secret
    try:
        if not authorization or not secret:
            raise ValueError("bearer token expected")
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("bearer token expected")
        return jwt.decode(token, secret, algorithms=["HS256"])
    except (ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")
