import os
from fastapi import Depends, Header, HTTPException
from jose import jwt
from jose.exceptions import JOSEError

import eventdesk.config  # noqa: F401  loads .env


def verify_token(authorization: str = Header(None)):
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("unsupported scheme")
        return jwt.decode(token, os.getenv("JWT_SECRET"), algorithms=["HS256"])
    except (AttributeError, ValueError, JOSEError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")


def current_user_id(claims: dict = Depends(verify_token)):
    if not isinstance(claims, dict):
        return None
    return claims.get("id") or claims.get("sub")
