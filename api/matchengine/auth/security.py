from typing import Any

import jwt
from fastapi import HTTPException

from matchengine.config import JWT_SECRET

ALGORITHM = "HS256"


def decode_access_token(token: str) -> dict[str, Any]:
    if not JWT_SECRET:
        raise HTTPException(status_code=500, detail="JWT secret not configured")
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[ALGORITHM])
        if not isinstance(payload, dict):
            raise HTTPException(status_code=401, detail="Invalid token")
        return payload
    except jwt.ExpiredSignatureError as exc:
        raise HTTPException(status_code=401, detail="Token expired") from exc
    except jwt.PyJWTError as exc:
        raise HTTPException(status_code=401, detail="Invalid token") from exc


def decode_admin_access_token(token: str) -> dict[str, Any]:
    payload = decode_access_token(token)
    if payload.get("scope") != "admin":
        raise HTTPException(status_code=401, detail="Invalid admin token")
    return payload
