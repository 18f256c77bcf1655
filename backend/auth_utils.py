import secrets
import time
from typing import Optional

import jwt

from settings import get_settings

settings = get_settings()

JWT_ALG = "HS256"


def create_session_token(address: str) -> str:
    now = int(time.time())
    payload = {
        "sub": address.lower(),
        "jti": secrets.token_hex(16),
        "iat": now,
        "exp": now + settings.session_ttl_seconds,
        "typ": "Session",
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=JWT_ALG)


def verify_session_token(token: str) -> Optional[str]:
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[JWT_ALG])
    except jwt.PyJWTError:
        return None
    return str(payload.get("sub")) if payload.get("sub") else None
