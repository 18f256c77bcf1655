import math
import time
from collections import defaultdict, deque
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from core import sessions
from core.sessions import Session
from errors import AuthError, RateLimitError
from kv_store import KeyValueStore, get_kv_store
from schemas import NonceRequest, VerifyRequest
from settings import get_settings


settings = get_settings()


router = APIRouter(prefix="/auth")


class SlidingWindowRateLimiter:
    """Per-key request budget over a trailing window of ``window_seconds``."""

    def __init__(self, max_requests: int, window_seconds: int, clock=time.monotonic):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: dict[str, deque[float]] = defaultdict(deque)

    def hit(self, key: str) -> float:
        """Count a request against ``key``.

        Returns 0 when it is allowed, otherwise the seconds until the oldest
        counted request leaves the window. Refused requests are not counted.
        """
        if self.max_requests <= 0:
            return 0.0
        now = self._clock()
        hits = self._hits[key]
        while hits and hits[0] <= now - self.window_seconds:
            hits.popleft()
        if len(hits) >= self.max_requests:
            return hits[0] + self.window_seconds - now
        hits.append(now)
        return 0.0

    def reset(self) -> None:
        self._hits.clear()


rate_limiter = SlidingWindowRateLimiter(
    max_requests=settings.auth_rate_limit_max_requests,
    window_seconds=settings.auth_rate_limit_window_seconds,
)


async def enforce_rate_limit(request: Request):
    client = request.client.host if request.client else "anonymous"
    wait = rate_limiter.hit(f"{request.url.path}|{client}")
    if wait:
        raise RateLimitError(f"too many requests, retry in {math.ceil(wait)}s")


def require_session(
    x_session_token: Optional[str] = Header(None),
    store: KeyValueStore = Depends(get_kv_store),
) -> Session:
    if not x_session_token:
        raise AuthError("missing session token")
    session = sessions.get_session(store, x_session_token)
    if session is None:
        raise AuthError("invalid session")
    return session


@router.post("/nonce")
async def get_nonce(
    body: NonceRequest,
    _: None = Depends(enforce_rate_limit),
    store: KeyValueStore = Depends(get_kv_store),
):
    return sessions.request_nonce(store, body.address)


@router.post("/verify")
async def verify_signature(
    body: VerifyRequest,
    _: None = Depends(enforce_rate_limit),
    store: KeyValueStore = Depends(get_kv_store),
):
    return sessions.verify_signature(store, body.address, body.signature)


@router.get("/session")
async def current_session(session: Session = Depends(require_session)):
    return {"authorized": True, "address": session.address}


@router.post("/logout")
async def logout(
    session: Session = Depends(require_session),
    store: KeyValueStore = Depends(get_kv_store),
):
    sessions.revoke_session(store, session.token)
    return {"ok": True}
