"""Wallet-signature login: nonce handshake and bearer sessions.

A nonce is single-use and only consumed by a successful verification, so a
failed attempt (wrong key, garbage signature) leaves the pending nonce usable.
Sessions expire lazily: an expired record is removed when it is looked up.
"""
import logging
import re
import secrets
import time
from dataclasses import dataclass
from typing import Optional

from eth_account import Account
from eth_account.messages import encode_defunct

from auth_utils import create_session_token, verify_session_token
from errors import NoNonceError, SignatureMismatchError, ValidationError
from kv_store import KeyValueStore
from settings import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
NONCE_PREFIX = "Sign to authenticate: "


@dataclass(frozen=True)
class Session:
    address: str
    token: str
    created_at: float


def normalize_address(address: str | None) -> str:
    if not isinstance(address, str) or not ADDRESS_RE.match(address):
        raise ValidationError("invalid address")
    return address.lower()


def _nonce_key(address: str) -> str:
    return f"nonce:{address}"


def _session_key(token: str) -> str:
    return f"session:{token}"


def request_nonce(store: KeyValueStore, address: str) -> dict:
    key = normalize_address(address)
    nonce = NONCE_PREFIX + secrets.token_hex(16)
    store.set(_nonce_key(key), nonce, ttl_seconds=settings.nonce_ttl_seconds)
    return {"address": key, "nonce": nonce}


def verify_signature(store: KeyValueStore, address: str, signature: str) -> dict:
    key = normalize_address(address)
    if not signature:
        raise ValidationError("signature required")

    nonce = store.get(_nonce_key(key))
    if not nonce:
        raise NoNonceError("no nonce for address")

    try:
        recovered = Account.recover_message(encode_defunct(text=nonce), signature=signature)
    except Exception:
        raise SignatureMismatchError("invalid signature")

    if recovered.lower() != key:
        logger.info("signature mismatch for %s (recovered %s)", key, recovered)
        raise SignatureMismatchError("signature mismatch")

    store.delete(_nonce_key(key))

    token = create_session_token(key)
    store.set(_session_key(token), {"address": key, "created_at": time.time()})
    return {"token": token, "address": key}


def get_session(store: KeyValueStore, token: str) -> Optional[Session]:
    if not token:
        return None
    record = store.get(_session_key(token))
    if not record:
        return None
    if time.time() - record["created_at"] > settings.session_ttl_seconds:
        store.delete(_session_key(token))
        return None
    if verify_session_token(token) != record["address"]:
        return None
    return Session(address=record["address"], token=token, created_at=record["created_at"])


def revoke_session(store: KeyValueStore, token: str) -> None:
    store.delete(_session_key(token))
