import time

import pytest
from eth_account import Account

from conftest import sign_nonce
from core import sessions
from errors import NoNonceError, SignatureMismatchError, ValidationError
from routes.auth import SlidingWindowRateLimiter
from settings import get_settings

settings = get_settings()


@pytest.mark.asyncio
async def test_nonce_creation(client, kv, wallet):
    res = await client.post("/auth/nonce", json={"address": wallet.address})

    assert res.status_code == 200
    data = res.json()
    assert data["nonce"].startswith(sessions.NONCE_PREFIX)
    assert data["address"] == wallet.address.lower()
    assert kv.get(f"nonce:{wallet.address.lower()}") == data["nonce"]


@pytest.mark.asyncio
async def test_nonce_rejects_malformed_address(client):
    res = await client.post("/auth/nonce", json={"address": "not-a-wallet"})

    assert res.status_code == 400
    assert res.json()["error"] == "invalid address"


@pytest.mark.asyncio
async def test_verify_signature_success(client, wallet):
    nonce = (await client.post("/auth/nonce", json={"address": wallet.address})).json()["nonce"]

    res = await client.post(
        "/auth/verify",
        json={"address": wallet.address, "signature": sign_nonce(wallet, nonce)},
    )

    assert res.status_code == 200
    data = res.json()
    assert data["token"]
    assert data["address"] == wallet.address.lower()

    session_res = await client.get("/auth/session", headers={"x-session-token": data["token"]})
    assert session_res.status_code == 200
    assert session_res.json() == {"authorized": True, "address": wallet.address.lower()}


@pytest.mark.asyncio
async def test_nonce_is_single_use(client, wallet):
    nonce = (await client.post("/auth/nonce", json={"address": wallet.address})).json()["nonce"]
    signature = sign_nonce(wallet, nonce)

    first = await client.post("/auth/verify", json={"address": wallet.address, "signature": signature})
    replay = await client.post("/auth/verify", json={"address": wallet.address, "signature": signature})

    assert first.status_code == 200
    assert replay.status_code == 401
    assert replay.json()["error"] == "no nonce for address"


@pytest.mark.asyncio
async def test_wrong_key_keeps_nonce_usable(client, wallet):
    intruder = Account.create()
    nonce = (await client.post("/auth/nonce", json={"address": wallet.address})).json()["nonce"]

    bad = await client.post(
        "/auth/verify",
        json={"address": wallet.address, "signature": sign_nonce(intruder, nonce)},
    )
    assert bad.status_code == 401
    assert bad.json()["error"] == "signature mismatch"

    good = await client.post(
        "/auth/verify",
        json={"address": wallet.address, "signature": sign_nonce(wallet, nonce)},
    )
    assert good.status_code == 200


@pytest.mark.asyncio
async def test_verify_signature_invalid(client, wallet, monkeypatch):
    await client.post("/auth/nonce", json={"address": wallet.address})

    monkeypatch.setattr(
        "core.sessions.Account.recover_message",
        lambda *_args, **_kwargs: "0xdeadbeefdeadbeefdeadbeefdeadbeefdeadbeef",
    )

    res = await client.post("/auth/verify", json={"address": wallet.address, "signature": "0x0"})

    assert res.status_code == 401


@pytest.mark.asyncio
async def test_garbage_signature_is_a_mismatch(client, wallet):
    await client.post("/auth/nonce", json={"address": wallet.address})

    res = await client.post("/auth/verify", json={"address": wallet.address, "signature": "0xdead"})

    assert res.status_code == 401
    assert res.json()["error"] == "invalid signature"


@pytest.mark.asyncio
async def test_protected_route_requires_token(client):
    missing = await client.get("/coin/balance")
    invalid = await client.get("/coin/balance", headers={"x-session-token": "nope"})

    assert missing.status_code == 401
    assert missing.json() == {"error": "missing session token"}
    assert invalid.status_code == 401
    assert invalid.json() == {"error": "invalid session"}


@pytest.mark.asyncio
async def test_logout_revokes_session(client, auth_headers):
    res = await client.post("/auth/logout", headers=auth_headers)
    assert res.status_code == 200

    after = await client.get("/auth/session", headers=auth_headers)
    assert after.status_code == 401


@pytest.mark.asyncio
async def test_nonce_rate_limit(client):
    payload = {"address": "0xabcdefabcdefabcdefabcdefabcdefabcdefabcd"}

    for _ in range(settings.auth_rate_limit_max_requests):
        res = await client.post("/auth/nonce", json=payload)
        assert res.status_code == 200

    blocked = await client.post("/auth/nonce", json=payload)
    assert blocked.status_code == 429
    assert blocked.json()["error"].startswith("too many requests")


def test_rate_limiter_window_slides():
    now = [100.0]
    limiter = SlidingWindowRateLimiter(max_requests=2, window_seconds=10, clock=lambda: now[0])

    assert limiter.hit("a") == 0
    now[0] = 104.0
    assert limiter.hit("a") == 0
    assert limiter.hit("a") == pytest.approx(6.0)
    assert limiter.hit("b") == 0

    now[0] = 110.0
    assert limiter.hit("a") == 0
    assert limiter.hit("a") == pytest.approx(4.0)


def test_verify_without_nonce(kv, wallet):
    with pytest.raises(NoNonceError):
        sessions.verify_signature(kv, wallet.address, "0x00")


def test_verify_requires_signature(kv, wallet):
    sessions.request_nonce(kv, wallet.address)
    with pytest.raises(ValidationError):
        sessions.verify_signature(kv, wallet.address, "")


def test_new_nonce_replaces_pending_one(kv, wallet):
    first = sessions.request_nonce(kv, wallet.address)["nonce"]
    second = sessions.request_nonce(kv, wallet.address)["nonce"]
    assert first != second

    with pytest.raises(SignatureMismatchError):
        sessions.verify_signature(kv, wallet.address, sign_nonce(wallet, first))
    assert sessions.verify_signature(kv, wallet.address, sign_nonce(wallet, second))["token"]


def test_expired_session_is_deleted_on_lookup(kv, wallet, login):
    token = login(wallet)["x-session-token"]
    key = f"session:{token}"
    record = kv.get(key)
    record["created_at"] = time.time() - settings.session_ttl_seconds - 60
    kv.set(key, record)

    assert sessions.get_session(kv, token) is None
    assert kv.get(key) is None


def test_session_lookup(kv, wallet, login):
    token = login(wallet)["x-session-token"]

    found = sessions.get_session(kv, token)

    assert found is not None
    assert found.address == wallet.address.lower()
    assert sessions.get_session(kv, token + "x") is None
