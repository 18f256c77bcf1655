import os
import sys
from decimal import Decimal

sys.path.append(os.path.dirname(os.path.dirname(__file__)))

import pytest
import pytest_asyncio
from eth_account import Account
from eth_account.messages import encode_defunct
from httpx import ASGITransport, AsyncClient

from core import sessions
from core.marketplace import seed_default_listings
from db import (
    CoinBase,
    GameBase,
    MarketBase,
    create_schema,
    get_coin_session,
    get_game_session,
    get_market_session,
    get_market_session_factory,
    make_engine,
    make_session_factory,
)
from eth_client import get_eth_client
from kv_store import MemoryKeyValueStore, get_kv_store
from main import app
import models  # noqa: F401
from routes.auth import rate_limiter
from settings import get_settings


settings = get_settings()

HEAD_BLOCK = 1_000


class FakeChain:
    """In-memory stand-in for EthRpcClient, returning web3-shaped dicts (ints, not hex)."""

    def __init__(self):
        self.transactions: dict[str, dict] = {}
        self.receipts: dict[str, dict] = {}
        self.head = HEAD_BLOCK
        self.calls: list[str] = []

    def add_transfer(
        self,
        tx_hash: str,
        *,
        sender: str,
        to: str | None = None,
        eth: str | float = "0.01",
        block: int = HEAD_BLOCK - 5,
        status: int | None = 1,
        mined: bool = True,
    ) -> str:
        wei = int(Decimal(str(eth)) * Decimal(10) ** 18)
        self.transactions[tx_hash] = {
            "hash": tx_hash,
            "from": sender,
            "to": to if to is not None else settings.payment_wallet,
            "value": wei,
        }
        if mined:
            self.receipts[tx_hash] = {"blockNumber": block, "status": status}
        return tx_hash

    async def get_transaction(self, tx_hash):
        self.calls.append("get_transaction")
        return self.transactions.get(tx_hash)

    async def get_transaction_receipt(self, tx_hash):
        self.calls.append("get_transaction_receipt")
        return self.receipts.get(tx_hash)

    async def get_block(self, block_number):
        self.calls.append("get_block")
        return {"number": block_number, "timestamp": 1_700_000_000 + block_number}

    async def block_number(self):
        self.calls.append("block_number")
        return self.head

    async def gas_price(self):
        self.calls.append("gas_price")
        return 30 * 10**9


def tx_hash_for(n: int) -> str:
    return "0x" + f"{n:064x}"


@pytest_asyncio.fixture
async def stores(tmp_path):
    engines = {
        "coin": make_engine(f"sqlite+aiosqlite:///{(tmp_path / 'coin.db').as_posix()}"),
        "game": make_engine(f"sqlite+aiosqlite:///{(tmp_path / 'games.db').as_posix()}"),
        "market": make_engine(f"sqlite+aiosqlite:///{(tmp_path / 'marketplace.db').as_posix()}"),
    }
    await create_schema(engines["coin"], CoinBase)
    await create_schema(engines["game"], GameBase)
    await create_schema(engines["market"], MarketBase)
    factories = {name: make_session_factory(engine) for name, engine in engines.items()}
    async with factories["market"]() as s:
        await seed_default_listings(s)
    try:
        yield factories
    finally:
        for engine in engines.values():
            await engine.dispose()


@pytest_asyncio.fixture
async def coin_session(stores):
    async with stores["coin"]() as s:
        yield s


@pytest_asyncio.fixture
async def game_session(stores):
    async with stores["game"]() as s:
        yield s


@pytest_asyncio.fixture
async def market_session(stores):
    async with stores["market"]() as s:
        yield s


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def kv():
    return MemoryKeyValueStore()


@pytest.fixture(autouse=True)
def reset_rate_limiter():
    rate_limiter.reset()
    yield
    rate_limiter.reset()


@pytest.fixture
def override_dependencies(stores, chain, kv):
    def _override(name):
        async def _get_session_override():
            async with stores[name]() as s:
                yield s
        return _get_session_override

    app.dependency_overrides[get_coin_session] = _override("coin")
    app.dependency_overrides[get_game_session] = _override("game")
    app.dependency_overrides[get_market_session] = _override("market")
    app.dependency_overrides[get_market_session_factory] = lambda: stores["market"]
    app.dependency_overrides[get_eth_client] = lambda: chain
    app.dependency_overrides[get_kv_store] = lambda: kv
    yield
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(override_dependencies):
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture
def wallet():
    return Account.create()


def sign_nonce(account, nonce: str) -> str:
    signed = Account.sign_message(encode_defunct(text=nonce), account.key)
    return "0x" + bytes(signed.signature).hex()


@pytest.fixture
def login(kv):
    """Run the nonce/signature handshake directly against the store."""

    def _login(account) -> dict:
        nonce = sessions.request_nonce(kv, account.address)["nonce"]
        token = sessions.verify_signature(kv, account.address, sign_nonce(account, nonce))["token"]
        return {"x-session-token": token}

    return _login


@pytest.fixture
def auth_headers(login, wallet):
    return login(wallet)
