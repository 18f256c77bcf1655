import logging
from typing import Any, Optional

from web3 import AsyncWeb3
from web3.exceptions import BlockNotFound, TransactionNotFound
from web3.providers import AsyncHTTPProvider

from settings import get_settings


logger = logging.getLogger(__name__)
settings = get_settings()


class EthRpcClient:
    """
    Read-only view of the chain over web3's async provider. Lookups of
    unknown or unmined transactions return None instead of raising;
    nothing here signs or submits transactions.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        timeout: float = 10.0,
        provider: Any = None,
    ) -> None:
        if provider is None:
            provider = AsyncHTTPProvider(url, request_kwargs={"timeout": timeout})
        self.w3 = AsyncWeb3(provider)

    async def get_transaction(self, tx_hash: str) -> Optional[dict]:
        try:
            return dict(await self.w3.eth.get_transaction(tx_hash))
        except TransactionNotFound:
            return None

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[dict]:
        try:
            return dict(await self.w3.eth.get_transaction_receipt(tx_hash))
        except TransactionNotFound:
            logger.debug("no receipt yet for %s", tx_hash)
            return None

    async def get_block(self, block_number: int) -> Optional[dict]:
        try:
            return dict(await self.w3.eth.get_block(block_number))
        except BlockNotFound:
            return None

    async def block_number(self) -> int:
        return int(await self.w3.eth.block_number)

    async def gas_price(self) -> int:
        return int(await self.w3.eth.gas_price)


_default_client: Optional[EthRpcClient] = None


def get_eth_client() -> EthRpcClient:
    global _default_client
    if _default_client is None:
        _default_client = EthRpcClient(
            settings.ethereum_rpc_url,
            timeout=settings.ethereum_rpc_timeout_seconds,
        )
    return _default_client
