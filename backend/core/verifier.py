import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from prometheus_client import Counter, Histogram
from web3 import Web3

from eth_client import EthRpcClient


logger = logging.getLogger(__name__)

TX_HASH_RE = re.compile(r"^0x[a-fA-F0-9]{64}$")
TRANSFER_GAS = 21000
FALLBACK_GAS_PRICE_WEI = 20 * 10**9


VERIFICATIONS = Counter(
    "payment_verifications_total",
    "On-chain payment verification attempts",
    ["outcome"],
)
VERIFICATION_DURATION = Histogram(
    "payment_verification_duration_seconds",
    "Wall time spent verifying a payment against the chain",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class VerificationResult:
    valid: bool
    eth_amount: float = 0.0
    from_address: str = ""
    to_address: str = ""
    block_number: int = 0
    timestamp: datetime = field(default_factory=_utcnow)
    confirmations: Optional[int] = None
    error: Optional[str] = None


def wei_to_eth(wei: int) -> Decimal:
    return Decimal(Web3.from_wei(wei, "ether"))


async def verify_payment(
    rpc: EthRpcClient,
    tx_hash: str,
    *,
    expected_recipient: str,
    expected_sender: Optional[str] = None,
    expected_amount: Optional[float] = None,
    tolerance: float = 0.0001,
    min_amount: Optional[float] = None,
    min_confirmations: int = 0,
) -> VerificationResult:
    """
    Check that ``tx_hash`` is a mined, successful transfer to
    ``expected_recipient``. Optional checks (sender, amount within tolerance,
    minimum amount, confirmation depth) run only when requested.

    Never raises: RPC and transport failures come back as ``valid=False``.
    Read-only; nothing is ever submitted to the chain.
    """
    started = time.perf_counter()
    result = await _verify(
        rpc,
        tx_hash,
        expected_recipient=expected_recipient,
        expected_sender=expected_sender,
        expected_amount=expected_amount,
        tolerance=tolerance,
        min_amount=min_amount,
        min_confirmations=min_confirmations,
    )
    VERIFICATION_DURATION.observe(time.perf_counter() - started)
    VERIFICATIONS.labels(outcome="valid" if result.valid else "invalid").inc()
    if not result.valid:
        logger.warning("payment verification failed for %s: %s", tx_hash, result.error)
    return result


async def _verify(
    rpc: EthRpcClient,
    tx_hash: str,
    *,
    expected_recipient: str,
    expected_sender: Optional[str],
    expected_amount: Optional[float],
    tolerance: float,
    min_amount: Optional[float],
    min_confirmations: int,
) -> VerificationResult:
    if not isinstance(tx_hash, str) or not TX_HASH_RE.match(tx_hash):
        return VerificationResult(valid=False, error="Invalid transaction hash format")

    try:
        tx = await rpc.get_transaction(tx_hash)
        if not tx:
            return VerificationResult(valid=False, error="Transaction not found")

        from_address = tx.get("from") or ""
        to_address = tx.get("to") or ""

        receipt = await rpc.get_transaction_receipt(tx_hash)
        if not receipt or receipt.get("blockNumber") is None:
            return VerificationResult(
                valid=False,
                from_address=from_address,
                to_address=to_address,
                error="Transaction not yet mined or failed",
            )

        block_number = int(receipt["blockNumber"])
        # pre-Byzantium receipts carry no status
        status = receipt.get("status")
        if status is not None and int(status) == 0:
            return VerificationResult(
                valid=False,
                from_address=from_address,
                to_address=to_address,
                block_number=block_number,
                error="Transaction failed on-chain",
            )

        block = await rpc.get_block(block_number)
        timestamp = (
            datetime.fromtimestamp(int(block["timestamp"]), tz=timezone.utc)
            if block and block.get("timestamp") is not None
            else _utcnow()
        )

        amount = wei_to_eth(int(tx.get("value") or 0))
        result = VerificationResult(
            valid=False,
            eth_amount=float(amount),
            from_address=from_address,
            to_address=to_address,
            block_number=block_number,
            timestamp=timestamp,
        )

        if to_address.lower() != expected_recipient.lower():
            result.error = (
                f"Transaction sent to wrong address. Expected {expected_recipient}, got {to_address or None}"
            )
            return result

        if min_amount is not None and amount < Decimal(str(min_amount)):
            result.error = f"Payment amount too small (minimum {min_amount} ETH)"
            return result

        if expected_sender is not None and from_address.lower() != expected_sender.lower():
            result.error = f"Transaction sent from wrong address. Expected {expected_sender}, got {from_address}"
            return result

        if expected_amount is not None and abs(amount - Decimal(str(expected_amount))) > Decimal(str(tolerance)):
            result.error = f"Payment amount mismatch. Expected {expected_amount} ETH, got {amount.normalize()} ETH"
            return result

        if min_confirmations > 0:
            head = await rpc.block_number()
            result.confirmations = max(head - block_number + 1, 0)
            if result.confirmations < min_confirmations:
                result.error = (
                    f"Insufficient confirmations ({result.confirmations}/{min_confirmations})"
                )
                return result

        result.valid = True
        return result

    except Exception as exc:
        logger.exception("blockchain verification error for %s", tx_hash)
        return VerificationResult(valid=False, error=f"Verification failed: {exc}")


async def estimate_gas_cost(rpc: EthRpcClient) -> dict:
    try:
        gas_price = await rpc.gas_price()
    except Exception as exc:
        logger.debug("gas price lookup failed, using fallback: %r", exc)
        gas_price = FALLBACK_GAS_PRICE_WEI
    cost = wei_to_eth(gas_price * TRANSFER_GAS)
    return {
        "gasPrice": f"{Decimal(Web3.from_wei(gas_price, 'gwei')).normalize():f} gwei",
        "gasCostETH": f"{cost.normalize():f} ETH",
    }
