"""Coin ledger: balances, the transaction log and premium memberships.

``_apply_delta`` is the only code that writes ``user_balances``. Credits are
an upsert and debits a conditional update, each a single statement, so the
non-negativity check and the write cannot be separated by another request.
Every accepted mutation appends exactly one ``CoinTransaction`` in the same
database transaction.
"""
import logging
import math
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_FLOOR

from prometheus_client import Counter
from sqlalchemy import select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.verifier import verify_payment
from eth_client import EthRpcClient
from errors import (
    AmountMismatchError,
    DuplicateTransactionError,
    InsufficientBalanceError,
    ValidationError,
    VerificationError,
)
from models import CoinTransaction, PremiumMembership, ProcessedTransaction, UserBalance
from settings import get_settings


logger = logging.getLogger(__name__)
settings = get_settings()

TX_EARN = "earn"
TX_SPEND = "spend"
TX_PURCHASE = "purchase"
TX_REDEEM = "redeem"

LEDGER_MUTATIONS = Counter(
    "coin_ledger_mutations_total",
    "Accepted balance mutations by transaction type",
    ["type"],
)
COIN_PURCHASES = Counter(
    "coin_purchases_total",
    "Coin purchase attempts by outcome",
    ["outcome"],
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _with_timezone(dt: datetime | None) -> datetime | None:
    if dt is None:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


async def _apply_delta(session: AsyncSession, address: str, delta: int) -> int:
    now = _utcnow()
    if delta >= 0:
        stmt = sqlite_insert(UserBalance).values(address=address, coins=delta, updated_at=now)
        stmt = stmt.on_conflict_do_update(
            index_elements=[UserBalance.address],
            set_={
                "coins": UserBalance.coins + stmt.excluded.coins,
                "updated_at": stmt.excluded.updated_at,
            },
        ).returning(UserBalance.coins)
        res = await session.execute(stmt)
        return int(res.scalar_one())

    stmt = (
        update(UserBalance)
        .where(UserBalance.address == address, UserBalance.coins >= -delta)
        .values(coins=UserBalance.coins + delta, updated_at=now)
        .returning(UserBalance.coins)
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    new_balance = res.scalar_one_or_none()
    if new_balance is None:
        raise InsufficientBalanceError("insufficient coins")
    return int(new_balance)


async def _record(
    session: AsyncSession,
    address: str,
    delta: int,
    tx_type: str,
    ref: str | None,
) -> int:
    balance = await _apply_delta(session, address, delta)
    session.add(CoinTransaction(address=address, type=tx_type, amount=abs(delta), ref=ref))
    await session.flush()
    LEDGER_MUTATIONS.labels(type=tx_type).inc()
    return balance


async def credit(
    session: AsyncSession,
    address: str,
    amount: int,
    *,
    tx_type: str = TX_EARN,
    ref: str | None = None,
    commit: bool = True,
) -> int:
    if amount <= 0:
        raise ValidationError("credit amount must be positive")
    try:
        balance = await _record(session, address.lower(), amount, tx_type, ref)
    except Exception:
        await session.rollback()
        raise
    if commit:
        await session.commit()
    return balance


async def debit(
    session: AsyncSession,
    address: str,
    amount: int,
    *,
    tx_type: str = TX_SPEND,
    ref: str | None = None,
    commit: bool = True,
) -> int:
    if amount <= 0:
        raise ValidationError("debit amount must be positive")
    try:
        balance = await _record(session, address.lower(), -amount, tx_type, ref)
    except Exception:
        await session.rollback()
        raise
    if commit:
        await session.commit()
    return balance


async def get_balance(session: AsyncSession, address: str) -> dict:
    lower = address.lower()
    res = await session.execute(select(UserBalance.coins).where(UserBalance.address == lower))
    coins = res.scalar_one_or_none()
    return {"address": lower, "balance": int(coins) if coins is not None else 0}


def _whole_amount(amount) -> int:
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        raise ValidationError("amount required")
    if not math.isfinite(amount):
        raise ValidationError("amount must be finite")
    if amount != int(amount):
        raise ValidationError("amount must be a whole number of coins")
    return int(amount)


async def earn_coins(session: AsyncSession, address: str, amount, ref: str | None = None) -> dict:
    """Signed adjustment: positive amounts are earnings, negative are spends.

    Earn and spend caps are configured independently; larger adjustments must
    be split into several calls.
    """
    value = _whole_amount(amount)
    if value == 0:
        raise ValidationError("amount must be non-zero")
    if value > settings.coin_earn_cap:
        raise ValidationError(f"amount exceeds per-call earn cap of {settings.coin_earn_cap}")
    if -value > settings.coin_spend_cap:
        raise ValidationError(f"amount exceeds per-call spend cap of {settings.coin_spend_cap}")

    if value > 0:
        balance = await credit(session, address, value, tx_type=TX_EARN, ref=ref)
    else:
        balance = await debit(session, address, -value, tx_type=TX_SPEND, ref=ref)
    return {"balance": balance, "delta": value}


async def is_transaction_processed(session: AsyncSession, tx_hash: str) -> bool:
    res = await session.execute(
        select(ProcessedTransaction.tx_hash).where(ProcessedTransaction.tx_hash == tx_hash.lower())
    )
    return res.scalar_one_or_none() is not None


async def purchase_coins(
    session: AsyncSession,
    address: str,
    eth_amount,
    tx_hash: str | None,
    rpc: EthRpcClient,
) -> dict:
    lower = address.lower()
    if not tx_hash:
        raise ValidationError("txHash required")
    if isinstance(eth_amount, bool) or not isinstance(eth_amount, (int, float)) \
            or not math.isfinite(eth_amount) or eth_amount <= 0:
        raise ValidationError("ethAmount required")
    key = tx_hash.lower()

    if await is_transaction_processed(session, key):
        COIN_PURCHASES.labels(outcome="duplicate").inc()
        raise DuplicateTransactionError("Transaction already processed")

    verification = await verify_payment(
        rpc,
        tx_hash,
        expected_recipient=settings.payment_wallet,
        min_amount=settings.min_payment_eth,
        tolerance=settings.eth_amount_tolerance,
    )
    if not verification.valid:
        COIN_PURCHASES.labels(outcome="unverified").inc()
        raise VerificationError(f"Transaction verification failed: {verification.error}")

    verified = Decimal(str(verification.eth_amount))
    if abs(Decimal(str(eth_amount)) - verified) > Decimal(str(settings.eth_amount_tolerance)):
        COIN_PURCHASES.labels(outcome="amount_mismatch").inc()
        raise AmountMismatchError(
            f"Amount mismatch. Claimed {eth_amount} ETH, verified {verification.eth_amount} ETH"
        )

    coins = int((verified * settings.coin_purchase_rate).to_integral_value(rounding=ROUND_FLOOR))

    try:
        session.add(
            ProcessedTransaction(
                tx_hash=key,
                address=lower,
                eth_amount=verification.eth_amount,
                coins_awarded=coins,
                block_number=verification.block_number,
            )
        )
        await session.flush()
    except IntegrityError:
        await session.rollback()
        COIN_PURCHASES.labels(outcome="duplicate").inc()
        raise DuplicateTransactionError("Transaction already processed")

    if coins > 0:
        balance = await credit(session, lower, coins, tx_type=TX_PURCHASE, ref=key, commit=False)
    else:
        balance = (await get_balance(session, lower))["balance"]
    await session.commit()

    COIN_PURCHASES.labels(outcome="credited").inc()
    logger.info("credited %s coins to %s for %s (%s ETH)", coins, lower, key, verification.eth_amount)
    return {
        "coinsAdded": coins,
        "balance": balance,
        "verified": True,
        "ethAmountVerified": verification.eth_amount,
        "blockNumber": verification.block_number,
    }


async def redeem_premium(session: AsyncSession, address: str) -> dict:
    lower = address.lower()
    cost = settings.coin_premium_cost
    current = (await get_balance(session, lower))["balance"]
    if current < cost:
        raise InsufficientBalanceError("insufficient coins")

    await debit(session, lower, cost, tx_type=TX_REDEEM, commit=False)

    start = _utcnow()
    expires = start + timedelta(days=settings.premium_duration_days)
    # replaces any previous window, expired or not
    await session.merge(PremiumMembership(address=lower, started_at=start, expires_at=expires))
    await session.commit()
    return {"premium": True, "expiresAt": expires.isoformat()}


async def membership_status(session: AsyncSession, address: str, now: datetime | None = None) -> dict:
    res = await session.execute(
        select(PremiumMembership).where(PremiumMembership.address == address.lower())
    )
    row = res.scalar_one_or_none()
    if row is None:
        return {"premium": False}
    expires_at = _with_timezone(row.expires_at)
    if (now or _utcnow()) > expires_at:
        return {"premium": False, "expired": True, "expiresAt": expires_at.isoformat()}
    return {"premium": True, "expiresAt": expires_at.isoformat()}


async def recent_coin_transactions(session: AsyncSession, address: str, limit: int = 25) -> list[dict]:
    res = await session.execute(
        select(CoinTransaction)
        .where(CoinTransaction.address == address.lower())
        .order_by(CoinTransaction.id.desc())
        .limit(limit)
    )
    return [
        {
            "id": tx.id,
            "type": tx.type,
            "amount": tx.amount,
            "ref": tx.ref,
            "createdAt": _with_timezone(tx.created_at).isoformat(),
        }
        for tx in res.scalars().all()
    ]


def get_constants() -> dict:
    return {
        "PURCHASE_RATE": settings.coin_purchase_rate,
        "REDEEM_PREMIUM_COST": settings.coin_premium_cost,
    }
