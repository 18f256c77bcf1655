import asyncio
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from prometheus_client import Counter
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.verifier import verify_payment
from errors import (
    DuplicateTransactionError,
    NotFoundError,
    PurchaseAlreadyProcessedError,
    ValidationError,
)
from eth_client import EthRpcClient
from models import Listing, Purchase
from settings import get_settings


logger = logging.getLogger(__name__)
settings = get_settings()

STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

ESCROW_HELD = "held"
ESCROW_RELEASED = "released"
ESCROW_REFUNDED = "refunded"

DEFAULT_LISTINGS = [
    {
        "id": "bot-premium-sub",
        "title": "Premium Trading Bot Access",
        "description": "Unlock higher frequency strategies & priority AI tuning.",
        "price_eth": 0.01,
    },
    {
        "id": "game-pass",
        "title": "Game Booster Pass",
        "description": "Enhanced rewards & engagement multiplier in on-site mini-games.",
        "price_eth": 0.005,
    },
    {
        "id": "analytics-pack",
        "title": "Advanced Analytics Pack",
        "description": "Access performance dashboards & real-time AI signals feed.",
        "price_eth": 0.008,
    },
]

MARKETPLACE_PURCHASES = Counter(
    "marketplace_purchases_total",
    "Marketplace purchase transitions by status",
    ["status"],
)

_background_tasks: set[asyncio.Task] = set()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return (dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)).isoformat()


def _within_tolerance(a: float, b: float) -> bool:
    return abs(Decimal(str(a)) - Decimal(str(b))) <= Decimal(str(settings.eth_amount_tolerance))


def listing_to_dict(listing: Listing) -> dict:
    return {
        "id": listing.id,
        "title": listing.title,
        "description": listing.description,
        "priceEth": listing.price_eth,
        "createdAt": _iso(listing.created_at),
    }


def purchase_to_dict(p: Purchase) -> dict:
    return {
        "id": p.id,
        "listingId": p.listing_id,
        "buyer": p.buyer,
        "txHash": p.tx_hash,
        "amountEth": p.amount_eth,
        "status": p.status,
        "escrowStatus": p.escrow_status,
        "failureReason": p.failure_reason,
        "createdAt": _iso(p.created_at),
        "validatedAt": _iso(p.validated_at),
    }


async def seed_default_listings(session: AsyncSession) -> None:
    count = (await session.execute(select(func.count()).select_from(Listing))).scalar_one()
    if count:
        return
    for item in DEFAULT_LISTINGS:
        session.add(Listing(active=True, **item))
    await session.commit()
    logger.info("seeded %d default listings", len(DEFAULT_LISTINGS))


async def list_active_listings(session: AsyncSession) -> list[dict]:
    res = await session.execute(
        select(Listing).where(Listing.active.is_(True)).order_by(Listing.created_at, Listing.id)
    )
    return [listing_to_dict(x) for x in res.scalars().all()]


async def marketplace_stats(session: AsyncSession) -> dict:
    total = (await session.execute(select(func.count()).select_from(Purchase))).scalar_one()
    completed_row = (
        await session.execute(
            select(func.count(), func.coalesce(func.sum(Purchase.amount_eth), 0.0)).where(
                Purchase.status == STATUS_COMPLETED
            )
        )
    ).one()
    return {
        "purchases": int(total),
        "completed": int(completed_row[0]),
        "volume": float(completed_row[1]),
    }


async def recent_purchases(session: AsyncSession, buyer: str, limit: int = 25) -> list[dict]:
    res = await session.execute(
        select(Purchase)
        .where(Purchase.buyer == buyer.lower())
        .order_by(Purchase.id.desc())
        .limit(limit)
    )
    return [purchase_to_dict(p) for p in res.scalars().all()]


async def get_purchase(session: AsyncSession, purchase_id: int) -> Purchase:
    purchase = await session.get(Purchase, purchase_id)
    if purchase is None:
        raise NotFoundError("Purchase not found")
    return purchase


async def is_tx_hash_claimed(session: AsyncSession, tx_hash: str) -> bool:
    res = await session.execute(select(Purchase.id).where(Purchase.tx_hash == tx_hash.lower()))
    return res.scalar_one_or_none() is not None


async def record_purchase(
    session: AsyncSession,
    listing_id: str,
    buyer: str,
    amount_eth: float,
    tx_hash: Optional[str],
) -> Purchase:
    """Record a pending purchase, claiming ``tx_hash`` for it.

    A hash pays for at most one purchase, whatever that purchase's outcome.
    """
    res = await session.execute(
        select(Listing).where(Listing.id == listing_id, Listing.active.is_(True))
    )
    listing = res.scalar_one_or_none()
    if listing is None:
        raise NotFoundError("Listing not found")
    if not tx_hash:
        raise ValidationError("txHash required")
    if not _within_tolerance(amount_eth, listing.price_eth):
        raise ValidationError(
            f"Amount mismatch. Listing price is {listing.price_eth} ETH, got {amount_eth} ETH"
        )
    key = tx_hash.lower()
    if await is_tx_hash_claimed(session, key):
        raise DuplicateTransactionError("Transaction already used for a purchase")

    purchase = Purchase(
        listing_id=listing.id,
        buyer=buyer.lower(),
        tx_hash=key,
        amount_eth=amount_eth,
        status=STATUS_PENDING,
        escrow_status=ESCROW_HELD,
    )
    session.add(purchase)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise DuplicateTransactionError("Transaction already used for a purchase")
    await session.refresh(purchase)
    MARKETPLACE_PURCHASES.labels(status=STATUS_PENDING).inc()
    logger.info("purchase %s recorded for %s by %s", purchase.id, listing.id, purchase.buyer)
    return purchase


async def validate_and_complete_purchase(
    session: AsyncSession,
    purchase_id: int,
    rpc: EthRpcClient,
) -> Purchase:
    """Verify a pending purchase on-chain and settle it exactly once.

    Safe to retry and to race: the status write only applies to a row that
    is still pending, so anything already settled raises
    ``PurchaseAlreadyProcessedError`` without touching the row.
    """
    purchase = await get_purchase(session, purchase_id)
    if purchase.status != STATUS_PENDING:
        raise PurchaseAlreadyProcessedError("purchase already processed")

    verification = await verify_payment(
        rpc,
        purchase.tx_hash,
        expected_recipient=settings.marketplace_wallet,
        expected_sender=purchase.buyer,
        expected_amount=purchase.amount_eth,
        tolerance=settings.eth_amount_tolerance,
        min_confirmations=settings.marketplace_min_confirmations,
    )

    if verification.valid:
        outcome = {"status": STATUS_COMPLETED, "escrow_status": ESCROW_RELEASED, "failure_reason": None}
    else:
        outcome = {
            "status": STATUS_FAILED,
            "escrow_status": ESCROW_REFUNDED,
            "failure_reason": verification.error,
        }
    res = await session.execute(
        update(Purchase)
        .where(Purchase.id == purchase_id, Purchase.status == STATUS_PENDING)
        .values(validated_at=_utcnow(), **outcome)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        await session.rollback()
        raise PurchaseAlreadyProcessedError("purchase already processed")
    await session.commit()
    await session.refresh(purchase)

    MARKETPLACE_PURCHASES.labels(status=purchase.status).inc()
    logger.info("purchase %s %s", purchase.id, purchase.status)
    return purchase


async def _revalidate_later(
    purchase_id: int,
    session_factory: async_sessionmaker[AsyncSession],
    rpc: EthRpcClient,
    delay: float,
) -> None:
    await asyncio.sleep(delay)
    try:
        async with session_factory() as session:
            purchase = await validate_and_complete_purchase(session, purchase_id, rpc)
        logger.info("delayed validation of purchase %s: %s", purchase_id, purchase.status)
    except PurchaseAlreadyProcessedError:
        logger.info("delayed validation of purchase %s skipped: already processed", purchase_id)
    except Exception:
        logger.exception("delayed validation of purchase %s failed", purchase_id)


def schedule_revalidation(
    purchase_id: int,
    session_factory: async_sessionmaker[AsyncSession],
    rpc: EthRpcClient,
    delay: Optional[float] = None,
) -> asyncio.Task:
    """Fire-and-forget validation after a delay, to give the chain time to index."""
    if delay is None:
        delay = settings.purchase_revalidation_delay_seconds
    task = asyncio.create_task(_revalidate_later(purchase_id, session_factory, rpc, delay))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task
