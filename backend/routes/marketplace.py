
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core import ledger, marketplace
from core.sessions import Session, normalize_address
from db import get_coin_session, get_market_session, get_market_session_factory
from errors import DuplicateTransactionError, ForbiddenError
from eth_client import EthRpcClient, get_eth_client
from routes.auth import require_session
from schemas import MarketplacePurchaseRequest

router = APIRouter(prefix="/marketplace")

@router.get("/listings")
async def listings(session: AsyncSession = Depends(get_market_session)):
    return {"listings": await marketplace.list_active_listings(session)}

@router.get("/stats")
async def stats(session: AsyncSession = Depends(get_market_session)):
    return await marketplace.marketplace_stats(session)

@router.get("/purchases")
async def purchases(
    limit: int = Query(25, ge=1, le=100),
    auth: Session = Depends(require_session),
    session: AsyncSession = Depends(get_market_session),
):
    return {"purchases": await marketplace.recent_purchases(session, auth.address, limit)}

@router.post("/purchase")
async def purchase(
    body: MarketplacePurchaseRequest,
    auth: Session = Depends(require_session),
    session: AsyncSession = Depends(get_market_session),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_market_session_factory),
    rpc: EthRpcClient = Depends(get_eth_client),
    coin_session: AsyncSession = Depends(get_coin_session),
):
    buyer = normalize_address(body.buyer)
    if buyer != auth.address:
        raise ForbiddenError("buyer must match the authenticated wallet")
    if body.txHash and await ledger.is_transaction_processed(coin_session, body.txHash):
        raise DuplicateTransactionError("Transaction already used for a coin purchase")
    record = await marketplace.record_purchase(
        session, body.listingId, buyer, body.amountEth, body.txHash
    )
    marketplace.schedule_revalidation(record.id, session_factory, rpc)
    return {"success": True, "result": marketplace.purchase_to_dict(record)}

@router.post("/validate/{purchase_id}")
async def validate(
    purchase_id: int,
    auth: Session = Depends(require_session),
    session: AsyncSession = Depends(get_market_session),
    rpc: EthRpcClient = Depends(get_eth_client),
):
    existing = await marketplace.get_purchase(session, purchase_id)
    if existing.buyer != auth.address:
        raise ForbiddenError("purchase belongs to another wallet")
    record = await marketplace.validate_and_complete_purchase(session, purchase_id, rpc)
    return {
        "success": record.status == marketplace.STATUS_COMPLETED,
        "result": marketplace.purchase_to_dict(record),
    }
