
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from core import ledger, marketplace
from core.sessions import Session
from core.verifier import estimate_gas_cost
from db import get_coin_session, get_market_session
from errors import DuplicateTransactionError
from eth_client import EthRpcClient, get_eth_client
from routes.auth import require_session
from schemas import CoinPurchaseRequest, EarnRequest

router = APIRouter(prefix="/coin")

@router.get("/constants")
async def constants():
    return ledger.get_constants()

@router.get("/gas-estimate")
async def gas_estimate(rpc: EthRpcClient = Depends(get_eth_client)):
    return await estimate_gas_cost(rpc)

@router.get("/balance")
async def balance(
    auth: Session = Depends(require_session),
    session: AsyncSession = Depends(get_coin_session),
):
    return await ledger.get_balance(session, auth.address)

@router.post("/earn")
async def earn(
    body: EarnRequest,
    auth: Session = Depends(require_session),
    session: AsyncSession = Depends(get_coin_session),
):
    return await ledger.earn_coins(session, auth.address, body.amount, body.ref)

@router.post("/purchase")
async def purchase(
    body: CoinPurchaseRequest,
    auth: Session = Depends(require_session),
    session: AsyncSession = Depends(get_coin_session),
    rpc: EthRpcClient = Depends(get_eth_client),
    market_session: AsyncSession = Depends(get_market_session),
):
    # one transfer pays for coins or a listing, never both
    if body.txHash and await marketplace.is_tx_hash_claimed(market_session, body.txHash):
        raise DuplicateTransactionError("Transaction already used for a marketplace purchase")
    return await ledger.purchase_coins(session, auth.address, body.ethAmount, body.txHash, rpc)

@router.post("/redeem/premium")
async def redeem_premium(
    auth: Session = Depends(require_session),
    session: AsyncSession = Depends(get_coin_session),
):
    return await ledger.redeem_premium(session, auth.address)

@router.get("/membership")
async def membership(
    auth: Session = Depends(require_session),
    session: AsyncSession = Depends(get_coin_session),
):
    return await ledger.membership_status(session, auth.address)

@router.get("/transactions")
async def transactions(
    limit: int = Query(25, ge=1, le=100),
    auth: Session = Depends(require_session),
    session: AsyncSession = Depends(get_coin_session),
):
    return {"transactions": await ledger.recent_coin_transactions(session, auth.address, limit)}
