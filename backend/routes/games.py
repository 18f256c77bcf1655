
import logging
from typing import Awaitable, Callable, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from core import games, ledger
from core.games import GameResult
from core.sessions import Session
from db import get_coin_session, get_game_session
from errors import InsufficientBalanceError
from routes.auth import require_session
from schemas import DiceRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/games")


async def _credit_winnings(coin_session: AsyncSession, address: str, game_type: str, result: GameResult) -> dict:
    if result.coins_won > 0:
        await ledger.credit(
            coin_session, address, result.coins_won, ref=f"{game_type}_win_{result.game_id}"
        )
    new_balance = (await ledger.get_balance(coin_session, address))["balance"]
    logger.debug("%s %s for %s -> balance %s", game_type, result.result, address, new_balance)
    return {**result.to_dict(), "newBalance": new_balance}


async def _play_paid(
    game_type: str,
    play: Callable[..., Awaitable[GameResult]],
    address: str,
    game_session: AsyncSession,
    coin_session: AsyncSession,
    **play_kwargs,
) -> dict:
    """Charge the play's cost, run it, and settle winnings.

    The cost is debited before the engine records anything, so a play is
    never stored without being paid for. A play the engine refuses after
    the debit gets its cost credited back.
    """
    cost = games.GAME_CONFIGS[game_type].cost_coins
    left = await games.remaining_plays(game_session, address, game_type)
    if left <= 0:
        return games.limit_reached_result(game_type).to_dict()

    game_id = games.new_game_id()
    try:
        balance = await ledger.debit(coin_session, address, cost, ref=f"{game_type}_cost_{game_id}")
    except InsufficientBalanceError:
        return games.insufficient_balance_result(game_type, left).to_dict()

    try:
        result = await play(game_session, address, balance + cost, game_id=game_id, **play_kwargs)
    except Exception:
        await ledger.credit(coin_session, address, cost, ref=f"{game_type}_refund_{game_id}")
        raise
    if not result.success:
        await ledger.credit(coin_session, address, cost, ref=f"{game_type}_refund_{game_id}")
        return result.to_dict()
    return await _credit_winnings(coin_session, address, game_type, result)


@router.get("/stats")
async def stats(
    auth: Session = Depends(require_session),
    game_session: AsyncSession = Depends(get_game_session),
    coin_session: AsyncSession = Depends(get_coin_session),
):
    data = await games.get_game_stats(game_session, auth.address)
    balance = await ledger.get_balance(coin_session, auth.address)
    return {**data, "currentBalance": balance["balance"]}


@router.post("/wheel")
async def wheel(
    auth: Session = Depends(require_session),
    game_session: AsyncSession = Depends(get_game_session),
    coin_session: AsyncSession = Depends(get_coin_session),
):
    return await _play_paid(games.WHEEL, games.play_wheel, auth.address, game_session, coin_session)


@router.post("/dice")
async def dice(
    body: DiceRequest,
    auth: Session = Depends(require_session),
    game_session: AsyncSession = Depends(get_game_session),
    coin_session: AsyncSession = Depends(get_coin_session),
):
    return await _play_paid(
        games.DICE, games.play_dice, auth.address, game_session, coin_session, prediction=body.prediction
    )


@router.post("/scratch")
async def scratch(
    auth: Session = Depends(require_session),
    game_session: AsyncSession = Depends(get_game_session),
    coin_session: AsyncSession = Depends(get_coin_session),
):
    return await _play_paid(games.SCRATCH, games.play_scratch_card, auth.address, game_session, coin_session)


@router.post("/daily-bonus")
async def daily_bonus(
    auth: Session = Depends(require_session),
    game_session: AsyncSession = Depends(get_game_session),
    coin_session: AsyncSession = Depends(get_coin_session),
):
    result = await games.claim_daily_bonus(game_session, auth.address)
    if not result.success:
        return result.to_dict()
    return await _credit_winnings(coin_session, auth.address, games.DAILY_BONUS, result)


@router.get("/history")
async def history(
    limit: int = Query(20, ge=1, le=100),
    auth: Session = Depends(require_session),
    game_session: AsyncSession = Depends(get_game_session),
):
    return {"history": await games.get_game_history(game_session, auth.address, limit)}


@router.get("/leaderboard")
async def leaderboard(
    gameType: Optional[str] = None,
    game_session: AsyncSession = Depends(get_game_session),
):
    return {"leaderboard": await games.get_leaderboard(game_session, gameType)}


@router.get("/info")
async def info():
    return {"games": games.games_info()}
