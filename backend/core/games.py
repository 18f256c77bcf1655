"""Chance-based mini-games with per-day play caps.

The engine decides outcomes and enforces caps; it never touches balances.
Callers debit ``coins_spent`` and credit ``coins_won`` through the ledger.
"""
import logging
import random
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Protocol, Tuple

from prometheus_client import Counter
from sqlalchemy import func, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from errors import ValidationError
from models import DailyLimit, GameSession


logger = logging.getLogger(__name__)

GAME_PLAYS = Counter(
    "game_plays_total",
    "Game play attempts by game type and outcome",
    ["game_type", "outcome"],
)

WHEEL = "wheel"
DICE = "dice"
SCRATCH = "scratch"
DAILY_BONUS = "daily_bonus"

DAILY_LIMIT_REACHED = "daily_limit_reached"
INSUFFICIENT_BALANCE = "insufficient_balance"
ALREADY_CLAIMED = "already_claimed"

LEADERBOARD_DAYS = 7
LEADERBOARD_SIZE = 10

_system_rng = random.SystemRandom()


# ---- payout distributions ----

class Distribution(Protocol):
    max_win: int

    def draw(self, rng: random.Random, **kwargs) -> Tuple[str, int]: ...


@dataclass(frozen=True)
class Tier:
    probability: float
    coins: int
    label: str


@dataclass(frozen=True)
class WeightedTiers:
    """Cumulative-probability tiers; the last tier catches the remainder."""

    tiers: Tuple[Tier, ...]

    @property
    def max_win(self) -> int:
        return max(t.coins for t in self.tiers)

    def draw(self, rng: random.Random, **_kwargs) -> Tuple[str, int]:
        roll = rng.random()
        cumulative = 0.0
        for tier in self.tiers:
            cumulative += tier.probability
            if roll < cumulative:
                return tier.label, tier.coins
        last = self.tiers[-1]
        return last.label, last.coins


@dataclass(frozen=True)
class HighLow:
    """Six-sided die; 4-6 is high, 1-3 is low. A correct call pays ``payout``."""

    payout: int

    @property
    def max_win(self) -> int:
        return self.payout

    def draw(self, rng: random.Random, prediction: str = "", **_kwargs) -> Tuple[str, int]:
        if prediction not in ("high", "low"):
            raise ValidationError('prediction must be "high" or "low"')
        roll = rng.randint(1, 6)
        is_high = roll >= 4
        won = (prediction == "high") == is_high
        return f"rolled_{roll}_{'won' if won else 'lost'}", self.payout if won else 0


@dataclass(frozen=True)
class ChanceUniform:
    """Wins with ``win_probability``; a win pays uniformly 1..``cap``."""

    win_probability: float
    cap: int

    @property
    def max_win(self) -> int:
        return self.cap

    def draw(self, rng: random.Random, **_kwargs) -> Tuple[str, int]:
        if rng.random() < self.win_probability:
            coins = rng.randint(1, self.cap)
            return f"win_{coins}", coins
        return "no_win", 0


@dataclass(frozen=True)
class UniformRange:
    low: int
    high: int

    @property
    def max_win(self) -> int:
        return self.high

    def draw(self, rng: random.Random, **_kwargs) -> Tuple[str, int]:
        coins = rng.randint(self.low, self.high)
        return f"bonus_{coins}", coins


@dataclass(frozen=True)
class GameConfig:
    name: str
    description: str
    daily_plays: int
    cost_coins: int
    payout: Distribution


GAME_CONFIGS: Dict[str, GameConfig] = {
    WHEEL: GameConfig(
        name="Wheel of Fortune",
        description="Spin the wheel for big prizes!",
        daily_plays=10,
        cost_coins=5,
        payout=WeightedTiers((
            Tier(0.05, 100, "jackpot"),
            Tier(0.10, 50, "big_win"),
            Tier(0.20, 20, "medium_win"),
            Tier(0.25, 10, "small_win"),
            Tier(0.40, 0, "no_win"),
        )),
    ),
    DICE: GameConfig(
        name="Dice Game",
        description="Predict high (4-6) or low (1-3)",
        daily_plays=15,
        cost_coins=2,
        payout=HighLow(payout=50),
    ),
    SCRATCH: GameConfig(
        name="Scratch Cards",
        description="Instant win scratch cards",
        daily_plays=20,
        cost_coins=1,
        payout=ChanceUniform(win_probability=0.3, cap=25),
    ),
    DAILY_BONUS: GameConfig(
        name="Daily Bonus",
        description="Free daily coins",
        daily_plays=1,
        cost_coins=0,
        payout=UniformRange(10, 59),
    ),
}

PAID_GAMES = (WHEEL, DICE, SCRATCH)


@dataclass
class GameResult:
    success: bool
    result: str
    game_id: str = ""
    coins_won: int = 0
    coins_spent: int = 0
    remaining_plays: int = 0
    error: Optional[str] = None

    def to_dict(self) -> dict:
        out = {
            "success": self.success,
            "gameId": self.game_id,
            "result": self.result,
            "coinsWon": self.coins_won,
            "coinsSpent": self.coins_spent,
            "remainingPlays": self.remaining_plays,
        }
        if self.error:
            out["error"] = self.error
        return out


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _with_timezone(dt: datetime) -> datetime:
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _day_start(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def _day_key(now: datetime) -> str:
    return now.date().isoformat()


async def _daily_counter(session: AsyncSession, address: str, game_type: str, day: str) -> Tuple[int, int]:
    res = await session.execute(
        select(DailyLimit.plays, DailyLimit.coins_won).where(
            DailyLimit.address == address,
            DailyLimit.game_type == game_type,
            DailyLimit.date == day,
        )
    )
    row = res.one_or_none()
    return (int(row.plays), int(row.coins_won)) if row else (0, 0)


async def _reserve_play(
    session: AsyncSession,
    address: str,
    game_type: str,
    day: str,
    coins_won: int,
    cap: int,
) -> Optional[int]:
    """Count one play against today's cap. Returns the new play count, or
    None when the cap was already reached."""
    stmt = sqlite_insert(DailyLimit).values(
        address=address, game_type=game_type, date=day, plays=1, coins_won=coins_won
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[DailyLimit.address, DailyLimit.game_type, DailyLimit.date],
        set_={
            "plays": DailyLimit.plays + 1,
            "coins_won": DailyLimit.coins_won + stmt.excluded.coins_won,
        },
        where=DailyLimit.plays < cap,
    ).returning(DailyLimit.plays)
    res = await session.execute(stmt)
    plays = res.scalar_one_or_none()
    return int(plays) if plays is not None else None


def new_game_id() -> str:
    return secrets.token_hex(12)


def limit_reached_result(game_type: str) -> GameResult:
    GAME_PLAYS.labels(game_type=game_type, outcome=DAILY_LIMIT_REACHED).inc()
    return GameResult(
        success=False,
        result=DAILY_LIMIT_REACHED,
        remaining_plays=0,
        error="Daily play limit reached",
    )


def insufficient_balance_result(game_type: str, remaining_plays: int) -> GameResult:
    GAME_PLAYS.labels(game_type=game_type, outcome=INSUFFICIENT_BALANCE).inc()
    return GameResult(
        success=False,
        result=INSUFFICIENT_BALANCE,
        remaining_plays=remaining_plays,
        error="Insufficient coins to play",
    )


async def remaining_plays(
    session: AsyncSession,
    address: str,
    game_type: str,
    now: Optional[datetime] = None,
) -> int:
    plays, _ = await _daily_counter(session, address.lower(), game_type, _day_key(now or _utcnow()))
    return max(0, GAME_CONFIGS[game_type].daily_plays - plays)


async def _play(
    session: AsyncSession,
    game_type: str,
    address: str,
    user_balance: int,
    *,
    rng: Optional[random.Random] = None,
    now: Optional[datetime] = None,
    game_id: Optional[str] = None,
    **draw_kwargs,
) -> GameResult:
    config = GAME_CONFIGS[game_type]
    address = address.lower()
    now = now or _utcnow()
    day = _day_key(now)
    rng = rng or _system_rng

    plays, _ = await _daily_counter(session, address, game_type, day)
    if plays >= config.daily_plays:
        return limit_reached_result(game_type)

    if user_balance < config.cost_coins:
        return insufficient_balance_result(game_type, config.daily_plays - plays)

    result, coins_won = config.payout.draw(rng, **draw_kwargs)

    new_plays = await _reserve_play(session, address, game_type, day, coins_won, config.daily_plays)
    if new_plays is None:
        await session.rollback()
        return limit_reached_result(game_type)

    game_id = game_id or new_game_id()
    session.add(
        GameSession(
            id=game_id,
            address=address,
            game_type=game_type,
            result=result,
            coins_won=coins_won,
            created_at=now,
        )
    )
    await session.commit()

    GAME_PLAYS.labels(game_type=game_type, outcome="played").inc()
    return GameResult(
        success=True,
        game_id=game_id,
        result=result,
        coins_won=coins_won,
        coins_spent=config.cost_coins,
        remaining_plays=config.daily_plays - new_plays,
    )


async def play_wheel(session: AsyncSession, address: str, user_balance: int, **kwargs) -> GameResult:
    return await _play(session, WHEEL, address, user_balance, **kwargs)


async def play_dice(
    session: AsyncSession,
    address: str,
    user_balance: int,
    prediction: str,
    **kwargs,
) -> GameResult:
    if prediction not in ("high", "low"):
        raise ValidationError('prediction must be "high" or "low"')
    return await _play(session, DICE, address, user_balance, prediction=prediction, **kwargs)


async def play_scratch_card(session: AsyncSession, address: str, user_balance: int, **kwargs) -> GameResult:
    return await _play(session, SCRATCH, address, user_balance, **kwargs)


async def claim_daily_bonus(
    session: AsyncSession,
    address: str,
    *,
    rng: Optional[random.Random] = None,
    now: Optional[datetime] = None,
) -> GameResult:
    address = address.lower()
    now = now or _utcnow()
    start = _day_start(now)

    res = await session.execute(
        select(GameSession.id).where(
            GameSession.address == address,
            GameSession.game_type == DAILY_BONUS,
            GameSession.created_at >= start,
            GameSession.created_at < start + timedelta(days=1),
        ).limit(1)
    )
    if res.scalar_one_or_none() is not None:
        GAME_PLAYS.labels(game_type=DAILY_BONUS, outcome=ALREADY_CLAIMED).inc()
        return GameResult(success=False, result=ALREADY_CLAIMED, error="Daily bonus already claimed")

    # the counter row doubles as a guard against two claims racing each other
    result = await _play(session, DAILY_BONUS, address, 0, rng=rng, now=now)
    if not result.success:
        return GameResult(success=False, result=ALREADY_CLAIMED, error="Daily bonus already claimed")
    result.result = "daily_bonus_claimed"
    result.remaining_plays = 0
    return result


async def get_game_stats(session: AsyncSession, address: str, now: Optional[datetime] = None) -> dict:
    address = address.lower()
    day = _day_key(now or _utcnow())
    stats = {}
    for game_type in PAID_GAMES:
        config = GAME_CONFIGS[game_type]
        plays, coins_won = await _daily_counter(session, address, game_type, day)
        stats[game_type] = {
            "playsToday": plays,
            "coinsWonToday": coins_won,
            "remainingPlays": max(0, config.daily_plays - plays),
            "costPerPlay": config.cost_coins,
            "maxWin": config.payout.max_win,
        }
    return stats


async def get_game_history(session: AsyncSession, address: str, limit: int = 20) -> list[dict]:
    res = await session.execute(
        select(GameSession)
        .where(GameSession.address == address.lower())
        .order_by(GameSession.created_at.desc())
        .limit(limit)
    )
    return [
        {
            "id": g.id,
            "gameType": g.game_type,
            "result": g.result,
            "coinsWon": g.coins_won,
            "createdAt": _with_timezone(g.created_at).isoformat(),
        }
        for g in res.scalars().all()
    ]


async def get_leaderboard(
    session: AsyncSession,
    game_type: Optional[str] = None,
    now: Optional[datetime] = None,
) -> list[dict]:
    if game_type is not None and game_type not in GAME_CONFIGS:
        raise ValidationError(f"unknown game type: {game_type}")
    since = (now or _utcnow()) - timedelta(days=LEADERBOARD_DAYS)

    total = func.sum(GameSession.coins_won).label("total_coins_won")
    stmt = (
        select(GameSession.address, total, func.count().label("games_played"))
        .where(GameSession.created_at >= since)
        .group_by(GameSession.address)
        .order_by(total.desc())
        .limit(LEADERBOARD_SIZE)
    )
    if game_type is not None:
        stmt = stmt.where(GameSession.game_type == game_type)

    res = await session.execute(stmt)
    return [
        {
            "address": row.address,
            "totalCoinsWon": int(row.total_coins_won or 0),
            "gamesPlayed": int(row.games_played),
        }
        for row in res.all()
    ]


def games_info() -> dict:
    keys = {WHEEL: "wheel", DICE: "dice", SCRATCH: "scratch", DAILY_BONUS: "dailyBonus"}
    return {
        keys[game_type]: {
            "name": config.name,
            "description": config.description,
            "cost": config.cost_coins,
            "maxWin": config.payout.max_win,
            "dailyLimit": config.daily_plays,
        }
        for game_type, config in GAME_CONFIGS.items()
    }
