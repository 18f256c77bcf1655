
from datetime import datetime, timezone

from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, Boolean, Float, DateTime, Text
from db import CoinBase, GameBase, MarketBase


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---- coin ledger store ----

class UserBalance(CoinBase):
    __tablename__ = "user_balances"
    address: Mapped[str] = mapped_column(String(64), primary_key=True)
    coins: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

class CoinTransaction(CoinBase):
    __tablename__ = "coin_transactions"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    address: Mapped[str] = mapped_column(String(64), index=True)
    type: Mapped[str] = mapped_column(String(16))
    # always positive; the sign is implied by type
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    ref: Mapped[str | None] = mapped_column(String(200), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

class ProcessedTransaction(CoinBase):
    __tablename__ = "processed_transactions"
    tx_hash: Mapped[str] = mapped_column(String(66), primary_key=True)
    address: Mapped[str] = mapped_column(String(64), index=True)
    eth_amount: Mapped[float] = mapped_column(Float, nullable=False)
    coins_awarded: Mapped[int] = mapped_column(Integer, nullable=False)
    block_number: Mapped[int] = mapped_column(Integer, nullable=False)
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

class PremiumMembership(CoinBase):
    __tablename__ = "premium_memberships"
    address: Mapped[str] = mapped_column(String(64), primary_key=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


# ---- game store ----

class GameSession(GameBase):
    __tablename__ = "game_sessions"
    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    address: Mapped[str] = mapped_column(String(64), index=True)
    game_type: Mapped[str] = mapped_column(String(32), index=True)
    result: Mapped[str] = mapped_column(String(64))
    coins_won: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, index=True)

class DailyLimit(GameBase):
    __tablename__ = "daily_limits"
    address: Mapped[str] = mapped_column(String(64), primary_key=True)
    game_type: Mapped[str] = mapped_column(String(32), primary_key=True)
    date: Mapped[str] = mapped_column(String(10), primary_key=True)
    plays: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    coins_won: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


# ---- marketplace store ----

class Listing(MarketBase):
    __tablename__ = "listings"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    title: Mapped[str] = mapped_column(String(200))
    description: Mapped[str] = mapped_column(Text)
    price_eth: Mapped[float] = mapped_column(Float, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

class Purchase(MarketBase):
    __tablename__ = "purchases"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    listing_id: Mapped[str] = mapped_column(String(64), index=True)
    buyer: Mapped[str] = mapped_column(String(64), index=True)
    tx_hash: Mapped[str] = mapped_column(String(66), unique=True)
    amount_eth: Mapped[float] = mapped_column(Float, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="pending", index=True)
    escrow_status: Mapped[str] = mapped_column(String(16), default="held")
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    validated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
