import os
from functools import lru_cache
from typing import List


def _parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _parse_list(value: str | None, default: List[str]) -> List[str]:
    if value is None:
        return default
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings:
    def __init__(self) -> None:
        self.cors_allowed_origins: List[str] = _parse_list(
            os.getenv("CORS_ALLOWED_ORIGINS"),
            ["http://localhost:3000"],
        )
        self.cors_allow_all: bool = _parse_bool(os.getenv("CORS_ALLOW_ALL"), default=False)

        self.coin_database_url: str = os.getenv(
            "COIN_DATABASE_URL", "sqlite+aiosqlite:///coin.db"
        )
        self.game_database_url: str = os.getenv(
            "GAME_DATABASE_URL", "sqlite+aiosqlite:///games.db"
        )
        self.marketplace_database_url: str = os.getenv(
            "MARKETPLACE_DATABASE_URL", "sqlite+aiosqlite:///marketplace.db"
        )

        self.nonce_ttl_seconds: int = int(os.getenv("NONCE_TTL_SECONDS", "300"))
        self.session_ttl_seconds: int = int(os.getenv("SESSION_TTL_SECONDS", "86400"))
        self.jwt_secret: str = os.getenv("JWT_SECRET", "dev-secret-change-me")
        self.auth_rate_limit_window_seconds: int = int(
            os.getenv("AUTH_RATE_LIMIT_WINDOW_SECONDS", "60")
        )
        self.auth_rate_limit_max_requests: int = int(
            os.getenv("AUTH_RATE_LIMIT_MAX_REQUESTS", "10")
        )

        self.ethereum_rpc_url: str = os.getenv(
            "ETHEREUM_RPC_URL", "https://ethereum-rpc.publicnode.com"
        )
        self.ethereum_rpc_timeout_seconds: float = float(
            os.getenv("ETHEREUM_RPC_TIMEOUT_SECONDS", "10.0")
        )
        self.payment_wallet: str = os.getenv(
            "PAYMENT_WALLET", "0x742d35Cc6634C0532925a3b844Bc454e4438f44e"
        )
        self.marketplace_wallet: str = os.getenv("MARKETPLACE_WALLET", self.payment_wallet)

        self.coin_purchase_rate: int = int(os.getenv("COIN_PURCHASE_RATE", "1000"))
        self.coin_premium_cost: int = int(os.getenv("COIN_PREMIUM_COST", "5000"))
        self.premium_duration_days: int = int(os.getenv("PREMIUM_DURATION_DAYS", "30"))
        self.coin_earn_cap: int = int(os.getenv("COIN_EARN_CAP", "1000"))
        self.coin_spend_cap: int = int(os.getenv("COIN_SPEND_CAP", "1000"))

        self.min_payment_eth: float = float(os.getenv("MIN_PAYMENT_ETH", "0.001"))
        self.eth_amount_tolerance: float = float(os.getenv("ETH_AMOUNT_TOLERANCE", "0.0001"))
        self.marketplace_min_confirmations: int = int(
            os.getenv("MARKETPLACE_MIN_CONFIRMATIONS", "1")
        )
        self.purchase_revalidation_delay_seconds: float = float(
            os.getenv("PURCHASE_REVALIDATION_DELAY_SECONDS", "30")
        )


@lru_cache()
def get_settings() -> Settings:
    return Settings()
