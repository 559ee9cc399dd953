import os
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel

BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    jwt_secret: Optional[str] = None

    watch_only_key: Optional[str] = None
    account: str = "default"
    address_prefix: str = "kaspa"

    api_base_url: str = "https://api.kaspa.org"
    api_timeout: float = 15.0

    rate_sources: List[str] = ["coingecko", "cryptocompare"]
    rate_currency: str = "usd"
    rate_timeout: float = 10.0
    rate_cache_ttl: float = 300.0

    poll_interval: int = 30
    sweep_enabled: bool = True
    sweep_batch_size: int = 50
    sweep_concurrency: int = 5
    sweep_time_budget: float = 25.0

    abandon_after: int = 86400
    amount_tolerance: int = 1
    legacy_balance_match: bool = False
    max_check_failures: int = 5

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        sources = os.getenv("KASPA_RATE_SOURCES", "coingecko,cryptocompare")
        return cls(
            jwt_secret=os.getenv("JWT_SECRET"),
            watch_only_key=os.getenv("KASPA_KPUB") or None,
            account=os.getenv("KASPA_ACCOUNT", "default"),
            address_prefix=os.getenv("KASPA_ADDRESS_PREFIX", "kaspa"),
            api_base_url=os.getenv("KASPA_API_BASE_URL", "https://api.kaspa.org"),
            api_timeout=float(os.getenv("KASPA_API_TIMEOUT", "15")),
            rate_sources=[s.strip() for s in sources.split(",") if s.strip()],
            rate_currency=os.getenv("KASPA_RATE_CURRENCY", "usd"),
            rate_timeout=float(os.getenv("KASPA_RATE_TIMEOUT", "10")),
            rate_cache_ttl=float(os.getenv("KASPA_RATE_CACHE_TTL", "300")),
            poll_interval=int(os.getenv("KASPA_POLL_INTERVAL", "30")),
            sweep_enabled=_env_bool("KASPA_SWEEP_ENABLED", True),
            sweep_batch_size=int(os.getenv("KASPA_SWEEP_BATCH_SIZE", "50")),
            sweep_concurrency=int(os.getenv("KASPA_SWEEP_CONCURRENCY", "5")),
            sweep_time_budget=float(os.getenv("KASPA_SWEEP_TIME_BUDGET", "25")),
            abandon_after=int(os.getenv("KASPA_ABANDON_AFTER", "86400")),
            amount_tolerance=int(os.getenv("KASPA_AMOUNT_TOLERANCE", "1")),
            legacy_balance_match=_env_bool("KASPA_LEGACY_BALANCE_MATCH", False),
            max_check_failures=int(os.getenv("KASPA_MAX_CHECK_FAILURES", "5")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


@lru_cache()
def get_settings() -> Settings:
    return Settings.from_env()
