"""Environment-driven settings for the attribution sync service."""
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo

from .sync.matcher import CustomerTieBreak, MatchPolicy, ProximityFallback


logger = logging.getLogger(__name__)


def _resolve_timezone(tz_name: str) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name)
    except Exception:
        logger.warning("Invalid QUIZ_REPORTING_TIMEZONE '%s', using UTC", tz_name)
        return ZoneInfo("UTC")


def _positive_number(name: str, default: str) -> float:
    raw = os.getenv(name, default)
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got '{raw}'") from exc
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


def _load_shop_tokens(tokens_path: Optional[str]) -> dict[str, str]:
    tokens: dict[str, str] = {}

    if tokens_path:
        tokens_file = Path(tokens_path)
        if not tokens_file.exists():
            raise FileNotFoundError(f"Shopify token map not found: {tokens_path}")

        with open(tokens_file, encoding="utf-8") as handle:
            data = json.load(handle)

        if not isinstance(data, dict):
            raise ValueError("Shopify token map must be a JSON object of shop -> token")
        tokens.update({str(shop): str(token) for shop, token in data.items()})

    shop_domain = os.getenv("SHOPIFY_STORE_DOMAIN")
    access_token = os.getenv("SHOPIFY_ADMIN_ACCESS_TOKEN")
    if shop_domain and access_token:
        tokens[shop_domain] = access_token

    return tokens


@dataclass(frozen=True)
class SyncSettings:
    """Resolved configuration for one process."""

    db_path: Path = Path("data/quiz_analytics.db")
    raw_dir: Optional[Path] = Path("data/raw")
    max_attribution_delay: timedelta = timedelta(hours=168)
    max_window_span: timedelta = timedelta(hours=168)
    safety_lag: timedelta = timedelta(minutes=5)
    initial_lookback: timedelta = timedelta(hours=168)
    customer_tie_break: CustomerTieBreak = CustomerTieBreak.LATEST_START
    proximity_fallback: ProximityFallback = ProximityFallback.CLOSEST_START
    reporting_timezone: ZoneInfo = field(default_factory=lambda: ZoneInfo("UTC"))
    lock_ttl_seconds: int = 900
    redis_url: str = "redis://localhost:6379"
    shopify_api_version: str = "2024-10"
    shop_tokens: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_env(cls) -> "SyncSettings":
        """Build settings from environment variables.

        Raises:
            ValueError: A numeric or enum variable is malformed
            FileNotFoundError: SHOPIFY_TOKENS_PATH points nowhere
        """
        raw_dir = os.getenv("QUIZ_RAW_DIR", "data/raw")

        settings = cls(
            db_path=Path(os.getenv("QUIZ_DB_PATH", "data/quiz_analytics.db")),
            raw_dir=Path(raw_dir) if raw_dir else None,
            max_attribution_delay=timedelta(
                hours=_positive_number("QUIZ_ATTRIBUTION_DELAY_HOURS", "168")
            ),
            max_window_span=timedelta(
                hours=_positive_number("QUIZ_MAX_WINDOW_HOURS", "168")
            ),
            safety_lag=timedelta(
                minutes=_positive_number("QUIZ_SAFETY_LAG_MINUTES", "5")
            ),
            initial_lookback=timedelta(
                hours=_positive_number("QUIZ_INITIAL_LOOKBACK_HOURS", "168")
            ),
            customer_tie_break=CustomerTieBreak(
                os.getenv("QUIZ_CUSTOMER_TIE_BREAK", CustomerTieBreak.LATEST_START.value)
            ),
            proximity_fallback=ProximityFallback(
                os.getenv(
                    "QUIZ_PROXIMITY_FALLBACK", ProximityFallback.CLOSEST_START.value
                )
            ),
            reporting_timezone=_resolve_timezone(
                os.getenv("QUIZ_REPORTING_TIMEZONE", "UTC")
            ),
            lock_ttl_seconds=int(_positive_number("QUIZ_SYNC_LOCK_TTL_SECONDS", "900")),
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379"),
            shopify_api_version=os.getenv("SHOPIFY_API_VERSION", "2024-10"),
            shop_tokens=_load_shop_tokens(os.getenv("SHOPIFY_TOKENS_PATH")),
        )

        logger.debug(
            "Loaded settings: db=%s, shops=%s, delay=%s, span=%s",
            settings.db_path,
            len(settings.shop_tokens),
            settings.max_attribution_delay,
            settings.max_window_span,
        )
        return settings

    def match_policy(self) -> MatchPolicy:
        return MatchPolicy(
            max_attribution_delay=self.max_attribution_delay,
            max_window_span=self.max_window_span,
            customer_tie_break=self.customer_tie_break,
            proximity_fallback=self.proximity_fallback,
        )
