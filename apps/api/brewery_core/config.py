import os
import re


def _flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def normalize_database_url(url: str | None) -> str | None:
    if not url:
        return url
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
    url = re.sub(r'[?&]sslmode=[^&]*', '', url)
    return url.replace('?&', '?').rstrip('?')


class Settings:
    database_url: str | None = normalize_database_url(os.getenv("DATABASE_URL"))
    database_echo: bool = _flag("DATABASE_ECHO", False)

    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()
    log_format: str = os.getenv("LOG_FORMAT", "json").lower()

    # Off: blends accept sources in any phase (a warning is logged).
    blend_require_eligible_phase: bool = _flag("BLEND_REQUIRE_ELIGIBLE_PHASE", False)
    negative_balance_alerts: bool = _flag("NEGATIVE_BALANCE_ALERTS", True)


settings = Settings()
