from __future__ import annotations

from dataclasses import dataclass, field
import os
from typing import Literal

PlaidEnv = Literal["sandbox", "development", "production"]

DEFAULT_DATABASE_URL = "sqlite:///treasury.db"


@dataclass(frozen=True, slots=True)
class TreasuryConfig:
    """Process configuration loaded at startup."""

    database_url: str = DEFAULT_DATABASE_URL
    plaid_env: PlaidEnv = "sandbox"
    sync_page_size: int = 100
    sync_max_pages: int = 20
    sync_max_workers: int = 1
    http_timeout_seconds: float = 30.0
    api_tokens: dict[str, str] = field(default_factory=dict)


def _int_env(name: str, default: int, *, minimum: int, maximum: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None
    if not minimum <= value <= maximum:
        raise ValueError(f"{name} must be between {minimum} and {maximum}")
    return value


def _parse_api_tokens(raw: str) -> dict[str, str]:
    """Parse ``token:user_id`` pairs separated by commas."""
    tokens: dict[str, str] = {}
    for pair in raw.split(","):
        pair = pair.strip()
        if not pair:
            continue
        token, sep, user_id = pair.partition(":")
        if not sep or not token.strip() or not user_id.strip():
            raise ValueError(
                "TREASURY_API_TOKENS entries must look like token:user_id"
            )
        tokens[token.strip()] = user_id.strip()
    return tokens


def load_config_from_env() -> TreasuryConfig:
    """Load config from env and validate it."""
    database_url = (
        os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL).strip()
        or DEFAULT_DATABASE_URL
    )

    plaid_env = os.environ.get("PLAID_ENV", "sandbox").strip().lower()
    if plaid_env not in {"sandbox", "development", "production"}:
        raise ValueError("PLAID_ENV must be one of: sandbox, development, production")

    timeout_raw = os.environ.get("TREASURY_HTTP_TIMEOUT_SECONDS", "30").strip()
    try:
        http_timeout_seconds = float(timeout_raw)
    except ValueError:
        raise ValueError(
            f"TREASURY_HTTP_TIMEOUT_SECONDS must be a number, got {timeout_raw!r}"
        ) from None
    if http_timeout_seconds <= 0:
        raise ValueError("TREASURY_HTTP_TIMEOUT_SECONDS must be positive")

    return TreasuryConfig(
        database_url=database_url,
        plaid_env=plaid_env,  # type: ignore[arg-type]
        sync_page_size=_int_env(
            "TREASURY_SYNC_PAGE_SIZE", 100, minimum=1, maximum=500
        ),
        sync_max_pages=_int_env(
            "TREASURY_SYNC_MAX_PAGES", 20, minimum=1, maximum=1000
        ),
        sync_max_workers=_int_env(
            "TREASURY_SYNC_MAX_WORKERS", 1, minimum=1, maximum=32
        ),
        http_timeout_seconds=http_timeout_seconds,
        api_tokens=_parse_api_tokens(os.environ.get("TREASURY_API_TOKENS", "")),
    )
