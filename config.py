"""
config.py - Environment settings for the token tracker.
Values come from the process environment, with a local .env file loaded first.
"""
import os
from typing import List

from dotenv import load_dotenv

load_dotenv()


def _load_keys_list(env_name: str) -> List[str]:
    """Load comma-separated API keys from environment variable"""
    value = os.getenv(env_name, "")
    if not value:
        return []
    return [k.strip() for k in value.split(",") if k.strip()]


SUPABASE_URL = os.getenv("SUPABASE_URL") or os.getenv("NEXT_PUBLIC_SUPABASE_URL")
SUPABASE_KEY = (
    os.getenv("SUPABASE_KEY")
    or os.getenv("SUPABASE_ANON_KEY")
    or os.getenv("NEXT_PUBLIC_SUPABASE_ANON_KEY")
)
TOKENS_TABLE = os.getenv("TOKENS_TABLE", "tokens")

HELIUS_KEYS = _load_keys_list("HELIUS_API_KEY")

MARKET_DATA_SOURCE = os.getenv("MARKET_DATA_SOURCE", "dexscreener").lower()
REFRESH_CONCURRENCY = int(os.getenv("REFRESH_CONCURRENCY", "4"))
HTTP_RETRIES = int(os.getenv("HTTP_RETRIES", "3"))
HOLDER_MAX_PAGES = int(os.getenv("HOLDER_MAX_PAGES", "10"))

# 0 disables the in-process polling task
AUTO_REFRESH_SECONDS = int(os.getenv("AUTO_REFRESH_SECONDS", "0"))

PORT = int(os.getenv("PORT", "8000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


def env_presence() -> dict:
    """Which integrations are configured. Secrets are reported as present/absent only."""
    return {
        "supabase_url": bool(SUPABASE_URL),
        "supabase_key": bool(SUPABASE_KEY),
        "helius_keys": len(HELIUS_KEYS),
        "market_data_source": MARKET_DATA_SOURCE,
        "auto_refresh_seconds": AUTO_REFRESH_SECONDS,
    }
