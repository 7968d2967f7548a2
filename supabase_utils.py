#!/usr/bin/env python3
"""
supabase_utils.py
Row store for tracked tokens backed by a Supabase (PostgREST) table.

Expected table (default name "tokens"):
    address     text primary key
    created_at  timestamptz not null
    next_15m    timestamptz null
    next_30m    timestamptz null
    next_1h     timestamptz null
    data        jsonb not null      -- {"initial": {...}, "update_15m": {...}, ...}

All methods are synchronous (supabase-py is); the tracker calls them through
asyncio.to_thread.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from supabase import create_client, Client

import config
from token_tracker import AlreadyTrackedError, DependencyError, INTERVALS, due_column


# Postgres unique_violation
UNIQUE_VIOLATION = "23505"


# -------------------
# Supabase Client
# -------------------
def get_supabase_client(url: Optional[str] = None, key: Optional[str] = None) -> Client:
    """Create and return a Supabase client from explicit args or env vars."""
    url = url or config.SUPABASE_URL
    key = key or config.SUPABASE_KEY
    if not url or not key:
        raise RuntimeError("❌ Missing SUPABASE_URL or SUPABASE_KEY in environment variables")
    return create_client(url, key)


def _filter_timestamp(dt: datetime) -> str:
    # No "+00:00" offset: a literal "+" in a PostgREST filter reads as a space
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


# -------------------
# Token Store
# -------------------
class SupabaseTokenStore:
    def __init__(self, client: Client, table: str = config.TOKENS_TABLE):
        self.client = client
        self.table = table

    def _query(self):
        return self.client.table(self.table)

    def insert(self, row: Dict[str, Any]) -> None:
        try:
            self._query().insert(row).execute()
        except Exception as e:
            if getattr(e, "code", None) == UNIQUE_VIOLATION:
                raise AlreadyTrackedError(f"Token {row.get('address')} is already tracked") from e
            raise

    def select_all(self) -> List[Dict[str, Any]]:
        res = self._query().select("*").order("created_at", desc=True).execute()
        return res.data or []

    def select_by_address(self, address: str) -> Optional[Dict[str, Any]]:
        res = self._query().select("*").eq("address", address).limit(1).execute()
        rows = res.data or []
        return rows[0] if rows else None

    def select_due(self, now: datetime) -> List[Dict[str, Any]]:
        """Rows with at least one due timestamp at or before `now`."""
        ts = _filter_timestamp(now)
        condition = ",".join(f"{due_column(interval)}.lte.{ts}" for interval in INTERVALS)
        res = self._query().select("*").or_(condition).execute()
        return res.data or []

    def update(self, address: str, fields: Dict[str, Any]) -> None:
        res = self._query().update(fields).eq("address", address).execute()
        if not res.data:
            # RLS or a deleted row: PostgREST reports success with nothing written
            raise DependencyError(f"Update for {address} matched no rows")


def build_token_store() -> SupabaseTokenStore:
    return SupabaseTokenStore(get_supabase_client(), table=config.TOKENS_TABLE)
