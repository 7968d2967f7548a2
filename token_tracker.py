"""
token_tracker.py - Delayed snapshot tracking for Solana tokens.

A token address is registered once; the registry stores an initial metrics
snapshot plus three due timestamps (+15m, +30m, +1h). Nothing happens at those
times on its own: SnapshotRefresher.refresh() is a sweep that an external
trigger (HTTP call, cron, polling task) has to invoke. Each sweep picks every
token with at least one overdue interval, fetches ONE fresh snapshot for it,
files that snapshot under every overdue label and clears those due timestamps.

Both components take the row store and market-data source as arguments, so the
same code runs against Supabase in production and an in-memory store in tests.
"""
import asyncio
import logging
import math
import numbers
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from solders.pubkey import Pubkey

logger = logging.getLogger(__name__)

# interval kind -> delay after registration
INTERVALS: Dict[str, timedelta] = {
    "15m": timedelta(minutes=15),
    "30m": timedelta(minutes=30),
    "1h": timedelta(hours=1),
}
INITIAL_LABEL = "initial"
LEGACY_SNAPSHOT_KEYS = ("marketCap", "market_cap", "price", "timestamp")


def update_label(interval: str) -> str:
    return f"update_{interval}"


def due_column(interval: str) -> str:
    return f"next_{interval}"


# -----------------------
# Errors
# -----------------------
class TrackerError(Exception):
    """Base class for tracker failures surfaced to callers."""


class ValidationError(TrackerError):
    """Malformed token address."""


class AlreadyTrackedError(TrackerError):
    """The address is already registered."""


class DependencyError(TrackerError):
    """Market data source or row store unavailable / returned garbage."""


class NotFoundError(TrackerError):
    """No tracked token with that address."""


# -----------------------
# Time helpers
# -----------------------
def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(val: Any) -> Optional[datetime]:
    """Parse an ISO string / datetime into an aware UTC datetime (None passes through)."""
    if val is None or val == "":
        return None
    if isinstance(val, datetime):
        dt = val
    else:
        ts_str = str(val).replace("Z", "+00:00")
        dt = datetime.fromisoformat(ts_str)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt is not None else None


# -----------------------
# Address validation
# -----------------------
def validate_address(address: Any) -> str:
    """Return the canonical base58 form of a Solana address or raise ValidationError."""
    if not isinstance(address, str) or not address.strip():
        raise ValidationError("Token address is required")
    candidate = address.strip()
    try:
        pubkey = Pubkey.from_string(candidate)
    except Exception as e:
        raise ValidationError(f"Invalid Solana address: {candidate}") from e
    return str(pubkey)


# -----------------------
# Domain objects
# -----------------------
def _non_negative(name: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        raise ValueError(f"{name} must be a number, got {value!r}")
    value = float(value)
    if not math.isfinite(value) or value < 0:
        raise ValueError(f"{name} must be finite and non-negative, got {value!r}")
    return value


@dataclass
class MetricsSnapshot:
    market_cap: float
    price: float
    volume_5m: float
    volume_15m: float
    volume_30m: float
    holders: int
    timestamp: datetime

    def __post_init__(self):
        for name in ("market_cap", "price", "volume_5m", "volume_15m", "volume_30m"):
            setattr(self, name, _non_negative(name, getattr(self, name)))
        holders = _non_negative("holders", self.holders)
        if holders != int(holders):
            raise ValueError(f"holders must be an integer, got {self.holders!r}")
        self.holders = int(holders)
        ts = parse_timestamp(self.timestamp)
        if ts is None:
            raise ValueError("timestamp is required")
        self.timestamp = ts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "market_cap": self.market_cap,
            "price": self.price,
            "volume_5m": self.volume_5m,
            "volume_15m": self.volume_15m,
            "volume_30m": self.volume_30m,
            "holders": self.holders,
            "timestamp": format_timestamp(self.timestamp),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "MetricsSnapshot":
        # camelCase marketCap comes from rows written by the first dashboard
        return cls(
            market_cap=d.get("market_cap", d.get("marketCap", 0.0)),
            price=d.get("price", 0.0),
            volume_5m=d.get("volume_5m", 0.0),
            volume_15m=d.get("volume_15m", 0.0),
            volume_30m=d.get("volume_30m", 0.0),
            holders=d.get("holders", 0),
            timestamp=d.get("timestamp") or d.get("updated_at"),
        )


@dataclass
class TrackedToken:
    address: str
    created_at: datetime
    next_due: Dict[str, Optional[datetime]]
    history: Dict[str, MetricsSnapshot] = field(default_factory=dict)

    def due_intervals(self, now: datetime) -> List[str]:
        """Interval kinds whose deadline is set and not in the future."""
        return [
            interval for interval in INTERVALS
            if self.next_due.get(interval) is not None and self.next_due[interval] <= now
        ]

    @property
    def complete(self) -> bool:
        return all(self.next_due.get(interval) is None for interval in INTERVALS)

    def to_row(self) -> Dict[str, Any]:
        row = {
            "address": self.address,
            "created_at": format_timestamp(self.created_at),
            "data": {label: snap.to_dict() for label, snap in self.history.items()},
        }
        for interval in INTERVALS:
            row[due_column(interval)] = format_timestamp(self.next_due.get(interval))
        return row

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "TrackedToken":
        data = row.get("data") or {}
        history = {
            label: MetricsSnapshot.from_dict(snap)
            for label, snap in data.items()
            if isinstance(snap, dict) and (label == INITIAL_LABEL or label.startswith("update_"))
        }
        # First-dashboard rows kept the initial metrics flat in `data`
        if INITIAL_LABEL not in history and any(k in data for k in LEGACY_SNAPSHOT_KEYS):
            history[INITIAL_LABEL] = MetricsSnapshot.from_dict(data)
        created_at = parse_timestamp(row.get("created_at"))
        if created_at is None:
            raise ValueError("created_at is required")
        return cls(
            address=row["address"],
            created_at=created_at,
            next_due={interval: parse_timestamp(row.get(due_column(interval))) for interval in INTERVALS},
            history=history,
        )

    def to_json(self) -> Dict[str, Any]:
        """Shape returned by the HTTP API."""
        return {
            "address": self.address,
            "created_at": format_timestamp(self.created_at),
            "next_due": {k: format_timestamp(v) for k, v in self.next_due.items()},
            "history": {label: snap.to_dict() for label, snap in self.history.items()},
            "complete": self.complete,
        }


@dataclass
class RefreshReport:
    selected: int = 0
    updated: int = 0
    failed: Dict[str, str] = field(default_factory=dict)

    def to_json(self) -> Dict[str, Any]:
        return {"updated": self.updated, "selected": self.selected, "failed": dict(self.failed)}


# -----------------------
# Tracking registry
# -----------------------
class TrackingRegistry:
    def __init__(self, store, market_data, *, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.market_data = market_data
        self.clock = clock

    async def add(self, address: str) -> TrackedToken:
        """
        Register an address and capture its initial snapshot.
        Raises ValidationError / AlreadyTrackedError before anything is fetched,
        DependencyError if the snapshot or the insert fails. No row is left
        behind on failure.
        """
        address = validate_address(address)

        existing = await self._select_by_address(address)
        if existing is not None:
            raise AlreadyTrackedError(f"Token {address} is already tracked")

        now = self.clock()
        try:
            snapshot = await self.market_data.fetch_snapshot(address)
        except TrackerError:
            raise
        except Exception as e:
            raise DependencyError(f"Market data unavailable for {address}: {e}") from e

        token = TrackedToken(
            address=address,
            created_at=now,
            next_due={interval: now + delay for interval, delay in INTERVALS.items()},
            history={INITIAL_LABEL: snapshot},
        )
        try:
            await asyncio.to_thread(self.store.insert, token.to_row())
        except TrackerError:
            raise
        except Exception as e:
            raise DependencyError(f"Failed to store token {address}: {e}") from e

        logger.info(f"Tracking {address}; first update due {format_timestamp(token.next_due['15m'])}")
        return token

    async def list(self, address: Optional[str] = None) -> List[TrackedToken]:
        """All tracked tokens newest first, or the one matching `address` (empty list if none)."""
        if address:
            token = await self._select_by_address(address.strip())
            return [token] if token is not None else []
        try:
            rows = await asyncio.to_thread(self.store.select_all)
        except Exception as e:
            raise DependencyError(f"Failed to list tokens: {e}") from e
        tokens = []
        for row in rows:
            try:
                tokens.append(TrackedToken.from_row(row))
            except (KeyError, TypeError, ValueError) as e:
                address = row.get("address", "?") if isinstance(row, dict) else "?"
                logger.warning(f"Skipping unreadable row {address}: {e}")
        tokens.sort(key=lambda t: t.created_at, reverse=True)
        return tokens

    async def get(self, address: str) -> TrackedToken:
        token = await self._select_by_address(address.strip())
        if token is None:
            raise NotFoundError(f"Token {address} is not tracked")
        return token

    async def _select_by_address(self, address: str) -> Optional[TrackedToken]:
        try:
            row = await asyncio.to_thread(self.store.select_by_address, address)
        except Exception as e:
            raise DependencyError(f"Failed to look up token {address}: {e}") from e
        if not row:
            return None
        try:
            return TrackedToken.from_row(row)
        except (KeyError, TypeError, ValueError) as e:
            raise DependencyError(f"Stored row for {address} is unreadable: {e}") from e


# -----------------------
# Snapshot refresher
# -----------------------
class SnapshotRefresher:
    def __init__(
        self,
        store,
        market_data,
        *,
        max_concurrency: int = 4,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.market_data = market_data
        self.clock = clock
        self._sema = asyncio.Semaphore(max(1, max_concurrency))

    async def refresh(self, now: Optional[datetime] = None) -> RefreshReport:
        """
        Sweep all overdue tokens once. Per-token failures are recorded in the
        report and do not stop the sweep; only failing to query due rows at
        all raises DependencyError.
        """
        now = parse_timestamp(now) if now is not None else self.clock()
        try:
            rows = await asyncio.to_thread(self.store.select_due, now)
        except Exception as e:
            raise DependencyError(f"Failed to query due tokens: {e}") from e

        # The store filter is a hint; due-ness is decided here.
        report = RefreshReport()
        due_tokens = []
        for row in rows:
            try:
                token = TrackedToken.from_row(row)
            except (KeyError, TypeError, ValueError) as e:
                address = row.get("address", "?") if isinstance(row, dict) else "?"
                logger.warning(f"Skipping unreadable row {address}: {e}")
                report.failed[str(address)] = f"unreadable row: {e}"
                continue
            if token.due_intervals(now):
                due_tokens.append(token)

        report.selected = len(due_tokens)
        if not due_tokens:
            logger.info("Refresh: no tokens due")
            return report

        results = await asyncio.gather(
            *(self._refresh_one(token, now) for token in due_tokens),
            return_exceptions=True,
        )
        for token, result in zip(due_tokens, results):
            if isinstance(result, BaseException):
                logger.warning(f"Refresh failed for {token.address}: {result}")
                report.failed[token.address] = str(result)
            else:
                report.updated += 1

        logger.info(
            f"Refresh: {report.updated}/{report.selected} tokens updated, {len(report.failed)} failed"
        )
        return report

    async def _refresh_one(self, token: TrackedToken, now: datetime) -> List[str]:
        due = token.due_intervals(now)
        async with self._sema:
            try:
                snapshot = await self.market_data.fetch_snapshot(token.address)
            except TrackerError:
                raise
            except Exception as e:
                raise DependencyError(f"Market data unavailable for {token.address}: {e}") from e

        fields: Dict[str, Any] = {}
        for interval in due:
            token.history[update_label(interval)] = snapshot
            token.next_due[interval] = None
            fields[due_column(interval)] = None
        fields["data"] = {label: snap.to_dict() for label, snap in token.history.items()}

        try:
            await asyncio.to_thread(self.store.update, token.address, fields)
        except Exception as e:
            raise DependencyError(f"Failed to persist update for {token.address}: {e}") from e

        logger.debug(f"Refreshed {token.address}: {', '.join(update_label(i) for i in due)}")
        return due
