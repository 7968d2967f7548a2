import copy
from datetime import datetime, timedelta, timezone

import pytest

from token_tracker import DependencyError, MetricsSnapshot, parse_timestamp

RAY_MINT = "4k3Dyjzvzp8eMZWUXbBCjEvwSkkk59S5iCNLY3QrkX6R"
WSOL_MINT = "So11111111111111111111111111111111111111112"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"

T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


class InMemoryTokenStore:
    """Row store with the same surface as SupabaseTokenStore; rows are copied in and out."""

    def __init__(self):
        self.rows = {}
        self.update_calls = []

    def insert(self, row):
        if row["address"] in self.rows:
            raise RuntimeError("duplicate key value violates unique constraint")
        self.rows[row["address"]] = copy.deepcopy(row)

    def select_all(self):
        rows = [copy.deepcopy(r) for r in self.rows.values()]
        rows.sort(key=lambda r: r["created_at"], reverse=True)
        return rows

    def select_by_address(self, address):
        row = self.rows.get(address)
        return copy.deepcopy(row) if row else None

    def select_due(self, now):
        out = []
        for row in self.rows.values():
            for col in ("next_15m", "next_30m", "next_1h"):
                due = parse_timestamp(row.get(col))
                if due is not None and due <= now:
                    out.append(copy.deepcopy(row))
                    break
        return out

    def update(self, address, fields):
        self.update_calls.append((address, copy.deepcopy(fields)))
        self.rows[address].update(copy.deepcopy(fields))


class FakeMarketData:
    """Returns a distinct snapshot per call and records which addresses were fetched."""

    def __init__(self, clock=None):
        self.calls = []
        self.failing = set()
        self.clock = clock or (lambda: T0)

    async def fetch_snapshot(self, address):
        self.calls.append(address)
        if address in self.failing:
            raise DependencyError(f"market data down for {address}")
        n = len(self.calls)
        return MetricsSnapshot(
            market_cap=1000.0 * n,
            price=0.001 * n,
            volume_5m=10.0 * n,
            volume_15m=30.0 * n,
            volume_30m=60.0 * n,
            holders=100 + n,
            timestamp=self.clock(),
        )


class FixedClock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def store():
    return InMemoryTokenStore()


@pytest.fixture
def market_data():
    return FakeMarketData()


@pytest.fixture
def clock():
    return FixedClock()
