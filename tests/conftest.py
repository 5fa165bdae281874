"""
Shared fixtures: fake registrar oracles and a fixed clock.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import os
import sys
from typing import Dict, Optional

import pytest

# Ensure the project root is on the path so the top-level scripts import.
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

import ens_snipe  # noqa: E402

FIXED_NOW = dt.datetime(2025, 6, 1, 12, 0, tzinfo=dt.timezone.utc)


class FakeOracle:
    """Answers from a dict keyed by label; labels in `failing` raise a lookup error."""

    def __init__(self, expiries: Dict[str, int], failing=(), delays: Optional[Dict[str, float]] = None):
        self.expiries = expiries
        self.failing = set(failing)
        self.delays = delays or {}
        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def get_expiration(self, hash_: bytes, domain: Optional[str] = None) -> int:
        label = ens_snipe.normalize_label(domain)
        assert hash_ == ens_snipe.label_hash(label)
        self.calls.append(domain)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delays.get(label, 0))
            if label in self.failing:
                raise ens_snipe.ExpirationLookupError(domain, "execution reverted")
            return self.expiries[label]
        finally:
            self.in_flight -= 1


@pytest.fixture
def fixed_now():
    return FIXED_NOW


@pytest.fixture
def fake_oracle_factory():
    return FakeOracle
