import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from nfse_organizer.cache import CachePolicy, NamespacedCache, NAMESPACES


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    policies = {name: CachePolicy(ttl_seconds=60, max_entries=100) for name in NAMESPACES}
    return NamespacedCache(policies, sweep_interval=3600, clock=clock)
