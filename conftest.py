import random

import pytest

from arena import Arena
from arena_store import ArenaStore, MemoryBackend

# 2023-11-14T22:13:20Z
START_MS = 1_700_000_000_000


class FakeClock:
    """Manually advanced epoch-ms clock"""

    def __init__(self, start=START_MS):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    return MemoryBackend()


@pytest.fixture
def store(backend, clock):
    return ArenaStore(backend, clock=clock, seed=False)


@pytest.fixture
def arena(store):
    return Arena(store, rng=random.Random(7))


@pytest.fixture
def pair(arena):
    """Two fresh competitors at 1200"""
    a = arena.create_competitor("Ada Lovelace", "Mathematician", "img/ada.png")
    b = arena.create_competitor("Marie Curie", "Physicist", "img/marie.png")
    return a, b


def set_rating(store, competitor_id, rating):
    with store.transaction() as state:
        state.competitor(competitor_id).rating = rating
