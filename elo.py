"""
ELO rating math for the Portrait Clash arena.

Starting ELO: 1200, K-factor: 32, loser floor: 800.
Pure functions only, no state.
"""

import math
from enum import Enum

STARTING_RATING = 1200
K_FACTOR = 32
RATING_FLOOR = 800

BASE_INFLUENCE = 10
MIN_INFLUENCE_REWARD = 1


class Tier(str, Enum):
    BRONZE = "Bronze"
    SILVER = "Silver"
    GOLD = "Gold"
    PLATINUM = "Platinum"
    DIAMOND = "Diamond"
    CHALLENGER = "Challenger"


# (lower bound, tier), checked from the top
TIER_BREAKPOINTS = [
    (1800, Tier.CHALLENGER),
    (1600, Tier.DIAMOND),
    (1400, Tier.PLATINUM),
    (1200, Tier.GOLD),
    (1000, Tier.SILVER),
]


def _round_half_up(value: float) -> int:
    """Round like JavaScript's Math.round (0.5 goes up, -0.5 goes to 0)."""
    return int(math.floor(value + 0.5))


def expected_score(rating_a: float, rating_b: float) -> float:
    """ELO expected score for A vs B."""
    return 1.0 / (1.0 + 10 ** ((rating_b - rating_a) / 400))


def rating_delta(winner_rating: int, loser_rating: int, k_factor: int = K_FACTOR) -> int:
    """Points moved from loser to winner."""
    return _round_half_up(k_factor * (1.0 - expected_score(winner_rating, loser_rating)))


def influence_reward(winner_rating: int, loser_rating: int) -> int:
    """
    Influence earned by the voter for picking this winner.

    Upsets (winner rated below loser) pay more. Never less than
    MIN_INFLUENCE_REWARD, even when a heavy favourite wins.
    """
    reward = _round_half_up(BASE_INFLUENCE * (1 + (loser_rating - winner_rating) / 200))
    return max(MIN_INFLUENCE_REWARD, reward)


def tier_for_rating(rating: int) -> Tier:
    for lower_bound, tier in TIER_BREAKPOINTS:
        if rating >= lower_bound:
            return tier
    return Tier.BRONZE


def apply_floor(rating: int, floor: int = RATING_FLOOR) -> int:
    return max(floor, rating)
