"""
Matchup store
Pairs two competitors for a vote. Matchups are immutable, never deduplicated
and never deleted: they double as the audit trail and the share-link target.
"""

import random
from typing import Optional

from models import Matchup, Rejection, Result, new_id


class MatchupStore:

    def __init__(self, store, rng: Optional[random.Random] = None):
        self.store = store
        self.rng = rng or random.Random()

    def create(self, competitor_a_id: Optional[str] = None,
               competitor_b_id: Optional[str] = None) -> Result:
        """
        Explicit pairing when both ids are given, otherwise two distinct
        competitors picked uniformly at random.
        """
        with self.store.transaction() as state:
            if competitor_a_id is not None or competitor_b_id is not None:
                if (competitor_a_id is None or competitor_b_id is None
                        or competitor_a_id == competitor_b_id
                        or state.competitor(competitor_a_id) is None
                        or state.competitor(competitor_b_id) is None):
                    state.rollback()
                    return Result.rejected(
                        Rejection.INVALID_PAIRING,
                        "A matchup needs two distinct existing competitors")
                a_id, b_id = competitor_a_id, competitor_b_id
            else:
                pool = [c.id for c in state.competitors]
                if len(pool) < 2:
                    state.rollback()
                    return Result.rejected(
                        Rejection.INSUFFICIENT_COMPETITORS,
                        f"Need at least 2 competitors, have {len(pool)}")
                a_id = self.rng.choice(pool)
                pool.remove(a_id)
                b_id = self.rng.choice(pool)

            matchup = Matchup(
                id=new_id(),
                competitor_a_id=a_id,
                competitor_b_id=b_id,
                created_at=self.store.clock(),
            )
            state.matchups.append(matchup)
            return Result.success(matchup)

    def get(self, matchup_id: str) -> Optional[Matchup]:
        with self.store.read() as state:
            return state.matchup(matchup_id)
