"""
Portrait Clash Arena - engine facade
The single surface the UI (web server, CLI) talks to. Build one Arena at
startup with open_arena() and pass it around; every component shares its
ArenaStore.
"""

import random
from typing import Callable, List, Optional

import arena_reports
import elo
from arena_store import ArenaStore, JsonFileBackend, MemoryBackend
from competitors import CompetitorStore
from matchups import MatchupStore
from models import Achievement, Competitor, Matchup, Result, VoteRecord, VoterAccount, now_ms
from vote_ledger import RECENT_VOTES_LIMIT, UNDO_WINDOW_MS, VoteLedger
from voter_account import VoterAccounts

EXPORT_FORMATS = ("csv", "json")


class Arena:

    def __init__(self, store: ArenaStore, rng: Optional[random.Random] = None,
                 k_factor: int = elo.K_FACTOR, undo_window_ms: int = UNDO_WINDOW_MS):
        self.store = store
        self.competitors = CompetitorStore(store)
        self.matchups = MatchupStore(store, rng)
        self.ledger = VoteLedger(store, self.competitors, k_factor=k_factor,
                                 undo_window_ms=undo_window_ms)
        self.voters = VoterAccounts(store)

    # ------------------------------------------------------------ competitors

    def list_competitors(self) -> List[Competitor]:
        return self.competitors.list()

    def get_competitor(self, competitor_id: str) -> Optional[Competitor]:
        return self.competitors.get(competitor_id)

    def create_competitor(self, name: str, description: str, image_ref: str) -> Competitor:
        return self.competitors.create(name, description, image_ref)

    def update_competitor(self, competitor_id: str, **fields) -> Optional[Competitor]:
        return self.competitors.update(competitor_id, **fields)

    def delete_competitor(self, competitor_id: str) -> bool:
        return self.competitors.delete(competitor_id)

    # --------------------------------------------------------------- matchups

    def create_matchup(self, competitor_a_id: Optional[str] = None,
                       competitor_b_id: Optional[str] = None) -> Result:
        return self.matchups.create(competitor_a_id, competitor_b_id)

    def get_matchup(self, matchup_id: str) -> Optional[Matchup]:
        return self.matchups.get(matchup_id)

    # ------------------------------------------------------------------ votes

    def cast_vote(self, matchup_id: str, winner_id: str,
                  voter_id: Optional[str] = None) -> Result:
        return self.ledger.record(matchup_id, winner_id, voter_id or self.voters.local_voter_id())

    def undo_vote(self, vote_id: str) -> bool:
        return self.ledger.undo(vote_id)

    def find_vote(self, matchup_id: str, voter_id: Optional[str] = None) -> Optional[VoteRecord]:
        return self.ledger.find(matchup_id, voter_id or self.voters.local_voter_id())

    def list_recent_votes(self, limit: Optional[int] = RECENT_VOTES_LIMIT) -> List[VoteRecord]:
        return self.ledger.recent(limit)

    def votes_for_competitor(self, competitor_id: str,
                         limit: Optional[int] = RECENT_VOTES_LIMIT) -> List[VoteRecord]:
        return self.ledger.for_competitor(competitor_id, limit)

    def voter_history(self, voter_id: Optional[str] = None) -> List[VoteRecord]:
        return self.ledger.for_voter(voter_id or self.voters.local_voter_id())

    # ----------------------------------------------------------------- voters

    def get_voter_account(self, voter_id: Optional[str] = None) -> VoterAccount:
        return self.voters.get(voter_id)

    def update_voter_account(self, voter_id: Optional[str] = None, **fields) -> VoterAccount:
        return self.voters.update(voter_id, **fields)

    def claim_achievements(self, voter_id: Optional[str] = None) -> List[Achievement]:
        return self.voters.claim_achievements(voter_id)

    # ---------------------------------------------------------------- reports

    def get_leaderboard(self) -> List[dict]:
        return arena_reports.compute_leaderboard(self.competitors.list())

    def get_analytics(self) -> dict:
        with self.store.read() as state:
            return arena_reports.compute_analytics(state.votes, state.matchups)

    def export_votes(self, voter_id: Optional[str] = None, fmt: str = "csv") -> str:
        if fmt not in EXPORT_FORMATS:
            raise ValueError(f"Unknown export format {fmt!r}, expected one of {EXPORT_FORMATS}")
        votes = self.voter_history(voter_id)
        if fmt == "json":
            return arena_reports.export_votes_json(votes)
        return arena_reports.export_votes_csv(votes, self.competitors.list())

    # ----------------------------------------------------------- change feed

    def on_state_changed(self, listener: Callable[[int], None]) -> Callable[[], None]:
        return self.store.on_state_changed(listener)

    def check_for_external_changes(self) -> bool:
        return self.store.check_for_external_changes()


def open_arena(data_dir=None, seed: bool = True, clock: Callable[[], int] = now_ms,
               rng: Optional[random.Random] = None) -> Arena:
    """File-backed arena in data_dir, or an in-memory one when data_dir is None."""
    backend = JsonFileBackend(data_dir) if data_dir else MemoryBackend()
    return Arena(ArenaStore(backend, clock=clock, seed=seed), rng=rng)
