"""
Vote Ledger
Records votes, enforces one vote per (matchup, voter), moves ratings and
influence, and lets a vote be undone for a few seconds afterwards.

A vote moves through: unvoted -> voted (undoable until undo_expires_at) ->
final. Undo inside the window deletes the record and restores the unvoted
state. Expiry is checked when undo is attempted; nothing runs on a timer.

record() and undo() each run as one store transaction, so a vote is either
fully applied (ratings, record, voter account) or not at all.
"""

from typing import List, Optional

import elo
from models import Rejection, Result, VoteRecord, new_id
from voter_account import account_in, credit_vote, debit_vote

UNDO_WINDOW_MS = 5000
RECENT_VOTES_LIMIT = 10


def _newest_first(votes: List[VoteRecord]) -> List[VoteRecord]:
    # Ties on timestamp fall back to insertion order, later first
    indexed = list(enumerate(votes))
    indexed.sort(key=lambda item: (item[1].timestamp, item[0]), reverse=True)
    return [v for _, v in indexed]


class VoteLedger:

    def __init__(self, store, competitors, k_factor: int = elo.K_FACTOR,
                 undo_window_ms: int = UNDO_WINDOW_MS, rating_floor: int = elo.RATING_FLOOR):
        self.store = store
        self.competitors = competitors
        self.k_factor = k_factor
        self.undo_window_ms = undo_window_ms
        self.rating_floor = rating_floor

    def record(self, matchup_id: str, winner_id: str, voter_id: str) -> Result:
        """
        Cast voter_id's vote for winner_id in a matchup.

        Result.value is the new VoteRecord (its influence_gained is what the
        UI shows). Rejections: NOT_FOUND (matchup or one of its competitors
        gone), ALREADY_VOTED, INVALID_WINNER. A rejection changes nothing.
        """
        if not isinstance(voter_id, str) or not voter_id.strip():
            raise ValueError("voter_id is required")

        with self.store.transaction() as state:
            matchup = state.matchup(matchup_id)
            if matchup is None:
                state.rollback()
                return Result.rejected(Rejection.NOT_FOUND, "Matchup not found")

            for v in state.votes:
                if v.matchup_id == matchup_id and v.voter_id == voter_id:
                    state.rollback()
                    return Result.rejected(Rejection.ALREADY_VOTED, "Already voted")

            loser_id = matchup.other(winner_id)
            if loser_id is None:
                state.rollback()
                return Result.rejected(Rejection.INVALID_WINNER,
                                       "Winner is not part of this matchup")

            winner = state.competitor(winner_id)
            loser = state.competitor(loser_id)
            if winner is None or loser is None:
                state.rollback()
                return Result.rejected(Rejection.NOT_FOUND,
                                       "Competitor is no longer in the arena")

            winner_before = winner.rating
            loser_before = loser.rating
            delta = elo.rating_delta(winner_before, loser_before, self.k_factor)
            influence = elo.influence_reward(winner_before, loser_before)

            winner, loser = self.competitors.apply_outcome(
                winner_id, loser_id, delta, self.rating_floor)

            now = self.store.clock()
            vote = VoteRecord(
                id=new_id(),
                matchup_id=matchup_id,
                winner_id=winner_id,
                loser_id=loser_id,
                winner_rating_before=winner_before,
                winner_rating_after=winner.rating,
                loser_rating_before=loser_before,
                loser_rating_after=loser.rating,
                timestamp=now,
                voter_id=voter_id,
                influence_gained=influence,
                undo_expires_at=now + self.undo_window_ms,
            )
            state.votes.append(vote)
            credit_vote(account_in(state, voter_id), vote)
            return Result.success(vote)

    def undo(self, vote_id: str) -> bool:
        """
        Reverse a vote still inside its undo window. False (and no change)
        if the vote is unknown, already undone, or the window has closed.
        """
        with self.store.transaction() as state:
            vote = state.vote(vote_id)
            if vote is None or not vote.is_undoable(self.store.clock()):
                state.rollback()
                return False

            state.votes.remove(vote)
            self.competitors.revert_outcome(
                vote.winner_id, vote.loser_id,
                vote.winner_rating_before, vote.loser_rating_before)

            account = state.voters.get(vote.voter_id)
            if account is not None:
                debit_vote(state, account, vote)
            return True

    def get(self, vote_id: str) -> Optional[VoteRecord]:
        with self.store.read() as state:
            return state.vote(vote_id)

    def find(self, matchup_id: str, voter_id: str) -> Optional[VoteRecord]:
        """The voter's vote in this matchup, if any."""
        with self.store.read() as state:
            for v in state.votes:
                if v.matchup_id == matchup_id and v.voter_id == voter_id:
                    return v
            return None

    def recent(self, limit: Optional[int] = RECENT_VOTES_LIMIT) -> List[VoteRecord]:
        """Newest first. limit=None returns every vote."""
        with self.store.read() as state:
            votes = _newest_first(state.votes)
        return votes if limit is None else votes[:max(0, limit)]

    def for_voter(self, voter_id: str) -> List[VoteRecord]:
        with self.store.read() as state:
            return _newest_first([v for v in state.votes if v.voter_id == voter_id])

    def for_competitor(self, competitor_id: str,
                       limit: Optional[int] = RECENT_VOTES_LIMIT) -> List[VoteRecord]:
        with self.store.read() as state:
            votes = _newest_first([v for v in state.votes
                                   if competitor_id in (v.winner_id, v.loser_id)])
        return votes if limit is None else votes[:max(0, limit)]
