"""
Competitor store
Owns the arena's competitors: creation, edits, deletion, and the rating /
streak / record bookkeeping applied when a vote lands or is undone.
"""

from typing import List, Optional, Tuple

from elo import RATING_FLOOR, STARTING_RATING, apply_floor
from models import Competitor, MatchRecord, new_id

HISTORY_LIMIT = 50


def _required_text(field_name: str, value) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{field_name} is required")
    return value.strip()


def make_competitor(competitor_id: str, name: str, description: str, image_ref: str,
                    now: int) -> Competitor:
    """A brand-new competitor at the starting rating with one history point."""
    return Competitor(
        id=competitor_id,
        name=_required_text("name", name),
        description=_required_text("description", description),
        image_ref=_required_text("image_ref", image_ref),
        rating=STARTING_RATING,
        streak=0,
        record=MatchRecord(),
        rating_history=[{"timestamp": now, "rating": STARTING_RATING}],
    )


def push_history(competitor: Competitor, now: int):
    """Append the current rating, keeping only the newest HISTORY_LIMIT points."""
    competitor.rating_history.append({"timestamp": now, "rating": competitor.rating})
    del competitor.rating_history[:-HISTORY_LIMIT]


def record_win(competitor: Competitor, delta: int, now: int):
    competitor.rating += delta
    competitor.streak = 1 if competitor.streak < 0 else competitor.streak + 1
    competitor.record.wins += 1
    competitor.record.total_matches += 1
    push_history(competitor, now)


def record_loss(competitor: Competitor, delta: int, now: int, floor: int = RATING_FLOOR):
    competitor.rating = apply_floor(competitor.rating - delta, floor)
    competitor.streak = -1 if competitor.streak > 0 else competitor.streak - 1
    competitor.record.losses += 1
    competitor.record.total_matches += 1
    push_history(competitor, now)


class CompetitorStore:
    """Competitor operations, each one its own store transaction."""

    def __init__(self, store):
        self.store = store

    def list(self) -> List[Competitor]:
        with self.store.read() as state:
            return list(state.competitors)

    def get(self, competitor_id: str) -> Optional[Competitor]:
        with self.store.read() as state:
            return state.competitor(competitor_id)

    def create(self, name: str, description: str, image_ref: str) -> Competitor:
        with self.store.transaction() as state:
            competitor = make_competitor(new_id(), name, description, image_ref, self.store.clock())
            state.competitors.append(competitor)
            return competitor

    def update(self, competitor_id: str, name: Optional[str] = None,
               description: Optional[str] = None,
               image_ref: Optional[str] = None) -> Optional[Competitor]:
        """Edit the display fields. Rating, streak and record are not editable."""
        with self.store.transaction() as state:
            competitor = state.competitor(competitor_id)
            if competitor is None:
                state.rollback()
                return None
            if name is not None:
                competitor.name = _required_text("name", name)
            if description is not None:
                competitor.description = _required_text("description", description)
            if image_ref is not None:
                competitor.image_ref = _required_text("image_ref", image_ref)
            return competitor

    def delete(self, competitor_id: str) -> bool:
        """
        Hard delete. Matchups and votes that mention the competitor are kept
        as they are; readers must cope with the dangling id.
        """
        with self.store.transaction() as state:
            before = len(state.competitors)
            state.competitors = [c for c in state.competitors if c.id != competitor_id]
            if len(state.competitors) == before:
                state.rollback()
                return False
            return True

    def apply_outcome(self, winner_id: str, loser_id: str, delta: int,
                      floor: int = RATING_FLOOR) -> Optional[Tuple[Competitor, Competitor]]:
        """Move delta points from loser to winner. None if either is missing."""
        with self.store.transaction() as state:
            winner = state.competitor(winner_id)
            loser = state.competitor(loser_id)
            if winner is None or loser is None:
                state.rollback()
                return None
            now = self.store.clock()
            record_win(winner, delta, now)
            record_loss(loser, delta, now, floor)
            return winner, loser

    def revert_outcome(self, winner_id: str, loser_id: str,
                       winner_rating_before: int, loser_rating_before: int):
        """
        Undo apply_outcome using the ratings captured at vote time.

        Ratings go back to the stored values rather than being recomputed.
        Streaks are reset to 0, not restored. Competitors deleted since the
        vote are skipped.
        """
        with self.store.transaction() as state:
            now = self.store.clock()
            winner = state.competitor(winner_id)
            if winner is not None:
                winner.rating = winner_rating_before
                winner.streak = 0
                winner.record.wins = max(0, winner.record.wins - 1)
                winner.record.total_matches = winner.record.wins + winner.record.losses
                push_history(winner, now)

            loser = state.competitor(loser_id)
            if loser is not None:
                loser.rating = loser_rating_before
                loser.streak = 0
                loser.record.losses = max(0, loser.record.losses - 1)
                loser.record.total_matches = loser.record.wins + loser.record.losses
                push_history(loser, now)
            return winner, loser
