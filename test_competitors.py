import pytest

from competitors import HISTORY_LIMIT
from conftest import set_rating
from elo import Tier


def test_create_starts_at_default_rating(arena, clock):
    c = arena.create_competitor("Ada Lovelace", "Mathematician", "img/ada.png")
    assert c.rating == 1200
    assert c.streak == 0
    assert c.tier == Tier.GOLD
    assert (c.record.wins, c.record.losses, c.record.total_matches) == (0, 0, 0)
    assert c.rating_history == [{"timestamp": clock.now, "rating": 1200}]
    assert arena.get_competitor(c.id) == c


@pytest.mark.parametrize("name,description,image_ref", [
    ("", "desc", "img"),
    ("   ", "desc", "img"),
    ("Name", "", "img"),
    ("Name", "desc", None),
])
def test_create_rejects_missing_fields(arena, name, description, image_ref):
    with pytest.raises(ValueError):
        arena.create_competitor(name, description, image_ref)
    assert arena.list_competitors() == []


def test_streaks_reset_on_reversal(arena, pair):
    a, b = pair
    competitors = arena.competitors

    competitors.apply_outcome(a.id, b.id, 16)
    competitors.apply_outcome(a.id, b.id, 16)
    assert arena.get_competitor(a.id).streak == 2
    assert arena.get_competitor(b.id).streak == -2

    competitors.apply_outcome(b.id, a.id, 16)
    assert arena.get_competitor(a.id).streak == -1
    assert arena.get_competitor(b.id).streak == 1


def test_record_totals_stay_consistent(arena, pair):
    a, b = pair
    for winner, loser in [(a, b), (b, a), (a, b), (a, b)]:
        arena.competitors.apply_outcome(winner.id, loser.id, 10)
    for c in arena.list_competitors():
        assert c.record.total_matches == c.record.wins + c.record.losses
    assert arena.get_competitor(a.id).record.wins == 3
    assert arena.get_competitor(b.id).record.losses == 3


def test_loser_rating_is_floored(arena, store, pair):
    a, b = pair
    set_rating(store, b.id, 810)
    arena.competitors.apply_outcome(a.id, b.id, 16)
    assert arena.get_competitor(b.id).rating == 800
    assert arena.get_competitor(a.id).rating == 1216


def test_history_is_bounded_and_ends_at_current_rating(arena, clock, pair):
    a, b = pair
    for _ in range(HISTORY_LIMIT + 10):
        clock.advance(1000)
        arena.competitors.apply_outcome(a.id, b.id, 3)

    winner = arena.get_competitor(a.id)
    assert len(winner.rating_history) == HISTORY_LIMIT
    assert winner.rating_history[-1] == {"timestamp": clock.now, "rating": winner.rating}
    timestamps = [p["timestamp"] for p in winner.rating_history]
    assert timestamps == sorted(timestamps)


def test_apply_outcome_with_missing_competitor_changes_nothing(arena, store, pair):
    a, _ = pair
    revision = store.current_revision()
    assert arena.competitors.apply_outcome(a.id, "ghost", 16) is None
    assert store.current_revision() == revision
    assert arena.get_competitor(a.id).record.wins == 0


def test_update_edits_display_fields_only(arena, pair):
    a, _ = pair
    updated = arena.update_competitor(a.id, name="Countess Lovelace")
    assert updated.name == "Countess Lovelace"
    assert updated.description == "Mathematician"
    assert updated.rating == 1200
    assert arena.get_competitor(a.id).name == "Countess Lovelace"


def test_update_unknown_competitor(arena, store):
    revision = store.current_revision()
    assert arena.update_competitor("ghost", name="x") is None
    assert store.current_revision() == revision


def test_update_rejects_blank_name(arena, pair):
    a, _ = pair
    with pytest.raises(ValueError):
        arena.update_competitor(a.id, name=" ")
    assert arena.get_competitor(a.id).name == "Ada Lovelace"


def test_delete_keeps_matchups_and_votes(arena, pair):
    a, b = pair
    matchup = arena.create_matchup(a.id, b.id).value
    vote = arena.cast_vote(matchup.id, a.id).value

    assert arena.delete_competitor(b.id) is True
    assert arena.get_competitor(b.id) is None
    assert arena.get_matchup(matchup.id) == matchup
    assert arena.ledger.get(vote.id) == vote


def test_delete_unknown_competitor(arena):
    assert arena.delete_competitor("ghost") is False
