"""
Achievement catalog and evaluator.

evaluate() is pure: it only reports what a voter now qualifies for. Persisting
the unlock is the caller's job (VoterAccounts.claim_achievements).
"""

from typing import Callable, Dict, Iterable, List, Optional

from models import Achievement, VoteRecord, VoterAccount

ACHIEVEMENTS = [
    Achievement("first_vote", "Arena Entry", "Cast your very first vote.", "common", 10, "🎯"),
    Achievement("streak_3", "Triple Threat", "Vote 3 times in one session.", "common", 25, "🔥"),
    Achievement("influence_500", "Influencer", "Reach 500 global influence.", "rare", 50, "🛡️"),
    Achievement("collector", "Arena Historian", "Vote on all current participants.", "epic", 100, "💎"),
]


def _voted_on_everyone(account: VoterAccount, votes: List[VoteRecord],
                       competitor_ids: List[str]) -> bool:
    if not competitor_ids:
        return False
    seen = set()
    for v in votes:
        if v.voter_id == account.id:
            seen.add(v.winner_id)
            seen.add(v.loser_id)
    return set(competitor_ids) <= seen


RULES: Dict[str, Callable[[VoterAccount, List[VoteRecord], List[str]], bool]] = {
    "first_vote": lambda account, votes, ids: account.vote_count >= 1,
    "streak_3": lambda account, votes, ids: account.vote_count >= 3,
    "influence_500": lambda account, votes, ids: account.influence >= 500,
    "collector": _voted_on_everyone,
}


def get_achievement(achievement_id: str) -> Optional[Achievement]:
    for a in ACHIEVEMENTS:
        if a.id == achievement_id:
            return a
    return None


def qualifies(achievement_id: str, account: VoterAccount,
              votes: Iterable[VoteRecord] = (), competitor_ids: Iterable[str] = ()) -> bool:
    rule = RULES.get(achievement_id)
    if rule is None:
        return False
    return rule(account, list(votes), list(competitor_ids))


def evaluate(account: VoterAccount, votes: Iterable[VoteRecord] = (),
             competitor_ids: Iterable[str] = ()) -> List[Achievement]:
    """
    Achievements the account qualifies for but has not unlocked yet.

    votes: the voter's vote records (needed by "collector").
    competitor_ids: ids of the competitors currently in the arena.
    """
    votes = list(votes)
    competitor_ids = list(competitor_ids)
    unlocked = set(account.unlocked_achievement_ids)
    return [a for a in ACHIEVEMENTS
            if a.id not in unlocked and qualifies(a.id, account, votes, competitor_ids)]


def no_longer_qualifying(account: VoterAccount, votes: Iterable[VoteRecord] = (),
                         competitor_ids: Iterable[str] = ()) -> List[str]:
    """Unlocked ids whose rule fails now, e.g. after an undo."""
    votes = list(votes)
    competitor_ids = list(competitor_ids)
    return [aid for aid in account.unlocked_achievement_ids
            if aid in RULES and not qualifies(aid, account, votes, competitor_ids)]


def total_points(account: VoterAccount) -> int:
    return sum(a.points for a in ACHIEVEMENTS if a.id in account.unlocked_achievement_ids)
