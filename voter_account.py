"""
Voter accounts
Cumulative influence, vote count and achievement unlocks for each voter.
One "local" voter exists per store (the device's own session); other voter
ids get an account the first time they vote or edit their profile.
"""

import copy
import secrets
from typing import List, Optional

import achievements
from models import Achievement, VoteRecord, VoterAccount

STARTING_INFLUENCE = 100
DEFAULT_DISPLAY_NAME = "Challenger"
AVATARS = ['⚡', '🔥', '🛡️', '👑', '🌌', '🚀', '🔮']
EDITABLE_FIELDS = ("display_name", "avatar_ref")


def new_voter_account(voter_id: Optional[str] = None) -> VoterAccount:
    return VoterAccount(
        id=voter_id or f"session_{secrets.token_hex(5)}",
        display_name=DEFAULT_DISPLAY_NAME,
        avatar_ref=AVATARS[0],
        influence=STARTING_INFLUENCE,
    )


def account_in(state, voter_id: str) -> VoterAccount:
    """The voter's account inside a transaction, created on first use."""
    account = state.voters.get(voter_id)
    if account is None:
        account = new_voter_account(voter_id)
        state.voters[voter_id] = account
    return account


def credit_vote(account: VoterAccount, vote: VoteRecord):
    account.vote_count += 1
    account.influence += vote.influence_gained
    account.last_vote_at = vote.timestamp
    account.vote_history.append(vote.id)


def debit_vote(state, account: VoterAccount, vote: VoteRecord) -> List[str]:
    """
    Reverse credit_vote for a vote already removed from state.votes.
    Returns the achievement ids revoked because only that vote earned them.
    """
    before = copy.deepcopy(account)
    competitor_ids = [c.id for c in state.competitors]
    remaining = [v for v in state.votes if v.voter_id == account.id]

    account.vote_count = max(0, account.vote_count - 1)
    account.influence = max(0, account.influence - vote.influence_gained)
    if vote.id in account.vote_history:
        account.vote_history.remove(vote.id)
    account.last_vote_at = max((v.timestamp for v in remaining), default=None)

    revoked = [
        aid for aid in achievements.no_longer_qualifying(account, remaining, competitor_ids)
        if achievements.qualifies(aid, before, remaining + [vote], competitor_ids)
    ]
    account.unlocked_achievement_ids = [
        aid for aid in account.unlocked_achievement_ids if aid not in revoked
    ]
    return revoked


class VoterAccounts:

    def __init__(self, store):
        self.store = store

    def local_voter_id(self) -> str:
        with self.store.read() as state:
            return state.local_voter_id

    def get(self, voter_id: Optional[str] = None) -> VoterAccount:
        """
        The account for voter_id (the local voter when omitted). Voters who
        have never voted get a default account, which is not saved.
        """
        with self.store.read() as state:
            voter_id = voter_id or state.local_voter_id
            account = state.voters.get(voter_id)
            return account if account is not None else new_voter_account(voter_id)

    def update(self, voter_id: Optional[str] = None, **fields) -> VoterAccount:
        """Edit profile fields. Only display_name and avatar_ref may change."""
        unknown = set(fields) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update voter fields: {', '.join(sorted(unknown))}")
        for name, value in fields.items():
            if not isinstance(value, str) or not value.strip():
                raise ValueError(f"{name} must be a non-empty string")

        with self.store.transaction() as state:
            account = account_in(state, voter_id or state.local_voter_id)
            for name, value in fields.items():
                setattr(account, name, value.strip())
            return account

    def claim_achievements(self, voter_id: Optional[str] = None) -> List[Achievement]:
        """Evaluate the voter and persist whatever is newly unlocked."""
        with self.store.transaction() as state:
            voter_id = voter_id or state.local_voter_id
            account = state.voters.get(voter_id)
            if account is None:
                state.rollback()
                return []
            votes = [v for v in state.votes if v.voter_id == voter_id]
            unlocked = achievements.evaluate(account, votes, [c.id for c in state.competitors])
            if not unlocked:
                state.rollback()
                return []
            account.unlocked_achievement_ids.extend(a.id for a in unlocked)
            return unlocked
