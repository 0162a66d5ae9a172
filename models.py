"""
Data model for the Portrait Clash arena: competitors, matchups, votes,
voter accounts, achievements, plus the result/error types the engine hands
back to callers.

Every model round-trips through plain JSON dicts (to_dict / from_dict) so the
store can keep it in a JSON blob.
"""

import secrets
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from elo import Tier, tier_for_rating


def now_ms() -> int:
    """Wall clock in epoch milliseconds."""
    return int(time.time() * 1000)


def new_id(nbytes: int = 6) -> str:
    return secrets.token_urlsafe(nbytes)


class Rejection(str, Enum):
    NOT_FOUND = "not_found"
    ALREADY_VOTED = "already_voted"
    INSUFFICIENT_COMPETITORS = "insufficient_competitors"
    INVALID_PAIRING = "invalid_pairing"
    INVALID_WINNER = "invalid_winner"


@dataclass
class Result:
    """Outcome of an engine operation whose failure is an expected case."""
    ok: bool
    value: Any = None
    error: Optional[Rejection] = None
    message: str = ""

    @classmethod
    def success(cls, value) -> "Result":
        return cls(ok=True, value=value)

    @classmethod
    def rejected(cls, error: Rejection, message: str = "") -> "Result":
        return cls(ok=False, error=error, message=message or error.value.replace("_", " "))


class StorageError(Exception):
    """The store could not be read, written or locked."""


class CorruptDataError(StorageError):
    """A persisted blob exists but cannot be parsed."""


class SchemaVersionError(StorageError):
    """A persisted blob was written by a newer schema than this code knows."""


@dataclass
class MatchRecord:
    wins: int = 0
    losses: int = 0
    total_matches: int = 0


@dataclass
class Competitor:
    id: str
    name: str
    description: str
    image_ref: str
    rating: int
    streak: int = 0
    record: MatchRecord = field(default_factory=MatchRecord)
    rating_history: List[Dict[str, int]] = field(default_factory=list)

    @property
    def tier(self) -> Tier:
        # Derived on every read so it can never drift from the rating
        return tier_for_rating(self.rating)

    @property
    def win_rate(self) -> float:
        if self.record.total_matches == 0:
            return 0.0
        return round(self.record.wins / self.record.total_matches * 100, 1)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["tier"] = self.tier.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Competitor":
        record = data.get("record") or {}
        return cls(
            id=data["id"],
            name=data["name"],
            description=data.get("description", ""),
            image_ref=data.get("image_ref", ""),
            rating=int(data["rating"]),
            streak=int(data.get("streak", 0)),
            record=MatchRecord(
                wins=int(record.get("wins", 0)),
                losses=int(record.get("losses", 0)),
                total_matches=int(record.get("total_matches", 0)),
            ),
            rating_history=[
                {"timestamp": int(p["timestamp"]), "rating": int(p["rating"])}
                for p in data.get("rating_history", [])
            ],
        )


@dataclass(frozen=True)
class Matchup:
    id: str
    competitor_a_id: str
    competitor_b_id: str
    created_at: int

    def other(self, competitor_id: str) -> Optional[str]:
        """The opponent of competitor_id in this matchup, None if not a participant."""
        if competitor_id == self.competitor_a_id:
            return self.competitor_b_id
        if competitor_id == self.competitor_b_id:
            return self.competitor_a_id
        return None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Matchup":
        return cls(
            id=data["id"],
            competitor_a_id=data["competitor_a_id"],
            competitor_b_id=data["competitor_b_id"],
            created_at=int(data["created_at"]),
        )


@dataclass(frozen=True)
class VoteRecord:
    id: str
    matchup_id: str
    winner_id: str
    loser_id: str
    winner_rating_before: int
    winner_rating_after: int
    loser_rating_before: int
    loser_rating_after: int
    timestamp: int
    voter_id: str
    influence_gained: int
    undo_expires_at: int

    def is_undoable(self, now: int) -> bool:
        return self.timestamp <= now < self.undo_expires_at

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VoteRecord":
        return cls(**{k: data[k] for k in cls.__dataclass_fields__})


@dataclass
class VoterAccount:
    id: str
    display_name: str
    avatar_ref: str
    influence: int
    vote_count: int = 0
    last_vote_at: Optional[int] = None
    unlocked_achievement_ids: List[str] = field(default_factory=list)
    vote_history: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VoterAccount":
        return cls(
            id=data["id"],
            display_name=data.get("display_name", ""),
            avatar_ref=data.get("avatar_ref", ""),
            influence=int(data.get("influence", 0)),
            vote_count=int(data.get("vote_count", 0)),
            last_vote_at=data.get("last_vote_at"),
            unlocked_achievement_ids=list(data.get("unlocked_achievement_ids", [])),
            vote_history=list(data.get("vote_history", [])),
        )


@dataclass(frozen=True)
class Achievement:
    id: str
    title: str
    description: str
    rarity: str
    points: int
    icon: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
