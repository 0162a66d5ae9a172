"""
Arena Store
Persists the arena as two JSON blobs: the "world" (competitors, matchups,
votes) and the "voter" book (local voter accounts).

Every mutation runs inside ArenaStore.transaction(): lock, re-read both blobs,
mutate, write both back. Nothing is cached between transactions, so two
processes (or two browser tabs behind one server) sharing a data directory
can never both pass a check against a stale snapshot.
"""

import fcntl
import json
import os
import shutil
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

from competitors import make_competitor
from elo import STARTING_RATING
from models import (
    Competitor,
    CorruptDataError,
    Matchup,
    SchemaVersionError,
    StorageError,
    VoteRecord,
    VoterAccount,
    now_ms,
)
from voter_account import new_voter_account

SCHEMA_VERSION = 1
WORLD_KEY = "world"
VOTER_KEY = "voter"
LOCK_TIMEOUT_SECONDS = 5.0
LOCK_RETRY_SECONDS = 0.01

STARTER_COMPETITORS = [
    ("1", "Steve Jobs",
     "Visionary co-founder of Apple Inc. and pioneer of the personal computer and smartphone eras.",
     "https://images.unsplash.com/photo-1550133730-695473e544be?q=80&w=800&auto=format&fit=crop"),
    ("2", "Elon Musk",
     "Business magnate and engineer, leading Tesla, SpaceX, and the pursuit of a multi-planetary future.",
     "https://images.unsplash.com/photo-1563200742-0f04ca447b97?q=80&w=800&auto=format&fit=crop"),
    ("3", "Marie Curie",
     "Legendary physicist and chemist who conducted pioneering research on radioactivity.",
     "https://images.unsplash.com/photo-1567113463300-102550123354?q=80&w=800&auto=format&fit=crop"),
    ("4", "Albert Einstein",
     "Theoretical physicist who developed the theory of relativity, one of the pillars of modern physics.",
     "https://images.unsplash.com/photo-1544256718-3bcf237f3974?q=80&w=800&auto=format&fit=crop"),
    ("5", "Leonardo da Vinci",
     "Polymath of the High Renaissance who was active as a painter, scientist, and engineer.",
     "https://images.unsplash.com/photo-1579783902614-a3fb3927b6a5?q=80&w=800&auto=format&fit=crop"),
    ("6", "Ada Lovelace",
     "English mathematician and writer, chiefly known for her work on the Analytical Engine.",
     "https://images.unsplash.com/photo-1614850523296-d8c1af93d400?q=80&w=800&auto=format&fit=crop"),
]


# ============================================================================
# BACKENDS
# ============================================================================

class MemoryBackend:
    """Keeps serialized blobs in a dict. One instance per test."""

    def __init__(self):
        self.blobs: Dict[str, str] = {}
        self._lock = threading.Lock()

    def read(self, key: str) -> Optional[str]:
        return self.blobs.get(key)

    def write_many(self, blobs: Dict[str, str]):
        self.blobs.update(blobs)

    def backup(self, key: str):
        if key in self.blobs:
            self.blobs[f"{key}.bak"] = self.blobs[key]

    @contextmanager
    def locked(self):
        if not self._lock.acquire(timeout=LOCK_TIMEOUT_SECONDS):
            raise StorageError("Memory store is busy")
        try:
            yield
        finally:
            self._lock.release()

    def describe(self) -> str:
        return "memory"


def _pid_alive(pid) -> bool:
    if not isinstance(pid, int) or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, but belongs to another user
        return True
    return True


class JsonFileBackend:
    """
    One JSON file per blob inside data_dir, plus a lock file held with
    fcntl.flock for the length of each transaction.

    The kernel drops a flock when its holder exits, so a crashed process
    never leaves the store locked and there is no stale lock to clean up.
    The lock file is never deleted; its contents only record the last holder.

    Writes go to a temp file first and are swapped in with os.replace, so a
    reader never sees a half-written blob.
    """

    def __init__(self, data_dir, lock_timeout: float = LOCK_TIMEOUT_SECONDS):
        self.data_dir = Path(data_dir)
        self.lock_timeout = lock_timeout
        self.lock_path = self.data_dir / ".arena.lock"

    def path(self, key: str) -> Path:
        return self.data_dir / f"{key}.json"

    def read(self, key: str) -> Optional[str]:
        path = self.path(key)
        if not path.exists():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except OSError as e:
            raise StorageError(f"Cannot read {path}: {e}") from e

    def write_many(self, blobs: Dict[str, str]):
        self.data_dir.mkdir(parents=True, exist_ok=True)
        staged = []
        try:
            for key, text in blobs.items():
                tmp = self.data_dir / f"{key}.json.tmp"
                tmp.write_text(text, encoding="utf-8")
                staged.append((tmp, self.path(key)))
            for tmp, final in staged:
                os.replace(tmp, final)
        except OSError as e:
            raise StorageError(f"Cannot write arena data in {self.data_dir}: {e}") from e

    def backup(self, key: str):
        path = self.path(key)
        if path.exists():
            shutil.copyfile(path, path.with_name(path.name + ".bak"))

    def _record_holder(self, fd: int):
        info = json.dumps({
            "pid": os.getpid(),
            "thread": threading.get_ident(),
            "started": datetime.now().isoformat(timespec="seconds"),
        }).encode("utf-8")
        os.ftruncate(fd, 0)
        os.pwrite(fd, info, 0)

    def lock_status(self) -> Optional[dict]:
        """Last recorded lock holder, or None if the lock file is missing or unreadable."""
        try:
            info = json.loads(self.lock_path.read_text())
        except (OSError, json.JSONDecodeError):
            return None
        if not isinstance(info, dict):
            return None
        info["alive"] = _pid_alive(info.get("pid"))
        return info

    @contextmanager
    def locked(self):
        self.data_dir.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as e:
            raise StorageError(f"Cannot open arena lock {self.lock_path}: {e}") from e
        try:
            deadline = time.monotonic() + self.lock_timeout
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() >= deadline:
                        holder = self.lock_status() or {}
                        raise StorageError(
                            f"Timed out waiting for arena lock {self.lock_path} "
                            f"(held by PID {holder.get('pid', '?')})")
                    time.sleep(LOCK_RETRY_SECONDS)
            self._record_holder(fd)
            try:
                yield
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def describe(self) -> str:
        return str(self.data_dir)


# ============================================================================
# STATE
# ============================================================================

@dataclass
class ArenaState:
    """Both blobs, decoded. Only valid inside the transaction that loaded it."""
    revision: int
    local_voter_id: str
    competitors: List[Competitor] = field(default_factory=list)
    matchups: List[Matchup] = field(default_factory=list)
    votes: List[VoteRecord] = field(default_factory=list)
    voters: Dict[str, VoterAccount] = field(default_factory=dict)
    # Set when loading had to create, migrate or reset a blob
    upgraded: bool = False
    discarded: bool = False

    def rollback(self):
        """Drop every change made in the enclosing transaction."""
        self.discarded = True

    def competitor(self, competitor_id: str) -> Optional[Competitor]:
        for c in self.competitors:
            if c.id == competitor_id:
                return c
        return None

    def matchup(self, matchup_id: str) -> Optional[Matchup]:
        for m in self.matchups:
            if m.id == matchup_id:
                return m
        return None

    def vote(self, vote_id: str) -> Optional[VoteRecord]:
        for v in self.votes:
            if v.id == vote_id:
                return v
        return None

    def world_blob(self) -> dict:
        return {
            "schema_version": SCHEMA_VERSION,
            "revision": self.revision,
            "competitors": [c.to_dict() for c in self.competitors],
            "matchups": [m.to_dict() for m in self.matchups],
            "votes": [v.to_dict() for v in self.votes],
        }

    def voter_blob(self) -> dict:
        return {
            "schema_version": SCHEMA_VERSION,
            "local_voter_id": self.local_voter_id,
            "accounts": {vid: a.to_dict() for vid, a in self.voters.items()},
        }


def migrate_legacy_world(legacy: dict, now: int) -> dict:
    """
    Convert the unversioned browser format (personalities / clashes / votes,
    win-loss "stats", "sessionId" voters) into the current world blob.

    Legacy votes carry no ratings, so they come across at the starting rating
    and already past their undo window.
    """
    competitors = []
    for p in legacy.get("personalities", []):
        stats = p.get("stats") or {}
        wins = int(stats.get("wins", 0))
        losses = int(stats.get("losses", 0))
        competitors.append({
            "id": str(p["id"]),
            "name": p.get("name", ""),
            "description": p.get("description", ""),
            "image_ref": p.get("imageUrl", ""),
            "rating": STARTING_RATING,
            "streak": 0,
            "record": {"wins": wins, "losses": losses, "total_matches": wins + losses},
            "rating_history": [{"timestamp": now, "rating": STARTING_RATING}],
        })

    matchups = [{
        "id": str(c["id"]),
        "competitor_a_id": str(c["personalityAId"]),
        "competitor_b_id": str(c["personalityBId"]),
        "created_at": int(c.get("timestamp", now)),
    } for c in legacy.get("clashes", [])]

    votes = []
    for v in legacy.get("votes", []):
        ts = int(v.get("timestamp", now))
        votes.append({
            "id": str(v["id"]),
            "matchup_id": str(v["clashId"]),
            "winner_id": str(v["winnerId"]),
            "loser_id": str(v["loserId"]),
            "winner_rating_before": STARTING_RATING,
            "winner_rating_after": STARTING_RATING,
            "loser_rating_before": STARTING_RATING,
            "loser_rating_after": STARTING_RATING,
            "timestamp": ts,
            "voter_id": str(v.get("sessionId", "")),
            "influence_gained": int(v.get("influenceGained", 0)),
            "undo_expires_at": ts,
        })

    return {
        "schema_version": SCHEMA_VERSION,
        "revision": 0,
        "competitors": competitors,
        "matchups": matchups,
        "votes": votes,
    }


# ============================================================================
# STORE
# ============================================================================

class ArenaStore:
    """
    Transactional access to the arena blobs.

    Construct once at startup and hand the same instance to every engine
    component. Listeners registered with on_state_changed() get the new
    revision after each commit.
    """

    def __init__(self, backend=None, clock: Callable[[], int] = now_ms, seed: bool = True):
        self.backend = backend if backend is not None else MemoryBackend()
        self.clock = clock
        self.seed = seed
        self._lock = threading.RLock()
        self._local = threading.local()
        self._listeners: List[Callable[[int], None]] = []
        self._last_revision: Optional[int] = None

    # ------------------------------------------------------------------ load

    def _parse(self, key: str, text: str) -> dict:
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise CorruptDataError(f"Arena {key} blob is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise CorruptDataError(f"Arena {key} blob is not a JSON object")
        return data

    def _initial_world(self) -> dict:
        now = self.clock()
        competitors = []
        if self.seed:
            competitors = [make_competitor(cid, name, desc, image, now).to_dict()
                           for cid, name, desc, image in STARTER_COMPETITORS]
        return {
            "schema_version": SCHEMA_VERSION,
            "revision": 0,
            "competitors": competitors,
            "matchups": [],
            "votes": [],
        }

    def _initial_voters(self) -> dict:
        voter = new_voter_account()
        return {
            "schema_version": SCHEMA_VERSION,
            "local_voter_id": voter.id,
            "accounts": {voter.id: voter.to_dict()},
        }

    def _upgrade_world(self, world: dict) -> dict:
        version = world.get("schema_version")
        if version == SCHEMA_VERSION:
            return world
        if version is None and "personalities" in world:
            print(f"🔄 Migrating legacy arena data in {self.backend.describe()}")
            return migrate_legacy_world(world, self.clock())
        if isinstance(version, int) and version > SCHEMA_VERSION:
            raise SchemaVersionError(
                f"Arena world schema v{version} is newer than supported v{SCHEMA_VERSION}")
        print(f"⚠️  Unknown arena world schema {version!r}, backing up and resetting")
        self.backend.backup(WORLD_KEY)
        return self._initial_world()

    def _upgrade_voters(self, voters: dict) -> dict:
        version = voters.get("schema_version")
        if version == SCHEMA_VERSION:
            return voters
        if isinstance(version, int) and version > SCHEMA_VERSION:
            raise SchemaVersionError(
                f"Arena voter schema v{version} is newer than supported v{SCHEMA_VERSION}")
        print(f"⚠️  Unknown arena voter schema {version!r}, backing up and resetting")
        self.backend.backup(VOTER_KEY)
        return self._initial_voters()

    def _load(self) -> ArenaState:
        upgraded = False
        world_text = self.backend.read(WORLD_KEY)
        if world_text is None:
            world = self._initial_world()
            upgraded = True
        else:
            raw = self._parse(WORLD_KEY, world_text)
            world = self._upgrade_world(raw)
            upgraded = world is not raw

        voter_text = self.backend.read(VOTER_KEY)
        if voter_text is None:
            voters = self._initial_voters()
            upgraded = True
        else:
            raw = self._parse(VOTER_KEY, voter_text)
            voters = self._upgrade_voters(raw)
            upgraded = upgraded or voters is not raw

        try:
            accounts = {vid: VoterAccount.from_dict(a)
                        for vid, a in voters.get("accounts", {}).items()}
            local_id = voters["local_voter_id"]
            if local_id not in accounts:
                raise KeyError(local_id)
            return ArenaState(
                revision=int(world.get("revision", 0)),
                local_voter_id=local_id,
                competitors=[Competitor.from_dict(c) for c in world.get("competitors", [])],
                matchups=[Matchup.from_dict(m) for m in world.get("matchups", [])],
                votes=[VoteRecord.from_dict(v) for v in world.get("votes", [])],
                voters=accounts,
                upgraded=upgraded,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise CorruptDataError(f"Arena data in {self.backend.describe()} is malformed: {e!r}") from e

    def _commit(self, state: ArenaState):
        state.revision += 1
        self.backend.write_many({
            WORLD_KEY: json.dumps(state.world_blob(), ensure_ascii=False),
            VOTER_KEY: json.dumps(state.voter_blob(), ensure_ascii=False),
        })
        state.upgraded = False
        self._last_revision = state.revision

    # ----------------------------------------------------------- transactions

    @contextmanager
    def transaction(self):
        """
        Atomic read-modify-write over both blobs.

        Nested calls on the same thread join the outer transaction; only the
        outermost one commits. If the body raises or calls state.rollback(),
        nothing is written and no listener fires.
        """
        current = getattr(self._local, "state", None)
        if current is not None:
            yield current
            return

        with self._lock:
            with self.backend.locked():
                state = self._load()
                self._local.state = state
                try:
                    yield state
                finally:
                    self._local.state = None
                if state.discarded:
                    return
                self._commit(state)
        self._notify(state.revision)

    @contextmanager
    def read(self):
        """
        Consistent read-only view. Changes made to it are never written,
        except that a freshly created or migrated store is persisted once so
        that every later read sees the same ids.
        """
        current = getattr(self._local, "state", None)
        if current is not None:
            yield current
            return

        committed = False
        with self._lock:
            with self.backend.locked():
                state = self._load()
                if state.upgraded:
                    self._commit(state)
                    committed = True
        if committed:
            self._notify(state.revision)
        yield state

    # ------------------------------------------------------------- listeners

    def on_state_changed(self, listener: Callable[[int], None]) -> Callable[[], None]:
        """Register listener(revision). Returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, revision: int):
        for listener in list(self._listeners):
            try:
                listener(revision)
            except Exception as e:
                print(f"⚠️  State listener {listener!r} failed: {e}")

    def current_revision(self) -> int:
        text = self.backend.read(WORLD_KEY)
        if text is None:
            return 0
        return int(self._parse(WORLD_KEY, text).get("revision", 0))

    def check_for_external_changes(self) -> bool:
        """
        Notify listeners if another process committed since we last looked.
        The first call only records a baseline.
        """
        revision = self.current_revision()
        if self._last_revision is None:
            self._last_revision = revision
            return False
        if revision == self._last_revision:
            return False
        self._last_revision = revision
        self._notify(revision)
        return True
