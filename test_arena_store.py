import json
import os
import subprocess
import sys

import pytest

import arena_store
from arena import open_arena
from arena_store import (
    SCHEMA_VERSION,
    STARTER_COMPETITORS,
    ArenaStore,
    JsonFileBackend,
    MemoryBackend,
)
from models import CorruptDataError, SchemaVersionError, StorageError


@pytest.fixture
def data_dir(tmp_path):
    return tmp_path / "arena_data"


def write_blob(data_dir, key, blob):
    data_dir.mkdir(parents=True, exist_ok=True)
    (data_dir / f"{key}.json").write_text(json.dumps(blob), encoding="utf-8")

# ============================================================================
# FILE PERSISTENCE
# ============================================================================

def test_file_store_survives_reopen(data_dir, clock):
    arena = open_arena(data_dir, seed=False, clock=clock)
    c = arena.create_competitor("Ada Lovelace", "Mathematician", "img/ada.png")
    local_id = arena.voters.local_voter_id()

    reopened = open_arena(data_dir, seed=False, clock=clock)
    assert reopened.get_competitor(c.id) == c
    assert reopened.voters.local_voter_id() == local_id

    world = json.loads((data_dir / "world.json").read_text())
    voters = json.loads((data_dir / "voter.json").read_text())
    assert world["schema_version"] == SCHEMA_VERSION
    assert voters["schema_version"] == SCHEMA_VERSION
    assert not (data_dir / "world.json.tmp").exists()


def test_fresh_store_is_seeded(clock):
    arena = open_arena(seed=True, clock=clock)
    names = [c.name for c in arena.list_competitors()]
    assert names == [name for _, name, _, _ in STARTER_COMPETITORS]
    assert all(c.rating == 1200 for c in arena.list_competitors())


def test_corrupt_blob_raises(data_dir, clock):
    data_dir.mkdir(parents=True)
    (data_dir / "world.json").write_text("{not json", encoding="utf-8")
    arena = open_arena(data_dir, seed=False, clock=clock)
    with pytest.raises(CorruptDataError):
        arena.list_competitors()


def test_malformed_record_raises(data_dir, clock):
    write_blob(data_dir, "world", {"schema_version": SCHEMA_VERSION, "revision": 1,
                                   "competitors": [{"name": "no id"}]})
    with pytest.raises(CorruptDataError):
        open_arena(data_dir, seed=False, clock=clock).list_competitors()


def test_newer_schema_refuses_to_load(data_dir, clock):
    write_blob(data_dir, "world", {"schema_version": SCHEMA_VERSION + 1, "revision": 3})
    with pytest.raises(SchemaVersionError):
        open_arena(data_dir, seed=False, clock=clock).list_competitors()


def test_unknown_older_schema_is_backed_up_and_reset(data_dir, clock):
    write_blob(data_dir, "world", {"schema_version": 0, "whatever": True})
    arena = open_arena(data_dir, seed=False, clock=clock)
    assert arena.list_competitors() == []
    backup = json.loads((data_dir / "world.json.bak").read_text())
    assert backup == {"schema_version": 0, "whatever": True}
    assert json.loads((data_dir / "world.json").read_text())["schema_version"] == SCHEMA_VERSION


def test_legacy_browser_data_is_migrated(data_dir, clock):
    write_blob(data_dir, "world", {
        "personalities": [
            {"id": "1", "name": "Steve Jobs", "description": "Apple", "imageUrl": "img/1",
             "stats": {"wins": 2, "losses": 1}},
            {"id": "2", "name": "Elon Musk", "description": "Tesla", "imageUrl": "img/2"},
        ],
        "clashes": [{"id": "c1", "personalityAId": "1", "personalityBId": "2",
                     "timestamp": 1000}],
        "votes": [{"id": "v1", "clashId": "c1", "winnerId": "1", "loserId": "2",
                   "timestamp": 2000, "sessionId": "session_old", "influenceGained": 10}],
    })
    arena = open_arena(data_dir, seed=False, clock=clock)

    steve = arena.get_competitor("1")
    assert steve.image_ref == "img/1"
    assert (steve.record.wins, steve.record.losses, steve.record.total_matches) == (2, 1, 3)
    assert arena.get_matchup("c1").competitor_b_id == "2"
    vote = arena.ledger.get("v1")
    assert vote.voter_id == "session_old"
    assert arena.undo_vote("v1") is False
    assert arena.find_vote("c1", "session_old") == vote

# ============================================================================
# LOCKING
# ============================================================================

HOLD_LOCK_SCRIPT = """
import fcntl, os, sys, time
fd = os.open(sys.argv[1], os.O_RDWR | os.O_CREAT)
fcntl.flock(fd, fcntl.LOCK_EX)
print("locked", flush=True)
time.sleep(60)
"""


def test_lock_held_by_another_backend_times_out(data_dir):
    holder = JsonFileBackend(data_dir)
    waiter = JsonFileBackend(data_dir, lock_timeout=0.05)
    with holder.locked():
        with pytest.raises(StorageError, match=str(os.getpid())):
            with waiter.locked():
                pass
    with waiter.locked():
        assert waiter.lock_status()["pid"] == os.getpid()


def test_lock_is_freed_when_holder_process_dies(data_dir):
    data_dir.mkdir(parents=True)
    backend = JsonFileBackend(data_dir, lock_timeout=0.05)
    proc = subprocess.Popen([sys.executable, "-c", HOLD_LOCK_SCRIPT, str(backend.lock_path)],
                            stdout=subprocess.PIPE, text=True)
    try:
        assert proc.stdout.readline().strip() == "locked"
        with pytest.raises(StorageError):
            with backend.locked():
                pass
    finally:
        proc.kill()
        proc.wait(timeout=10)
        proc.stdout.close()

    with backend.locked():
        pass


def test_leftover_lock_file_from_dead_process_admits_one_holder(data_dir):
    data_dir.mkdir(parents=True)
    first = JsonFileBackend(data_dir)
    second = JsonFileBackend(data_dir, lock_timeout=0.05)
    first.lock_path.write_text(json.dumps({"pid": 999999, "started": "2020-01-01T00:00:00"}))

    with first.locked():
        assert first.lock_status()["pid"] == os.getpid()
        with pytest.raises(StorageError):
            with second.locked():
                pass


@pytest.mark.parametrize("contents", ["", '{"pid": ', "[1, 2]"])
def test_unreadable_lock_file_does_not_block(data_dir, contents):
    data_dir.mkdir(parents=True)
    backend = JsonFileBackend(data_dir, lock_timeout=0.2)
    backend.lock_path.write_text(contents)
    os.utime(backend.lock_path, (0, 0))
    assert backend.lock_status() is None

    with backend.locked():
        assert backend.lock_status()["pid"] == os.getpid()


def test_pid_alive(monkeypatch):
    assert arena_store._pid_alive(os.getpid()) is True
    assert arena_store._pid_alive(0) is False
    assert arena_store._pid_alive("12") is False

    def owned_by_someone_else(pid, sig):
        raise PermissionError(1, "Operation not permitted")

    monkeypatch.setattr(os, "kill", owned_by_someone_else)
    assert arena_store._pid_alive(4242) is True

    def gone(pid, sig):
        raise ProcessLookupError(3, "No such process")

    monkeypatch.setattr(os, "kill", gone)
    assert arena_store._pid_alive(4242) is False

# ============================================================================
# TRANSACTIONS & CHANGE FEED
# ============================================================================

def test_exception_discards_transaction(arena, store):
    arena.create_competitor("Ada", "desc", "img")
    revision = store.current_revision()
    with pytest.raises(RuntimeError):
        with store.transaction() as state:
            state.competitors.clear()
            raise RuntimeError("boom")
    assert store.current_revision() == revision
    assert len(arena.list_competitors()) == 1


def test_rollback_discards_without_notifying(store):
    events = []
    store.on_state_changed(events.append)
    with store.transaction() as state:
        state.competitors.clear()
    assert len(events) == 1

    with store.transaction() as state:
        state.rollback()
    assert len(events) == 1


def test_listeners_get_each_committed_revision(arena, store):
    events = []
    unsubscribe = arena.on_state_changed(events.append)
    arena.create_competitor("Ada", "desc", "img")
    arena.create_competitor("Marie", "desc", "img")
    assert events == sorted(events)
    assert events[-1] == store.current_revision()
    assert len(set(events)) == len(events)

    unsubscribe()
    arena.create_competitor("Grace", "desc", "img")
    assert events[-1] != store.current_revision()


def test_failing_listener_does_not_break_commit(arena, store):
    def broken(revision):
        raise RuntimeError("listener bug")

    store.on_state_changed(broken)
    c = arena.create_competitor("Ada", "desc", "img")
    assert arena.get_competitor(c.id) is not None


def test_nested_transactions_commit_once(store):
    events = []
    store.on_state_changed(events.append)
    with store.transaction() as outer:
        with store.transaction() as inner:
            assert inner is outer
            inner.competitors.clear()
    assert len(events) == 1


def test_external_changes_are_reported(clock):
    backend = MemoryBackend()
    mine = ArenaStore(backend, clock=clock, seed=False)
    theirs = ArenaStore(backend, clock=clock, seed=False)

    events = []
    mine.on_state_changed(events.append)
    assert mine.check_for_external_changes() is False

    with theirs.transaction():
        pass
    assert mine.check_for_external_changes() is True
    assert events == [theirs.current_revision()]
    assert mine.check_for_external_changes() is False


def test_own_commits_are_not_reported_as_external(store):
    with store.transaction():
        pass
    assert store.check_for_external_changes() is False
