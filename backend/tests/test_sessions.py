"""
Session Store Tests

Tests:
1. Issue / validate / revoke against the in-process store
2. Expiry at exactly 24 hours, sweep of expired sessions
3. Debounced flush: coalescing, drain on close, reload after restart
4. Corrupt persisted data is tolerated at startup
5. Mongo-backed store with a mocked collection
"""

import asyncio
import json
import sys
import threading
from datetime import timedelta
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from account_trust.sessions import FileSessionStore, MongoSessionStore


@pytest.fixture
def session_path(tmp_path):
    return tmp_path / "sessions.json"


@pytest.fixture
def store(session_path, clock):
    return FileSessionStore(str(session_path), debounce_seconds=0.01,
                            max_age=timedelta(hours=24), now_fn=clock)


class TestFileSessionStore:

    @pytest.mark.asyncio
    async def test_issue_and_validate(self, store):
        token = await store.issue("acct-1", "player_one", "Player One")

        assert len(token) == 64
        session = await store.validate(token)
        assert session.account_id == "acct-1"
        assert session.username == "player_one"
        await store.close()

    @pytest.mark.asyncio
    async def test_unknown_and_missing_tokens(self, store):
        assert await store.validate("nope") is None
        assert await store.validate(None) is None
        assert await store.validate("") is None

    @pytest.mark.asyncio
    async def test_expires_at_24_hours(self, store, clock):
        token = await store.issue("acct-1", "player_one", "Player One")

        clock.advance(hours=23, minutes=59)
        assert await store.validate(token) is not None

        clock.advance(minutes=1)
        assert await store.validate(token) is None
        assert store.active_count() == 0
        await store.close()

    @pytest.mark.asyncio
    async def test_revoke(self, store):
        token = await store.issue("acct-1", "player_one", "Player One")
        await store.revoke(token)
        assert await store.validate(token) is None
        await store.close()

    @pytest.mark.asyncio
    async def test_revoke_account_removes_every_session(self, store):
        first = await store.issue("acct-1", "player_one", "Player One")
        second = await store.issue("acct-1", "player_one", "Player One")
        other = await store.issue("acct-2", "player_two", "Player Two")

        assert await store.revoke_account("acct-1") == 2
        assert await store.validate(first) is None
        assert await store.validate(second) is None
        assert await store.validate(other) is not None
        await store.close()

    @pytest.mark.asyncio
    async def test_sweep_expired(self, store, clock):
        await store.issue("acct-1", "player_one", "Player One")
        clock.advance(hours=12)
        fresh = await store.issue("acct-2", "player_two", "Player Two")
        clock.advance(hours=13)

        assert await store.sweep_expired() == 1
        assert store.active_count() == 1
        assert await store.validate(fresh) is not None
        await store.close()

    @pytest.mark.asyncio
    async def test_mutations_are_coalesced(self, store, monkeypatch):
        writes = []
        monkeypatch.setattr(store, "_write_snapshot", lambda snapshot: writes.append(dict(snapshot)))

        for i in range(5):
            await store.issue(f"acct-{i}", f"player_{i}", "Player")

        await asyncio.sleep(0.2)
        assert len(writes) == 1
        assert len(writes[0]) == 5
        await store.close()

    @pytest.mark.asyncio
    async def test_close_drains_pending_flush(self, store, session_path, clock):
        token = await store.issue("acct-1", "player_one", "Player One")
        await store.close()

        saved = json.loads(session_path.read_text())
        assert token in saved

        restarted = FileSessionStore(str(session_path), max_age=timedelta(hours=24), now_fn=clock)
        await restarted.load()
        assert (await restarted.validate(token)).account_id == "acct-1"

    @pytest.mark.asyncio
    async def test_close_waits_for_flush_in_progress(self, store, monkeypatch):
        release = threading.Event()
        writes = []

        def slow_write(snapshot):
            release.wait(timeout=2)
            writes.append(dict(snapshot))

        monkeypatch.setattr(store, "_write_snapshot", slow_write)
        token = await store.issue("acct-1", "player_one", "Player One")

        await asyncio.sleep(0.05)
        assert len(store._committed_flushes) == 1
        in_flight = next(iter(store._committed_flushes))

        closing = asyncio.create_task(store.close())
        await asyncio.sleep(0.05)
        assert not closing.done()

        release.set()
        await closing

        assert in_flight.done()
        assert not store._committed_flushes
        assert len(writes) == 2
        assert token in writes[-1]

    @pytest.mark.asyncio
    async def test_load_skips_expired_sessions(self, store, session_path, clock):
        token = await store.issue("acct-1", "player_one", "Player One")
        await store.close()

        clock.advance(hours=25)
        restarted = FileSessionStore(str(session_path), max_age=timedelta(hours=24), now_fn=clock)
        await restarted.load()
        assert restarted.active_count() == 0
        assert await restarted.validate(token) is None

    @pytest.mark.asyncio
    async def test_corrupt_file_starts_empty(self, session_path, clock):
        session_path.write_text("{not json")
        store = FileSessionStore(str(session_path), now_fn=clock)

        await store.load()
        assert store.active_count() == 0

    @pytest.mark.asyncio
    async def test_unexpected_shape_starts_empty(self, session_path, clock):
        session_path.write_text(json.dumps(["a", "b"]))
        store = FileSessionStore(str(session_path), now_fn=clock)

        await store.load()
        assert store.active_count() == 0

    @pytest.mark.asyncio
    async def test_missing_file_starts_empty(self, session_path, clock):
        store = FileSessionStore(str(session_path), now_fn=clock)
        await store.load()
        assert store.active_count() == 0


class TestMongoSessionStore:

    @pytest.fixture
    def db(self):
        db = MagicMock()
        db.sessions.insert_one = AsyncMock()
        db.sessions.find_one = AsyncMock(return_value=None)
        db.sessions.delete_one = AsyncMock()
        db.sessions.delete_many = AsyncMock(return_value=MagicMock(deleted_count=3))
        return db

    @pytest.mark.asyncio
    async def test_issue_stores_expiry(self, db, clock):
        store = MongoSessionStore(db, max_age=timedelta(hours=24), now_fn=clock)

        token = await store.issue("acct-1", "player_one", "Player One")

        doc = db.sessions.insert_one.call_args[0][0]
        assert doc["token"] == token
        assert doc["expires_at"] == clock() + timedelta(hours=24)

    @pytest.mark.asyncio
    async def test_validate_filters_on_expiry(self, db, clock):
        db.sessions.find_one.return_value = {
            "token": "abc",
            "account_id": "acct-1",
            "username": "player_one",
            "display_name": "Player One",
            "issued_at": clock(),
        }
        store = MongoSessionStore(db, max_age=timedelta(hours=24), now_fn=clock)

        session = await store.validate("abc")

        assert session.account_id == "acct-1"
        query = db.sessions.find_one.call_args[0][0]
        assert query == {"token": "abc", "expires_at": {"$gt": clock()}}

    @pytest.mark.asyncio
    async def test_missing_session_cleans_up_expired_doc(self, db, clock):
        store = MongoSessionStore(db, now_fn=clock)

        assert await store.validate("abc") is None
        db.sessions.delete_one.assert_awaited_once_with({"token": "abc", "expires_at": {"$lte": clock()}})

    @pytest.mark.asyncio
    async def test_sweep(self, db, clock):
        store = MongoSessionStore(db, now_fn=clock)
        assert await store.sweep_expired() == 3

    @pytest.mark.asyncio
    async def test_load_never_raises(self, db, clock):
        db.sessions.delete_many.side_effect = RuntimeError("connection refused")
        store = MongoSessionStore(db, now_fn=clock)
        await store.load()
