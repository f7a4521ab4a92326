"""
Session Store - bearer session issuance, validation and revocation

Two interchangeable backends behind SessionStore:
- FileSessionStore: in-process registry, persisted to a JSON file by a
  debounced flush task (bursts of issue/revoke produce one write)
- MongoSessionStore: centralized sessions collection, expiry enforced
  on every read

A session is valid while now - issued_at < max_age. Expired sessions are
deleted by the read that discovers them; sweep_expired() exists only for
storage hygiene.
"""

import asyncio
import json
import logging
import secrets
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, Optional, Set

from pymongo.errors import PyMongoError

from .config import SESSION_POLICY
from .errors import TransientBackendError
from .models import Session

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_token(nbytes: int = SESSION_POLICY["token_bytes"]) -> str:
    """Fixed-width random hex token."""
    return secrets.token_hex(nbytes)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SessionStore(ABC):
    """Contract shared by both session backends."""

    def __init__(self, max_age: Optional[timedelta] = None, now_fn: Callable[[], datetime] = utcnow):
        self.max_age = max_age or timedelta(hours=SESSION_POLICY["max_age_hours"])
        self.now_fn = now_fn

    def _is_expired(self, session: Session, now: datetime) -> bool:
        return now - as_utc(session.issued_at) >= self.max_age

    @abstractmethod
    async def load(self) -> None:
        """Initialize from durable storage. Must never raise."""

    @abstractmethod
    async def issue(self, account_id: str, username: str, display_name: str) -> str:
        ...

    @abstractmethod
    async def validate(self, token: Optional[str]) -> Optional[Session]:
        """Return the session, or None if unknown or expired."""

    @abstractmethod
    async def revoke(self, token: str) -> None:
        ...

    @abstractmethod
    async def revoke_account(self, account_id: str) -> int:
        """Revoke every session belonging to an account."""

    @abstractmethod
    async def sweep_expired(self) -> int:
        ...

    async def close(self) -> None:
        pass


class FileSessionStore(SessionStore):
    """
    In-process session registry with debounced persistence.

    In-memory state is authoritative and always current. Every mutation
    (re)arms a single flush task; only the state at the moment the task
    fires is written, so the last write for a token wins.
    """

    def __init__(
        self,
        path: str,
        debounce_seconds: float = SESSION_POLICY["flush_debounce_seconds"],
        max_age: Optional[timedelta] = None,
        now_fn: Callable[[], datetime] = utcnow
    ):
        super().__init__(max_age, now_fn)
        self.path = Path(path)
        self.debounce_seconds = debounce_seconds
        self._sessions: Dict[str, Session] = {}
        self._flush_task: Optional[asyncio.Task] = None
        self._committed_flushes: Set[asyncio.Task] = set()
        self._write_lock = asyncio.Lock()

    async def load(self) -> None:
        try:
            raw = await asyncio.to_thread(self._read_snapshot)
        except FileNotFoundError:
            logger.info("No persisted sessions found, starting empty")
            return
        except (OSError, ValueError) as e:
            logger.warning(f"Session data unreadable, starting empty: {e}")
            return

        if not isinstance(raw, dict):
            logger.warning("Session data has unexpected shape, starting empty")
            return

        now = self.now_fn()
        loaded = 0
        for token, doc in raw.items():
            try:
                session = Session.model_validate(doc)
            except ValueError:
                continue
            if session.token != token or self._is_expired(session, now):
                continue
            self._sessions[token] = session
            loaded += 1

        logger.info(f"Loaded {loaded} active sessions")

    async def issue(self, account_id: str, username: str, display_name: str) -> str:
        token = generate_token()
        self._sessions[token] = Session(
            token=token,
            account_id=account_id,
            username=username,
            display_name=display_name,
            issued_at=self.now_fn()
        )
        self._schedule_flush()
        return token

    async def validate(self, token: Optional[str]) -> Optional[Session]:
        if not token:
            return None
        session = self._sessions.get(token)
        if session is None:
            return None
        if self._is_expired(session, self.now_fn()):
            del self._sessions[token]
            self._schedule_flush()
            return None
        return session

    async def revoke(self, token: str) -> None:
        if self._sessions.pop(token, None) is not None:
            self._schedule_flush()

    async def revoke_account(self, account_id: str) -> int:
        tokens = [t for t, s in self._sessions.items() if s.account_id == account_id]
        for token in tokens:
            del self._sessions[token]
        if tokens:
            self._schedule_flush()
        return len(tokens)

    async def sweep_expired(self) -> int:
        now = self.now_fn()
        expired = [t for t, s in self._sessions.items() if self._is_expired(s, now)]
        for token in expired:
            del self._sessions[token]
        if expired:
            self._schedule_flush()
        return len(expired)

    def active_count(self) -> int:
        return len(self._sessions)

    # ---------- persistence ----------

    def _schedule_flush(self):
        if self._flush_task is not None and not self._flush_task.done():
            self._flush_task.cancel()
        self._flush_task = asyncio.create_task(self._delayed_flush())

    async def _delayed_flush(self):
        await asyncio.sleep(self.debounce_seconds)
        # Past this point the flush is committed: it is never cancelled, and
        # close() waits for it
        task = asyncio.current_task()
        self._flush_task = None
        self._committed_flushes.add(task)
        try:
            await self.flush()
        finally:
            self._committed_flushes.discard(task)

    async def flush(self):
        """Write the current registry to disk."""
        snapshot = {t: s.model_dump(mode="json") for t, s in self._sessions.items()}
        async with self._write_lock:
            try:
                await asyncio.to_thread(self._write_snapshot, snapshot)
            except OSError as e:
                logger.error(f"Failed to persist sessions: {e}")

    def _read_snapshot(self):
        with open(self.path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _write_snapshot(self, snapshot: dict):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(snapshot, f)
        tmp.replace(self.path)

    async def close(self) -> None:
        """Stop the pending flush task and write the final state."""
        task = self._flush_task
        self._flush_task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._committed_flushes:
            await asyncio.gather(*self._committed_flushes)
        await self.flush()
        logger.info("Session store closed")


class MongoSessionStore(SessionStore):
    """Sessions collection with server-side expiry filtering on each read."""

    def __init__(self, db, max_age: Optional[timedelta] = None, now_fn: Callable[[], datetime] = utcnow):
        super().__init__(max_age, now_fn)
        self.db = db

    async def load(self) -> None:
        try:
            result = await self.db.sessions.delete_many({"expires_at": {"$lte": self.now_fn()}})
            logger.info(f"Session store ready, removed {result.deleted_count} expired sessions")
        except Exception as e:
            logger.warning(f"Could not inspect persisted sessions, continuing: {e}")

    async def issue(self, account_id: str, username: str, display_name: str) -> str:
        token = generate_token()
        now = self.now_fn()
        try:
            await self.db.sessions.insert_one({
                "token": token,
                "account_id": account_id,
                "username": username,
                "display_name": display_name,
                "issued_at": now,
                "expires_at": now + self.max_age
            })
        except PyMongoError as e:
            raise TransientBackendError(f"Session write failed: {e}", operation="issue_session")
        return token

    async def validate(self, token: Optional[str]) -> Optional[Session]:
        if not token:
            return None
        now = self.now_fn()
        try:
            doc = await self.db.sessions.find_one(
                {"token": token, "expires_at": {"$gt": now}},
                {"_id": 0, "expires_at": 0}
            )
            if doc is None:
                await self.db.sessions.delete_one({"token": token, "expires_at": {"$lte": now}})
                return None
        except PyMongoError as e:
            raise TransientBackendError(f"Session read failed: {e}", operation="validate_session")

        session = Session.model_validate(doc)
        if self._is_expired(session, now):
            await self.revoke(token)
            return None
        return session

    async def revoke(self, token: str) -> None:
        try:
            await self.db.sessions.delete_one({"token": token})
        except PyMongoError as e:
            raise TransientBackendError(f"Session delete failed: {e}", operation="revoke_session")

    async def revoke_account(self, account_id: str) -> int:
        try:
            result = await self.db.sessions.delete_many({"account_id": account_id})
        except PyMongoError as e:
            raise TransientBackendError(f"Session delete failed: {e}", operation="revoke_account_sessions")
        return result.deleted_count

    async def sweep_expired(self) -> int:
        try:
            result = await self.db.sessions.delete_many({"expires_at": {"$lte": self.now_fn()}})
        except PyMongoError as e:
            logger.error(f"Session sweep failed: {e}")
            return 0
        return result.deleted_count
