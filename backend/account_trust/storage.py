"""
Storage Backends

One interface, two implementations:
- FileStorageBackend: JSON documents on local disk (single-process deployments)
- MongoStorageBackend: MongoDB via motor (shared deployments)

The backend is chosen once by create_storage() at startup and injected
into every component that needs it. Callers never branch on the backend.
"""

import asyncio
import json
import logging
import os
import re
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from pymongo.errors import PyMongoError

from .config import EngineSettings
from .errors import NotFoundError, TransientBackendError, ValidationError
from .models import Account, AdminAuditEntry, AdminSecurityState, ConsentRequest

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"^[A-Za-z0-9_-]+$")


class StorageBackend(ABC):
    """Key-value style persistence contract used by the engine."""

    async def initialize(self):
        """Prepare the backend (load caches, create indexes)."""

    async def close(self):
        """Release backend resources."""

    # ---------- accounts ----------

    @abstractmethod
    async def read_account(self, account_id: str) -> Account:
        """Return the account or raise NotFoundError."""

    @abstractmethod
    async def write_account(self, account: Account) -> None:
        ...

    @abstractmethod
    async def find_account_by_username(self, username: str) -> Optional[Account]:
        ...

    @abstractmethod
    async def find_account_by_guardian_token(self, token: str) -> Optional[Account]:
        ...

    @abstractmethod
    async def find_accounts_by_guardian_email(self, email: str) -> List[Account]:
        ...

    @abstractmethod
    async def list_accounts(self, status: Optional[str] = None, limit: int = 100, offset: int = 0) -> List[Account]:
        """Accounts, newest first, optionally filtered by status."""

    # ---------- projects ----------

    @abstractmethod
    async def list_projects(self, account_id: str) -> List[dict]:
        ...

    @abstractmethod
    async def delete_project(self, project_id: str) -> None:
        ...

    # ---------- consent requests ----------

    @abstractmethod
    async def insert_consent_request(self, request: ConsentRequest) -> None:
        ...

    @abstractmethod
    async def read_consent_request(self, token: str) -> Optional[ConsentRequest]:
        ...

    @abstractmethod
    async def resolve_consent_request(
        self,
        token: str,
        status: str,
        responded_at: datetime,
        method: Optional[str] = None
    ) -> bool:
        """
        Move a request out of 'pending'.

        Returns True only for the call that performed the transition.
        Any later call for the same token returns False and changes nothing.
        """

    # ---------- admin ----------

    @abstractmethod
    async def read_admin_security(self) -> AdminSecurityState:
        ...

    @abstractmethod
    async def write_admin_security(self, state: AdminSecurityState) -> None:
        ...

    # ---------- admin audit ----------

    @abstractmethod
    async def append_audit_entry(self, entry: AdminAuditEntry) -> None:
        ...

    @abstractmethod
    async def read_audit_entries(
        self,
        action: Optional[str] = None,
        limit: int = 100,
        offset: int = 0
    ) -> List[AdminAuditEntry]:
        """Entries, newest first, optionally filtered by action."""


def _check_id(value: str, kind: str = "account"):
    if not value or not _SAFE_ID.match(value):
        raise ValidationError(f"invalid_{kind}_id", f"Invalid {kind} ID")


def _read_json(path: Path):
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def _write_json(path: Path, data) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
    os.replace(tmp, path)


def _append_jsonl(path: Path, record: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a", encoding="utf-8") as f:
        f.write(json.dumps(record) + "\n")


def _read_jsonl(path: Path) -> List[dict]:
    if not path.exists():
        return []
    records = []
    with open(path, "r", encoding="utf-8") as f:
        for line_no, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError:
                logger.warning(f"Skipping malformed line {line_no} in {path.name}")
    return records


def _list_json(directory: Path) -> List[dict]:
    if not directory.exists():
        return []
    docs = []
    for path in sorted(directory.glob("*.json")):
        try:
            docs.append(_read_json(path))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Skipping unreadable record {path.name}: {e}")
    return docs


class FileStorageBackend(StorageBackend):
    """
    JSON-on-disk storage.

    Layout under data_dir:
        accounts/<id>.json
        projects/<id>.json
        consent_requests.json   (token -> request)
        admin_2fa.json

    Consent requests are held in memory after initialize() so the
    pending check and the status write happen without a suspension
    point in between.
    """

    def __init__(self, data_dir: str):
        self.root = Path(data_dir)
        self.accounts_dir = self.root / "accounts"
        self.projects_dir = self.root / "projects"
        self.consent_path = self.root / "consent_requests.json"
        self.admin_path = self.root / "admin_2fa.json"
        self.audit_path = self.root / "admin_audit.jsonl"
        self._consents: Dict[str, dict] = {}

    async def initialize(self):
        await asyncio.to_thread(self.accounts_dir.mkdir, parents=True, exist_ok=True)
        await asyncio.to_thread(self.projects_dir.mkdir, parents=True, exist_ok=True)
        try:
            self._consents = await asyncio.to_thread(_read_json, self.consent_path)
        except FileNotFoundError:
            self._consents = {}
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Could not load consent requests, starting empty: {e}")
            self._consents = {}
        logger.info(f"File storage ready at {self.root} ({len(self._consents)} consent requests)")

    async def _io(self, operation: str, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except FileNotFoundError:
            raise
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"File storage {operation} failed: {e}")
            raise TransientBackendError(f"Storage {operation} failed: {e}", operation=operation)

    # ---------- accounts ----------

    async def read_account(self, account_id: str) -> Account:
        _check_id(account_id)
        try:
            doc = await self._io("read_account", _read_json, self.accounts_dir / f"{account_id}.json")
        except FileNotFoundError:
            raise NotFoundError("account_not_found", "Account not found")
        return Account.model_validate(doc)

    async def write_account(self, account: Account) -> None:
        _check_id(account.id)
        await self._io(
            "write_account",
            _write_json,
            self.accounts_dir / f"{account.id}.json",
            account.model_dump(mode="json"),
        )

    async def _all_accounts(self) -> List[Account]:
        docs = await self._io("list_accounts", _list_json, self.accounts_dir)
        return [Account.model_validate(doc) for doc in docs]

    async def find_account_by_username(self, username: str) -> Optional[Account]:
        wanted = username.lower()
        for account in await self._all_accounts():
            if account.username.lower() == wanted:
                return account
        return None

    async def find_account_by_guardian_token(self, token: str) -> Optional[Account]:
        if not token:
            return None
        for account in await self._all_accounts():
            if account.consent.guardian_token == token:
                return account
        return None

    async def find_accounts_by_guardian_email(self, email: str) -> List[Account]:
        wanted = email.strip().lower()
        return [
            account for account in await self._all_accounts()
            if (account.consent.guardian_email or "").lower() == wanted
        ]

    async def list_accounts(self, status=None, limit=100, offset=0) -> List[Account]:
        accounts = [
            account for account in await self._all_accounts()
            if status is None or account.status == status
        ]
        accounts.sort(key=lambda a: a.created_at, reverse=True)
        return accounts[offset:offset + limit]

    # ---------- projects ----------

    async def list_projects(self, account_id: str) -> List[dict]:
        docs = await self._io("list_projects", _list_json, self.projects_dir)
        return [doc for doc in docs if doc.get("account_id") == account_id]

    async def delete_project(self, project_id: str) -> None:
        _check_id(project_id, "project")
        path = self.projects_dir / f"{project_id}.json"
        try:
            await self._io("delete_project", path.unlink)
        except FileNotFoundError:
            raise NotFoundError("project_not_found", "Project not found")

    # ---------- consent requests ----------

    async def _save_consents(self):
        await self._io("write_consents", _write_json, self.consent_path, dict(self._consents))

    async def insert_consent_request(self, request: ConsentRequest) -> None:
        self._consents[request.token] = request.model_dump(mode="json")
        try:
            await self._save_consents()
        except TransientBackendError:
            self._consents.pop(request.token, None)
            raise

    async def read_consent_request(self, token: str) -> Optional[ConsentRequest]:
        doc = self._consents.get(token)
        return ConsentRequest.model_validate(doc) if doc else None

    async def resolve_consent_request(self, token, status, responded_at, method=None) -> bool:
        doc = self._consents.get(token)
        if not doc or doc.get("status") != "pending":
            return False

        # Check-and-set completes before the first await
        updated = dict(doc)
        updated["status"] = status
        updated["responded_at"] = responded_at.isoformat()
        updated["verification_method"] = method
        self._consents[token] = updated

        try:
            await self._save_consents()
        except TransientBackendError:
            # Memory must not claim a resolution the disk never recorded
            self._consents[token] = doc
            raise
        return True

    # ---------- admin ----------

    async def read_admin_security(self) -> AdminSecurityState:
        try:
            doc = await self._io("read_admin_security", _read_json, self.admin_path)
        except FileNotFoundError:
            return AdminSecurityState()
        return AdminSecurityState.model_validate(doc)

    async def write_admin_security(self, state: AdminSecurityState) -> None:
        await self._io("write_admin_security", _write_json, self.admin_path, state.model_dump(mode="json"))

    # ---------- admin audit ----------

    async def append_audit_entry(self, entry: AdminAuditEntry) -> None:
        await self._io("append_audit_entry", _append_jsonl, self.audit_path, entry.model_dump(mode="json"))

    async def read_audit_entries(self, action=None, limit=100, offset=0) -> List[AdminAuditEntry]:
        docs = await self._io("read_audit_entries", _read_jsonl, self.audit_path)
        if action:
            docs = [doc for doc in docs if doc.get("action") == action]
        docs.reverse()
        return [AdminAuditEntry.model_validate(doc) for doc in docs[offset:offset + limit]]


class MongoStorageBackend(StorageBackend):
    """MongoDB storage via motor. Driver errors surface as TransientBackendError."""

    def __init__(self, db, client=None):
        self.db = db
        self.client = client

    async def initialize(self):
        from .db_init import ensure_indexes
        await ensure_indexes(self.db)

    async def close(self):
        if self.client is not None:
            self.client.close()

    # ---------- accounts ----------

    async def read_account(self, account_id: str) -> Account:
        try:
            doc = await self.db.accounts.find_one({"id": account_id}, {"_id": 0})
        except PyMongoError as e:
            raise TransientBackendError(f"Account read failed: {e}", operation="read_account")
        if not doc:
            raise NotFoundError("account_not_found", "Account not found")
        return Account.model_validate(doc)

    async def write_account(self, account: Account) -> None:
        try:
            await self.db.accounts.replace_one(
                {"id": account.id},
                account.model_dump(mode="json"),
                upsert=True
            )
        except PyMongoError as e:
            raise TransientBackendError(f"Account write failed: {e}", operation="write_account")

    async def _find_one_account(self, query: dict, operation: str) -> Optional[Account]:
        try:
            doc = await self.db.accounts.find_one(query, {"_id": 0})
        except PyMongoError as e:
            raise TransientBackendError(f"Account lookup failed: {e}", operation=operation)
        return Account.model_validate(doc) if doc else None

    async def find_account_by_username(self, username: str) -> Optional[Account]:
        query = {"username": {"$regex": f"^{re.escape(username)}$", "$options": "i"}}
        return await self._find_one_account(query, "find_account_by_username")

    async def find_account_by_guardian_token(self, token: str) -> Optional[Account]:
        if not token:
            return None
        return await self._find_one_account({"consent.guardian_token": token}, "find_account_by_guardian_token")

    async def find_accounts_by_guardian_email(self, email: str) -> List[Account]:
        try:
            docs = await self.db.accounts.find(
                {"consent.guardian_email": email.strip().lower()},
                {"_id": 0}
            ).to_list(100)
        except PyMongoError as e:
            raise TransientBackendError(f"Account lookup failed: {e}", operation="find_accounts_by_guardian_email")
        return [Account.model_validate(doc) for doc in docs]

    async def list_accounts(self, status=None, limit=100, offset=0) -> List[Account]:
        query = {"status": status} if status else {}
        try:
            docs = await self.db.accounts.find(query, {"_id": 0}) \
                .sort("created_at", -1).skip(offset).limit(limit).to_list(limit)
        except PyMongoError as e:
            raise TransientBackendError(f"Account list failed: {e}", operation="list_accounts")
        return [Account.model_validate(doc) for doc in docs]

    # ---------- projects ----------

    async def list_projects(self, account_id: str) -> List[dict]:
        try:
            return await self.db.projects.find({"account_id": account_id}, {"_id": 0}).to_list(1000)
        except PyMongoError as e:
            raise TransientBackendError(f"Project list failed: {e}", operation="list_projects")

    async def delete_project(self, project_id: str) -> None:
        try:
            result = await self.db.projects.delete_one({"id": project_id})
        except PyMongoError as e:
            raise TransientBackendError(f"Project delete failed: {e}", operation="delete_project")
        if result.deleted_count == 0:
            raise NotFoundError("project_not_found", "Project not found")

    # ---------- consent requests ----------

    async def insert_consent_request(self, request: ConsentRequest) -> None:
        try:
            await self.db.consent_requests.insert_one(request.model_dump(mode="json"))
        except PyMongoError as e:
            raise TransientBackendError(f"Consent request insert failed: {e}", operation="insert_consent_request")

    async def read_consent_request(self, token: str) -> Optional[ConsentRequest]:
        try:
            doc = await self.db.consent_requests.find_one({"token": token}, {"_id": 0})
        except PyMongoError as e:
            raise TransientBackendError(f"Consent request read failed: {e}", operation="read_consent_request")
        return ConsentRequest.model_validate(doc) if doc else None

    async def resolve_consent_request(self, token, status, responded_at, method=None) -> bool:
        try:
            result = await self.db.consent_requests.update_one(
                {"token": token, "status": "pending"},
                {"$set": {
                    "status": status,
                    "responded_at": responded_at.isoformat(),
                    "verification_method": method
                }}
            )
        except PyMongoError as e:
            raise TransientBackendError(f"Consent resolution failed: {e}", operation="resolve_consent_request")
        return result.modified_count == 1

    # ---------- admin ----------

    async def read_admin_security(self) -> AdminSecurityState:
        try:
            doc = await self.db.admin_settings.find_one({"type": "admin_2fa"}, {"_id": 0, "type": 0})
        except PyMongoError as e:
            raise TransientBackendError(f"Admin settings read failed: {e}", operation="read_admin_security")
        return AdminSecurityState.model_validate(doc) if doc else AdminSecurityState()

    async def write_admin_security(self, state: AdminSecurityState) -> None:
        try:
            await self.db.admin_settings.update_one(
                {"type": "admin_2fa"},
                {"$set": state.model_dump(mode="json")},
                upsert=True
            )
        except PyMongoError as e:
            raise TransientBackendError(f"Admin settings write failed: {e}", operation="write_admin_security")

    # ---------- admin audit ----------

    async def append_audit_entry(self, entry: AdminAuditEntry) -> None:
        try:
            await self.db.admin_audit.insert_one(entry.model_dump(mode="json"))
        except PyMongoError as e:
            raise TransientBackendError(f"Audit write failed: {e}", operation="append_audit_entry")

    async def read_audit_entries(self, action=None, limit=100, offset=0) -> List[AdminAuditEntry]:
        query = {"action": action} if action else {}
        try:
            docs = await self.db.admin_audit.find(query, {"_id": 0}) \
                .sort("timestamp", -1).skip(offset).limit(limit).to_list(limit)
        except PyMongoError as e:
            raise TransientBackendError(f"Audit read failed: {e}", operation="read_audit_entries")
        return [AdminAuditEntry.model_validate(doc) for doc in docs]


def create_storage(settings: EngineSettings) -> StorageBackend:
    """Select the storage backend once, from configuration."""
    if settings.storage_backend == "mongo":
        from database import create_mongo_client
        client, db = create_mongo_client(settings)
        logger.info(f"Using MongoDB storage backend ({settings.db_name})")
        return MongoStorageBackend(db, client)

    logger.info(f"Using file storage backend ({settings.data_dir})")
    return FileStorageBackend(settings.data_dir)
