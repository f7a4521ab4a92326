"""
Admin Audit Log

Append-only record of operator actions (approve, deny, suspend,
unsuspend, set_tier) with the target account and requester address.
Stored as JSONL in the file backend and in the admin_audit collection
on MongoDB.
"""

import logging
import secrets
from datetime import datetime
from typing import Callable, List, Optional

from .config import ADMIN_POLICY
from .errors import TransientBackendError
from .models import AdminAuditEntry
from .sessions import utcnow

logger = logging.getLogger(__name__)


class AdminAuditLog:
    def __init__(self, storage, now_fn: Callable[[], datetime] = utcnow):
        self.storage = storage
        self.now_fn = now_fn

    async def log_admin_action(
        self,
        action: str,
        target_id: Optional[str] = None,
        details: Optional[dict] = None,
        ip: Optional[str] = None
    ) -> Optional[AdminAuditEntry]:
        """
        Record an operator action that has already been applied.

        A storage failure is logged and does not undo or fail the action.
        """
        now = self.now_fn()
        entry = AdminAuditEntry(
            id=f"audit_{int(now.timestamp() * 1000)}_{secrets.token_hex(4)}",
            timestamp=now,
            action=action,
            target_id=target_id,
            details=details or {},
            ip=ip,
        )
        try:
            await self.storage.append_audit_entry(entry)
        except TransientBackendError as e:
            logger.error(f"AUDIT WRITE FAILED for {action} on {target_id} from {ip}: {e.message}")
            return None
        return entry

    async def read_audit_log(
        self,
        action: Optional[str] = None,
        limit: int = ADMIN_POLICY["audit_page_size"],
        offset: int = 0
    ) -> List[AdminAuditEntry]:
        limit = max(1, min(limit, ADMIN_POLICY["audit_max_page_size"]))
        return await self.storage.read_audit_entries(action, limit, max(0, offset))
