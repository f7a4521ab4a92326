"""
Admin Routes - operator actions on accounts
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from account_trust.models import Account, SetTierRequest, SuspendRequest
from utils.auth import client_address, get_engine, require_admin

logger = logging.getLogger(__name__)

admin_router = APIRouter(tags=["Admin"])


def _admin_view(account: Account) -> dict:
    """Account document for operators, without credentials"""
    return account.model_dump(mode="json", exclude={"password_hash"})


@admin_router.get("/accounts")
async def list_accounts(
    request: Request,
    status: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=100),
    offset: int = Query(0, ge=0),
    _admin: str = Depends(require_admin)
):
    accounts = await get_engine(request).accounts.list_accounts(status, limit, offset)
    return {"accounts": [_admin_view(a) for a in accounts], "count": len(accounts), "offset": offset}


@admin_router.get("/accounts/{account_id}")
async def get_account(account_id: str, request: Request, _admin: str = Depends(require_admin)):
    account = await get_engine(request).accounts.get_account(account_id)
    usage = await get_engine(request).governor.usage_summary(account_id)
    return {"account": _admin_view(account), "usage": usage}


@admin_router.post("/accounts/{account_id}/approve")
async def approve_account(account_id: str, request: Request, _admin: str = Depends(require_admin)):
    account = await get_engine(request).accounts.approve(account_id, ip=client_address(request))
    return {"success": True, "account": _admin_view(account)}


@admin_router.post("/accounts/{account_id}/deny")
async def deny_account(account_id: str, request: Request, _admin: str = Depends(require_admin)):
    account = await get_engine(request).accounts.deny(account_id, ip=client_address(request))
    return {"success": True, "account": _admin_view(account)}


@admin_router.post("/accounts/{account_id}/suspend")
async def suspend_account(
    account_id: str,
    data: SuspendRequest,
    request: Request,
    _admin: str = Depends(require_admin)
):
    account = await get_engine(request).accounts.suspend(
        account_id, data.reason, data.hours, ip=client_address(request)
    )
    return {"success": True, "account": _admin_view(account)}


@admin_router.post("/accounts/{account_id}/unsuspend")
async def unsuspend_account(account_id: str, request: Request, _admin: str = Depends(require_admin)):
    account = await get_engine(request).accounts.unsuspend(account_id, ip=client_address(request))
    return {"success": True, "account": _admin_view(account)}


@admin_router.post("/accounts/{account_id}/tier")
async def set_account_tier(
    account_id: str,
    data: SetTierRequest,
    request: Request,
    _admin: str = Depends(require_admin)
):
    account = await get_engine(request).accounts.set_tier(
        account_id, data.tier, data.months, ip=client_address(request)
    )
    return {"success": True, "account": _admin_view(account)}


@admin_router.get("/audit")
async def get_audit_log(
    request: Request,
    action: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    _admin: str = Depends(require_admin)
):
    entries = await get_engine(request).audit.read_audit_log(action, limit, offset)
    return {"entries": [e.model_dump(mode="json") for e in entries], "count": len(entries)}
