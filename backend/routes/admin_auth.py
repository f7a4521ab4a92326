"""
Admin Auth Routes - admin key login and optional email second factor
"""
from fastapi import APIRouter, Depends, Request

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from account_trust.models import AdminCodeRequest, AdminLoginRequest, AdminSetupRequest, AdminVerifyRequest
from utils.auth import get_engine, require_admin

admin_auth_router = APIRouter(tags=["Admin Auth"])


@admin_auth_router.get("/status")
async def get_status(request: Request):
    return await get_engine(request).admin.status()


@admin_auth_router.post("/login")
async def admin_login(data: AdminLoginRequest, request: Request):
    """First factor. Returns needs_2fa when a code was emailed."""
    result = await get_engine(request).admin.login(data.admin_key)
    return result.model_dump(exclude_none=True)


@admin_auth_router.post("/verify-2fa")
async def verify_2fa(data: AdminVerifyRequest, request: Request):
    result = await get_engine(request).admin.verify_login(data.admin_key, data.code)
    return result.model_dump(exclude_none=True)


@admin_auth_router.post("/setup-2fa")
async def setup_2fa(data: AdminSetupRequest, request: Request, _admin: str = Depends(require_admin)):
    return await get_engine(request).admin.begin_setup(data.email)


@admin_auth_router.post("/confirm-2fa")
async def confirm_2fa(data: AdminCodeRequest, request: Request, _admin: str = Depends(require_admin)):
    result = await get_engine(request).admin.confirm_setup(data.code)
    return result.model_dump(exclude_none=True)


@admin_auth_router.post("/disable-2fa")
async def disable_2fa(request: Request, _admin: str = Depends(require_admin)):
    await get_engine(request).admin.disable()
    return {"success": True, "two_factor_enabled": False}
