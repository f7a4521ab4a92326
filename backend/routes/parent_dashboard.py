"""
Parent Dashboard Routes

Every call is authorized by the guardian token minted when consent was
granted, passed as ?token=.
"""
from fastapi import APIRouter, Query, Request

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from account_trust.models import GuardianToggleRequest
from utils.auth import get_engine

parent_dashboard_router = APIRouter(tags=["Parent Dashboard"])


@parent_dashboard_router.get("")
async def get_dashboard(request: Request, token: str = Query(...)):
    return await get_engine(request).consent.guardian_summary(token)


@parent_dashboard_router.post("/toggle")
async def toggle_setting(data: GuardianToggleRequest, request: Request, token: str = Query(...)):
    controls = await get_engine(request).consent.toggle_setting(token, data.setting, data.value)
    return {"success": True, "settings": controls.model_dump()}


@parent_dashboard_router.get("/export")
async def export_data(request: Request, token: str = Query(...)):
    return await get_engine(request).consent.export_for_guardian(token)


@parent_dashboard_router.post("/delete")
async def delete_data(request: Request, token: str = Query(...)):
    summary = await get_engine(request).consent.delete_for_guardian(token)
    return {"success": True, **summary}


@parent_dashboard_router.post("/revoke")
async def revoke_consent(request: Request, token: str = Query(...)):
    account = await get_engine(request).consent.revoke(token)
    return {
        "success": True,
        "status": account.status,
        "consent_status": account.consent.status,
        "message": "Consent revoked. The account has been suspended."
    }
