"""
Usage Routes - plan usage summary and client-reported governed actions
"""
from fastapi import APIRouter, Depends, Request

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from account_trust.guard import usage_guarded
from account_trust.models import Session
from utils.auth import get_current_session, get_engine

usage_router = APIRouter(tags=["Usage"])


@usage_router.get("")
async def get_usage(request: Request, session: Session = Depends(get_current_session)):
    return await get_engine(request).governor.usage_summary(session.account_id)


@usage_router.get("/check/{action}")
async def check_action(action: str, request: Request, session: Session = Depends(get_current_session)):
    """Ask whether an action would be allowed right now, without consuming it"""
    decision = await get_engine(request).governor.check_tier_limit(session.account_id, action)
    return decision.model_dump()


@usage_router.post("/play")
@usage_guarded("play")
async def record_play(request: Request, session: Session = Depends(get_current_session)):
    """Games run in the browser; the client reports each play here"""
    return {"success": True}
