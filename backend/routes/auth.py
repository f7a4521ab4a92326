"""
Authentication routes - registration, login, logout and session identity
"""
import logging

from fastapi import APIRouter, Depends, Request

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from account_trust.models import AccountPublic, LoginRequest, LoginResponse, RegisterRequest, Session
from utils.auth import client_address, get_current_session, get_engine

logger = logging.getLogger(__name__)

auth_router = APIRouter(tags=["Authentication"])


@auth_router.post("/register")
async def register(data: RegisterRequest, request: Request):
    """Create an account. Under-13 accounts wait for guardian consent."""
    return await get_engine(request).accounts.register(data)


@auth_router.post("/login", response_model=LoginResponse)
async def login(credentials: LoginRequest, request: Request):
    token, account = await get_engine(request).accounts.login(
        credentials.username,
        credentials.password,
        client_address(request)
    )
    return LoginResponse(token=token, account=AccountPublic.from_account(account))


@auth_router.post("/logout")
async def logout(request: Request, session: Session = Depends(get_current_session)):
    await get_engine(request).accounts.logout(session.token)
    return {"success": True}


@auth_router.get("/me")
async def get_me(request: Request, session: Session = Depends(get_current_session)):
    """Current account plus usage summary"""
    return await get_engine(request).accounts.get_me(session)
