"""
Authentication utilities
"""
import logging
from typing import Optional

from fastapi import Depends, Header, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from account_trust.engine import TrustEngine
from account_trust.errors import AuthError, NotFoundError
from account_trust.models import Session

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


def get_engine(request: Request) -> TrustEngine:
    return request.app.state.engine


def client_address(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


async def get_current_session(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> Session:
    """Validate the bearer session token and return the session"""
    if credentials is None or not credentials.credentials:
        raise AuthError("NO_TOKEN")

    session = await get_engine(request).sessions.validate(credentials.credentials)
    if session is None:
        raise AuthError("INVALID_SESSION")
    return session


async def require_admin(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    x_admin_key: Optional[str] = Header(None)
) -> str:
    """
    Admin gate. Accepts a signed admin token, the admin key while 2FA is
    off, or the session of an account flagged is_admin.

    Returns the kind of credential that was accepted.
    """
    engine = get_engine(request)
    bearer = credentials.credentials if credentials else None

    try:
        return await engine.admin.authorize(admin_key=x_admin_key, bearer_token=bearer)
    except AuthError:
        if not bearer:
            raise

    session = await engine.sessions.validate(bearer)
    if session is not None:
        try:
            account = await engine.storage.read_account(session.account_id)
        except NotFoundError:
            account = None
        if account is not None and account.is_admin:
            return "session"

    logger.warning(f"Admin access denied for {client_address(request)}")
    raise AuthError("ADMIN_REQUIRED")
