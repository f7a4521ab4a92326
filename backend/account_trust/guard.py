"""
Usage Guard - route-level wrapper around the Usage Governor

Enforces, for a decorated handler:
- Abuse throttle and tier quota before the handler runs
- Counter increment only after the handler returns successfully

A handler that raises is never counted.
"""

import logging
from functools import wraps
from typing import Callable

from fastapi import Request

from .errors import AuthError
from .models import Session

logger = logging.getLogger(__name__)


def usage_guarded(action: str):
    """
    Decorator for governed route handlers.

    Usage:
        @router.post("/projects")
        @usage_guarded("save_game")
        async def save_project(request: Request, session: Session = Depends(get_current_session)):
            ...

    Note: The decorated function must take 'request' and 'session' parameters.
    """
    def decorator(func: Callable):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            request = kwargs.get("request")
            session = kwargs.get("session")

            if not isinstance(session, Session):
                raise AuthError("INVALID_SESSION")
            if not isinstance(request, Request):
                raise RuntimeError(f"usage_guarded handler {func.__name__} needs a 'request' parameter")

            governor = request.app.state.engine.governor

            decision = await governor.check(session.account_id, action)
            if not decision.allowed:
                logger.info(f"Denied {action} for account {session.account_id}: {decision.reason}")
                decision.raise_for_denial()

            response = await func(*args, **kwargs)

            await governor.record_usage(session.account_id, action)
            return response

        return wrapper
    return decorator
