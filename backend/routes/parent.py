"""
Parent Routes - guardian email links and data-rights requests

These endpoints are reached from email links or public forms; none of
them require a session.
"""
import logging

from fastapi import APIRouter, Query, Request

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from account_trust.models import GuardianEmailRequest, normalize_email
from utils.auth import get_engine

logger = logging.getLogger(__name__)

parent_router = APIRouter(tags=["Parent"])

DATA_REQUEST_RESPONSE = {
    "success": True,
    "message": "If an account is linked to this email, we sent a confirmation link to it."
}


@parent_router.get("/verify")
async def verify_consent(request: Request, token: str = Query(...), action: str = Query(...)):
    """Grant or deny link from a consent or data-rights email"""
    return await get_engine(request).consent.handle_link(token, action)


@parent_router.post("/request-data")
async def request_data(data: GuardianEmailRequest, request: Request):
    email = normalize_email(data.guardian_email, "guardian_email")
    sent = await get_engine(request).consent.request_data_rights(email, "data_access")
    logger.info(f"Data access request created for {sent} account(s)")
    # Same answer whether or not the address matched anything
    return DATA_REQUEST_RESPONSE


@parent_router.post("/request-deletion")
async def request_deletion(data: GuardianEmailRequest, request: Request):
    email = normalize_email(data.guardian_email, "guardian_email")
    sent = await get_engine(request).consent.request_data_rights(email, "data_delete")
    logger.info(f"Data deletion request created for {sent} account(s)")
    return DATA_REQUEST_RESPONSE
