"""
Card verification routes for parental consent.

A small charge is created against the consent token, confirmed once the
card payment succeeds, and refunded straight away.
"""
from fastapi import APIRouter, Request

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from account_trust.config import VERIFICATION_CHARGE
from account_trust.models import VerificationChargeConfirmRequest, VerificationChargeCreateRequest
from utils.auth import get_engine

verify_charge_router = APIRouter(tags=["Parent Verification"])


@verify_charge_router.get("/config")
async def get_verification_config(request: Request):
    payments = get_engine(request).payments
    return {
        "enabled": payments.configured,
        "publishable_key": payments.publishable_key,
        "amount_cents": VERIFICATION_CHARGE["amount_cents"],
        "currency": VERIFICATION_CHARGE["currency"],
    }


@verify_charge_router.post("/create")
async def create_verification_charge(data: VerificationChargeCreateRequest, request: Request):
    handle = await get_engine(request).consent.create_verification_charge(data.consent_token)
    return handle.model_dump()


@verify_charge_router.post("/confirm")
async def confirm_verification_charge(data: VerificationChargeConfirmRequest, request: Request):
    return await get_engine(request).consent.confirm_verification_charge(data.consent_token, data.charge_id)
