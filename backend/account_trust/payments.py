"""
Payment provider for card-based guardian verification.

The consent flow only needs three calls: create a small charge carrying
metadata, read back its status, and refund it. StripePaymentProvider maps
those onto PaymentIntents; the stripe SDK is synchronous so every call
runs in a worker thread.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

import stripe

from .errors import NotFoundError, ProviderNotConfiguredError, TransientBackendError
from .models import ChargeHandle, ChargeStatus

logger = logging.getLogger(__name__)


class PaymentProvider(ABC):

    @property
    def configured(self) -> bool:
        return True

    @property
    def publishable_key(self) -> Optional[str]:
        return None

    @abstractmethod
    async def create_charge(self, amount_cents: int, currency: str, metadata: Dict[str, str],
                            description: str) -> ChargeHandle:
        ...

    @abstractmethod
    async def retrieve_charge(self, charge_id: str) -> ChargeStatus:
        ...

    @abstractmethod
    async def refund(self, charge_id: str) -> None:
        ...


class StripePaymentProvider(PaymentProvider):

    def __init__(self, secret_key: Optional[str], publishable_key: Optional[str] = None):
        self._secret_key = secret_key
        self._publishable_key = publishable_key
        if secret_key:
            stripe.api_key = secret_key

    @property
    def configured(self) -> bool:
        return bool(self._secret_key)

    @property
    def publishable_key(self) -> Optional[str]:
        return self._publishable_key

    def _require_config(self):
        if not self._secret_key:
            raise ProviderNotConfiguredError(
                "provider_not_configured",
                "Card verification is not available. Please use the email link instead."
            )

    async def create_charge(self, amount_cents, currency, metadata, description) -> ChargeHandle:
        self._require_config()
        try:
            intent = await asyncio.to_thread(
                stripe.PaymentIntent.create,
                amount=amount_cents,
                currency=currency,
                metadata=metadata,
                description=description,
                automatic_payment_methods={"enabled": True},
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe charge creation failed: {e}")
            raise TransientBackendError(f"Payment provider error: {e}", operation="create_charge")

        return ChargeHandle(
            charge_id=intent.id,
            client_secret=intent.client_secret,
            amount_cents=amount_cents,
            currency=currency,
        )

    async def retrieve_charge(self, charge_id: str) -> ChargeStatus:
        self._require_config()
        try:
            intent = await asyncio.to_thread(stripe.PaymentIntent.retrieve, charge_id)
        except stripe.InvalidRequestError as e:
            raise NotFoundError("charge_not_found", f"Payment not found: {charge_id}") from e
        except stripe.StripeError as e:
            logger.error(f"Stripe charge lookup failed for {charge_id}: {e}")
            raise TransientBackendError(f"Payment provider error: {e}", operation="retrieve_charge")

        return ChargeStatus(
            charge_id=intent.id,
            status=intent.status,
            metadata=dict(intent.metadata or {}),
        )

    async def refund(self, charge_id: str) -> None:
        self._require_config()
        try:
            await asyncio.to_thread(stripe.Refund.create, payment_intent=charge_id)
        except stripe.StripeError as e:
            raise TransientBackendError(f"Refund failed: {e}", operation="refund")
