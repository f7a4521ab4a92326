"""
Shared fixtures for the account trust tests.

Clocks are injected; nothing here sleeps. Email and payment providers are
replaced with in-memory fakes that record what they were asked to do.
"""

import sys
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import pytest_asyncio

sys.path.insert(0, str(Path(__file__).parent.parent))

from account_trust.accounts import hash_password
from account_trust.config import EngineSettings
from account_trust.errors import NotFoundError, TransientBackendError
from account_trust.models import Account, ChargeHandle, ChargeStatus, ConsentInfo
from account_trust.payments import PaymentProvider
from account_trust.storage import FileStorageBackend

START = datetime(2025, 3, 10, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)

    def timestamp(self) -> float:
        return self.now.timestamp()


class FakeEmailService:
    def __init__(self):
        self.consent_emails = []
        self.admin_codes = []

    async def send_consent_request(self, guardian_email, token, action, username, display_name):
        self.consent_emails.append({
            "to": guardian_email,
            "token": token,
            "action": action,
            "username": username,
        })
        return {"status": "success", "email_id": f"email-{len(self.consent_emails)}"}

    async def send_admin_code(self, to_email, code):
        self.admin_codes.append({"to": to_email, "code": code})
        return {"status": "success", "email_id": f"code-{len(self.admin_codes)}"}

    def last_token(self, action="consent"):
        for email in reversed(self.consent_emails):
            if email["action"] == action:
                return email["token"]
        return None


class FakePayments(PaymentProvider):
    def __init__(self):
        self.charges = {}
        self.refunds = []
        self.fail_refund = False

    @property
    def publishable_key(self):
        return "pk_test_fake"

    async def create_charge(self, amount_cents, currency, metadata, description):
        charge_id = f"pi_{uuid.uuid4().hex[:12]}"
        self.charges[charge_id] = ChargeStatus(
            charge_id=charge_id,
            status="requires_payment_method",
            metadata=dict(metadata)
        )
        return ChargeHandle(
            charge_id=charge_id,
            client_secret=f"{charge_id}_secret",
            amount_cents=amount_cents,
            currency=currency
        )

    def succeed(self, charge_id):
        self.charges[charge_id].status = "succeeded"

    async def retrieve_charge(self, charge_id):
        if charge_id not in self.charges:
            raise NotFoundError("charge_not_found")
        return self.charges[charge_id]

    async def refund(self, charge_id):
        if self.fail_refund:
            raise TransientBackendError("Refund failed: card declined", operation="refund")
        self.refunds.append(charge_id)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def email_service():
    return FakeEmailService()


@pytest.fixture
def payments():
    return FakePayments()


@pytest.fixture
def settings(tmp_path):
    return EngineSettings(
        storage_backend="file",
        data_dir=str(tmp_path / "data"),
        admin_secret="admin-secret-key",
        admin_token_secret="token-signing-secret",
        admin_2fa_email="ops@example.com",
        session_flush_debounce_seconds=0.01,
    )


@pytest_asyncio.fixture
async def storage(tmp_path):
    backend = FileStorageBackend(str(tmp_path / "data"))
    await backend.initialize()
    return backend


@pytest.fixture
def make_account(storage, clock):
    """Factory writing an account straight to storage."""
    async def _make(username="player_one", password="pass1234", status="approved",
                    consent_status="not_required", age_bracket="18plus", **fields):
        account = Account(
            id=str(uuid.uuid4()),
            username=username,
            display_name=fields.pop("display_name", username.title()),
            password_hash=hash_password(password),
            status=status,
            created_at=clock(),
            consent=ConsentInfo(
                status=consent_status,
                age_bracket=age_bracket,
                guardian_email=fields.pop("guardian_email", None),
                guardian_token=fields.pop("guardian_token", None),
            ),
            **fields
        )
        await storage.write_account(account)
        return account
    return _make
