"""
Account Service Tests

Tests:
1. Registration validation and consent request for under-13 accounts
2. Login state gating, suspension auto-heal, non-leaking credential errors
3. Login attempt limiter
4. Operator actions, account listing and the audit trail
"""

import sys
from datetime import timedelta
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from account_trust.accounts import AccountService, hash_password, verify_password
from account_trust.audit import AdminAuditLog
from account_trust.consent import ConsentService
from account_trust.errors import (
    AccountBlockedError,
    AuthError,
    ConsentStateError,
    QuotaExceeded,
    TransientBackendError,
    ValidationError,
)
from account_trust.governor import UsageGovernor
from account_trust.login_limiter import LoginAttemptTracker
from account_trust.models import RegisterRequest


@pytest.fixture
def sessions():
    store = AsyncMock()
    store.issue.return_value = "session-token"
    store.revoke_account.return_value = 0
    return store


@pytest.fixture
def limiter(clock):
    return LoginAttemptTracker(max_attempts=5, window_seconds=60, time_fn=clock.timestamp)


@pytest.fixture
def audit(storage, clock):
    return AdminAuditLog(storage, now_fn=clock)


@pytest.fixture
def accounts(storage, sessions, email_service, payments, limiter, audit, clock):
    consent = ConsentService(storage, sessions, email_service, payments, now_fn=clock)
    governor = UsageGovernor(storage, now_fn=clock)
    return AccountService(storage, sessions, consent, limiter, governor, audit, now_fn=clock)


def register_request(**overrides):
    data = {
        "username": "new_player",
        "password": "secret1",
        "display_name": "New Player",
        "age_bracket": "18plus",
        "privacy_accepted": True,
    }
    data.update(overrides)
    return RegisterRequest(**data)


class TestPasswords:

    def test_hash_and_verify(self):
        hashed = hash_password("hunter22")
        assert hashed != "hunter22"
        assert verify_password("hunter22", hashed)
        assert not verify_password("hunter23", hashed)

    def test_malformed_hash_does_not_raise(self):
        assert not verify_password("hunter22", "not-a-bcrypt-hash")


class TestRegistration:

    @pytest.mark.asyncio
    async def test_adult_waits_for_approval(self, accounts, storage, email_service):
        result = await accounts.register(register_request())

        assert result["needs_parent_consent"] is False
        saved = await storage.read_account(result["account"].id)
        assert saved.status == "pending"
        assert saved.consent.status == "not_required"
        assert email_service.consent_emails == []

    @pytest.mark.asyncio
    async def test_under13_triggers_consent_request(self, accounts, storage, email_service):
        result = await accounts.register(register_request(
            age_bracket=None, age=10, guardian_email="Mom@Example.com"
        ))

        assert result["needs_parent_consent"] is True
        saved = await storage.read_account(result["account"].id)
        assert saved.consent.status == "pending"
        assert saved.consent.age_bracket == "under13"
        assert saved.consent.guardian_email == "mom@example.com"
        assert email_service.consent_emails[-1]["to"] == "mom@example.com"

    @pytest.mark.asyncio
    async def test_under13_needs_valid_guardian_email(self, accounts):
        with pytest.raises(ValidationError) as exc:
            await accounts.register(register_request(age_bracket="under13", guardian_email="not-an-email"))
        assert exc.value.code == "invalid_guardian_email"

    @pytest.mark.parametrize("overrides,code", [
        ({"username": "ab"}, "invalid_username"),
        ({"username": "bad name!"}, "invalid_username"),
        ({"password": "abc"}, "invalid_password"),
        ({"display_name": "   "}, "invalid_display_name"),
        ({"display_name": "x" * 31}, "invalid_display_name"),
        ({"privacy_accepted": False}, "privacy_not_accepted"),
        ({"age_bracket": "ancient"}, "invalid_age_bracket"),
        ({"age_bracket": None, "age": 3}, "invalid_age"),
        ({"age_bracket": None}, "age_required"),
    ])
    @pytest.mark.asyncio
    async def test_validation(self, accounts, overrides, code):
        with pytest.raises(ValidationError) as exc:
            await accounts.register(register_request(**overrides))
        assert exc.value.code == code

    @pytest.mark.asyncio
    async def test_duplicate_username(self, accounts):
        await accounts.register(register_request())
        with pytest.raises(ValidationError) as exc:
            await accounts.register(register_request(username="NEW_PLAYER"))
        assert exc.value.code == "username_taken"


class TestLogin:

    @pytest.mark.asyncio
    async def test_success_issues_session(self, accounts, make_account, sessions, storage, clock):
        account = await make_account()

        token, logged_in = await accounts.login("player_one", "pass1234", "10.0.0.1")

        assert token == "session-token"
        sessions.issue.assert_awaited_once_with(account.id, "player_one", account.display_name)
        assert (await storage.read_account(account.id)).last_login_at == clock()

    @pytest.mark.asyncio
    async def test_unknown_user_and_bad_password_look_the_same(self, accounts, make_account):
        await make_account()

        with pytest.raises(AuthError) as unknown:
            await accounts.login("nobody", "pass1234", "10.0.0.1")
        with pytest.raises(AuthError) as wrong:
            await accounts.login("player_one", "wrong", "10.0.0.1")

        assert unknown.value.to_dict() == wrong.value.to_dict()
        assert unknown.value.code == "INVALID_CREDENTIALS"

    @pytest.mark.asyncio
    async def test_state_is_hidden_behind_password(self, accounts, make_account):
        await make_account(status="suspended")
        with pytest.raises(AuthError):
            await accounts.login("player_one", "wrong", "10.0.0.1")

    @pytest.mark.parametrize("status,consent_status,code", [
        ("pending", "pending", "consent_pending"),
        ("pending", "not_required", "approval_pending"),
        ("denied", "not_required", "account_denied"),
        ("pending_verification", "not_required", "verification_pending"),
        ("suspended", "not_required", "account_suspended"),
        ("suspended", "revoked", "consent_required"),
    ])
    @pytest.mark.asyncio
    async def test_blocked_states(self, accounts, make_account, sessions, status, consent_status, code):
        await make_account(status=status, consent_status=consent_status)

        with pytest.raises(AccountBlockedError) as exc:
            await accounts.login("player_one", "pass1234", "10.0.0.1")

        assert exc.value.code == code
        assert exc.value.status_code == 403
        sessions.issue.assert_not_called()

    @pytest.mark.asyncio
    async def test_expired_suspension_heals(self, accounts, make_account, storage, clock):
        account = await make_account(status="suspended", suspended_until=clock() - timedelta(minutes=1))

        token, _ = await accounts.login("player_one", "pass1234", "10.0.0.1")

        assert token == "session-token"
        saved = await storage.read_account(account.id)
        assert saved.status == "approved"
        assert saved.suspended_until is None

    @pytest.mark.asyncio
    async def test_active_suspension_names_end_date(self, accounts, make_account, clock):
        await make_account(status="suspended", suspended_until=clock() + timedelta(days=2))

        with pytest.raises(AccountBlockedError) as exc:
            await accounts.login("player_one", "pass1234", "10.0.0.1")
        assert "2025-03-12" in exc.value.message

    @pytest.mark.asyncio
    async def test_limiter_blocks_sixth_attempt(self, accounts, make_account, clock):
        await make_account()
        for _ in range(5):
            with pytest.raises(AuthError):
                await accounts.login("player_one", "wrong", "10.0.0.9")

        with pytest.raises(QuotaExceeded) as exc:
            await accounts.login("player_one", "pass1234", "10.0.0.9")
        assert exc.value.code == "login_rate_limit"

        # Other addresses are unaffected
        await accounts.login("player_one", "pass1234", "10.0.0.10")

        clock.advance(seconds=61)
        await accounts.login("player_one", "pass1234", "10.0.0.9")

    @pytest.mark.asyncio
    async def test_success_resets_attempts(self, accounts, make_account, limiter):
        await make_account()
        with pytest.raises(AuthError):
            await accounts.login("player_one", "wrong", "10.0.0.9")

        await accounts.login("player_one", "pass1234", "10.0.0.9")
        assert len(limiter) == 0


class TestOperatorActions:

    @pytest.mark.asyncio
    async def test_approve(self, accounts, make_account):
        account = await make_account(status="pending")
        approved = await accounts.approve(account.id)
        assert approved.status == "approved"
        assert approved.approved_at is not None

    @pytest.mark.asyncio
    async def test_cannot_approve_minor_without_consent(self, accounts, make_account):
        account = await make_account(status="pending", consent_status="pending", age_bracket="under13")
        with pytest.raises(ConsentStateError):
            await accounts.approve(account.id)

    @pytest.mark.asyncio
    async def test_timed_suspension_revokes_sessions(self, accounts, make_account, sessions, clock):
        account = await make_account()

        suspended = await accounts.suspend(account.id, "spam", hours=24)

        assert suspended.status == "suspended"
        assert suspended.suspended_until == clock() + timedelta(hours=24)
        sessions.revoke_account.assert_awaited_once_with(account.id)

    @pytest.mark.asyncio
    async def test_unsuspend(self, accounts, make_account):
        account = await make_account(status="suspended")
        restored = await accounts.unsuspend(account.id)
        assert restored.status == "approved"
        assert restored.suspend_reason is None

    @pytest.mark.asyncio
    async def test_unsuspend_refused_after_consent_revoked(self, accounts, make_account):
        account = await make_account(status="suspended", consent_status="revoked")
        with pytest.raises(ConsentStateError):
            await accounts.unsuspend(account.id)

    @pytest.mark.asyncio
    async def test_set_tier(self, accounts, make_account, clock):
        account = await make_account()

        updated = await accounts.set_tier(account.id, "Creator", months=3)
        assert updated.membership.tier == "creator"
        assert updated.membership.expires_at == clock() + timedelta(days=90)

        with pytest.raises(ValidationError):
            await accounts.set_tier(account.id, "diamond")

    @pytest.mark.asyncio
    async def test_get_me_includes_usage(self, accounts, make_account, clock):
        from account_trust.models import Session

        account = await make_account()
        session = Session(token="t", account_id=account.id, username=account.username,
                          display_name=account.display_name, issued_at=clock())

        me = await accounts.get_me(session)
        assert me["account"].username == "player_one"
        assert me["usage"].tier == "free"


class TestAuditTrail:

    @pytest.mark.asyncio
    async def test_operator_actions_are_recorded(self, accounts, audit, make_account, clock):
        account = await make_account(status="pending")

        await accounts.approve(account.id, ip="10.1.1.1")
        clock.advance(minutes=1)
        await accounts.suspend(account.id, "spam", hours=2, ip="10.1.1.1")
        clock.advance(minutes=1)
        await accounts.unsuspend(account.id, ip="10.1.1.2")
        clock.advance(minutes=1)
        await accounts.set_tier(account.id, "pro", months=2)
        clock.advance(minutes=1)
        await accounts.deny(account.id)

        entries = await audit.read_audit_log()
        assert [e.action for e in entries] == ["deny", "set_tier", "unsuspend", "suspend", "approve"]
        assert all(e.target_id == account.id for e in entries)
        assert entries[-1].ip == "10.1.1.1"
        assert entries[-1].timestamp == clock() - timedelta(minutes=4)
        assert entries[3].details == {"username": "player_one", "reason": "spam", "hours": 2}
        assert entries[1].details["tier"] == "pro"

    @pytest.mark.asyncio
    async def test_refused_action_is_not_recorded(self, accounts, audit, make_account):
        account = await make_account(status="pending", consent_status="pending", age_bracket="under13")
        with pytest.raises(ConsentStateError):
            await accounts.approve(account.id)
        assert await audit.read_audit_log() == []

    @pytest.mark.asyncio
    async def test_filter_and_paging(self, accounts, audit, make_account, clock):
        account = await make_account()
        for tier in ("creator", "pro", "free"):
            await accounts.set_tier(account.id, tier)
            clock.advance(seconds=1)
        await accounts.suspend(account.id)

        tiers = await audit.read_audit_log(action="set_tier")
        assert [e.details["tier"] for e in tiers] == ["free", "pro", "creator"]

        page = await audit.read_audit_log(limit=2, offset=1)
        assert [e.details.get("tier") for e in page] == ["free", "pro"]

    @pytest.mark.asyncio
    async def test_audit_failure_does_not_undo_action(self, accounts, storage, make_account, monkeypatch):
        account = await make_account()
        monkeypatch.setattr(
            storage, "append_audit_entry",
            AsyncMock(side_effect=TransientBackendError("disk full", operation="append_audit_entry")),
        )

        suspended = await accounts.suspend(account.id, "spam")

        assert suspended.status == "suspended"
        assert (await storage.read_account(account.id)).status == "suspended"


class TestAccountListing:

    @pytest.mark.asyncio
    async def test_newest_first_with_status_filter(self, accounts, make_account, clock):
        await make_account(username="first_kid", status="pending")
        clock.advance(minutes=1)
        await make_account(username="second_kid", status="approved")
        clock.advance(minutes=1)
        await make_account(username="third_kid", status="pending")

        everyone = await accounts.list_accounts()
        assert [a.username for a in everyone] == ["third_kid", "second_kid", "first_kid"]

        pending = await accounts.list_accounts(status="pending")
        assert [a.username for a in pending] == ["third_kid", "first_kid"]

        assert [a.username for a in await accounts.list_accounts(limit=1, offset=1)] == ["second_kid"]

    @pytest.mark.asyncio
    async def test_unknown_status(self, accounts):
        with pytest.raises(ValidationError) as exc:
            await accounts.list_accounts(status="sleeping")
        assert exc.value.code == "invalid_status"
