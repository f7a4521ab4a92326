"""
Account Service - registration, login gating and operator actions
"""

import logging
import re
import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple, get_args

import bcrypt

from .config import ADMIN_POLICY, AGE_BRACKETS, ERROR_CODES
from .consent import get_age_bracket, requires_parental_consent
from .errors import AccountBlockedError, AuthError, ConsentStateError, QuotaExceeded, ValidationError
from .models import Account, AccountPublic, AccountStatus, ConsentInfo, RegisterRequest, Session, normalize_email
from .plan_resolver import validate_tier
from .sessions import utcnow

logger = logging.getLogger(__name__)

USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_]{3,20}$")
MIN_PASSWORD_LENGTH = 4
MAX_DISPLAY_NAME_LENGTH = 30
ACCOUNT_STATUSES = get_args(AccountStatus)


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')


def verify_password(password: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode('utf-8'), hashed.encode('utf-8'))
    except ValueError:
        return False


class AccountService:
    def __init__(self, storage, sessions, consent, login_attempts, governor, audit,
                 now_fn: Callable[[], datetime] = utcnow):
        self.storage = storage
        self.sessions = sessions
        self.consent = consent
        self.login_attempts = login_attempts
        self.governor = governor
        self.audit = audit
        self.now_fn = now_fn

    # ==================== REGISTRATION ====================

    def _resolve_age_bracket(self, data: RegisterRequest) -> str:
        if data.age_bracket:
            if data.age_bracket not in AGE_BRACKETS:
                raise ValidationError("invalid_age_bracket", "Please choose a valid age range")
            return data.age_bracket
        if data.age is not None:
            if not 5 <= data.age <= 120:
                raise ValidationError("invalid_age", "Please enter a valid age")
            return get_age_bracket(data.age)
        raise ValidationError("age_required", "Please tell us your age range")

    async def register(self, data: RegisterRequest) -> dict:
        username = (data.username or "").strip()
        if not USERNAME_PATTERN.match(username):
            raise ValidationError(
                "invalid_username",
                "Username must be 3-20 characters: letters, numbers, and underscores only"
            )
        if not data.password or len(data.password) < MIN_PASSWORD_LENGTH:
            raise ValidationError("invalid_password", f"Password must be at least {MIN_PASSWORD_LENGTH} characters")

        display_name = (data.display_name or "").strip()
        if not display_name or len(display_name) > MAX_DISPLAY_NAME_LENGTH:
            raise ValidationError("invalid_display_name", f"Display name must be 1-{MAX_DISPLAY_NAME_LENGTH} characters")

        if not data.privacy_accepted:
            raise ValidationError("privacy_not_accepted", "Please accept the privacy policy")

        age_bracket = self._resolve_age_bracket(data)
        needs_consent = requires_parental_consent(age_bracket)
        guardian_email = normalize_email(data.guardian_email, "guardian_email") if needs_consent else None

        if await self.storage.find_account_by_username(username):
            raise ValidationError("username_taken", "Username already taken")

        now = self.now_fn()
        account = Account(
            id=str(uuid.uuid4()),
            username=username,
            display_name=display_name,
            password_hash=hash_password(data.password),
            status="pending",
            created_at=now,
            consent=ConsentInfo(
                status="pending" if needs_consent else "not_required",
                age_bracket=age_bracket,
                guardian_email=guardian_email,
                requested_at=now if needs_consent else None,
            ),
        )
        await self.storage.write_account(account)
        logger.info(f"Registered account {account.id} ({age_bracket})")

        if needs_consent:
            await self.consent.create_request(account, guardian_email, "consent")
            return {
                "account": AccountPublic.from_account(account),
                "needs_parent_consent": True,
                "message": "Almost there! We sent an email to your parent or guardian. "
                           "Your account will be ready once they approve it."
            }

        return {
            "account": AccountPublic.from_account(account),
            "needs_parent_consent": False,
            "message": "Account created! An admin will review it shortly."
        }

    # ==================== LOGIN ====================

    def _check_login_allowed(self, account: Account, now: datetime) -> bool:
        """
        Raise AccountBlockedError if the account may not sign in.

        Returns:
            True if an expired suspension was lifted (account needs saving)
        """
        if account.status == "deleted":
            raise AccountBlockedError("account_deleted")

        if account.consent.status in ("revoked", "denied"):
            raise AccountBlockedError("consent_required")

        if account.status == "pending":
            if account.consent.status == "pending":
                raise AccountBlockedError("consent_pending")
            raise AccountBlockedError("approval_pending")

        if account.status == "pending_verification":
            raise AccountBlockedError("verification_pending")

        if account.status == "denied":
            raise AccountBlockedError("account_denied")

        if account.status == "suspended":
            until = account.suspended_until
            if until and until <= now:
                account.status = "approved"
                account.suspended_at = None
                account.suspended_until = None
                account.suspend_reason = None
                logger.info(f"Suspension expired for account {account.id}, restored")
                return True
            if until:
                raise AccountBlockedError(
                    "account_suspended",
                    f"Your account is suspended until {until.date().isoformat()}."
                )
            raise AccountBlockedError("account_suspended")

        return False

    async def login(self, username: str, password: str, client_key: str) -> Tuple[str, Account]:
        if not self.login_attempts.hit(client_key):
            raise QuotaExceeded("login_rate_limit", wait_seconds=self.login_attempts.window_seconds)

        # Unknown username and wrong password are indistinguishable to the caller
        account = await self.storage.find_account_by_username((username or "").strip())
        if account is None or not account.password_hash or not verify_password(password or "", account.password_hash):
            raise AuthError("INVALID_CREDENTIALS")

        now = self.now_fn()
        self._check_login_allowed(account, now)

        account.last_login_at = now
        await self.storage.write_account(account)

        token = await self.sessions.issue(account.id, account.username, account.display_name)
        self.login_attempts.reset(client_key)
        logger.info(f"Account {account.id} signed in")
        return token, account

    async def logout(self, token: str):
        await self.sessions.revoke(token)

    async def get_me(self, session: Session) -> dict:
        account = await self.storage.read_account(session.account_id)
        return {
            "account": AccountPublic.from_account(account),
            "usage": await self.governor.usage_summary(account.id),
        }

    # ==================== OPERATOR ACTIONS ====================

    async def get_account(self, account_id: str) -> Account:
        return await self.storage.read_account(account_id)

    async def list_accounts(
        self,
        status: Optional[str] = None,
        limit: int = ADMIN_POLICY["account_page_size"],
        offset: int = 0
    ) -> List[Account]:
        if status is not None and status not in ACCOUNT_STATUSES:
            raise ValidationError("invalid_status", f"Unknown account status '{status}'")
        limit = max(1, min(limit, ADMIN_POLICY["account_page_size"]))
        return await self.storage.list_accounts(status, limit, max(0, offset))

    async def approve(self, account_id: str, ip: Optional[str] = None) -> Account:
        account = await self.storage.read_account(account_id)
        if account.consent.status in ("pending", "denied", "revoked"):
            raise ConsentStateError("consent_not_granted", ERROR_CODES["consent_not_granted"])

        account.status = "approved"
        account.approved_at = self.now_fn()
        await self.storage.write_account(account)
        await self.audit.log_admin_action("approve", account_id, {"username": account.username}, ip)
        logger.info(f"Admin approved account {account_id}")
        return account

    async def deny(self, account_id: str, ip: Optional[str] = None) -> Account:
        account = await self.storage.read_account(account_id)
        account.status = "denied"
        account.denied_at = self.now_fn()
        await self.storage.write_account(account)
        await self.sessions.revoke_account(account_id)
        await self.audit.log_admin_action("deny", account_id, {"username": account.username}, ip)
        logger.info(f"Admin denied account {account_id}")
        return account

    async def suspend(
        self,
        account_id: str,
        reason: Optional[str] = None,
        hours: Optional[int] = None,
        ip: Optional[str] = None
    ) -> Account:
        account = await self.storage.read_account(account_id)
        now = self.now_fn()
        account.status = "suspended"
        account.suspended_at = now
        account.suspended_until = now + timedelta(hours=hours) if hours else None
        account.suspend_reason = reason or "Suspended by admin"
        await self.storage.write_account(account)
        await self.sessions.revoke_account(account_id)
        await self.audit.log_admin_action("suspend", account_id, {
            "username": account.username,
            "reason": account.suspend_reason,
            "hours": hours,
        }, ip)
        logger.info(f"Admin suspended account {account_id} until {account.suspended_until or 'further notice'}")
        return account

    async def unsuspend(self, account_id: str, ip: Optional[str] = None) -> Account:
        account = await self.storage.read_account(account_id)
        if account.consent.status == "revoked":
            raise ConsentStateError("consent_required", ERROR_CODES["consent_required"])

        account.status = "approved"
        account.suspended_at = None
        account.suspended_until = None
        account.suspend_reason = None
        await self.storage.write_account(account)
        await self.audit.log_admin_action("unsuspend", account_id, {"username": account.username}, ip)
        return account

    async def set_tier(self, account_id: str, tier: str, months: int = 1, ip: Optional[str] = None) -> Account:
        tier = validate_tier(tier)
        account = await self.storage.read_account(account_id)
        account.membership.tier = tier
        account.membership.expires_at = None if tier == "free" else self.now_fn() + timedelta(days=30 * months)
        await self.storage.write_account(account)
        await self.audit.log_admin_action("set_tier", account_id, {
            "username": account.username,
            "tier": tier,
            "months": months,
        }, ip)
        logger.info(f"Admin set tier {tier} for account {account_id} ({months} month(s))")
        return account
