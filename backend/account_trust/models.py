"""
Account Trust Data Models

Pydantic models for account trust operations.
These define the structure of documents stored by the storage backends
and the request/response bodies used by the routes.
"""

from pydantic import BaseModel, EmailStr, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from typing import Any, Optional, List, Literal, Dict
from datetime import datetime

from .config import DEFAULT_TIER, ERROR_CODES
from .errors import QuotaExceeded, ValidationError

AccountStatus = Literal["pending", "approved", "denied", "suspended", "deleted", "pending_verification"]
ConsentStatus = Literal["not_required", "pending", "granted", "denied", "revoked"]
AgeBracket = Literal["under13", "13to17", "18plus"]


# ==================== ACCOUNT VALUE OBJECTS ====================

class UsageCounters(BaseModel):
    """Per-period usage counters. Reset is applied on read, never by a job."""
    prompts_today: int = 0
    plays_today: int = 0
    daily_reset_date: Optional[datetime] = None
    games_this_month: int = 0
    premium_feature_use_this_month: int = 0
    monthly_reset_date: Optional[datetime] = None


class RateLimitState(BaseModel):
    """Abuse throttle state, pruned to the trailing hour on every evaluation"""
    recent_request_timestamps: List[datetime] = Field(default_factory=list)
    cooldown_until: Optional[datetime] = None


class ConsentInfo(BaseModel):
    status: ConsentStatus = "not_required"
    age_bracket: Optional[AgeBracket] = None
    guardian_email: Optional[str] = None
    requested_at: Optional[datetime] = None
    consented_at: Optional[datetime] = None
    verified_method: Optional[str] = None  # email_plus, stripe_micro
    verified_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    guardian_token: Optional[str] = None
    data_deletion_requested: bool = False


class MembershipInfo(BaseModel):
    tier: str = DEFAULT_TIER
    expires_at: Optional[datetime] = None
    has_seen_upgrade_prompt: bool = False


class GuardianControls(BaseModel):
    """Settings a guardian can flip from the dashboard"""
    publishing_enabled: bool = False
    multiplayer_enabled: bool = False
    improvement_opt_out: bool = False


class Account(BaseModel):
    id: str
    username: str
    display_name: str
    password_hash: Optional[str] = None
    status: AccountStatus = "pending"
    is_admin: bool = False
    created_at: datetime
    approved_at: Optional[datetime] = None
    denied_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    suspended_at: Optional[datetime] = None
    suspended_until: Optional[datetime] = None
    suspend_reason: Optional[str] = None
    deleted_at: Optional[datetime] = None
    usage: UsageCounters = Field(default_factory=UsageCounters)
    rate_limit: RateLimitState = Field(default_factory=RateLimitState)
    consent: ConsentInfo = Field(default_factory=ConsentInfo)
    membership: MembershipInfo = Field(default_factory=MembershipInfo)
    controls: GuardianControls = Field(default_factory=GuardianControls)

    @property
    def tier(self) -> str:
        return self.membership.tier


class AccountPublic(BaseModel):
    """Account view safe to return to clients"""
    id: str
    username: str
    display_name: str
    status: AccountStatus
    is_admin: bool = False
    tier: str
    consent_status: ConsentStatus
    created_at: datetime

    @classmethod
    def from_account(cls, account: Account) -> "AccountPublic":
        return cls(
            id=account.id,
            username=account.username,
            display_name=account.display_name,
            status=account.status,
            is_admin=account.is_admin,
            tier=account.tier,
            consent_status=account.consent.status,
            created_at=account.created_at,
        )


# ==================== SESSION MODELS ====================

class Session(BaseModel):
    token: str
    account_id: str
    username: str
    display_name: str
    issued_at: datetime


# ==================== CONSENT MODELS ====================

class ConsentRequest(BaseModel):
    """One consent or data-rights request sent to a guardian"""
    token: str
    account_id: str
    guardian_email: str
    action: Literal["consent", "data_access", "data_delete"] = "consent"
    status: Literal["pending", "granted", "denied"] = "pending"
    created_at: datetime
    expires_at: datetime
    responded_at: Optional[datetime] = None
    verification_method: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at < now


class ChargeHandle(BaseModel):
    """Result of creating a verification charge"""
    charge_id: str
    client_secret: Optional[str] = None
    amount_cents: int
    currency: str


class ChargeStatus(BaseModel):
    charge_id: str
    status: str
    metadata: Dict[str, str] = Field(default_factory=dict)


# ==================== GOVERNOR MODELS ====================

class GovernorDecision(BaseModel):
    """Result from the usage governor"""
    allowed: bool
    reason: Optional[str] = None
    message: Optional[str] = None
    upgrade_required: bool = False
    wait_seconds: Optional[int] = None

    @classmethod
    def allow(cls) -> "GovernorDecision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: str, upgrade_required: bool = False,
             wait_seconds: Optional[int] = None, message: Optional[str] = None) -> "GovernorDecision":
        return cls(
            allowed=False,
            reason=reason,
            message=message or ERROR_CODES.get(reason, reason),
            upgrade_required=upgrade_required,
            wait_seconds=wait_seconds,
        )

    def raise_for_denial(self):
        if not self.allowed:
            raise QuotaExceeded(
                self.reason,
                self.message,
                upgrade_required=self.upgrade_required,
                wait_seconds=self.wait_seconds,
            )


class ResourceUsage(BaseModel):
    used: int
    limit: Optional[int] = None  # None = unlimited
    remaining: Optional[int] = None


class UsageSummary(BaseModel):
    tier: str
    tier_name: str
    resources: Dict[str, ResourceUsage]
    can_access_premium_assets: bool = False


# ==================== ADMIN MODELS ====================

class AdminSecurityState(BaseModel):
    """Persisted admin second-factor state"""
    enabled: bool = False
    email: Optional[str] = None
    pending_code: Optional[str] = None
    pending_expires_at: Optional[datetime] = None


class AdminLoginResult(BaseModel):
    ok: bool = True
    needs_2fa: bool = False
    token: Optional[str] = None
    expires_at: Optional[datetime] = None
    email_hint: Optional[str] = None


class AdminAuditEntry(BaseModel):
    """One recorded operator action"""
    id: str
    timestamp: datetime
    action: str
    target_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    ip: Optional[str] = None


# ==================== API MODELS ====================

class RegisterRequest(BaseModel):
    username: str
    password: str
    display_name: str
    age_bracket: Optional[str] = None
    age: Optional[int] = None
    guardian_email: Optional[str] = None
    privacy_accepted: bool = False


class LoginRequest(BaseModel):
    username: str
    password: str


class LoginResponse(BaseModel):
    token: str
    account: AccountPublic


class GuardianToggleRequest(BaseModel):
    setting: str = Field(..., description="publishing_enabled, multiplayer_enabled or improvement_opt_out")
    value: bool


class GuardianEmailRequest(BaseModel):
    guardian_email: str


class VerificationChargeCreateRequest(BaseModel):
    consent_token: str


class VerificationChargeConfirmRequest(BaseModel):
    consent_token: str
    charge_id: str


class AdminLoginRequest(BaseModel):
    admin_key: str


class AdminVerifyRequest(BaseModel):
    admin_key: str
    code: str


class AdminSetupRequest(BaseModel):
    email: Optional[str] = None


class AdminCodeRequest(BaseModel):
    code: str


class SuspendRequest(BaseModel):
    reason: Optional[str] = None
    hours: Optional[int] = Field(None, gt=0, description="Omit for an open-ended suspension")


class SetTierRequest(BaseModel):
    tier: str
    months: int = Field(1, ge=1, le=24)


_email_adapter = TypeAdapter(EmailStr)


def normalize_email(value: Optional[str], field: str = "email") -> str:
    """Validate and lowercase an address. Raises ValidationError."""
    try:
        return str(_email_adapter.validate_python((value or "").strip())).lower()
    except PydanticValidationError:
        raise ValidationError(f"invalid_{field}", f"Please enter a valid {field.replace('_', ' ')}")
