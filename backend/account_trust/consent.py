"""
Consent Service - parental consent lifecycle and guardian controls

States: not_required, pending, granted, denied, revoked

Verification channels:
- Email link (low reliability): guardian clicks grant/deny in the email
- Card verification (high reliability): a small charge whose metadata
  carries the consent token, refunded before success is reported

Rules:
- A consent request is resolved exactly once; the first transition out
  of 'pending' wins and later attempts change nothing
- An expired request is rejected whatever its stored status
- Revoked consent is terminal; nothing here moves it back to granted
- Guardian capability tokens are minted when consent is granted and
  cleared when the account's data is deleted
"""

import logging
import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional

from .config import (
    CONSENT_POLICY,
    CONSENT_ACTIONS,
    GUARDIAN_TOGGLES,
    GUARDIAN_FEATURE_TOGGLES,
    VERIFICATION_CHARGE,
    VERIFICATION_METHODS,
)
from .errors import (
    AuthError,
    ConsentExpiredError,
    ConsentStateError,
    NotFoundError,
    ValidationError,
)
from .models import Account, ChargeHandle, ConsentRequest, GuardianControls, RateLimitState
from .sessions import utcnow

logger = logging.getLogger(__name__)


def get_age_bracket(age: int) -> str:
    if age < CONSENT_POLICY["coppa_age_threshold"]:
        return "under13"
    if age < 18:
        return "13to17"
    return "18plus"


def requires_parental_consent(age_bracket: Optional[str]) -> bool:
    return age_bracket == "under13"


def generate_consent_token() -> str:
    return secrets.token_hex(CONSENT_POLICY["token_bytes"])


class ConsentService:
    """
    Usage:
        consent = ConsentService(storage, sessions, email_service, payments)
        request = await consent.create_request(account, "parent@example.com")
        result = await consent.handle_link(request.token, "grant")
    """

    def __init__(self, storage, sessions, email_service, payments, now_fn: Callable[[], datetime] = utcnow):
        self.storage = storage
        self.sessions = sessions
        self.email_service = email_service
        self.payments = payments
        self.now_fn = now_fn
        self.ttl = timedelta(hours=CONSENT_POLICY["token_ttl_hours"])

    # ==================== REQUESTS ====================

    async def create_request(self, account: Account, guardian_email: str, action: str = "consent") -> ConsentRequest:
        """Persist a consent request and email the guardian (never the child)."""
        if action not in CONSENT_ACTIONS:
            raise ValidationError("invalid_consent_action", f"Unknown consent action '{action}'")

        now = self.now_fn()
        request = ConsentRequest(
            token=generate_consent_token(),
            account_id=account.id,
            guardian_email=guardian_email.strip().lower(),
            action=action,
            created_at=now,
            expires_at=now + self.ttl,
        )
        await self.storage.insert_consent_request(request)

        result = await self.email_service.send_consent_request(
            request.guardian_email,
            request.token,
            action,
            account.username,
            account.display_name,
        )
        if result.get("status") == "error":
            logger.error(f"Consent email for account {account.id} failed: {result.get('reason')}")

        logger.info(f"Created {action} request for account {account.id}")
        return request

    async def validate_request(self, token: str, require_pending: bool = True) -> ConsentRequest:
        """Look up a request and enforce expiry (and optionally pending status)."""
        request = await self.storage.read_consent_request(token) if token else None
        if request is None:
            raise NotFoundError("consent_not_found")

        if request.is_expired(self.now_fn()):
            raise ConsentExpiredError("consent_expired")

        if require_pending and request.status != "pending":
            raise ConsentStateError("consent_already_processed")

        return request

    async def resolve(self, token: str, granted: bool, method: Optional[str] = None) -> bool:
        """
        Resolve a pending request.

        Returns:
            True if this call performed the transition, False if the request
            was already resolved (no-op)
        """
        await self.validate_request(token, require_pending=False)
        status = "granted" if granted else "denied"
        won = await self.storage.resolve_consent_request(token, status, self.now_fn(), method)
        if not won:
            logger.info(f"Consent request already resolved, ignoring {status}")
        return won

    async def _apply_consent_outcome(self, account_id: str, granted: bool, method: str) -> Account:
        """Write the consent result onto the account. Storage errors propagate."""
        account = await self.storage.read_account(account_id)
        now = self.now_fn()

        if account.consent.status == "revoked" or account.status == "deleted":
            raise ConsentStateError("consent_already_processed", "Consent for this account can no longer be changed.")

        if granted:
            account.consent.status = "granted"
            account.consent.consented_at = account.consent.consented_at or now
            account.consent.verified_method = method
            account.consent.verified_at = now
            if account.status == "pending":
                account.status = "approved"
                account.approved_at = now
            if not account.consent.guardian_token:
                account.consent.guardian_token = generate_consent_token()
        else:
            account.consent.status = "denied"
            if account.status == "pending":
                account.status = "denied"
                account.denied_at = now

        await self.storage.write_account(account)
        logger.info(f"Consent {'granted' if granted else 'denied'} for account {account_id} via {method}")
        return account

    # ==================== EMAIL LINK CHANNEL ====================

    async def handle_link(self, token: str, action: str) -> dict:
        """Guardian clicked grant or deny in a consent / data-rights email."""
        if action not in ("grant", "deny"):
            raise ValidationError("invalid_link_action", "Invalid action")

        request = await self.validate_request(token, require_pending=False)
        granted = action == "grant"
        method = VERIFICATION_METHODS["email"]

        if request.status == "pending" and await self.resolve(token, granted, method):
            return await self._finish_link(request, granted, method)

        current = await self.storage.read_consent_request(token) or request
        if await self._outcome_not_applied(current):
            # The request was resolved but the account write never landed
            logger.warning(f"Re-applying {current.status} consent for account {current.account_id}")
            return await self._finish_link(
                current, current.status == "granted", current.verification_method or method
            )

        return {
            "status": "already_processed",
            "outcome": current.status,
            "message": "This request has already been processed."
        }

    async def _outcome_not_applied(self, request: ConsentRequest) -> bool:
        """True when a resolved account-consent request never reached the account."""
        if request.action != "consent" or request.status == "pending":
            return False
        try:
            account = await self.storage.read_account(request.account_id)
        except NotFoundError:
            return False
        return account.status != "deleted" and account.consent.status == "pending"

    async def _finish_link(self, request: ConsentRequest, granted: bool, method: str) -> dict:
        if not granted:
            if request.action == "consent":
                await self._apply_consent_outcome(request.account_id, False, method)
                return {"status": "denied", "action": request.action,
                        "message": "The account request has been denied. No account will be created."}
            return {"status": "denied", "action": request.action, "message": "The request was cancelled."}

        if request.action == "data_access":
            data = await self.export_account_data(request.account_id)
            return {"status": "granted", "action": request.action, "data": data}

        if request.action == "data_delete":
            summary = await self.delete_account_data(request.account_id)
            return {"status": "granted", "action": request.action,
                    "message": "The account and its data have been deleted.", **summary}

        account = await self._apply_consent_outcome(request.account_id, True, method)
        return {
            "status": "granted",
            "action": request.action,
            "message": "Thank you! The account is now active.",
            "guardian_token": account.consent.guardian_token,
        }

    async def request_data_rights(self, guardian_email: str, action: str) -> int:
        """
        Start a data access/deletion request for every account listing this
        guardian address. Callers must respond identically whatever the count.
        """
        if action not in ("data_access", "data_delete"):
            raise ValidationError("invalid_consent_action", f"Unknown data request '{action}'")

        accounts = await self.storage.find_accounts_by_guardian_email(guardian_email)
        sent = 0
        for account in accounts:
            if account.status == "deleted":
                continue
            await self.create_request(account, guardian_email, action)
            sent += 1
        return sent

    # ==================== CARD VERIFICATION CHANNEL ====================

    async def create_verification_charge(self, consent_token: str) -> ChargeHandle:
        request = await self.validate_request(consent_token)
        if request.action != "consent":
            raise ValidationError("invalid_consent_action", "Card verification is only used for account consent")

        return await self.payments.create_charge(
            amount_cents=VERIFICATION_CHARGE["amount_cents"],
            currency=VERIFICATION_CHARGE["currency"],
            metadata={
                "purpose": VERIFICATION_CHARGE["purpose"],
                "consent_token": consent_token,
                "account_id": request.account_id,
            },
            description=VERIFICATION_CHARGE["description"],
        )

    async def confirm_verification_charge(self, consent_token: str, charge_id: str) -> dict:
        """
        Confirm a card verification.

        The charge must have succeeded and carry this consent token. It is
        refunded before anything else happens; a failed refund is logged for
        manual follow-up and does not block the grant.
        """
        charge = await self.payments.retrieve_charge(charge_id)
        if charge.status != "succeeded":
            raise ValidationError("payment_incomplete")
        if (charge.metadata.get("consent_token") != consent_token
                or charge.metadata.get("purpose") != VERIFICATION_CHARGE["purpose"]):
            raise ValidationError("payment_mismatch")

        refunded = True
        try:
            await self.payments.refund(charge_id)
        except Exception as e:
            refunded = False
            logger.error(f"REFUND FAILED for verification charge {charge_id} "
                         f"(consent {consent_token[:8]}...), needs manual refund: {e}")

        request = await self.validate_request(consent_token, require_pending=False)
        method = VERIFICATION_METHODS["card"]

        won = await self.storage.resolve_consent_request(consent_token, "granted", self.now_fn(), method)
        if not won:
            current = await self.storage.read_consent_request(consent_token)
            if current is None or current.status != "granted":
                raise ConsentStateError("consent_already_processed")
            # Already granted by email link: record the stronger verification
            logger.info(f"Upgrading verification for account {request.account_id} to {method}")

        account = await self._apply_consent_outcome(request.account_id, True, method)
        return {
            "status": "granted",
            "verification_method": method,
            "refunded": refunded,
            "guardian_token": account.consent.guardian_token,
        }

    # ==================== GUARDIAN CAPABILITY ====================

    async def authenticate_guardian(self, token: Optional[str]) -> Account:
        account = await self.storage.find_account_by_guardian_token(token) if token else None
        if account is None or account.status == "deleted":
            raise AuthError("INVALID_GUARDIAN_TOKEN")
        return account

    async def guardian_summary(self, token: str) -> dict:
        account = await self.authenticate_guardian(token)
        projects = await self.storage.list_projects(account.id)
        return {
            "account": {
                "username": account.username,
                "display_name": account.display_name,
                "status": account.status,
                "created_at": account.created_at,
                "last_login_at": account.last_login_at,
                "tier": account.tier,
            },
            "consent": {
                "status": account.consent.status,
                "verified_method": account.consent.verified_method,
                "consented_at": account.consent.consented_at,
                "revoked_at": account.consent.revoked_at,
            },
            "settings": account.controls.model_dump(),
            "projects": [self._project_summary(p) for p in projects],
        }

    async def toggle_setting(self, token: str, setting: str, value: bool) -> GuardianControls:
        account = await self.authenticate_guardian(token)

        if setting not in GUARDIAN_TOGGLES:
            raise ValidationError(
                "invalid_setting",
                f"Invalid setting. Allowed: {', '.join(GUARDIAN_TOGGLES)}"
            )
        if value and setting in GUARDIAN_FEATURE_TOGGLES and account.consent.status != "granted":
            raise ConsentStateError("consent_not_granted")

        setattr(account.controls, setting, value)
        await self.storage.write_account(account)
        logger.info(f"Guardian set {setting}={value} for account {account.id}")
        return account.controls

    async def revoke(self, token: str) -> Account:
        """Withdraw consent: suspend the account and force shared features off."""
        account = await self.authenticate_guardian(token)
        if account.consent.status != "granted":
            raise ConsentStateError("consent_not_granted", "Only granted consent can be revoked.")

        now = self.now_fn()
        account.consent.status = "revoked"
        account.consent.revoked_at = now
        account.status = "suspended"
        account.suspended_at = now
        account.suspended_until = None
        account.suspend_reason = "Parental consent revoked"
        account.controls.publishing_enabled = False
        account.controls.multiplayer_enabled = False

        await self.storage.write_account(account)
        await self.sessions.revoke_account(account.id)
        logger.info(f"Guardian revoked consent for account {account.id}")
        return account

    async def export_for_guardian(self, token: str) -> dict:
        account = await self.authenticate_guardian(token)
        return await self.export_account_data(account.id)

    async def delete_for_guardian(self, token: str) -> dict:
        account = await self.authenticate_guardian(token)
        return await self.delete_account_data(account.id)

    # ==================== DATA RIGHTS ====================

    @staticmethod
    def _project_summary(project: dict) -> dict:
        return {
            "id": project.get("id"),
            "title": project.get("title"),
            "is_public": project.get("is_public", False),
            "created_at": project.get("created_at"),
            "updated_at": project.get("updated_at"),
        }

    async def export_account_data(self, account_id: str) -> dict:
        """Full data snapshot minus credentials and throttle bookkeeping."""
        account = await self.storage.read_account(account_id)
        projects = await self.storage.list_projects(account_id)

        data = account.model_dump(mode="json", exclude={"password_hash", "rate_limit"})
        data["consent"].pop("guardian_token", None)

        exported = []
        for project in projects:
            summary = self._project_summary(project)
            summary["code_length"] = len(project.get("code") or "")
            exported.append(summary)

        return {
            "exported_at": self.now_fn().isoformat(),
            "account": data,
            "projects": exported,
        }

    async def delete_account_data(self, account_id: str) -> dict:
        """Delete all projects and anonymize the account record."""
        account = await self.storage.read_account(account_id)
        projects = await self.storage.list_projects(account_id)

        deleted = 0
        for project in projects:
            try:
                await self.storage.delete_project(project["id"])
                deleted += 1
            except NotFoundError:
                continue

        now = self.now_fn()
        account.status = "deleted"
        account.deleted_at = now
        account.display_name = "Deleted User"
        account.password_hash = None
        account.consent.guardian_email = None
        account.consent.guardian_token = None
        account.consent.data_deletion_requested = True
        account.rate_limit = RateLimitState()
        account.controls = GuardianControls()

        await self.storage.write_account(account)
        await self.sessions.revoke_account(account_id)
        logger.info(f"Deleted data for account {account_id} ({deleted} projects)")
        return {"deleted_projects": deleted}
