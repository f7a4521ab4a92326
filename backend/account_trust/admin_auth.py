"""
Admin Trust Layer

First factor: shared admin secret (X-Admin-Key header).
Second factor (optional): one 6-digit code at a time, emailed on demand,
valid for 10 minutes and cleared on use or on detected expiry.
Session artifact: base64url(payload) + "." + base64url(HMAC-SHA256(payload)),
payload = {"capability": "admin", "exp": <unix seconds>}.
The two-part payload.signature format is fixed for admin clients, so this
is signed with hmac directly rather than issued as a three-part JWT.

Admin tokens are stateless. They stay valid until their embedded expiry,
even if the second factor is disabled after they were issued.
"""

import base64
import binascii
import hashlib
import hmac
import json
import logging
import re
import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple

from .config import ADMIN_POLICY, EngineSettings
from .email_service import mask_email
from .errors import AuthError, ProviderNotConfiguredError, ValidationError
from .models import AdminLoginResult, AdminSecurityState, normalize_email
from .sessions import utcnow

logger = logging.getLogger(__name__)

_CODE_PATTERN = re.compile(r"^\d{%d}$" % ADMIN_POLICY["code_digits"])


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(text: str) -> bytes:
    padded = text + "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


class AdminAuthService:
    def __init__(self, settings: EngineSettings, storage, email_service, now_fn: Callable[[], datetime] = utcnow):
        self.settings = settings
        self.storage = storage
        self.email_service = email_service
        self.now_fn = now_fn
        self.token_ttl = timedelta(hours=ADMIN_POLICY["token_expiry_hours"])
        self.code_ttl = timedelta(minutes=ADMIN_POLICY["code_ttl_minutes"])

    # ==================== FIRST FACTOR ====================

    def verify_first_factor(self, admin_key: Optional[str]) -> bool:
        secret = self.settings.admin_secret
        if not secret or not admin_key:
            return False
        return hmac.compare_digest(admin_key.encode("utf-8"), secret.encode("utf-8"))

    # ==================== SIGNED TOKENS ====================

    def _signing_key(self) -> bytes:
        secret = self.settings.signing_secret
        if not secret:
            raise ProviderNotConfiguredError("admin_not_configured", "Admin access is not configured")
        return secret.encode("utf-8")

    def create_token(self) -> Tuple[str, datetime]:
        expires_at = self.now_fn() + self.token_ttl
        payload = json.dumps(
            {"capability": "admin", "exp": int(expires_at.timestamp())},
            separators=(",", ":"),
            sort_keys=True
        ).encode("utf-8")
        signature = hmac.new(self._signing_key(), payload, hashlib.sha256).digest()
        return f"{_b64encode(payload)}.{_b64encode(signature)}", expires_at

    def verify_token(self, token: Optional[str]) -> bool:
        """Signature and expiry only; no stored state is consulted."""
        if not token or not self.settings.signing_secret:
            return False
        try:
            payload_part, signature_part = token.split(".")
            payload = _b64decode(payload_part)
            signature = _b64decode(signature_part)
        except (ValueError, binascii.Error):
            return False

        expected = hmac.new(self._signing_key(), payload, hashlib.sha256).digest()
        if not hmac.compare_digest(signature, expected):
            return False

        try:
            data = json.loads(payload)
        except ValueError:
            return False
        if not isinstance(data, dict) or data.get("capability") != "admin":
            return False
        exp = data.get("exp")
        if not isinstance(exp, int):
            return False
        return exp > self.now_fn().timestamp()

    # ==================== SECOND FACTOR ====================

    async def get_state(self) -> AdminSecurityState:
        return await self.storage.read_admin_security()

    async def status(self) -> dict:
        state = await self.get_state()
        return {
            "configured": bool(self.settings.admin_secret),
            "two_factor_enabled": state.enabled,
            "email_hint": mask_email(state.email),
        }

    async def send_code(self, email: Optional[str] = None) -> dict:
        """Generate a fresh code, replacing any pending one, and email it."""
        state = await self.get_state()
        target = email or state.email or self.settings.admin_2fa_email
        if not target:
            raise ValidationError("no_2fa_email", "No email address configured for admin verification")

        code = f"{secrets.randbelow(10 ** ADMIN_POLICY['code_digits']):0{ADMIN_POLICY['code_digits']}d}"
        state.pending_code = code
        state.pending_expires_at = self.now_fn() + self.code_ttl
        await self.storage.write_admin_security(state)

        result = await self.email_service.send_admin_code(target, code)
        if result.get("status") == "error":
            logger.error(f"Admin verification email failed: {result.get('reason')}")

        return {"email_sent": result.get("status") == "success", "email_hint": mask_email(target)}

    async def verify_code(self, code: Optional[str]) -> bool:
        normalized = re.sub(r"\s+", "", code or "")
        if not _CODE_PATTERN.match(normalized):
            return False

        state = await self.get_state()
        if not state.pending_code:
            return False

        if state.pending_expires_at is None or self.now_fn() > state.pending_expires_at:
            state.pending_code = None
            state.pending_expires_at = None
            await self.storage.write_admin_security(state)
            return False

        if not hmac.compare_digest(normalized, state.pending_code):
            return False

        state.pending_code = None
        state.pending_expires_at = None
        await self.storage.write_admin_security(state)
        return True

    # ==================== LOGIN FLOW ====================

    def _require_first_factor(self, admin_key: Optional[str]):
        if not self.verify_first_factor(admin_key):
            logger.warning("Admin login failed: bad admin key")
            raise AuthError("INVALID_ADMIN_KEY")

    async def login(self, admin_key: str) -> AdminLoginResult:
        """First step. With 2FA on, emails a code and asks for it."""
        self._require_first_factor(admin_key)

        state = await self.get_state()
        if state.enabled:
            sent = await self.send_code()
            return AdminLoginResult(ok=True, needs_2fa=True, email_hint=sent["email_hint"])

        return AdminLoginResult(ok=True)

    async def verify_login(self, admin_key: str, code: str) -> AdminLoginResult:
        self._require_first_factor(admin_key)

        state = await self.get_state()
        if not state.enabled:
            raise ValidationError("2fa_not_enabled", "Two-factor authentication is not enabled")

        if not await self.verify_code(code):
            logger.warning("Admin login failed: bad verification code")
            raise AuthError("INVALID_2FA_CODE")

        token, expires_at = self.create_token()
        logger.info("Admin signed in with second factor")
        return AdminLoginResult(ok=True, token=token, expires_at=expires_at)

    async def begin_setup(self, email: Optional[str] = None) -> dict:
        target = normalize_email(email or self.settings.admin_2fa_email)
        state = await self.get_state()
        state.email = target
        await self.storage.write_admin_security(state)
        return await self.send_code(target)

    async def confirm_setup(self, code: str) -> AdminLoginResult:
        if not await self.verify_code(code):
            raise AuthError("INVALID_2FA_CODE")

        state = await self.get_state()
        state.enabled = True
        await self.storage.write_admin_security(state)
        logger.info("Admin two-factor authentication enabled")

        # X-Admin-Key alone stops working once 2FA is on
        token, expires_at = self.create_token()
        return AdminLoginResult(ok=True, token=token, expires_at=expires_at)

    async def disable(self):
        state = await self.get_state()
        state.enabled = False
        state.pending_code = None
        state.pending_expires_at = None
        await self.storage.write_admin_security(state)
        logger.info("Admin two-factor authentication disabled")

    # ==================== AUTHORIZATION ====================

    async def authorize(self, admin_key: Optional[str] = None, bearer_token: Optional[str] = None) -> str:
        """
        Decide whether a request carries admin rights.

        Returns:
            "token" or "key", naming the credential that was accepted
        """
        if bearer_token and self.verify_token(bearer_token):
            return "token"

        if admin_key and self.verify_first_factor(admin_key):
            state = await self.get_state()
            if not state.enabled:
                return "key"
            raise AuthError("ADMIN_REQUIRED", "Two-factor authentication is enabled. Sign in with your verification code.")

        raise AuthError("ADMIN_REQUIRED")
