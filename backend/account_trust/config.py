"""
Account Trust Configuration and Constants

Tier entitlements, throttle ceilings and token lifetimes are defined here.
Runtime settings (secrets, backend selection) come from the environment.
"""

import os
from pathlib import Path
from typing import List, Literal, Optional

from pydantic import BaseModel

# ==================== MEMBERSHIP TIERS ====================
# None means unlimited
MEMBERSHIP_TIERS = {
    "free": {
        "name": "Free",
        "price_usd": 0,
        "games_per_month": 3,
        "prompts_per_day": 30,
        "plays_per_day": 50,
        "ai_covers_per_month": 0,
        "can_access_premium_assets": False
    },
    "creator": {
        "name": "Creator",
        "price_usd": 7,
        "games_per_month": 25,
        "prompts_per_day": 150,
        "plays_per_day": None,
        "ai_covers_per_month": 5,
        "can_access_premium_assets": True
    },
    "pro": {
        "name": "Pro",
        "price_usd": 14,
        "games_per_month": 50,
        "prompts_per_day": 300,
        "plays_per_day": None,
        "ai_covers_per_month": 20,
        "can_access_premium_assets": True
    }
}

# Most restrictive profile, used whenever a tier cannot be resolved
DEFAULT_TIER = "free"

# ==================== GOVERNED ACTIONS ====================
# action -> (tier limit key, usage counter field, period, denial reason)
GOVERNED_ACTIONS = {
    "generate": ("prompts_per_day", "prompts_today", "daily", "daily_limit"),
    "play": ("plays_per_day", "plays_today", "daily", "daily_limit"),
    "save_game": ("games_per_month", "games_this_month", "monthly", "monthly_limit"),
    "ai_cover": ("ai_covers_per_month", "premium_feature_use_this_month", "monthly", "monthly_limit"),
}

# Actions that also pass through the abuse throttle
THROTTLED_ACTIONS = {"generate"}

# ==================== RATE LIMITS (ABUSE PREVENTION) ====================
RATE_LIMITS = {
    "prompts_per_minute": 5,
    "prompts_per_hour": 30,
    "cooldown_minutes": 5,
    "window_seconds": 3600
}

LOGIN_LIMITS = {
    "max_attempts": 5,
    "window_seconds": 60
}

# ==================== SESSIONS ====================
SESSION_POLICY = {
    "max_age_hours": 24,
    "token_bytes": 32,
    "flush_debounce_seconds": 1.0,
    "sweep_interval_minutes": 30
}

# ==================== CONSENT ====================
CONSENT_POLICY = {
    "token_ttl_hours": 72,
    "coppa_age_threshold": 13,
    "token_bytes": 32
}

AGE_BRACKETS = ("under13", "13to17", "18plus")

CONSENT_ACTIONS = ("consent", "data_access", "data_delete")

GUARDIAN_TOGGLES = ("publishing_enabled", "multiplayer_enabled", "improvement_opt_out")

# Toggles that turn a feature on for the child; require granted consent
GUARDIAN_FEATURE_TOGGLES = ("publishing_enabled", "multiplayer_enabled")

VERIFICATION_METHODS = {
    "email": "email_plus",
    "card": "stripe_micro"
}

# ==================== CARD VERIFICATION CHARGE ====================
VERIFICATION_CHARGE = {
    "amount_cents": 50,
    "currency": "usd",
    "purpose": "parental_verification",
    "description": "Parental consent verification (refunded immediately)"
}

# ==================== ADMIN ====================
ADMIN_POLICY = {
    "token_expiry_hours": 8,
    "code_digits": 6,
    "code_ttl_minutes": 10,
    "audit_page_size": 100,
    "audit_max_page_size": 500,
    "account_page_size": 100
}

# ==================== ERROR CODES ====================
ERROR_CODES = {
    # Sessions / auth
    "NO_TOKEN": "No token provided",
    "INVALID_SESSION": "Invalid or expired session",
    "INVALID_CREDENTIALS": "Invalid username or password",
    "ADMIN_REQUIRED": "Admin access required",
    "INVALID_ADMIN_KEY": "Invalid admin key",
    "INVALID_2FA_CODE": "Invalid or expired verification code",
    "INVALID_GUARDIAN_TOKEN": "Invalid or expired dashboard link",
    # Account state
    "consent_pending": "Your account is waiting for a parent or guardian to approve it. Ask them to check their email.",
    "approval_pending": "Your account is waiting for approval. Check back soon!",
    "account_denied": "Your account request was not approved.",
    "account_suspended": "Your account has been suspended. Contact support.",
    "account_deleted": "This account has been deleted.",
    "verification_pending": "Your account is waiting for verification.",
    "consent_required": "Parental consent is required to use this account.",
    # Governor
    "cooldown": "Whoa, slow down! Take a short break and try again.",
    "rate_limit": "Too many requests! Take a 5-minute break.",
    "hourly_limit": "You've been busy! Try again in a bit.",
    "daily_limit": "You've reached your daily limit. Upgrade for more!",
    "monthly_limit": "You've reached your monthly limit. Upgrade for more!",
    "tier_required": "This feature needs a paid membership.",
    "login_required": "You need to be logged in.",
    "login_rate_limit": "Too many login attempts. Please wait a minute and try again.",
    # Consent
    "consent_expired": "This consent request has expired.",
    "consent_not_found": "Consent request not found.",
    "consent_already_processed": "This request has already been processed.",
    "consent_not_granted": "Parental consent has not been granted for this account.",
    "payment_incomplete": "Payment was not completed.",
    "payment_mismatch": "Payment does not match this consent request.",
}


# ==================== RUNTIME SETTINGS ====================

class EngineSettings(BaseModel):
    """Process-wide settings, read once at startup"""
    environment: str = "development"
    storage_backend: Literal["file", "mongo"] = "file"
    data_dir: str = str(Path(__file__).parent.parent / "data")
    mongo_url: Optional[str] = None
    db_name: Optional[str] = None
    admin_secret: Optional[str] = None
    admin_token_secret: Optional[str] = None
    admin_2fa_email: Optional[str] = None
    resend_api_key: Optional[str] = None
    sender_email: str = "onboarding@resend.dev"
    app_base_url: str = "http://localhost:3001"
    site_name: str = "Game Studio"
    stripe_secret_key: Optional[str] = None
    stripe_publishable_key: Optional[str] = None
    session_flush_debounce_seconds: float = SESSION_POLICY["flush_debounce_seconds"]
    cors_origins: List[str] = ["http://localhost:3000"]

    @property
    def signing_secret(self) -> Optional[str]:
        # Fall back to the first factor when no dedicated signing key is set
        return self.admin_token_secret or self.admin_secret

    @classmethod
    def from_env(cls) -> "EngineSettings":
        backend = os.environ.get("STORAGE_BACKEND")
        if not backend:
            backend = "mongo" if os.environ.get("MONGO_URL") else "file"

        values = {
            "environment": os.environ.get("ENVIRONMENT", "development").lower(),
            "storage_backend": backend.lower(),
            "mongo_url": os.environ.get("MONGO_URL"),
            "db_name": os.environ.get("DB_NAME"),
            "admin_secret": os.environ.get("ADMIN_SECRET"),
            "admin_token_secret": os.environ.get("ADMIN_TOKEN_SECRET"),
            "admin_2fa_email": os.environ.get("ADMIN_2FA_EMAIL"),
            "resend_api_key": os.environ.get("RESEND_API_KEY"),
            "stripe_secret_key": os.environ.get("STRIPE_SECRET_KEY"),
            "stripe_publishable_key": os.environ.get("STRIPE_PUBLISHABLE_KEY"),
            "cors_origins": [
                origin.strip()
                for origin in os.environ.get("CORS_ORIGINS", "http://localhost:3000").split(",")
            ],
        }
        # Only override defaults for variables that are actually set
        optional = {
            "data_dir": "DATA_DIR",
            "sender_email": "SENDER_EMAIL",
            "app_base_url": "APP_BASE_URL",
            "site_name": "SITE_NAME",
            "session_flush_debounce_seconds": "SESSION_FLUSH_DEBOUNCE_SECONDS",
        }
        for field, var in optional.items():
            if os.environ.get(var):
                values[field] = os.environ[var]

        return cls(**values)
