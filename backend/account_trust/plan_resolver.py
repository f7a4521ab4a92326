"""
Plan Resolver - resolves an account's membership tier and calendar periods

Rules:
- Unknown or missing tiers fail closed to the most restrictive profile
- A paid tier whose membership has expired resolves to the default tier
- Counter resets are computed from "now" on every read; nothing here writes
"""

import logging
from datetime import datetime
from typing import Tuple

from .config import MEMBERSHIP_TIERS, DEFAULT_TIER, GOVERNED_ACTIONS
from .errors import ValidationError
from .models import MembershipInfo, UsageCounters, UsageSummary, ResourceUsage

logger = logging.getLogger(__name__)


def resolve_tier(membership: MembershipInfo, now: datetime) -> Tuple[str, dict]:
    """
    Resolve the effective tier for a membership record.

    Returns:
        Tuple of (tier_name, tier_limits)
    """
    tier = (membership.tier or "").strip().lower()

    if tier not in MEMBERSHIP_TIERS:
        if tier:
            logger.warning(f"Unknown membership tier '{membership.tier}', using {DEFAULT_TIER}")
        return DEFAULT_TIER, MEMBERSHIP_TIERS[DEFAULT_TIER]

    if tier != DEFAULT_TIER and membership.expires_at and membership.expires_at <= now:
        logger.debug(f"Membership tier {tier} expired at {membership.expires_at.isoformat()}")
        return DEFAULT_TIER, MEMBERSHIP_TIERS[DEFAULT_TIER]

    return tier, MEMBERSHIP_TIERS[tier]


def validate_tier(tier: str) -> str:
    """Normalize a tier name supplied by an operator. Raises ValidationError."""
    normalized = (tier or "").strip().lower()
    if normalized not in MEMBERSHIP_TIERS:
        raise ValidationError(
            "invalid_tier",
            f"Unknown tier '{tier}'. Valid tiers: {', '.join(MEMBERSHIP_TIERS)}"
        )
    return normalized


def apply_calendar_reset(usage: UsageCounters, now: datetime) -> UsageCounters:
    """
    Return counters valid for the calendar period containing `now` (UTC).

    Daily counters reset when the stored day differs from today; monthly
    counters when the stored year+month differs. Calling this any number
    of times within one period returns the same result.
    """
    updated = usage.model_copy()

    if usage.daily_reset_date is None or usage.daily_reset_date.date() != now.date():
        updated.prompts_today = 0
        updated.plays_today = 0
        updated.daily_reset_date = now

    stamp = usage.monthly_reset_date
    if stamp is None or (stamp.year, stamp.month) != (now.year, now.month):
        updated.games_this_month = 0
        updated.premium_feature_use_this_month = 0
        updated.monthly_reset_date = now

    return updated


def build_usage_summary(tier: str, limits: dict, usage: UsageCounters) -> UsageSummary:
    """Remaining/limit per governed action for already-reset counters."""
    resources = {}
    for action, (limit_key, counter, _period, _reason) in GOVERNED_ACTIONS.items():
        used = getattr(usage, counter)
        limit = limits.get(limit_key)
        resources[action] = ResourceUsage(
            used=used,
            limit=limit,
            remaining=None if limit is None else max(0, limit - used)
        )

    return UsageSummary(
        tier=tier,
        tier_name=limits["name"],
        resources=resources,
        can_access_premium_assets=limits.get("can_access_premium_assets", False)
    )
