"""
Usage Governor - abuse throttle + tier quotas

Two checks, composed in order for every "consume a resource" action:
1. Abuse throttle (sliding window, per account, throttled actions only)
2. Tier quota (daily/monthly counters against the account's tier)

Counters are incremented by record_usage() only after the governed action
has completed. The check-then-increment sequence is not atomic: two
requests for the same account that are both in flight can each pass the
check before either increments.

Storage failures during a check fail OPEN: the action is allowed and the
failure is logged.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Callable, Optional

from .config import RATE_LIMITS, GOVERNED_ACTIONS, THROTTLED_ACTIONS
from .errors import NotFoundError, ValidationError
from .models import Account, GovernorDecision, UsageSummary
from .plan_resolver import resolve_tier, apply_calendar_reset, build_usage_summary
from .sessions import utcnow

logger = logging.getLogger(__name__)


class UsageGovernor:
    """
    Usage:
        governor = UsageGovernor(storage)
        decision = await governor.check(account_id, "generate")
        if not decision.allowed:
            decision.raise_for_denial()

        result = await do_the_work()
        await governor.record_usage(account_id, "generate")
    """

    def __init__(self, storage, now_fn: Callable[[], datetime] = utcnow, rate_limits: Optional[dict] = None):
        self.storage = storage
        self.now_fn = now_fn
        self.rate_limits = rate_limits or RATE_LIMITS

    async def _load(self, account_id: str, check: str) -> Optional[Account]:
        """Read the account; None means the read failed and the check fails open."""
        try:
            return await self.storage.read_account(account_id)
        except NotFoundError:
            raise
        except Exception as e:
            logger.error(f"{check} check failed open for account {account_id}: {e}")
            return None

    async def _save(self, account: Account, context: str):
        try:
            await self.storage.write_account(account)
        except Exception as e:
            logger.error(f"Failed to persist {context} for account {account.id}: {e}")

    async def check_rate_limit(self, account_id: Optional[str]) -> GovernorDecision:
        """Sliding-window abuse throttle."""
        if not account_id:
            return GovernorDecision.allow()

        try:
            account = await self._load(account_id, "Rate limit")
        except NotFoundError:
            return GovernorDecision.deny("login_required")
        if account is None:
            return GovernorDecision.allow()

        now = self.now_fn()
        state = account.rate_limit

        # 1. Active cooldown wins over everything else
        if state.cooldown_until and state.cooldown_until > now:
            wait = math.ceil((state.cooldown_until - now).total_seconds())
            minutes = math.ceil(wait / 60)
            return GovernorDecision.deny(
                "cooldown",
                wait_seconds=wait,
                message=f"Whoa, slow down! Try again in {minutes} minute{'s' if minutes != 1 else ''}."
            )

        # 2. Prune to the trailing window
        window = self.rate_limits["window_seconds"]
        recent = [ts for ts in state.recent_request_timestamps if (now - ts).total_seconds() < window]
        last_minute = sum(1 for ts in recent if (now - ts).total_seconds() < 60)

        # 3. Per-minute ceiling trips a cooldown
        if last_minute >= self.rate_limits["prompts_per_minute"]:
            cooldown = timedelta(minutes=self.rate_limits["cooldown_minutes"])
            state.cooldown_until = now + cooldown
            state.recent_request_timestamps = recent
            await self._save(account, "cooldown")
            logger.info(f"Cooldown started for account {account_id} until {state.cooldown_until.isoformat()}")
            return GovernorDecision.deny("rate_limit", wait_seconds=int(cooldown.total_seconds()))

        # 4. Per-hour ceiling is a soft throttle, no cooldown
        if len(recent) >= self.rate_limits["prompts_per_hour"]:
            oldest = min(recent)
            wait = max(1, math.ceil(window - (now - oldest).total_seconds()))
            return GovernorDecision.deny("hourly_limit", wait_seconds=wait)

        # 5. Allowed: record this request
        recent.append(now)
        state.recent_request_timestamps = recent
        state.cooldown_until = None
        await self._save(account, "rate limit timestamps")
        return GovernorDecision.allow()

    async def check_tier_limit(self, account_id: Optional[str], action: str) -> GovernorDecision:
        """Compare the action's counter against the account's tier."""
        if action not in GOVERNED_ACTIONS:
            raise ValidationError("invalid_action", f"Unknown governed action '{action}'")

        if not account_id:
            return GovernorDecision.deny("login_required")

        try:
            account = await self._load(account_id, "Tier limit")
        except NotFoundError:
            return GovernorDecision.deny("login_required")
        if account is None:
            return GovernorDecision.allow()

        now = self.now_fn()
        tier, limits = resolve_tier(account.membership, now)
        usage = apply_calendar_reset(account.usage, now)

        limit_key, counter, period, reason = GOVERNED_ACTIONS[action]
        limit = limits.get(limit_key)
        if limit is None:
            return GovernorDecision.allow()

        if limit == 0:
            return GovernorDecision.deny("tier_required", upgrade_required=True)

        used = getattr(usage, counter)
        if used >= limit:
            period_word = "today" if period == "daily" else "this month"
            return GovernorDecision.deny(
                reason,
                upgrade_required=True,
                message=f"You've used all {limit} {action.replace('_', ' ')} uses {period_word} "
                        f"on the {limits['name']} plan. Upgrade for more!"
            )

        return GovernorDecision.allow()

    async def check(self, account_id: Optional[str], action: str) -> GovernorDecision:
        """Throttle (when the action is throttled) then tier quota."""
        if action in THROTTLED_ACTIONS:
            decision = await self.check_rate_limit(account_id)
            if not decision.allowed:
                return decision
        return await self.check_tier_limit(account_id, action)

    async def record_usage(self, account_id: str, action: str):
        """Increment the action's counter. Call only after the action completed."""
        if action not in GOVERNED_ACTIONS:
            raise ValidationError("invalid_action", f"Unknown governed action '{action}'")

        try:
            account = await self.storage.read_account(account_id)
        except Exception as e:
            logger.error(f"Could not record {action} usage for account {account_id}: {e}")
            return

        _limit_key, counter, _period, _reason = GOVERNED_ACTIONS[action]
        usage = apply_calendar_reset(account.usage, self.now_fn())
        setattr(usage, counter, getattr(usage, counter) + 1)
        account.usage = usage
        await self._save(account, f"{action} usage")

    async def usage_summary(self, account_id: str) -> UsageSummary:
        account = await self.storage.read_account(account_id)
        now = self.now_fn()
        tier, limits = resolve_tier(account.membership, now)
        return build_usage_summary(tier, limits, apply_calendar_reset(account.usage, now))
