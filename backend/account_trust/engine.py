"""
Trust Engine - wires storage, sessions, governor, consent and admin services

One engine is built per process and hung off app.state.engine. Background
maintenance (expired-session sweep, login limiter purge) runs on an
AsyncIOScheduler owned by the engine.
"""

import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from .accounts import AccountService
from .admin_auth import AdminAuthService
from .audit import AdminAuditLog
from .config import LOGIN_LIMITS, SESSION_POLICY, EngineSettings
from .consent import ConsentService
from .email_service import EmailService
from .governor import UsageGovernor
from .login_limiter import LoginAttemptTracker
from .payments import PaymentProvider, StripePaymentProvider
from .sessions import FileSessionStore, MongoSessionStore, SessionStore, utcnow
from .storage import MongoStorageBackend, StorageBackend, create_storage

logger = logging.getLogger(__name__)


class TrustEngine:
    def __init__(
        self,
        settings: EngineSettings,
        storage: StorageBackend,
        sessions: SessionStore,
        email_service: EmailService,
        payments: PaymentProvider,
        now_fn: Callable[[], datetime] = utcnow
    ):
        self.settings = settings
        self.storage = storage
        self.sessions = sessions
        self.email_service = email_service
        self.payments = payments

        self.login_attempts = LoginAttemptTracker(
            max_attempts=LOGIN_LIMITS["max_attempts"],
            window_seconds=LOGIN_LIMITS["window_seconds"]
        )
        self.governor = UsageGovernor(storage, now_fn=now_fn)
        self.consent = ConsentService(storage, sessions, email_service, payments, now_fn=now_fn)
        self.admin = AdminAuthService(settings, storage, email_service, now_fn=now_fn)
        self.audit = AdminAuditLog(storage, now_fn=now_fn)
        self.accounts = AccountService(
            storage, sessions, self.consent, self.login_attempts, self.governor, self.audit, now_fn=now_fn
        )
        self.scheduler: Optional[AsyncIOScheduler] = None

    async def _sweep_sessions(self):
        try:
            removed = await self.sessions.sweep_expired()
        except Exception as e:
            logger.error(f"Session sweep failed: {e}")
            return
        if removed:
            logger.info(f"Session sweep removed {removed} expired sessions")

    def _purge_login_attempts(self):
        self.login_attempts.purge()

    async def start(self, run_scheduler: bool = True):
        await self.storage.initialize()
        await self.sessions.load()

        if run_scheduler:
            self.scheduler = AsyncIOScheduler()
            self.scheduler.add_job(
                self._sweep_sessions,
                'interval',
                minutes=SESSION_POLICY["sweep_interval_minutes"],
                id="session_sweep",
                replace_existing=True
            )
            self.scheduler.add_job(
                self._purge_login_attempts,
                'interval',
                seconds=LOGIN_LIMITS["window_seconds"],
                id="login_attempt_purge",
                replace_existing=True
            )
            self.scheduler.start()
            logger.info(
                f"Trust engine started - session sweep every {SESSION_POLICY['sweep_interval_minutes']} min"
            )

    async def close(self):
        if self.scheduler and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Trust engine scheduler shut down")

        # Flush pending session writes before the storage goes away
        await self.sessions.close()
        await self.storage.close()


def build_engine(
    settings: EngineSettings,
    *,
    storage: Optional[StorageBackend] = None,
    email_service: Optional[EmailService] = None,
    payments: Optional[PaymentProvider] = None,
    now_fn: Callable[[], datetime] = utcnow
) -> TrustEngine:
    """Build an engine from settings; collaborators can be swapped for tests."""
    storage = storage or create_storage(settings)
    max_age = timedelta(hours=SESSION_POLICY["max_age_hours"])

    if isinstance(storage, MongoStorageBackend):
        sessions = MongoSessionStore(storage.db, max_age=max_age, now_fn=now_fn)
    else:
        sessions = FileSessionStore(
            str(Path(settings.data_dir) / "sessions.json"),
            debounce_seconds=settings.session_flush_debounce_seconds,
            max_age=max_age,
            now_fn=now_fn
        )

    if email_service is None:
        email_service = EmailService(settings)
        email_service.initialize()

    if payments is None:
        payments = StripePaymentProvider(settings.stripe_secret_key, settings.stripe_publishable_key)

    return TrustEngine(settings, storage, sessions, email_service, payments, now_fn=now_fn)
