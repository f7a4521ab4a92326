"""
External Provider Tests

Resend and Stripe are never contacted: the SDK entry points are patched.

Tests:
1. Email templates, skip when unconfigured, delivery errors reported not raised
2. Stripe charges: create, lookup, refund, error mapping
3. Settings loaded from the environment
"""

import sys
from pathlib import Path
from types import SimpleNamespace

import pytest
import stripe

sys.path.insert(0, str(Path(__file__).parent.parent))

from account_trust.config import EngineSettings
from account_trust.email_service import EmailService, mask_email
from account_trust.errors import NotFoundError, ProviderNotConfiguredError, TransientBackendError
from account_trust.payments import StripePaymentProvider


class TestEmailService:

    @pytest.mark.asyncio
    async def test_unconfigured_service_skips(self, settings):
        service = EmailService(settings)
        result = await service.send_admin_code("ops@example.com", "123456")
        assert result["status"] == "skipped"

    @pytest.mark.asyncio
    async def test_consent_email_carries_links(self, settings, monkeypatch):
        sent = []

        def fake_send(params):
            sent.append(params)
            return {"id": "email_1"}

        monkeypatch.setattr("account_trust.email_service.resend.Emails.send", fake_send)
        service = EmailService(settings.model_copy(update={"resend_api_key": "re_test"}))

        result = await service.send_consent_request(
            "parent@example.com", "tok123", "consent", "little_one", "Little One"
        )

        assert result == {"status": "success", "email_id": "email_1"}
        params = sent[0]
        assert params["to"] == ["parent@example.com"]
        assert "Little One" in params["html"]
        assert "/api/parent/verify?token=tok123&action=grant" in params["html"]
        assert "/api/parent/verify?token=tok123&action=deny" in params["html"]
        assert "{{" not in params["html"]
        assert "{{" not in params["subject"]

    @pytest.mark.asyncio
    async def test_delivery_failure_is_reported(self, settings, monkeypatch):
        def failing_send(params):
            raise RuntimeError("rate limited")

        monkeypatch.setattr("account_trust.email_service.resend.Emails.send", failing_send)
        service = EmailService(settings.model_copy(update={"resend_api_key": "re_test"}))

        result = await service.send_admin_code("ops@example.com", "123456")
        assert result["status"] == "error"
        assert "rate limited" in result["reason"]

    @pytest.mark.asyncio
    async def test_unknown_template(self, settings):
        result = await EmailService(settings).send_email("a@example.com", "nope", {})
        assert result["status"] == "error"

    def test_mask_email(self):
        assert mask_email("jane@example.com") == "j***@example.com"
        assert mask_email(None) is None
        assert mask_email("nope") is None


class TestStripePaymentProvider:

    @pytest.mark.asyncio
    async def test_unconfigured(self):
        provider = StripePaymentProvider(None)
        assert not provider.configured
        with pytest.raises(ProviderNotConfiguredError):
            await provider.create_charge(50, "usd", {}, "verification")

    @pytest.mark.asyncio
    async def test_create_charge(self, monkeypatch):
        calls = []

        def fake_create(**kwargs):
            calls.append(kwargs)
            return SimpleNamespace(id="pi_123", client_secret="pi_123_secret")

        monkeypatch.setattr(stripe.PaymentIntent, "create", fake_create)
        provider = StripePaymentProvider("sk_test_x", "pk_test_x")

        handle = await provider.create_charge(50, "usd", {"consent_token": "tok"}, "Guardian verification")

        assert handle.charge_id == "pi_123"
        assert handle.client_secret == "pi_123_secret"
        assert calls[0]["amount"] == 50
        assert calls[0]["metadata"] == {"consent_token": "tok"}
        assert provider.publishable_key == "pk_test_x"

    @pytest.mark.asyncio
    async def test_retrieve_charge(self, monkeypatch):
        monkeypatch.setattr(
            stripe.PaymentIntent, "retrieve",
            lambda charge_id: SimpleNamespace(id=charge_id, status="succeeded",
                                              metadata={"consent_token": "tok"}),
        )
        status = await StripePaymentProvider("sk_test_x").retrieve_charge("pi_123")
        assert status.status == "succeeded"
        assert status.metadata == {"consent_token": "tok"}

    @pytest.mark.asyncio
    async def test_unknown_charge_is_not_found(self, monkeypatch):
        def missing(charge_id):
            raise stripe.InvalidRequestError("No such payment_intent", "intent")

        monkeypatch.setattr(stripe.PaymentIntent, "retrieve", missing)
        with pytest.raises(NotFoundError):
            await StripePaymentProvider("sk_test_x").retrieve_charge("pi_missing")

    @pytest.mark.asyncio
    async def test_refund_failure_is_transient(self, monkeypatch):
        def failing_refund(**kwargs):
            raise stripe.StripeError("card network down")

        monkeypatch.setattr(stripe.Refund, "create", failing_refund)
        with pytest.raises(TransientBackendError) as exc:
            await StripePaymentProvider("sk_test_x").refund("pi_123")
        assert exc.value.status_code == 503


class TestSettingsFromEnv:

    @pytest.fixture(autouse=True)
    def clean_env(self, monkeypatch):
        for var in ("STORAGE_BACKEND", "MONGO_URL", "DB_NAME", "CORS_ORIGINS", "SITE_NAME"):
            monkeypatch.delenv(var, raising=False)

    def test_defaults_to_file_backend(self):
        assert EngineSettings.from_env().storage_backend == "file"

    def test_mongo_url_selects_mongo(self, monkeypatch):
        monkeypatch.setenv("MONGO_URL", "mongodb://localhost:27017")
        monkeypatch.setenv("DB_NAME", "studio")
        assert EngineSettings.from_env().storage_backend == "mongo"

    def test_explicit_backend_wins(self, monkeypatch):
        monkeypatch.setenv("MONGO_URL", "mongodb://localhost:27017")
        monkeypatch.setenv("STORAGE_BACKEND", "FILE")
        assert EngineSettings.from_env().storage_backend == "file"

    def test_cors_and_optional_values(self, monkeypatch):
        monkeypatch.setenv("CORS_ORIGINS", "http://a.test, http://b.test")
        monkeypatch.setenv("SITE_NAME", "Pixel Forge")
        settings = EngineSettings.from_env()
        assert settings.cors_origins == ["http://a.test", "http://b.test"]
        assert settings.site_name == "Pixel Forge"

    def test_signing_secret_falls_back_to_admin_secret(self):
        settings = EngineSettings(admin_secret="key")
        assert settings.signing_secret == "key"
        assert EngineSettings(admin_secret="key", admin_token_secret="sig").signing_secret == "sig"
