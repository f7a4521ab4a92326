"""
Email Service using Resend
Guardian consent emails and admin verification codes
"""

import asyncio
import logging
from typing import Optional

import resend

from .config import EngineSettings, CONSENT_POLICY, ADMIN_POLICY, VERIFICATION_CHARGE

logger = logging.getLogger(__name__)

_WRAPPER_OPEN = '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">'
_WRAPPER_CLOSE = '</div>'

# Email Templates
EMAIL_TEMPLATES = {
    "consent_request": {
        "subject": "{{site_name}}: your child wants to create an account",
        "enabled": True,
        "html": _WRAPPER_OPEN + """
            <h2 style="color: #4f46e5;">Parental consent request</h2>
            <p>Someone using the name <strong>{{display_name}}</strong> (username <strong>{{username}}</strong>)
               asked to create an account on {{site_name}} and listed this address as their parent or guardian.</p>
            <p>Because they are under {{coppa_age}}, we need your permission before the account becomes active.</p>
            <p style="margin: 30px 0;">
                <a href="{{grant_url}}" style="padding: 12px 24px; background-color: #10b981; color: #ffffff; text-decoration: none; border-radius: 8px;">Approve</a>
                &nbsp;
                <a href="{{deny_url}}" style="padding: 12px 24px; background-color: #ef4444; color: #ffffff; text-decoration: none; border-radius: 8px;">Deny</a>
            </p>
            <p>For stronger verification you can confirm with a card instead. A {{charge_display}} charge is made and refunded immediately:
               <a href="{{card_url}}">{{card_url}}</a></p>
            <p style="color: #71717a; font-size: 12px;">These links expire in {{ttl_hours}} hours. If you did not expect this email you can ignore it.</p>
        """ + _WRAPPER_CLOSE
    },
    "data_access_request": {
        "subject": "{{site_name}}: confirm your request for your child's data",
        "enabled": True,
        "html": _WRAPPER_OPEN + """
            <h2>Data access request</h2>
            <p>We received a request to view the data stored for <strong>{{display_name}}</strong>.</p>
            <p><a href="{{grant_url}}">Confirm and view the data</a> or <a href="{{deny_url}}">cancel the request</a>.</p>
            <p style="color: #71717a; font-size: 12px;">This link expires in {{ttl_hours}} hours.</p>
        """ + _WRAPPER_CLOSE
    },
    "data_delete_request": {
        "subject": "{{site_name}}: confirm deletion of your child's data",
        "enabled": True,
        "html": _WRAPPER_OPEN + """
            <h2>Data deletion request</h2>
            <p>We received a request to permanently delete the account and creations of <strong>{{display_name}}</strong>.</p>
            <p><a href="{{grant_url}}">Confirm deletion</a> or <a href="{{deny_url}}">cancel the request</a>.</p>
            <p style="color: #71717a; font-size: 12px;">This link expires in {{ttl_hours}} hours. Deletion cannot be undone.</p>
        """ + _WRAPPER_CLOSE
    },
    "admin_2fa_code": {
        "subject": "{{site_name}} admin verification code: {{code}}",
        "enabled": True,
        "html": _WRAPPER_OPEN + """
            <h2>Admin sign-in</h2>
            <p>Your verification code is:</p>
            <p style="font-size: 32px; letter-spacing: 8px; font-weight: bold;">{{code}}</p>
            <p style="color: #71717a; font-size: 12px;">The code expires in {{ttl_minutes}} minutes. If you did not try to sign in, change the admin secret.</p>
        """ + _WRAPPER_CLOSE
    }
}

CONSENT_TEMPLATES = {
    "consent": "consent_request",
    "data_access": "data_access_request",
    "data_delete": "data_delete_request",
}


class EmailService:
    """Email service using Resend"""

    def __init__(self, settings: EngineSettings):
        self.settings = settings
        self.api_key = settings.resend_api_key
        self.sender_email = settings.sender_email
        self.base_url = settings.app_base_url.rstrip("/")

    def initialize(self) -> bool:
        if self.api_key:
            resend.api_key = self.api_key
            return True
        return False

    def _replace_variables(self, template: str, variables: dict) -> str:
        """Replace template variables"""
        result = template
        for key, value in variables.items():
            result = result.replace(f"{{{{{key}}}}}", str(value))
        return result

    async def send_email(self, to_email: str, template_name: str, variables: dict) -> dict:
        """Send email using a template"""
        template = EMAIL_TEMPLATES.get(template_name)
        if not template:
            return {"status": "error", "reason": f"Template '{template_name}' not found"}

        if not template.get("enabled", True):
            return {"status": "skipped", "reason": "Template disabled"}

        variables.setdefault("site_name", self.settings.site_name)

        subject = self._replace_variables(template["subject"], variables)
        html = self._replace_variables(template["html"], variables)

        if not self.initialize():
            logger.warning(f"Email service not configured - skipping '{template_name}' email to {to_email}")
            if self.settings.environment != "production":
                logger.info(f"[email:{template_name}] to={to_email} subject={subject} vars={variables}")
            return {"status": "skipped", "reason": "Email service not configured"}

        params = {
            "from": self.sender_email,
            "to": [to_email],
            "subject": subject,
            "html": html
        }

        try:
            email_result = await asyncio.to_thread(resend.Emails.send, params)
            logger.info(f"Sent '{template_name}' email to {to_email}")
            return {"status": "success", "email_id": email_result.get("id")}
        except Exception as e:
            logger.error(f"Failed to send '{template_name}' email to {to_email}: {e}")
            return {"status": "error", "reason": str(e)}

    def consent_links(self, token: str) -> dict:
        return {
            "grant_url": f"{self.base_url}/api/parent/verify?token={token}&action=grant",
            "deny_url": f"{self.base_url}/api/parent/verify?token={token}&action=deny",
            "card_url": f"{self.base_url}/parent/verify-card?token={token}",
        }

    async def send_consent_request(
        self,
        guardian_email: str,
        token: str,
        action: str,
        username: str,
        display_name: str
    ) -> dict:
        """Send the consent or data-rights email. Only ever addressed to the guardian."""
        variables = {
            "username": username,
            "display_name": display_name,
            "coppa_age": CONSENT_POLICY["coppa_age_threshold"],
            "ttl_hours": CONSENT_POLICY["token_ttl_hours"],
            "charge_display": f"${VERIFICATION_CHARGE['amount_cents'] / 100:.2f}",
            **self.consent_links(token)
        }
        return await self.send_email(guardian_email, CONSENT_TEMPLATES[action], variables)

    async def send_admin_code(self, to_email: str, code: str) -> dict:
        return await self.send_email(to_email, "admin_2fa_code", {
            "code": code,
            "ttl_minutes": ADMIN_POLICY["code_ttl_minutes"]
        })


def mask_email(email: Optional[str]) -> Optional[str]:
    """j***@example.com"""
    if not email or "@" not in email:
        return None
    local, domain = email.split("@", 1)
    return f"{local[:1]}***@{domain}"
