"""
Account Trust Module
Allow/deny decisions for every authenticated action

This module provides:
- Bearer session issuance, validation and revocation
- Sliding-window abuse throttling and tiered usage quotas
- Parental consent lifecycle (email link + card verification channels)
- Guardian capability tokens for scoped account control
- Admin shared-secret + one-time-code login with signed admin tokens

Collections used:
- accounts: Account records with nested usage/consent/membership state
- projects: Creations owned by accounts (read/list/delete only)
- consent_requests: One record per consent or data-rights request
- sessions: Bearer sessions (mongo backend only)
- admin_settings: Admin second-factor state
- admin_audit: Append-only record of operator actions
"""

__version__ = "1.0.0"
