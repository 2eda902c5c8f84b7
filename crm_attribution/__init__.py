"""
CRM Attribution - ad attribution for Kommo leads from Meta messaging

This package provides:
- Meta webhook intake for WhatsApp, Instagram DM and Messenger
- Click-to-WhatsApp / Click-to-Messenger referral parsing
- Lead resolution by click id, phone variants and thread id
- Write-once attribution merge into Kommo custom fields
- Anti-race retries while the CRM has not created the lead yet

Architecture:
- clients/: Kommo record store and Marketing API clients
- services/: Normalizer, resolver, merge, retries
- webhooks/: Meta webhook handler
- routes.py: FastAPI endpoints
- config.py: Settings and field ids
"""

from .config import get_attribution_settings, AttributionSettings

__version__ = "1.1.0"
__all__ = ["get_attribution_settings", "AttributionSettings", "__version__"]
