"""
CRM Attribution Service Configuration

Settings for the Meta messaging webhook, the Kommo record store,
the Marketing API ad resolver and the anti-race retry schedule.
"""

from typing import Optional, List, Dict

from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict


# =============================================================================
# Channel tags
# =============================================================================

# channel_source value for conversations opened from an ad referral
CTWA_CHANNEL_SOURCE = "ctwa"


# =============================================================================
# Kommo custom field ids
# =============================================================================


class FieldIdMap(BaseModel):
    """
    Logical attribute name -> Kommo lead custom field id.

    Fields left as None are never written.
    """

    click_id: Optional[int] = 2097583
    campaign_id: Optional[int] = 2097585
    adset_id: Optional[int] = 2097587
    ad_id: Optional[int] = 2097589
    platform: Optional[int] = 2097591
    channel_source: Optional[int] = 2097593
    first_message_unix: Optional[int] = 2097597
    last_message_unix: Optional[int] = 2097599
    thread_id: Optional[int] = 2097601
    owner_id: Optional[int] = 2097603
    campaign_name: Optional[int] = 2097605
    media_budget_hint: Optional[int] = 2097607
    deal_amount: Optional[int] = 2097609

    # Optional enrichment tags, unmapped by default
    tech_tag: Optional[int] = None
    model_tag: Optional[int] = None
    site_source: Optional[int] = None
    placement: Optional[int] = None

    def mapped(self) -> Dict[str, int]:
        """Only the attributes that have a field id."""
        return {name: fid for name, fid in self.model_dump().items() if fid is not None}


# =============================================================================
# Settings Class
# =============================================================================


class AttributionSettings(BaseSettings):
    """Settings for the attribution webhook service."""

    model_config = SettingsConfigDict(
        env_prefix="",
        case_sensitive=False,
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # ==========================================================================
    # Meta Webhook
    # ==========================================================================

    # Used to verify X-Hub-Signature-256. Unset skips verification.
    meta_app_secret: Optional[str] = None

    # hub.verify_token for the subscription handshake
    meta_webhook_verify_token: Optional[str] = None

    meta_api_version: str = "v20.0"

    # ==========================================================================
    # Marketing API (ad resolver)
    # ==========================================================================

    # System user token with ads_read
    meta_ads_token: Optional[str] = None

    enable_ad_resolver: bool = True

    ad_resolver_timeout_seconds: float = 10.0

    # ==========================================================================
    # Kommo record store
    # ==========================================================================

    kommo_base_url: str = ""
    kommo_access_token: Optional[str] = None
    kommo_field_ids: FieldIdMap = FieldIdMap()

    record_store_timeout_seconds: float = 30.0
    record_store_max_attempts: int = 4
    record_store_backoff_base_seconds: float = 1.0
    record_store_backoff_cap_seconds: float = 30.0

    # ==========================================================================
    # Identity resolution
    # ==========================================================================

    # Mexico by default: WhatsApp sends 521 + 10 digits, CRMs usually store +52
    phone_country_code: str = "52"
    phone_trunk_prefix: str = "1"

    match_by_thread_id: bool = True

    # ==========================================================================
    # Anti-race retries
    # ==========================================================================

    # One delay per attempt: 5, 10, 15 minutes
    retry_delays_seconds: List[int] = [300, 600, 900]

    # ==========================================================================
    # General Settings
    # ==========================================================================

    log_level: str = "INFO"
    service_host: str = "0.0.0.0"
    service_port: int = 3000


# Singleton instance
_settings: Optional[AttributionSettings] = None


def get_attribution_settings() -> AttributionSettings:
    """Get the attribution settings singleton."""
    global _settings
    if _settings is None:
        _settings = AttributionSettings()
    return _settings


# =============================================================================
# Helper Functions
# =============================================================================


def is_ad_resolver_enabled(settings: Optional[AttributionSettings] = None) -> bool:
    """Check if Marketing API lookups are enabled and have a token."""
    settings = settings or get_attribution_settings()
    return bool(settings.enable_ad_resolver and settings.meta_ads_token)


def is_record_store_configured(settings: Optional[AttributionSettings] = None) -> bool:
    """Check if Kommo credentials are configured."""
    settings = settings or get_attribution_settings()
    return bool(settings.kommo_base_url and settings.kommo_access_token)
