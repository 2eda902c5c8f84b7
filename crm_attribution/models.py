"""
Pydantic models for the CRM attribution service.

Covers: attribution drafts, Kommo records, merged field sets,
webhook parse results and API responses.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, List, Dict, Any, Union

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Enums
# =============================================================================


class Platform(str, Enum):
    """Messaging platforms that can carry ad attribution."""
    WHATSAPP = "whatsapp"
    MESSENGER = "messenger"
    INSTAGRAM = "instagram"


class MatchSource(str, Enum):
    """Which resolver strategy located the record."""
    CLICK_ID = "click_id"
    CONTACT_PHONE = "contact_phone"
    LEAD_PHONE = "lead_phone"
    THREAD_ID = "thread_id"


# =============================================================================
# Attribution Draft
# =============================================================================


class AttributionDraft(BaseModel):
    """Attribution facts derived from a single inbound message."""

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    platform: Platform
    channel_source: str
    click_id: Optional[str] = Field(None, description="ctwa_clid from the ad referral")
    campaign_id: Optional[str] = None
    adset_id: Optional[str] = None
    ad_id: Optional[str] = None
    first_message_unix: Optional[int] = None
    last_message_unix: Optional[int] = None
    thread_id: Optional[str] = None
    owner_id: Optional[str] = Field(None, description="Receiving WABA / page id")

    # Optional enrichment
    campaign_name: Optional[str] = None
    tech_tag: Optional[str] = None
    model_tag: Optional[str] = None
    site_source: Optional[str] = None
    placement: Optional[str] = None
    media_budget_hint: Optional[float] = None
    deal_amount: Optional[float] = None

    @property
    def has_ad_ids(self) -> bool:
        return bool(self.ad_id or self.adset_id or self.campaign_id)


# =============================================================================
# Kommo Records
# =============================================================================


class CustomFieldValue(BaseModel):
    """One stored custom field on a lead."""
    field_id: int
    value: Any = None


class ExternalRecord(BaseModel):
    """A Kommo lead as seen by the resolver and merge engine."""

    id: int
    name: Optional[str] = None
    updated_at: Optional[int] = None
    custom_fields: List[CustomFieldValue] = Field(default_factory=list)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "ExternalRecord":
        """Build from a Kommo v4 lead payload."""
        fields = []
        for cf in data.get("custom_fields_values") or []:
            if not isinstance(cf, dict) or cf.get("field_id") is None:
                continue
            values = cf.get("values") or [{}]
            first = values[0] if isinstance(values[0], dict) else {}
            fields.append(CustomFieldValue(field_id=cf["field_id"], value=first.get("value")))

        return cls(
            id=data["id"],
            name=data.get("name"),
            updated_at=data.get("updated_at"),
            custom_fields=fields,
        )

    def field_map(self) -> Dict[int, Any]:
        """field_id -> value; a later duplicate wins."""
        return {cf.field_id: cf.value for cf in self.custom_fields}

    def get_field(self, field_id: Optional[int]) -> Any:
        if field_id is None:
            return None
        return self.field_map().get(field_id)


# =============================================================================
# Merge Output
# =============================================================================


class MergedFieldSet(BaseModel):
    """Field values to persist after merging a draft into a lead."""

    model_config = ConfigDict(frozen=True)

    click_id: Optional[str] = None
    campaign_id: Optional[str] = None
    adset_id: Optional[str] = None
    ad_id: Optional[str] = None
    platform: Optional[str] = None
    channel_source: Optional[str] = None
    first_message_unix: Optional[int] = None
    last_message_unix: Optional[int] = None
    thread_id: Optional[str] = None
    owner_id: Optional[str] = None
    campaign_name: Optional[str] = None
    tech_tag: Optional[str] = None
    model_tag: Optional[str] = None
    site_source: Optional[str] = None
    placement: Optional[str] = None
    media_budget_hint: Optional[float] = None
    deal_amount: Optional[float] = None


class AttributionOutcome(BaseModel):
    """Result of one resolve -> merge -> persist attempt."""
    updated: bool
    record_id: Optional[int] = None
    match_source: Optional[MatchSource] = None


# =============================================================================
# Webhook Parse Results
# =============================================================================


@dataclass(frozen=True)
class Recognized:
    """A message event that produced a draft."""
    draft: AttributionDraft
    phone: Optional[str] = None


@dataclass(frozen=True)
class Ignored:
    """A well-formed event with nothing to attribute (statuses, echoes...)."""
    reason: str


@dataclass(frozen=True)
class Malformed:
    """A payload that does not have the expected shape."""
    reason: str


ParseResult = Union[Recognized, Ignored, Malformed]


# =============================================================================
# API Responses
# =============================================================================


class WebhookAck(BaseModel):
    """Response body for webhook deliveries."""
    success: bool = True
    accepted: int = 0
