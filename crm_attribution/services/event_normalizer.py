"""
Event Normalizer - Meta webhook payload -> AttributionDraft

One adapter per webhook shape, all producing the same draft:
- WhatsApp Cloud API: entry[].changes[].value.messages[]
- Messenger / Instagram: entry[].messaging[]

Ad ids come from, in order:
1. the referral itself (ad_id / adset_id / campaign_id, source_id for ads)
2. the referral's source_url query string (URL parameters built from
   {{ad.id}}, {{adset.id}}, {{campaign.id}} macros)
The Marketing API fallback lives in ad_enrichment, outside this module.

No I/O happens here.
"""

import logging
from typing import Optional, Dict, Any, List
from urllib.parse import urlsplit, parse_qsl

from ..config import CTWA_CHANNEL_SOURCE
from ..models import (
    AttributionDraft,
    Platform,
    Recognized,
    Ignored,
    Malformed,
    ParseResult,
)

logger = logging.getLogger(__name__)

# source_url parameter -> draft attribute
QUERY_ALIASES = {
    "ad_id": ("ad_id", "adid", "utm_content_id"),
    "adset_id": ("adset_id", "adsetid", "ad_set_id"),
    "campaign_id": ("campaign_id", "campaignid", "utm_id"),
    "campaign_name": ("campaign_name", "utm_campaign"),
    "site_source": ("site_source", "utm_source"),
    "placement": ("placement", "utm_medium"),
    "tech_tag": ("tech_tag",),
    "model_tag": ("model_tag",),
}


# =============================================================================
# Small parsers
# =============================================================================


def parse_query(source: Optional[str]) -> Dict[str, str]:
    """
    Query parameters from a full URL or a bare "a=1&b=2" string.

    Later duplicates win; undecodable input gives {}.
    """
    if not source:
        return {}
    text = str(source).strip()
    if "://" in text:
        query = urlsplit(text).query
    elif "?" in text:
        query = text.split("?", 1)[1]
    else:
        query = text
    query = query.split("#", 1)[0]
    return dict(parse_qsl(query, keep_blank_values=True))


def parse_unix_seconds(value: Any, milliseconds: bool = False) -> Optional[int]:
    """Integer unix seconds, or None for missing / malformed values."""
    if value is None or isinstance(value, bool) or value == "":
        return None
    try:
        number = int(float(value))
    except (TypeError, ValueError, OverflowError):
        return None
    if number <= 0:
        return None
    return number // 1000 if milliseconds else number


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _pick(params: Dict[str, str], names) -> Optional[str]:
    for name in names:
        value = _clean(params.get(name))
        if value:
            return value
    return None


def _attribution_from_referral(referral: Optional[Dict[str, Any]]) -> Dict[str, Optional[str]]:
    """Click id, ad ids and tags from a referral block."""
    out: Dict[str, Optional[str]] = {name: None for name in QUERY_ALIASES}
    out["click_id"] = None
    if not referral:
        return out

    out["click_id"] = _clean(referral.get("ctwa_clid")) or _clean(referral.get("click_id"))
    out["ad_id"] = _clean(referral.get("ad_id"))
    out["adset_id"] = _clean(referral.get("adset_id"))
    out["campaign_id"] = _clean(referral.get("campaign_id"))

    if not out["ad_id"] and referral.get("source_type") == "ad":
        out["ad_id"] = _clean(referral.get("source_id"))

    ads_context = referral.get("ads_context_data")
    if isinstance(ads_context, dict) and not out["campaign_name"]:
        out["campaign_name"] = _clean(ads_context.get("ad_title"))

    from_url = parse_query(referral.get("source_url"))
    for name, aliases in QUERY_ALIASES.items():
        if not out[name]:
            out[name] = _pick(from_url, aliases)

    return out


def build_draft(
    platform: Platform,
    referral: Optional[Dict[str, Any]],
    timestamp: Optional[int],
    thread_id: Optional[str],
    owner_id: Optional[str],
) -> AttributionDraft:
    """Assemble a draft from already-extracted pieces."""
    attribution = _attribution_from_referral(referral)
    platform_value = Platform(platform).value
    return AttributionDraft(
        platform=platform_value,
        channel_source=CTWA_CHANNEL_SOURCE if referral else platform_value,
        first_message_unix=timestamp,
        last_message_unix=timestamp,
        thread_id=_clean(thread_id),
        owner_id=_clean(owner_id),
        **attribution,
    )


# =============================================================================
# Channel adapters
# =============================================================================


class ChannelAdapter:
    """Turns one webhook entry into parse results."""

    def matches(self, payload: Dict[str, Any], entry: Dict[str, Any]) -> bool:
        raise NotImplementedError

    def parse_entry(self, payload: Dict[str, Any], entry: Dict[str, Any]) -> List[ParseResult]:
        raise NotImplementedError


class WhatsAppAdapter(ChannelAdapter):
    """WhatsApp Cloud API `changes` entries."""

    def matches(self, payload, entry):
        return "changes" in entry

    def parse_entry(self, payload, entry):
        changes = entry.get("changes")
        if not isinstance(changes, list):
            return [Malformed("entry.changes is not a list")]

        results: List[ParseResult] = []
        for change in changes:
            value = change.get("value") if isinstance(change, dict) else None
            if not isinstance(value, dict):
                results.append(Malformed("change without value"))
                continue

            product = (value.get("messaging_product") or "").lower()
            if product and product != Platform.WHATSAPP.value:
                results.append(Ignored(f"unsupported messaging_product {product}"))
                continue

            messages = value.get("messages")
            if not messages:
                # delivery / read statuses
                results.append(Ignored("no messages in change"))
                continue
            if not isinstance(messages, list):
                results.append(Malformed("value.messages is not a list"))
                continue

            for message in messages:
                if not isinstance(message, dict):
                    results.append(Malformed("message is not an object"))
                    continue
                referral = message.get("referral") or value.get("referral")
                if referral is not None and not isinstance(referral, dict):
                    referral = None
                draft = build_draft(
                    Platform.WHATSAPP,
                    referral,
                    parse_unix_seconds(message.get("timestamp")),
                    thread_id=message.get("id"),
                    owner_id=entry.get("id"),
                )
                results.append(Recognized(draft=draft, phone=_clean(message.get("from"))))
        return results


class PageMessagingAdapter(ChannelAdapter):
    """Messenger and Instagram `messaging` entries (no phone number)."""

    def matches(self, payload, entry):
        return "messaging" in entry

    def _platform(self, payload: Dict[str, Any]) -> Platform:
        if (payload.get("object") or "").lower() == "instagram":
            return Platform.INSTAGRAM
        return Platform.MESSENGER

    def parse_entry(self, payload, entry):
        events = entry.get("messaging")
        if not isinstance(events, list):
            return [Malformed("entry.messaging is not a list")]

        platform = self._platform(payload)
        results: List[ParseResult] = []
        for event in events:
            if not isinstance(event, dict):
                results.append(Malformed("messaging event is not an object"))
                continue

            message = event.get("message") if isinstance(event.get("message"), dict) else {}
            postback = event.get("postback") if isinstance(event.get("postback"), dict) else {}

            if message.get("is_echo"):
                results.append(Ignored("echo of an outbound message"))
                continue
            if not message and not postback and not event.get("referral"):
                # delivery, read, reaction callbacks
                results.append(Ignored("not a message event"))
                continue

            referral = event.get("referral") or postback.get("referral") or message.get("referral")
            if referral is not None and not isinstance(referral, dict):
                referral = None

            sender = event.get("sender") or {}
            recipient = event.get("recipient") or {}
            draft = build_draft(
                platform,
                referral,
                parse_unix_seconds(event.get("timestamp"), milliseconds=True),
                thread_id=sender.get("id"),
                owner_id=recipient.get("id") or entry.get("id"),
            )
            results.append(Recognized(draft=draft, phone=None))
        return results


ADAPTERS: List[ChannelAdapter] = [WhatsAppAdapter(), PageMessagingAdapter()]


# =============================================================================
# Entry point
# =============================================================================


def normalize_webhook(payload: Any) -> List[ParseResult]:
    """
    Parse a webhook body into one result per message-bearing item.

    Args:
        payload: Decoded webhook JSON

    Returns:
        List of Recognized / Ignored / Malformed results
    """
    if not isinstance(payload, dict):
        return [Malformed("payload is not an object")]

    entries = payload.get("entry")
    if not isinstance(entries, list):
        return [Malformed("payload.entry is not a list")]

    results: List[ParseResult] = []
    for entry in entries:
        if not isinstance(entry, dict):
            results.append(Malformed("entry is not an object"))
            continue
        adapter = next((a for a in ADAPTERS if a.matches(payload, entry)), None)
        if adapter is None:
            results.append(Ignored("entry without changes or messaging"))
            continue
        results.extend(adapter.parse_entry(payload, entry))

    if not results:
        results.append(Ignored("empty entry list"))
    return results


def recognized_events(results: List[ParseResult]) -> List[Recognized]:
    """Only the results that carry a draft."""
    return [r for r in results if isinstance(r, Recognized)]
