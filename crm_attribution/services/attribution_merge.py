"""
Attribution Merge - write-once merge of a draft into a stored lead

Rules:
- Attribution fields are write-once: a stored non-empty value always wins.
- first_message_unix keeps the earliest, last_message_unix the latest.
- Correlation ids and numeric hints take the newest non-empty value.

Everything here is pure; bad stored values just count as missing.
"""

from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from ..config import FieldIdMap
from ..models import AttributionDraft, CustomFieldValue, ExternalRecord, MergedFieldSet

WRITE_ONCE_FIELDS = (
    "click_id",
    "campaign_id",
    "adset_id",
    "ad_id",
    "platform",
    "channel_source",
    "campaign_name",
    "tech_tag",
    "model_tag",
    "site_source",
    "placement",
)

LATEST_WINS_FIELDS = (
    "thread_id",
    "owner_id",
    "media_budget_hint",
    "deal_amount",
)

TIMESTAMP_FIELDS = ("first_message_unix", "last_message_unix")

ExistingFields = Union[ExternalRecord, Mapping[int, Any], Iterable[CustomFieldValue], None]


def is_empty(value: Any) -> bool:
    """None, "" and whitespace-only strings count as empty."""
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return False


def to_unix(value: Any) -> Optional[int]:
    """Coerce a stored/incoming timestamp to int seconds; junk and 0 -> None."""
    if is_empty(value) or isinstance(value, bool):
        return None
    try:
        number = int(float(value))
    except (TypeError, ValueError, OverflowError):
        return None
    return number or None


def _as_field_map(existing: ExistingFields) -> Dict[int, Any]:
    if existing is None:
        return {}
    if isinstance(existing, ExternalRecord):
        return existing.field_map()
    if isinstance(existing, Mapping):
        return dict(existing)
    return {cf.field_id: cf.value for cf in existing}


def _merge_first(old: Optional[int], new: Optional[int]) -> Optional[int]:
    if old is not None and new is not None:
        return min(old, new)
    return old if old is not None else new


def _merge_last(old: Optional[int], new: Optional[int]) -> Optional[int]:
    if old is not None and new is not None:
        return max(old, new)
    return old if old is not None else new


def merge_attribution(
    existing: ExistingFields,
    draft: AttributionDraft,
    field_ids: Optional[FieldIdMap] = None,
) -> MergedFieldSet:
    """
    Merge a new draft into the fields already stored on a lead.

    Args:
        existing: Stored lead, its custom fields, or {field_id: value}
        draft: Attribution from the current event
        field_ids: Logical name -> Kommo field id

    Returns:
        MergedFieldSet with the value to persist for every attribute
    """
    field_ids = field_ids or FieldIdMap()
    stored = _as_field_map(existing)
    ids = field_ids.model_dump()
    incoming = draft.model_dump()

    def old(name: str) -> Any:
        fid = ids.get(name)
        return None if fid is None else stored.get(fid)

    merged: Dict[str, Any] = {}

    for name in WRITE_ONCE_FIELDS:
        have = old(name)
        merged[name] = incoming.get(name) if is_empty(have) else have

    for name in LATEST_WINS_FIELDS:
        new = incoming.get(name)
        merged[name] = old(name) if is_empty(new) else new

    merged["first_message_unix"] = _merge_first(
        to_unix(old("first_message_unix")), to_unix(incoming.get("first_message_unix"))
    )
    merged["last_message_unix"] = _merge_last(
        to_unix(old("last_message_unix")), to_unix(incoming.get("last_message_unix"))
    )

    for name in WRITE_ONCE_FIELDS + LATEST_WINS_FIELDS:
        if is_empty(merged[name]):
            merged[name] = None
        elif name not in ("media_budget_hint", "deal_amount"):
            merged[name] = str(merged[name])
        else:
            merged[name] = _to_number(merged[name])

    return MergedFieldSet(**merged)


def _to_number(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def build_custom_fields(
    merged: MergedFieldSet,
    field_ids: Optional[FieldIdMap] = None,
) -> List[Dict[str, Any]]:
    """
    Kommo custom_fields_values for a PATCH.

    Empty values and attributes without a field id are left out, so
    nothing already stored is cleared.
    """
    field_ids = field_ids or FieldIdMap()
    values = merged.model_dump()
    out = []
    for name, fid in field_ids.mapped().items():
        value = values.get(name)
        if is_empty(value):
            continue
        out.append({"field_id": fid, "values": [{"value": value}]})
    return out


def combine_drafts(base: AttributionDraft, newer: AttributionDraft) -> AttributionDraft:
    """
    Fold a later draft for the same conversation into an earlier one.

    Same rules as merge_attribution, with `base` playing the stored side:
    write-once fields keep the earlier value, timestamps widen, correlation
    ids and hints take the newer non-empty value.
    """
    old = base.model_dump()
    new = newer.model_dump()
    updates: Dict[str, Any] = {}

    for name in WRITE_ONCE_FIELDS:
        if is_empty(old.get(name)) and not is_empty(new.get(name)):
            updates[name] = new[name]

    for name in LATEST_WINS_FIELDS:
        if not is_empty(new.get(name)):
            updates[name] = new[name]

    updates["first_message_unix"] = _merge_first(
        to_unix(old.get("first_message_unix")), to_unix(new.get("first_message_unix"))
    )
    updates["last_message_unix"] = _merge_last(
        to_unix(old.get("last_message_unix")), to_unix(new.get("last_message_unix"))
    )
    return base.model_copy(update=updates)
