"""
Identity Resolver - find the one Kommo lead an inbound message belongs to

Strategies, first hit wins:
1. click id stored on the lead (search, then exact field check)
2. each phone candidate -> contact -> most recently updated lead
3. each phone candidate -> free-text lead search
4. thread id stored on the lead (optional, only when there is no phone:
   WhatsApp thread ids are per-message and never repeat)

A failing lookup only disables that lookup; an auth failure stops the
whole resolution since every later call would fail the same way.
"""

import logging
from typing import Optional, Dict, Any, Tuple

from ..clients.record_store import RecordStoreClient, RecordStoreError, RecordStoreAuthError
from ..config import FieldIdMap
from ..models import AttributionDraft, ExternalRecord, MatchSource
from .phone_candidates import phone_candidates

logger = logging.getLogger(__name__)

CLICK_ID_SEARCH_LIMIT = 25
CONTACT_SEARCH_LIMIT = 10
LEAD_PHONE_SEARCH_LIMIT = 5
THREAD_SEARCH_LIMIT = 25
CONTACT_LEADS_LIMIT = 10


class IdentityResolver:
    """
    Locates existing leads; never creates one.
    """

    def __init__(
        self,
        store: RecordStoreClient,
        field_ids: Optional[FieldIdMap] = None,
        country_code: str = "52",
        trunk_prefix: str = "1",
        match_by_thread_id: bool = True,
    ):
        """
        Initialize the resolver.

        Args:
            store: Kommo client
            field_ids: Logical name -> Kommo field id
            country_code: Country code used for phone candidates
            trunk_prefix: Trunk digit(s) stripped/added for phone candidates
            match_by_thread_id: Enable the thread id fallback
        """
        self.store = store
        self.field_ids = field_ids or FieldIdMap()
        self.country_code = country_code
        self.trunk_prefix = trunk_prefix
        self.match_by_thread_id = match_by_thread_id

    # =========================================================================
    # Public API
    # =========================================================================

    async def resolve(
        self, draft: AttributionDraft, phone: Optional[str] = None
    ) -> Optional[ExternalRecord]:
        """Resolve a draft to a lead, or None if nothing matches yet."""
        match = await self.resolve_with_source(draft, phone)
        return match[0] if match else None

    async def resolve_with_source(
        self, draft: AttributionDraft, phone: Optional[str] = None
    ) -> Optional[Tuple[ExternalRecord, MatchSource]]:
        """
        Resolve a draft and report which strategy matched.

        Raises:
            RecordStoreAuthError: Kommo rejected the token
        """
        if draft.click_id:
            record = await self.find_by_click_id(draft.click_id)
            if record:
                logger.info(f"Matched lead {record.id} by click id")
                return record, MatchSource.CLICK_ID

        candidates = phone_candidates(phone, self.country_code, self.trunk_prefix)

        for candidate in candidates:
            record = await self.find_by_contact_phone(candidate)
            if record:
                logger.info(f"Matched lead {record.id} by contact phone {candidate}")
                return record, MatchSource.CONTACT_PHONE

        for candidate in candidates:
            record = await self.find_by_lead_search(candidate)
            if record:
                logger.info(f"Matched lead {record.id} by lead search {candidate}")
                return record, MatchSource.LEAD_PHONE

        if self.match_by_thread_id and draft.thread_id and not candidates:
            record = await self.find_by_thread_id(draft.thread_id)
            if record:
                logger.info(f"Matched lead {record.id} by thread id")
                return record, MatchSource.THREAD_ID

        logger.info("No lead or contact in Kommo yet")
        return None

    # =========================================================================
    # Strategies
    # =========================================================================

    async def find_by_click_id(self, click_id: str) -> Optional[ExternalRecord]:
        return await self._find_by_stored_field(
            click_id, self.field_ids.click_id, CLICK_ID_SEARCH_LIMIT
        )

    async def find_by_thread_id(self, thread_id: str) -> Optional[ExternalRecord]:
        return await self._find_by_stored_field(
            thread_id, self.field_ids.thread_id, THREAD_SEARCH_LIMIT
        )

    async def find_by_contact_phone(self, candidate: str) -> Optional[ExternalRecord]:
        try:
            contacts = await self.store.search_contacts(candidate, limit=CONTACT_SEARCH_LIMIT)
            if not contacts:
                return None
            leads = await self.store.get_contact_leads(contacts[0]["id"])
        except RecordStoreAuthError:
            raise
        except (RecordStoreError, KeyError, TypeError) as e:
            logger.warning(f"Contact lookup failed for {candidate}: {e}")
            return None

        linked = [
            lead for lead in leads or []
            if isinstance(lead, dict) and lead.get("id") is not None
        ][:CONTACT_LEADS_LIMIT]
        if not linked:
            return None

        # embedded leads carry only id and _links, updated_at needs the full lead
        records = []
        for lead in linked:
            record = await self._full_record(lead)
            if record:
                records.append(record)
        if not records:
            return None
        return max(records, key=lambda record: record.updated_at or 0)

    async def find_by_lead_search(self, candidate: str) -> Optional[ExternalRecord]:
        try:
            leads = await self.store.search_leads(candidate, limit=LEAD_PHONE_SEARCH_LIMIT)
        except RecordStoreAuthError:
            raise
        except RecordStoreError as e:
            logger.warning(f"Lead search failed for {candidate}: {e}")
            return None

        if not leads:
            return None
        return await self._full_record(leads[0])

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _find_by_stored_field(
        self, value: str, field_id: Optional[int], limit: int
    ) -> Optional[ExternalRecord]:
        """Free-text search, then confirm the stored field matches exactly."""
        if field_id is None:
            return None
        try:
            leads = await self.store.search_leads(value, limit=limit)
        except RecordStoreAuthError:
            raise
        except RecordStoreError as e:
            logger.warning(f"Lead search failed for field {field_id}: {e}")
            return None

        for lead in leads:
            summary = self._parse(lead)
            if summary and str(summary.get_field(field_id) or "") == value:
                return await self._full_record(lead, summary)
        return None

    async def _full_record(
        self, lead: Dict[str, Any], summary: Optional[ExternalRecord] = None
    ) -> Optional[ExternalRecord]:
        """Fetch the full lead; fall back to the search summary."""
        summary = summary or self._parse(lead)
        if summary is None:
            return None
        try:
            full = await self.store.get_lead(summary.id)
        except RecordStoreAuthError:
            raise
        except RecordStoreError as e:
            logger.warning(f"Could not fetch lead {summary.id}, using summary: {e}")
            return summary
        if not full:
            return summary
        return self._parse(full) or summary

    @staticmethod
    def _parse(lead: Optional[Dict[str, Any]]) -> Optional[ExternalRecord]:
        if not isinstance(lead, dict) or lead.get("id") is None:
            return None
        try:
            return ExternalRecord.from_api(lead)
        except (ValueError, TypeError, KeyError) as e:
            logger.warning(f"Unreadable lead payload {lead.get('id')}: {e}")
            return None
