"""
Attribution Updater - update the lead only if it already exists

resolve -> merge (write-once) -> PATCH, and on a miss hand the draft to
the retry coordinator under its match key.
"""

import logging
from typing import Optional, Sequence

from ..clients.record_store import RecordStoreClient, RecordStoreError, RecordStoreAuthError
from ..config import FieldIdMap
from ..models import AttributionDraft, AttributionOutcome
from .attribution_merge import merge_attribution, build_custom_fields
from .identity_resolver import IdentityResolver
from .retry_coordinator import RetryCoordinator, RetryScheduler, DEFAULT_RETRY_DELAYS

logger = logging.getLogger(__name__)


def match_key(draft: AttributionDraft, phone: Optional[str] = None) -> Optional[str]:
    """click id, else raw phone, else thread id."""
    for candidate in (draft.click_id, phone, draft.thread_id):
        if candidate:
            return candidate
    return None


class AttributionUpdater:
    """
    Applies drafts to existing Kommo leads, with anti-race retries.
    """

    def __init__(
        self,
        store: RecordStoreClient,
        resolver: IdentityResolver,
        scheduler: RetryScheduler,
        field_ids: Optional[FieldIdMap] = None,
        retry_delays: Sequence[int] = DEFAULT_RETRY_DELAYS,
    ):
        """
        Initialize the updater.

        Args:
            store: Kommo client used for the PATCH
            resolver: Lead resolver
            scheduler: Scheduler for delayed retries
            field_ids: Logical name -> Kommo field id
            retry_delays: Delay before each retry, in seconds
        """
        self.store = store
        self.resolver = resolver
        self.field_ids = field_ids or FieldIdMap()
        self.retries = RetryCoordinator(
            scheduler=scheduler,
            attempt=self.attempt,
            delays=retry_delays,
        )

    async def update_existing_record(
        self, draft: AttributionDraft, phone: Optional[str] = None
    ) -> AttributionOutcome:
        """
        Resolve, merge and persist once.

        Raises:
            RecordStoreAuthError: Token rejected
            RecordStoreError: PATCH failed after transient retries
        """
        match = await self.resolver.resolve_with_source(draft, phone)
        if not match:
            return AttributionOutcome(updated=False)

        record, source = match
        merged = merge_attribution(record, draft, self.field_ids)
        custom_fields = build_custom_fields(merged, self.field_ids)
        if custom_fields:
            await self.store.update_lead_fields(record.id, custom_fields)
            logger.info(f"PATCH ok for lead {record.id} ({len(custom_fields)} fields)")

        return AttributionOutcome(updated=True, record_id=record.id, match_source=source)

    async def attempt(self, draft: AttributionDraft, phone: Optional[str] = None) -> bool:
        """Retry step for the coordinator; errors propagate to it."""
        outcome = await self.update_existing_record(draft, phone)
        if outcome.updated:
            self.retries.settle(draft.click_id, phone, draft.thread_id)
        return outcome.updated

    async def process(
        self, draft: AttributionDraft, phone: Optional[str] = None
    ) -> AttributionOutcome:
        """
        Immediate attempt for a fresh event; schedules a retry on a miss.

        Never raises: store failures are logged and end processing.
        """
        try:
            outcome = await self.update_existing_record(draft, phone)
        except RecordStoreAuthError as e:
            logger.error(f"Kommo token rejected, attribution skipped: {e}")
            return AttributionOutcome(updated=False)
        except RecordStoreError as e:
            logger.error(f"Kommo update failed, attribution skipped: {e}")
            return AttributionOutcome(updated=False)

        if outcome.updated:
            logger.info(f"Lead {outcome.record_id} updated via {outcome.match_source.value}")
            self.retries.settle(draft.click_id, phone, draft.thread_id)
            return outcome

        key = match_key(draft, phone)
        if key:
            self.retries.request_retry(key, draft, phone)
        else:
            logger.info("No click id, phone or thread id; nothing to retry on")
        return outcome
