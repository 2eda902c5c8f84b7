"""
Ad Enrichment - fill missing campaign / adset ids from the Marketing API

Best effort only: any lookup failure leaves the draft as it was.
"""

import logging
from typing import Optional

from ..clients.meta_ads import MetaAdsLookupClient, AdLookupError
from ..models import AttributionDraft

logger = logging.getLogger(__name__)


class AdEnricher:
    """Applies Marketing API lookups to drafts."""

    def __init__(self, lookup_client: Optional[MetaAdsLookupClient] = None):
        """
        Args:
            lookup_client: Marketing API client; None disables enrichment
        """
        self.lookup_client = lookup_client

    @staticmethod
    def needs_lookup(draft: AttributionDraft) -> bool:
        return draft.has_ad_ids and not (draft.campaign_id and draft.adset_id)

    async def enrich(self, draft: AttributionDraft) -> AttributionDraft:
        """Return a draft with missing ad ids filled in where possible."""
        if self.lookup_client is None or not self.needs_lookup(draft):
            return draft

        try:
            found = await self.lookup_client.lookup(
                ad_id=draft.ad_id,
                adset_id=draft.adset_id,
                campaign_id=draft.campaign_id,
            )
        except AdLookupError as e:
            logger.warning(f"Ad resolver failed, continuing without it: {e}")
            return draft
        except Exception as e:
            logger.warning(f"Unexpected ad resolver error, continuing without it: {e}")
            return draft

        updates = {
            name: found.get(name)
            for name in ("ad_id", "adset_id", "campaign_id", "campaign_name")
            if not getattr(draft, name) and found.get(name)
        }
        if not updates:
            return draft

        logger.info(f"Ad resolver filled {sorted(updates)} for ad {draft.ad_id}")
        return draft.model_copy(update=updates)

    async def close(self):
        if self.lookup_client:
            await self.lookup_client.close()
