"""
Meta Webhook Handler - WhatsApp, Instagram DM and Messenger deliveries

Handles incoming webhook events from Meta platforms:
- Signature verification (X-Hub-Signature-256)
- Message events with or without an ad referral (Click-to-WhatsApp, CTM)
- Status / delivery / echo callbacks (ignored)

Each recognized message becomes an AttributionDraft that is enriched and
handed to the AttributionUpdater. Nothing here creates leads.

Webhook URL: POST /api/webhooks/meta
Verification: GET /api/webhooks/meta?hub.mode=subscribe&hub.verify_token=...
"""

import hashlib
import hmac
import logging
from typing import Optional, Dict, Any, List

from ..clients.meta_ads import create_ads_lookup_client
from ..clients.record_store import create_record_store_client
from ..config import get_attribution_settings, AttributionSettings
from ..models import AttributionOutcome, ParseResult, Recognized, Malformed
from ..services.ad_enrichment import AdEnricher
from ..services.attribution_updater import AttributionUpdater
from ..services.event_normalizer import normalize_webhook, recognized_events
from ..services.identity_resolver import IdentityResolver
from ..services.retry_coordinator import APSchedulerRetryScheduler

logger = logging.getLogger(__name__)


class MetaWebhookHandler:
    """
    Turns Meta webhook deliveries into lead attribution updates.
    """

    def __init__(
        self,
        updater: Optional[AttributionUpdater],
        enricher: Optional[AdEnricher] = None,
        app_secret: Optional[str] = None,
    ):
        """
        Args:
            updater: Lead updater; None when Kommo is not configured
            enricher: Marketing API enricher (optional)
            app_secret: Meta app secret for signature checks
        """
        self.updater = updater
        self.enricher = enricher or AdEnricher()
        self.app_secret = app_secret

    def verify_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        """
        Verify webhook signature from Meta.

        Args:
            payload: Raw request body
            signature: X-Hub-Signature-256 header value

        Returns:
            True if signature is valid
        """
        if not self.app_secret:
            logger.warning("META_APP_SECRET not set, skipping signature check")
            return True

        if not signature or not signature.startswith("sha256="):
            return False

        expected = "sha256=" + hmac.new(
            self.app_secret.encode(),
            payload,
            hashlib.sha256,
        ).hexdigest()

        return hmac.compare_digest(expected.encode(), signature.encode("utf-8", "replace"))

    def parse(self, payload: Dict[str, Any]) -> List[ParseResult]:
        """Normalize a delivery and log what was skipped."""
        results = normalize_webhook(payload)
        for result in results:
            if isinstance(result, Malformed):
                logger.warning(f"Malformed webhook item: {result.reason}")
        return results

    async def handle_event(self, event: Recognized) -> AttributionOutcome:
        """Enrich one draft and apply it to its lead."""
        draft = event.draft
        logger.info(
            f"Inbound {draft.platform} message, click id: {'yes' if draft.click_id else 'no'}, "
            f"phone: {event.phone or 'unknown'}"
        )

        if self.updater is None:
            logger.warning("Kommo not configured, dropping attribution")
            return AttributionOutcome(updated=False)

        draft = await self.enricher.enrich(draft)
        return await self.updater.process(draft, event.phone)

    async def handle_events(self, results: List[ParseResult]) -> List[AttributionOutcome]:
        """Process every recognized event; one failure does not stop the rest."""
        outcomes = []
        for event in recognized_events(results):
            try:
                outcomes.append(await self.handle_event(event))
            except Exception as e:
                logger.error(f"Error handling webhook event: {e}")
                outcomes.append(AttributionOutcome(updated=False))
        return outcomes

    async def handle_webhook(self, payload: Dict[str, Any]) -> List[AttributionOutcome]:
        """Parse and process a whole delivery."""
        return await self.handle_events(self.parse(payload))

    async def close(self):
        """Close HTTP clients."""
        if self.updater is not None:
            await self.updater.store.close()
        await self.enricher.close()


# =============================================================================
# Wiring
# =============================================================================


def build_webhook_handler(
    settings: Optional[AttributionSettings] = None,
    scheduler: Optional[APSchedulerRetryScheduler] = None,
) -> MetaWebhookHandler:
    """Build a handler with Kommo, Marketing API and retry scheduler from settings."""
    settings = settings or get_attribution_settings()

    store = create_record_store_client(settings)
    updater = None
    if store is not None:
        resolver = IdentityResolver(
            store,
            field_ids=settings.kommo_field_ids,
            country_code=settings.phone_country_code,
            trunk_prefix=settings.phone_trunk_prefix,
            match_by_thread_id=settings.match_by_thread_id,
        )
        updater = AttributionUpdater(
            store,
            resolver,
            scheduler=scheduler or APSchedulerRetryScheduler(),
            field_ids=settings.kommo_field_ids,
            retry_delays=settings.retry_delays_seconds,
        )

    return MetaWebhookHandler(
        updater=updater,
        enricher=AdEnricher(create_ads_lookup_client(settings)),
        app_secret=settings.meta_app_secret,
    )


# Singleton instance
_webhook_handler: Optional[MetaWebhookHandler] = None


def get_webhook_handler() -> MetaWebhookHandler:
    """Get or create the webhook handler singleton."""
    global _webhook_handler
    if _webhook_handler is None:
        _webhook_handler = build_webhook_handler()
    return _webhook_handler


def set_webhook_handler(handler: Optional[MetaWebhookHandler]) -> None:
    """Replace the singleton (app startup, tests)."""
    global _webhook_handler
    _webhook_handler = handler
