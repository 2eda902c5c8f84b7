"""
Attribution business logic

- event_normalizer: webhook payload -> AttributionDraft
- ad_enrichment: Marketing API gap filling
- phone_candidates: phone format variants
- identity_resolver: lead lookup cascade
- attribution_merge: write-once merge
- retry_coordinator: anti-race retries
- attribution_updater: resolve -> merge -> persist
"""

__all__ = []
