"""
Meta Marketing API ad lookup

Resolves the ad hierarchy (ad -> adset -> campaign) for an id taken
from a message referral. Used only to fill gaps in a draft.

Docs: https://developers.facebook.com/docs/marketing-api/reference/adgroup
"""

import logging
from typing import Optional, Dict, Any

import httpx

from ..config import get_attribution_settings, is_ad_resolver_enabled, AttributionSettings

logger = logging.getLogger(__name__)

# Fields requested per node type
AD_FIELDS = "id,name,adset_id,campaign_id,campaign{name}"
ADSET_FIELDS = "id,name,campaign_id,campaign{name}"
CAMPAIGN_FIELDS = "id,name"


class AdLookupError(Exception):
    """Raised when the Marketing API lookup fails."""
    pass


class MetaAdsLookupClient:
    """
    Read-only Marketing API client for ad hierarchy lookups.
    """

    def __init__(
        self,
        access_token: str,
        api_version: str = "v20.0",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the lookup client.

        Args:
            access_token: System user token with ads_read
            api_version: Graph API version
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests)
        """
        self.access_token = access_token
        self.api_version = api_version
        self.base_url = f"https://graph.facebook.com/{api_version}"
        self.timeout = timeout
        self._transport = transport

        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _get_node(self, node_id: str, fields: str) -> Dict[str, Any]:
        client = await self._get_client()
        try:
            response = await client.get(
                f"/{node_id}",
                params={"fields": fields, "access_token": self.access_token},
            )
        except httpx.HTTPError as e:
            raise AdLookupError(f"Marketing API request failed for {node_id}: {e}") from e

        if response.status_code != 200:
            raise AdLookupError(
                f"Marketing API {response.status_code} for {node_id}: {response.text}"
            )
        try:
            data = response.json()
        except ValueError as e:
            raise AdLookupError(f"Marketing API returned invalid JSON for {node_id}") from e
        if not isinstance(data, dict):
            raise AdLookupError(f"Unexpected Marketing API payload for {node_id}")
        return data

    async def lookup(
        self,
        ad_id: Optional[str] = None,
        adset_id: Optional[str] = None,
        campaign_id: Optional[str] = None,
    ) -> Dict[str, Optional[str]]:
        """
        Look up the hierarchy from the most specific known id.

        Returns:
            Dict with ad_id, adset_id, campaign_id and campaign_name (values may be None)

        Raises:
            AdLookupError: On any HTTP or payload problem
            ValueError: If no id is given
        """
        result: Dict[str, Optional[str]] = {
            "ad_id": ad_id,
            "adset_id": adset_id,
            "campaign_id": campaign_id,
            "campaign_name": None,
        }

        if ad_id:
            data = await self._get_node(ad_id, AD_FIELDS)
            result["ad_id"] = data.get("id") or ad_id
            result["adset_id"] = data.get("adset_id") or adset_id
        elif adset_id:
            data = await self._get_node(adset_id, ADSET_FIELDS)
            result["adset_id"] = data.get("id") or adset_id
        elif campaign_id:
            data = await self._get_node(campaign_id, CAMPAIGN_FIELDS)
            result["campaign_id"] = data.get("id") or campaign_id
            result["campaign_name"] = data.get("name")
            return result
        else:
            raise ValueError("ad_id, adset_id or campaign_id required")

        result["campaign_id"] = data.get("campaign_id") or campaign_id
        campaign = data.get("campaign")
        if isinstance(campaign, dict):
            result["campaign_name"] = campaign.get("name")
        return result


def create_ads_lookup_client(
    settings: Optional[AttributionSettings] = None,
) -> Optional[MetaAdsLookupClient]:
    """Create a lookup client, or None if the resolver is disabled."""
    settings = settings or get_attribution_settings()

    if not is_ad_resolver_enabled(settings):
        return None

    return MetaAdsLookupClient(
        access_token=settings.meta_ads_token,
        api_version=settings.meta_api_version,
        timeout=settings.ad_resolver_timeout_seconds,
    )
