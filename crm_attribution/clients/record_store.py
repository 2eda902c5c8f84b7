"""
Kommo Record Store Client

Thin async wrapper over the Kommo API v4 for the calls attribution needs:
lead search, lead fetch, contact search, contact -> leads, lead PATCH.

Transient failures (429, 5xx, network errors) are retried here with capped
exponential backoff, honouring Retry-After up to two minutes. Callers only
ever see a successful response or a RecordStoreError.

Docs: https://www.kommo.com/developers/content/crm_platform/leads-api
"""

import asyncio
import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Optional, Dict, Any, List, Callable, Awaitable

import httpx

from ..config import get_attribution_settings, AttributionSettings

logger = logging.getLogger(__name__)

USER_AGENT = "crm-attribution/1.1"

# Longest Retry-After honoured per wait
MAX_RETRY_AFTER_SECONDS = 120.0


class RecordStoreError(Exception):
    """Base exception for Kommo errors."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class RecordStoreAuthError(RecordStoreError):
    """Raised when the access token is invalid or expired (401)."""
    pass


def _is_transient(status_code: int) -> bool:
    return status_code == 429 or 500 <= status_code < 600


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After as seconds; accepts delta-seconds or an HTTP date."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


class RecordStoreClient:
    """
    Client for the Kommo leads/contacts API.

    Handles bearer auth, JSON encoding and transient retries.
    """

    def __init__(
        self,
        base_url: str,
        access_token: str,
        timeout: float = 30.0,
        max_attempts: int = 4,
        backoff_base: float = 1.0,
        backoff_cap: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize the record store client.

        Args:
            base_url: Kommo account URL, e.g. https://acme.kommo.com
            access_token: Long-lived token or OAuth access token
            timeout: Per-request timeout in seconds
            max_attempts: Total tries per call, including the first
            backoff_base: First backoff delay in seconds
            backoff_cap: Upper bound for a single backoff delay
            transport: Optional httpx transport (tests)
            sleep: Awaitable used between retries (tests)
        """
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self._transport = transport
        self._sleep = sleep

        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={
                    "Authorization": f"Bearer {self.access_token}",
                    "Content-Type": "application/json",
                    "User-Agent": USER_AGENT,
                },
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _backoff(self, attempt: int, response: Optional[httpx.Response] = None) -> float:
        """Delay before the next try; attempt is zero-based."""
        if response is not None:
            retry_after = parse_retry_after(response.headers.get("Retry-After"))
            if retry_after is not None:
                return min(retry_after, MAX_RETRY_AFTER_SECONDS)
        return min(self.backoff_cap, self.backoff_base * (2 ** attempt))

    # =========================================================================
    # Request core
    # =========================================================================

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
    ) -> Dict[str, Any]:
        """
        Send a request, retrying transient failures.

        Returns:
            Parsed JSON body, or {} for empty / 204 responses

        Raises:
            RecordStoreAuthError: 401 from Kommo
            RecordStoreError: Any other failure after retries
        """
        client = await self._get_client()
        last_error: Optional[RecordStoreError] = None

        for attempt in range(self.max_attempts):
            try:
                response = await client.request(method, path, params=params, json=json)
            except httpx.TransportError as e:
                last_error = RecordStoreError(f"Kommo transport error on {method} {path}: {e}")
                if attempt + 1 < self.max_attempts:
                    delay = self._backoff(attempt)
                    logger.warning(
                        f"Kommo {method} {path} failed ({e}), retrying in {delay:.1f}s "
                        f"(attempt {attempt + 1}/{self.max_attempts})"
                    )
                    await self._sleep(delay)
                continue

            if response.status_code == 401:
                logger.error(f"Kommo rejected the access token on {method} {path}")
                raise RecordStoreAuthError(
                    "Kommo access token invalid or expired",
                    status_code=401,
                    body=response.text,
                )

            if _is_transient(response.status_code):
                last_error = RecordStoreError(
                    f"Kommo {response.status_code} on {method} {path}",
                    status_code=response.status_code,
                    body=response.text,
                )
                if attempt + 1 < self.max_attempts:
                    delay = self._backoff(attempt, response)
                    logger.warning(
                        f"Kommo {response.status_code} on {method} {path}, retrying in "
                        f"{delay:.1f}s (attempt {attempt + 1}/{self.max_attempts})"
                    )
                    await self._sleep(delay)
                continue

            if response.status_code >= 400:
                logger.error(f"Kommo {response.status_code} {method} {path} :: {response.text}")
                raise RecordStoreError(
                    f"Kommo {response.status_code}: {response.text}",
                    status_code=response.status_code,
                    body=response.text,
                )

            if response.status_code == 204 or not response.content:
                return {}
            try:
                return response.json()
            except ValueError:
                return {}

        raise last_error or RecordStoreError(f"Kommo {method} {path} failed")

    # =========================================================================
    # Leads
    # =========================================================================

    async def search_leads(self, query: str, limit: int = 25) -> List[Dict[str, Any]]:
        """Free-text lead search."""
        data = await self.request("GET", "/api/v4/leads", params={"query": query, "limit": limit})
        return (data.get("_embedded") or {}).get("leads") or []

    async def get_lead(self, lead_id: int) -> Optional[Dict[str, Any]]:
        """Full lead, or None if Kommo has nothing for that id."""
        data = await self.request("GET", f"/api/v4/leads/{lead_id}")
        return data or None

    async def patch_leads(self, updates: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Partial update; only the supplied fields are touched."""
        return await self.request("PATCH", "/api/v4/leads", json=updates)

    async def update_lead_fields(
        self, lead_id: int, custom_fields_values: List[Dict[str, Any]]
    ) -> Dict[str, Any]:
        """PATCH the custom fields of a single lead."""
        return await self.patch_leads(
            [{"id": lead_id, "custom_fields_values": custom_fields_values}]
        )

    # =========================================================================
    # Contacts
    # =========================================================================

    async def search_contacts(self, query: str, limit: int = 10) -> List[Dict[str, Any]]:
        """Contact search by phone-like string."""
        data = await self.request(
            "GET", "/api/v4/contacts", params={"query": query, "limit": limit}
        )
        return (data.get("_embedded") or {}).get("contacts") or []

    async def get_contact_leads(self, contact_id: int) -> List[Dict[str, Any]]:
        """Leads linked to a contact."""
        data = await self.request(
            "GET", f"/api/v4/contacts/{contact_id}", params={"with": "leads"}
        )
        return (data.get("_embedded") or {}).get("leads") or []


def create_record_store_client(
    settings: Optional[AttributionSettings] = None,
) -> Optional[RecordStoreClient]:
    """Create a client from settings, or None if Kommo is not configured."""
    settings = settings or get_attribution_settings()

    if not settings.kommo_base_url or not settings.kommo_access_token:
        logger.warning("Kommo not configured, attribution updates disabled")
        return None

    return RecordStoreClient(
        base_url=settings.kommo_base_url,
        access_token=settings.kommo_access_token,
        timeout=settings.record_store_timeout_seconds,
        max_attempts=settings.record_store_max_attempts,
        backoff_base=settings.record_store_backoff_base_seconds,
        backoff_cap=settings.record_store_backoff_cap_seconds,
    )
