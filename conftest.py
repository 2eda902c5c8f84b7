"""
Shared fixtures: in-memory Kommo store, manual retry scheduler, draft factory.
"""

from typing import Any, Dict, List, Optional

import pytest

from crm_attribution.clients.record_store import RecordStoreError
from crm_attribution.config import FieldIdMap
from crm_attribution.models import AttributionDraft
from crm_attribution.services.retry_coordinator import RetryScheduler


FIELDS = FieldIdMap()


class FakeRecordStore:
    """Kommo stand-in with the same async surface as RecordStoreClient."""

    def __init__(self):
        self.leads: Dict[int, Dict[str, Any]] = {}
        self.contacts: List[Dict[str, Any]] = []
        self.patches: List[Dict[str, Any]] = []
        self.calls: List[tuple] = []
        self.failures: Dict[str, Exception] = {}

    # --- setup helpers ---

    def add_lead(
        self,
        lead_id: int,
        fields: Optional[Dict[int, Any]] = None,
        name: str = "",
        updated_at: int = 0,
    ) -> Dict[str, Any]:
        lead = {
            "id": lead_id,
            "name": name,
            "updated_at": updated_at,
            "custom_fields_values": [
                {"field_id": fid, "values": [{"value": value}]}
                for fid, value in (fields or {}).items()
            ] or None,
        }
        self.leads[lead_id] = lead
        return lead

    def add_contact(self, contact_id: int, phone: str, lead_ids: List[int]):
        self.contacts.append({"id": contact_id, "phone": phone, "lead_ids": lead_ids})

    def stored_fields(self, lead_id: int) -> Dict[int, Any]:
        return {
            cf["field_id"]: cf["values"][0]["value"]
            for cf in self.leads[lead_id]["custom_fields_values"] or []
        }

    def _check(self, method: str, *args):
        self.calls.append((method,) + args)
        if method in self.failures:
            raise self.failures[method]

    # --- RecordStoreClient surface ---

    async def search_leads(self, query: str, limit: int = 25):
        self._check("search_leads", query)
        hits = []
        for lead in self.leads.values():
            haystack = [lead["name"]] + [
                str(cf["values"][0]["value"]) for cf in lead["custom_fields_values"] or []
            ]
            if any(query in text for text in haystack):
                hits.append(lead)
        return hits[:limit]

    async def get_lead(self, lead_id: int):
        self._check("get_lead", lead_id)
        return self.leads.get(lead_id)

    async def search_contacts(self, query: str, limit: int = 10):
        self._check("search_contacts", query)
        return [
            {"id": c["id"], "name": c["phone"]} for c in self.contacts if c["phone"] == query
        ][:limit]

    async def get_contact_leads(self, contact_id: int):
        self._check("get_contact_leads", contact_id)
        for contact in self.contacts:
            if contact["id"] == contact_id:
                # Kommo embeds only the id and links of each lead
                return [
                    {"id": lid, "_links": {"self": {"href": f"/api/v4/leads/{lid}"}}}
                    for lid in contact["lead_ids"]
                ]
        raise RecordStoreError("contact not found", status_code=404)

    async def update_lead_fields(self, lead_id: int, custom_fields_values):
        self._check("update_lead_fields", lead_id)
        self.patches.append({"id": lead_id, "custom_fields_values": custom_fields_values})
        stored = self.stored_fields(lead_id)
        for cf in custom_fields_values:
            stored[cf["field_id"]] = cf["values"][0]["value"]
        self.leads[lead_id]["custom_fields_values"] = [
            {"field_id": fid, "values": [{"value": value}]} for fid, value in stored.items()
        ]
        return {}

    async def close(self):
        pass


class ManualScheduler(RetryScheduler):
    """Virtual-time scheduler: jobs run only when the test says so."""

    def __init__(self):
        self.jobs: Dict[str, tuple] = {}
        self.history: List[tuple] = []
        self.cancelled: List[str] = []

    def schedule(self, job_id, delay_seconds, func, *args):
        self.jobs[job_id] = (delay_seconds, func, args)
        self.history.append((job_id, delay_seconds))

    def cancel(self, job_id):
        self.cancelled.append(job_id)
        self.jobs.pop(job_id, None)

    async def run_next(self) -> str:
        job_id = next(iter(self.jobs))
        _, func, args = self.jobs.pop(job_id)
        await func(*args)
        return job_id

    async def run_all(self, limit: int = 20) -> int:
        ran = 0
        while self.jobs and ran < limit:
            await self.run_next()
            ran += 1
        return ran


@pytest.fixture
def fields() -> FieldIdMap:
    return FIELDS


@pytest.fixture
def fake_store() -> FakeRecordStore:
    return FakeRecordStore()


@pytest.fixture
def manual_scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def make_draft():
    def _make(**overrides) -> AttributionDraft:
        data = {
            "platform": "whatsapp",
            "channel_source": "ctwa",
            "first_message_unix": 1000,
            "last_message_unix": 1000,
        }
        data.update(overrides)
        return AttributionDraft(**data)

    return _make
