"""
End-to-end tests for update-only attribution with anti-race retries.

Tests:
- Lead not there yet -> retry scheduled under the click id
- Lead created later -> retry PATCHes merged fields and stops
- Existing attribution is preserved on a second delivery
- Store failures end processing without retries
"""

import pytest

from crm_attribution.clients.record_store import RecordStoreAuthError, RecordStoreError
from crm_attribution.models import MatchSource
from crm_attribution.services.attribution_updater import AttributionUpdater, match_key
from crm_attribution.services.identity_resolver import IdentityResolver

PHONE = "5216141112222"


@pytest.fixture
def updater(fake_store, manual_scheduler, fields):
    resolver = IdentityResolver(fake_store, field_ids=fields)
    return AttributionUpdater(fake_store, resolver, manual_scheduler, field_ids=fields)


@pytest.mark.asyncio
async def test_missing_lead_schedules_retry(updater, fake_store, manual_scheduler, make_draft):
    outcome = await updater.process(make_draft(click_id="CL1"), PHONE)

    assert outcome.updated is False
    assert fake_store.patches == []
    assert updater.retries.is_pending("CL1")
    assert manual_scheduler.history == [("attribution-retry:CL1:1", 300)]


@pytest.mark.asyncio
async def test_lead_created_before_retry(updater, fake_store, manual_scheduler, fields, make_draft):
    draft = make_draft(click_id="CL1", ad_id="A9", campaign_id="C1", thread_id="wamid.1",
                       first_message_unix=1700000000, last_message_unix=1700000000)
    await updater.process(draft, PHONE)

    # CRM creates the lead from the same conversation a few minutes later
    fake_store.add_lead(77, updated_at=10)
    fake_store.add_contact(900, "+526141112222", [77])

    await manual_scheduler.run_all()

    assert len(fake_store.patches) == 1
    stored = fake_store.stored_fields(77)
    assert stored[fields.click_id] == "CL1"
    assert stored[fields.ad_id] == "A9"
    assert stored[fields.campaign_id] == "C1"
    assert stored[fields.platform] == "whatsapp"
    assert stored[fields.channel_source] == "ctwa"
    assert stored[fields.first_message_unix] == 1700000000
    assert stored[fields.thread_id] == "wamid.1"
    assert not updater.retries.is_pending("CL1")
    assert [delay for _, delay in manual_scheduler.history] == [300]


@pytest.mark.asyncio
async def test_existing_lead_updated_immediately(updater, fake_store, manual_scheduler, fields,
                                                 make_draft):
    fake_store.add_lead(5, {fields.click_id: "CL1", fields.first_message_unix: 1000})

    outcome = await updater.process(
        make_draft(click_id="CL1", ad_id="A9", first_message_unix=500, last_message_unix=1500)
    )

    assert outcome.updated is True
    assert outcome.record_id == 5
    assert outcome.match_source == MatchSource.CLICK_ID
    assert manual_scheduler.history == []

    stored = fake_store.stored_fields(5)
    assert stored[fields.click_id] == "CL1"
    assert stored[fields.ad_id] == "A9"
    assert stored[fields.first_message_unix] == 500
    assert stored[fields.last_message_unix] == 1500


@pytest.mark.asyncio
async def test_second_delivery_keeps_first_attribution(updater, fake_store, fields, make_draft):
    fake_store.add_lead(5, updated_at=1)
    fake_store.add_contact(900, PHONE, [5])

    await updater.process(make_draft(click_id="CL1", ad_id="A1"), PHONE)
    await updater.process(make_draft(click_id="CL2", ad_id="A2", last_message_unix=2000), PHONE)

    stored = fake_store.stored_fields(5)
    assert stored[fields.click_id] == "CL1"
    assert stored[fields.ad_id] == "A1"
    assert stored[fields.last_message_unix] == 2000


@pytest.mark.asyncio
async def test_duplicate_delivery_is_idempotent(updater, fake_store, make_draft):
    fake_store.add_lead(5, updated_at=1)
    fake_store.add_contact(900, PHONE, [5])
    draft = make_draft(click_id="CL1", ad_id="A1")

    await updater.process(draft, PHONE)
    first = fake_store.stored_fields(5)
    await updater.process(draft, PHONE)

    assert fake_store.stored_fields(5) == first


@pytest.mark.asyncio
async def test_hit_settles_pending_retry(updater, fake_store, manual_scheduler, make_draft):
    await updater.process(make_draft(click_id="CL1"), PHONE)
    assert updater.retries.is_pending("CL1")

    fake_store.add_lead(5, updated_at=1)
    fake_store.add_contact(900, PHONE, [5])
    await updater.process(make_draft(click_id="CL1"), PHONE)

    assert not updater.retries.is_pending("CL1")
    assert manual_scheduler.jobs == {}


@pytest.mark.asyncio
async def test_auth_error_does_not_retry(updater, fake_store, manual_scheduler, make_draft):
    fake_store.failures["search_leads"] = RecordStoreAuthError("expired", status_code=401)

    outcome = await updater.process(make_draft(click_id="CL1"), PHONE)

    assert outcome.updated is False
    assert manual_scheduler.history == []


@pytest.mark.asyncio
async def test_patch_failure_does_not_retry(updater, fake_store, manual_scheduler, fields,
                                            make_draft):
    fake_store.add_lead(5, {fields.click_id: "CL1"})
    fake_store.failures["update_lead_fields"] = RecordStoreError("Kommo 400", status_code=400)

    outcome = await updater.process(make_draft(click_id="CL1"))

    assert outcome.updated is False
    assert manual_scheduler.history == []


@pytest.mark.asyncio
async def test_no_key_means_no_retry(updater, manual_scheduler, make_draft):
    outcome = await updater.process(make_draft(platform="messenger", channel_source="messenger"))

    assert outcome.updated is False
    assert manual_scheduler.history == []


def test_match_key_order(make_draft):
    assert match_key(make_draft(click_id="CL1", thread_id="t"), PHONE) == "CL1"
    assert match_key(make_draft(thread_id="t"), PHONE) == PHONE
    assert match_key(make_draft(thread_id="t")) == "t"
    assert match_key(make_draft()) is None


@pytest.mark.asyncio
async def test_phone_key_exhausts_budget(updater, fake_store, manual_scheduler, make_draft):
    await updater.process(make_draft(), "+5216141112222")

    assert updater.retries.is_pending("+5216141112222")
    await manual_scheduler.run_all()

    assert [job for job, _ in manual_scheduler.history] == [
        "attribution-retry:+5216141112222:1",
        "attribution-retry:+5216141112222:2",
        "attribution-retry:+5216141112222:3",
    ]
    assert manual_scheduler.jobs == {}
    assert not updater.retries.is_pending("+5216141112222")
    assert fake_store.patches == []


@pytest.mark.asyncio
async def test_coalesced_miss_keeps_newer_data(updater, fake_store, manual_scheduler, fields,
                                               make_draft):
    await updater.process(make_draft(first_message_unix=1000, last_message_unix=1000), PHONE)
    await updater.process(
        make_draft(ad_id="A9", first_message_unix=2000, last_message_unix=2000), PHONE
    )

    assert len(manual_scheduler.jobs) == 1

    fake_store.add_lead(5, updated_at=1)
    fake_store.add_contact(900, PHONE, [5])
    await manual_scheduler.run_all()

    stored = fake_store.stored_fields(5)
    assert stored[fields.first_message_unix] == 1000
    assert stored[fields.last_message_unix] == 2000
    assert stored[fields.ad_id] == "A9"
