"""
Tests for the anti-race retry coordinator and its schedulers.

Tests:
- One live job per key; duplicate misses coalesce
- Delays follow the schedule and the budget is bounded
- Success, settle() and hard errors all clear the key
- Stale jobs are skipped
- Coalesced misses fold their drafts together
- APScheduler-backed scheduler runs, replaces and cancels jobs
"""

import asyncio

import pytest

from crm_attribution.services.attribution_merge import combine_drafts
from crm_attribution.services.retry_coordinator import APSchedulerRetryScheduler, RetryCoordinator


class ScriptedAttempt:
    """Attempt function returning scripted results in order."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = []

    async def __call__(self, draft, phone):
        self.calls.append((draft, phone))
        result = self.results.pop(0) if self.results else False
        if isinstance(result, Exception):
            raise result
        return result


@pytest.mark.asyncio
async def test_duplicate_misses_coalesce(manual_scheduler, make_draft):
    coordinator = RetryCoordinator(manual_scheduler, ScriptedAttempt())
    draft = make_draft(click_id="CL1")

    assert coordinator.request_retry("CL1", draft) is True
    assert coordinator.request_retry("CL1", draft) is False
    assert coordinator.request_retry("CL1", draft) is False

    assert len(manual_scheduler.jobs) == 1
    assert coordinator.is_pending("CL1")


@pytest.mark.asyncio
async def test_budget_is_bounded_with_growing_delays(manual_scheduler, make_draft):
    attempt = ScriptedAttempt()
    coordinator = RetryCoordinator(manual_scheduler, attempt)

    coordinator.request_retry("CL1", make_draft(click_id="CL1"), "5216141112222")
    ran = await manual_scheduler.run_all()

    assert ran == 3
    assert len(attempt.calls) == 3
    assert [delay for _, delay in manual_scheduler.history] == [300, 600, 900]
    assert not coordinator.is_pending("CL1")
    assert manual_scheduler.jobs == {}


@pytest.mark.asyncio
async def test_custom_delays(manual_scheduler, make_draft):
    coordinator = RetryCoordinator(manual_scheduler, ScriptedAttempt(), delays=[5, 7])

    coordinator.request_retry("k", make_draft())
    await manual_scheduler.run_all()

    assert [delay for _, delay in manual_scheduler.history] == [5, 7]


@pytest.mark.asyncio
async def test_success_stops_retrying(manual_scheduler, make_draft):
    attempt = ScriptedAttempt(False, True)
    coordinator = RetryCoordinator(manual_scheduler, attempt)

    coordinator.request_retry("CL1", make_draft(click_id="CL1"))
    await manual_scheduler.run_all()

    assert len(attempt.calls) == 2
    assert not coordinator.is_pending("CL1")
    # a later miss starts a fresh cycle
    assert coordinator.request_retry("CL1", make_draft(click_id="CL1")) is True


@pytest.mark.asyncio
async def test_settle_cancels_pending_job(manual_scheduler, make_draft):
    coordinator = RetryCoordinator(manual_scheduler, ScriptedAttempt())
    coordinator.request_retry("CL1", make_draft(click_id="CL1"))
    job_id = coordinator.pending()["CL1"].job_id

    coordinator.settle("CL1", None, "unknown")

    assert not coordinator.is_pending("CL1")
    assert manual_scheduler.cancelled == [job_id]
    assert manual_scheduler.jobs == {}


@pytest.mark.asyncio
async def test_stale_attempt_is_skipped(manual_scheduler, make_draft):
    attempt = ScriptedAttempt()
    coordinator = RetryCoordinator(manual_scheduler, attempt)
    draft = make_draft(click_id="CL1")

    await coordinator.run_attempt("CL1", draft, None, 1)
    assert attempt.calls == []

    coordinator.request_retry("CL1", draft)
    await coordinator.run_attempt("CL1", draft, None, 2)
    assert attempt.calls == []
    assert coordinator.pending()["CL1"].attempts_used == 1


@pytest.mark.asyncio
async def test_hard_error_drops_key(manual_scheduler, make_draft):
    attempt = ScriptedAttempt(RuntimeError("Kommo 400"))
    coordinator = RetryCoordinator(manual_scheduler, attempt)

    coordinator.request_retry("CL1", make_draft(click_id="CL1"))
    await manual_scheduler.run_all()

    assert len(attempt.calls) == 1
    assert not coordinator.is_pending("CL1")
    assert manual_scheduler.jobs == {}


def test_empty_key_and_delays():
    coordinator = RetryCoordinator(object(), ScriptedAttempt())
    assert coordinator.request_retry("", None) is False
    assert coordinator.request_retry(None, None) is False

    with pytest.raises(ValueError):
        RetryCoordinator(object(), ScriptedAttempt(), delays=[])


def test_job_ids_are_per_attempt():
    assert RetryCoordinator.job_id_for("CL1", 2) == "attribution-retry:CL1:2"


@pytest.mark.asyncio
async def test_coalesced_draft_is_used_by_next_attempt(manual_scheduler, make_draft):
    attempt = ScriptedAttempt(False, True)
    coordinator = RetryCoordinator(manual_scheduler, attempt)

    coordinator.request_retry("k", make_draft(click_id="CL1", first_message_unix=1000,
                                              last_message_unix=1000))
    coordinator.request_retry("k", make_draft(click_id="CL2", campaign_id="C1",
                                              first_message_unix=900, last_message_unix=3000),
                              "5216141112222")

    assert [delay for _, delay in manual_scheduler.history] == [300]
    await manual_scheduler.run_all()

    for draft, phone in attempt.calls:
        assert draft.click_id == "CL1"
        assert draft.campaign_id == "C1"
        assert (draft.first_message_unix, draft.last_message_unix) == (900, 3000)
        assert phone == "5216141112222"
    assert len(attempt.calls) == 2


def test_combine_drafts(make_draft):
    base = make_draft(click_id="CL1", thread_id="t1", first_message_unix=1000,
                      last_message_unix=1000)
    newer = make_draft(click_id="CL2", ad_id="A9", thread_id="t2", first_message_unix=None,
                       last_message_unix=2000)

    combined = combine_drafts(base, newer)

    assert combined.click_id == "CL1"
    assert combined.ad_id == "A9"
    assert combined.thread_id == "t2"
    assert (combined.first_message_unix, combined.last_message_unix) == (1000, 2000)


@pytest.mark.asyncio
async def test_apscheduler_runs_and_cancels_jobs():
    ran = []

    async def job(name):
        ran.append(name)

    scheduler = APSchedulerRetryScheduler()
    scheduler.start()
    try:
        scheduler.schedule("keep", 0.1, job, "keep")
        scheduler.schedule("drop", 0.1, job, "drop")
        scheduler.cancel("drop")
        scheduler.cancel("never-scheduled")

        await asyncio.sleep(0.6)
    finally:
        scheduler.shutdown()

    assert ran == ["keep"]


@pytest.mark.asyncio
async def test_apscheduler_replaces_job_with_same_id():
    ran = []

    async def job(name):
        ran.append(name)

    scheduler = APSchedulerRetryScheduler()
    scheduler.start()
    try:
        scheduler.schedule("same", 0.1, job, "first")
        scheduler.schedule("same", 0.1, job, "second")

        await asyncio.sleep(0.6)
    finally:
        scheduler.shutdown()

    assert ran == ["second"]
