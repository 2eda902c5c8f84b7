"""
Retry Coordinator - anti-race retries for messages that arrive before their lead

The CRM creates leads on its own schedule, often minutes after the first
WhatsApp message. A miss schedules a delayed retry of the whole
resolve -> merge -> persist step:

    IDLE -> SCHEDULED -> (attempt) -> SCHEDULED | SETTLED

- one live job per match key; a miss for a pending key only folds its
  draft into the pending one, the timer is left alone
- attempt N runs delays[N-1] after the previous miss, with the folded draft
- a hit, an exhausted budget or a hard error settles the key

State lives in a plain dict owned by the coordinator, and jobs go through
a scheduler object, so tests can drive attempts without real timers.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Callable, Awaitable, Sequence, Any

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

from ..models import AttributionDraft
from .attribution_merge import combine_drafts

logger = logging.getLogger(__name__)

DEFAULT_RETRY_DELAYS = (300, 600, 900)

# (draft, phone) -> True when a lead was found and updated
AttemptFn = Callable[[AttributionDraft, Optional[str]], Awaitable[bool]]


@dataclass
class PendingRetry:
    """Retry bookkeeping for one match key."""
    key: str
    attempts_used: int
    job_id: str
    next_run_at: datetime
    draft: Optional[AttributionDraft] = None
    phone: Optional[str] = None


# =============================================================================
# Schedulers
# =============================================================================


class RetryScheduler:
    """Runs a coroutine function after a delay."""

    def schedule(
        self, job_id: str, delay_seconds: float, func: Callable[..., Awaitable[Any]], *args
    ) -> None:
        raise NotImplementedError

    def cancel(self, job_id: str) -> None:
        raise NotImplementedError


class APSchedulerRetryScheduler(RetryScheduler):
    """
    Delayed jobs on APScheduler's AsyncIOScheduler.

    Jobs are in-memory; a restart drops them.
    """

    def __init__(self, scheduler: Optional[AsyncIOScheduler] = None):
        self.scheduler = scheduler or AsyncIOScheduler(timezone="UTC")
        self._started = False

    def start(self):
        """Start the underlying scheduler (needs a running event loop)."""
        if not self._started:
            self.scheduler.start()
            self._started = True
            logger.info("Attribution retry scheduler started")

    def shutdown(self):
        """Stop the scheduler; pending retries are dropped."""
        if self._started:
            self.scheduler.shutdown(wait=False)
            self._started = False
            logger.info("Attribution retry scheduler stopped")

    def schedule(self, job_id, delay_seconds, func, *args):
        run_date = datetime.now(timezone.utc) + timedelta(seconds=delay_seconds)
        self.scheduler.add_job(
            func,
            trigger=DateTrigger(run_date=run_date),
            args=list(args),
            id=job_id,
            replace_existing=True,
            misfire_grace_time=None,
        )

    def cancel(self, job_id):
        try:
            self.scheduler.remove_job(job_id)
        except JobLookupError:
            pass


# =============================================================================
# Coordinator
# =============================================================================


class RetryCoordinator:
    """
    Bounded, coalesced retries keyed by match key.
    """

    def __init__(
        self,
        scheduler: RetryScheduler,
        attempt: AttemptFn,
        delays: Sequence[int] = DEFAULT_RETRY_DELAYS,
        state: Optional[Dict[str, PendingRetry]] = None,
    ):
        """
        Initialize the coordinator.

        Args:
            scheduler: Where delayed attempts are queued
            attempt: One resolve -> merge -> persist step
            delays: Seconds before attempt 1, 2, ...; its length is the budget
            state: Pending retries by key (injectable for tests)
        """
        if not delays:
            raise ValueError("at least one retry delay is required")
        self.scheduler = scheduler
        self.attempt = attempt
        self.delays = tuple(delays)
        self.state: Dict[str, PendingRetry] = state if state is not None else {}

    @property
    def max_attempts(self) -> int:
        return len(self.delays)

    def pending(self) -> Dict[str, PendingRetry]:
        """Snapshot of pending retries."""
        return dict(self.state)

    def is_pending(self, key: str) -> bool:
        return key in self.state

    @staticmethod
    def job_id_for(key: str, attempt: int) -> str:
        return f"attribution-retry:{key}:{attempt}"

    def _schedule(self, key: str, draft: AttributionDraft, phone: Optional[str], attempt: int):
        delay = self.delays[attempt - 1]
        job_id = self.job_id_for(key, attempt)
        self.state[key] = PendingRetry(
            key=key,
            attempts_used=attempt,
            job_id=job_id,
            next_run_at=datetime.now(timezone.utc) + timedelta(seconds=delay),
            draft=draft,
            phone=phone,
        )
        self.scheduler.schedule(job_id, delay, self.run_attempt, key, draft, phone, attempt)
        logger.info(
            f"Retry #{attempt}/{self.max_attempts} for {key} in {delay}s"
        )

    # =========================================================================
    # Transitions
    # =========================================================================

    def request_retry(
        self, key: str, draft: AttributionDraft, phone: Optional[str] = None
    ) -> bool:
        """
        Schedule the first retry for a key that just missed.

        A miss for a key that is already pending is folded into the pending
        draft; the next attempt persists both.

        Returns:
            True if a job was created, False if one is already pending
        """
        if not key:
            return False
        pending = self.state.get(key)
        if pending is not None:
            pending.draft = combine_drafts(pending.draft, draft) if pending.draft else draft
            pending.phone = pending.phone or phone
            logger.debug(f"Retry already pending for {key}, folded the new draft into it")
            return False
        self._schedule(key, draft, phone, attempt=1)
        return True

    async def run_attempt(
        self, key: str, draft: AttributionDraft, phone: Optional[str], attempt: int
    ) -> None:
        """
        Scheduled step: try again, then settle or reschedule.

        The draft stored for the key wins over the job arguments, since
        later misses may have folded newer data into it.
        """
        pending = self.state.get(key)
        if pending is None or pending.attempts_used != attempt:
            logger.debug(f"Skipping stale retry #{attempt} for {key}")
            return

        draft = pending.draft or draft
        phone = pending.phone or phone

        try:
            resolved = await self.attempt(draft, phone)
        except Exception as e:
            # hard store failures (bad token, 4xx) are not a race
            self.state.pop(key, None)
            logger.error(f"Retry #{attempt} for {key} failed, giving up: {e}")
            return

        if self.state.get(key) is not pending:
            # settled by another delivery while this attempt was running
            return

        if resolved:
            self.state.pop(key, None)
            logger.info(f"Retry #{attempt} for {key} updated the lead")
            return

        if attempt >= self.max_attempts:
            self.state.pop(key, None)
            logger.warning(f"Giving up on {key} after {attempt} retries, no lead found")
            return

        self._schedule(key, pending.draft or draft, pending.phone or phone, attempt=attempt + 1)

    def settle(self, *keys: Optional[str]) -> None:
        """Drop and cancel pending retries for keys that are now resolved."""
        for key in keys:
            if not key:
                continue
            pending = self.state.pop(key, None)
            if pending:
                self.scheduler.cancel(pending.job_id)
                logger.info(f"Cleared pending retry for {key}")
