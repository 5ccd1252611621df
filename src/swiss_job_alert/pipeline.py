from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Protocol, TypeVar

from swiss_job_alert.config import Settings
from swiss_job_alert.log import get_logger
from swiss_job_alert.messages import DEFAULT_TIMEZONE, format_job_message
from swiss_job_alert.models import (
    CleanupResult,
    JobMatch,
    ProcessResult,
    SavedSearch,
    SearchStats,
    Subscriber,
)
from swiss_job_alert.storage import AlertStore

Clock = Callable[[], datetime]
Sleeper = Callable[[float], Awaitable[None]]
T = TypeVar("T")

DEFAULT_RETENTION_DAYS = 90

log = get_logger(__name__)


class JobFetcher(Protocol):
    async def fetch(self, keywords: Sequence[str], locations: Sequence[str]) -> list[JobMatch]: ...


class MessageChannel(Protocol):
    async def send_message(self, chat_id: str, message_text: str) -> None: ...


class SubscriberNotFoundError(LookupError):
    pass


@dataclass(frozen=True)
class DeliveryPolicy:
    message_delay_seconds: float = 0.5
    user_delay_seconds: float = 1.0
    run_timeout_seconds: float | None = 1800.0
    # When True, postings whose send raised are recorded as notified too.
    record_on_dispatch_failure: bool = True
    timezone: str = DEFAULT_TIMEZONE

    @classmethod
    def from_settings(cls, settings: Settings) -> DeliveryPolicy:
        return cls(
            message_delay_seconds=settings.message_delay_seconds,
            user_delay_seconds=settings.user_delay_seconds,
            run_timeout_seconds=settings.run_timeout_seconds,
            record_on_dispatch_failure=settings.record_on_dispatch_failure,
            timezone=settings.tz,
        )


@dataclass
class _RunProgress:
    users_processed: int = 0
    users_failed: int = 0
    jobs_found: int = 0
    notifications_sent: int = 0


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def filter_recent(jobs: Iterable[JobMatch], max_age_days: int, now_utc: datetime) -> list[JobMatch]:
    cutoff = now_utc - timedelta(days=max_age_days)
    return [job for job in jobs if job.posted_at >= cutoff]


def unique_by_external_id(jobs: Iterable[JobMatch]) -> list[JobMatch]:
    seen: set[str] = set()
    unique: list[JobMatch] = []
    for job in jobs:
        if job.external_id in seen:
            continue
        seen.add(job.external_id)
        unique.append(job)
    return unique


def _describe_search(search: SavedSearch) -> str:
    return f"\"{', '.join(search.keywords)}\" in [{', '.join(search.locations)}]"


class AlertPipeline:
    """Turns saved searches into chat notifications for postings a subscriber has not seen."""

    def __init__(
        self,
        store: AlertStore,
        aggregator: JobFetcher,
        channel: MessageChannel,
        policy: DeliveryPolicy | None = None,
        *,
        clock: Clock = _utc_now,
        sleep: Sleeper = asyncio.sleep,
    ):
        self.store = store
        self.aggregator = aggregator
        self.channel = channel
        self.policy = policy or DeliveryPolicy()
        self.clock = clock
        self.sleep = sleep
        # One pass at a time, whether started by the scheduler or an admin call.
        self._run_lock = asyncio.Lock()
        self._deliveries: set[asyncio.Task] = set()

    async def _db(self, func: Callable[..., T], *args, **kwargs) -> T:
        return await asyncio.to_thread(func, *args, **kwargs)

    async def process_all(self) -> ProcessResult:
        started_at = self.clock()
        started = time.monotonic()
        progress = _RunProgress()
        error: str | None = None
        log.info("alert processing started")

        if self._run_lock.locked():
            log.info("another alert pass is running, waiting for it to finish")
        async with self._run_lock:
            try:
                if self.policy.run_timeout_seconds:
                    await asyncio.wait_for(
                        self._process_active_subscribers(progress),
                        timeout=self.policy.run_timeout_seconds,
                    )
                else:
                    await self._process_active_subscribers(progress)
            except asyncio.TimeoutError:
                error = f"alert processing timed out after {self.policy.run_timeout_seconds:g}s"
                log.error(error)
            except Exception as exc:
                error = str(exc) or exc.__class__.__name__
                log.exception("alert processing failed")
            finally:
                await self._finish_deliveries()

        duration = time.monotonic() - started
        result = ProcessResult(
            success=error is None,
            started_at=started_at,
            finished_at=self.clock(),
            duration_seconds=duration,
            users_processed=progress.users_processed,
            users_failed=progress.users_failed,
            jobs_found=progress.jobs_found,
            notifications_sent=progress.notifications_sent,
            error=error,
        )
        log.info(
            "alert processing finished success=%s duration=%.1fs users=%d failed_users=%d "
            "jobs_found=%d notifications_sent=%d",
            result.success,
            duration,
            result.users_processed,
            result.users_failed,
            result.jobs_found,
            result.notifications_sent,
        )
        return result

    async def _process_active_subscribers(self, progress: _RunProgress) -> None:
        subscribers = await self._db(self.store.list_active_subscribers)
        log.info("found %d active subscribers to process", len(subscribers))

        for index, subscriber in enumerate(subscribers):
            if index and self.policy.user_delay_seconds > 0:
                await self.sleep(self.policy.user_delay_seconds)
            progress.users_processed += 1
            try:
                stats = await self.process_subscriber(subscriber)
            except Exception:
                progress.users_failed += 1
                log.exception("[user %s] error processing alerts", subscriber.chat_id)
                continue
            progress.jobs_found += stats.jobs_found
            progress.notifications_sent += stats.notifications_sent

    async def process_chat_id(self, chat_id: str) -> tuple[Subscriber, SearchStats]:
        async with self._run_lock:
            subscriber = await self._db(self.store.get_subscriber, chat_id)
            if subscriber is None:
                raise SubscriberNotFoundError(f"subscriber with chat id {chat_id} not found")
            try:
                return subscriber, await self.process_subscriber(subscriber)
            finally:
                await self._finish_deliveries()

    async def process_subscriber(self, subscriber: Subscriber) -> SearchStats:
        searches = await self._db(self.store.list_active_searches, subscriber.id)
        if not searches:
            log.info("[user %s] no active job searches configured", subscriber.chat_id)
            return SearchStats()

        log.info("[user %s] processing %d job search(es)", subscriber.chat_id, len(searches))
        total = SearchStats()
        for search in searches:
            try:
                total += await self.process_search(subscriber, search)
            except Exception:
                log.exception(
                    "[user %s] error processing job search %s",
                    subscriber.chat_id,
                    _describe_search(search),
                )

        if total.notifications_sent:
            log.info("[user %s] sent %d notifications", subscriber.chat_id, total.notifications_sent)
        return total

    async def process_search(self, subscriber: Subscriber, search: SavedSearch) -> SearchStats:
        criteria = _describe_search(search)
        log.info("[user %s] searching %s", subscriber.chat_id, criteria)

        jobs = await self.aggregator.fetch(search.keywords, search.locations)
        now = self.clock()
        recent = filter_recent(jobs, search.max_age_days, now)
        log.info(
            "[user %s] %d of %d jobs within %d day(s)",
            subscriber.chat_id,
            len(recent),
            len(jobs),
            search.max_age_days,
        )
        if not recent:
            return SearchStats()

        unseen = await self.filter_unseen(subscriber, recent)
        log.info(
            "[user %s] %d unseen jobs (%d already seen)",
            subscriber.chat_id,
            len(unseen),
            len(recent) - len(unseen),
        )
        if not unseen:
            return SearchStats(jobs_found=len(recent))

        await self._db(self.store.save_postings, unseen, now)
        posting_ids = await self._db(self.store.get_posting_ids, [job.external_id for job in unseen])
        missing = [job.external_id for job in unseen if job.external_id not in posting_ids]
        if missing:
            log.warning("[user %s] postings missing from store, not recorded: %s", subscriber.chat_id, missing)
        delivered = await self._dispatch(subscriber, unseen, posting_ids)

        log.info(
            "[user %s] dispatched %d job alerts (%d delivered) for %s",
            subscriber.chat_id,
            len(unseen),
            len(delivered),
            criteria,
        )
        for position, job in enumerate(unseen, start=1):
            log.debug("   %d. %r at %s (%s) - %s", position, job.title, job.company, job.location, job.source)

        return SearchStats(jobs_found=len(recent), notifications_sent=len(unseen))

    async def filter_unseen(self, subscriber: Subscriber, jobs: Sequence[JobMatch]) -> list[JobMatch]:
        """Keep the postings with no notification record for this subscriber.

        The seen-check is one batched query scoped to the candidates' external ids.
        """
        candidates = unique_by_external_id(jobs)
        if not candidates:
            return []
        notified = await self._db(
            self.store.find_notified_external_ids,
            subscriber.id,
            [job.external_id for job in candidates],
        )
        return [job for job in candidates if job.external_id not in notified]

    async def _dispatch(
        self, subscriber: Subscriber, jobs: Sequence[JobMatch], posting_ids: dict[str, int]
    ) -> list[JobMatch]:
        """Send the alerts one by one, recording each posting right after its send.

        A send and its record run as one shielded task, so a run timeout that
        cancels the pass cannot drop the record of a message already on its way.
        """
        delivered: list[JobMatch] = []
        for index, job in enumerate(jobs):
            if index and self.policy.message_delay_seconds > 0:
                await self.sleep(self.policy.message_delay_seconds)
            delivery = asyncio.ensure_future(
                self._deliver(subscriber, job, posting_ids.get(job.external_id))
            )
            self._deliveries.add(delivery)
            delivery.add_done_callback(self._deliveries.discard)
            if await asyncio.shield(delivery):
                delivered.append(job)
        return delivered

    async def _deliver(self, subscriber: Subscriber, job: JobMatch, posting_id: int | None) -> bool:
        message = format_job_message(job, subscriber.language, self.policy.timezone)
        try:
            await self.channel.send_message(subscriber.chat_id, message)
        except Exception as exc:
            log.warning(
                "[user %s] failed to send job alert %s: %s",
                subscriber.chat_id,
                job.external_id,
                exc,
            )
            sent = False
        else:
            sent = True

        if posting_id is not None and (sent or self.policy.record_on_dispatch_failure):
            await self._db(self.store.record_notifications, subscriber.id, [posting_id], self.clock())
        return sent

    async def _finish_deliveries(self) -> None:
        if self._deliveries:
            await asyncio.gather(*self._deliveries, return_exceptions=True)

    async def cleanup(self, retention_days: int = DEFAULT_RETENTION_DAYS) -> CleanupResult:
        started_at = self.clock()
        started = time.monotonic()
        cutoff = started_at - timedelta(days=retention_days)
        log.info("cleanup started, deleting postings created before %s", cutoff.isoformat())

        deleted = 0
        error: str | None = None
        try:
            deleted = await self._db(self.store.delete_postings_created_before, cutoff)
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
            log.exception("cleanup failed")
        else:
            log.info("cleanup deleted %d postings", deleted)

        return CleanupResult(
            success=error is None,
            started_at=started_at,
            finished_at=self.clock(),
            duration_seconds=time.monotonic() - started,
            deleted_jobs_count=deleted,
            cutoff_date=cutoff,
            error=error,
        )
