from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence

from swiss_job_alert.log import get_logger
from swiss_job_alert.models import JobMatch, SiteResult
from swiss_job_alert.scrapers.common import dedupe_jobs

Source = Callable[[Sequence[str], Sequence[str]], Awaitable[SiteResult]]

log = get_logger(__name__)


def source_name(source: Source) -> str:
    return getattr(source, "name", None) or getattr(source, "__name__", "unknown")


async def _safe_run_source(source: Source, keywords: Sequence[str], locations: Sequence[str]) -> SiteResult:
    try:
        return await source(keywords, locations)
    except Exception as exc:
        return SiteResult(source=source_name(source), jobs=[], error=f"unexpected error: {exc}")


class Aggregator:
    """Fans a search out to every configured source and merges the results.

    Sources earlier in the list win when two of them report the same
    (title, company, location).
    """

    def __init__(self, sources: Sequence[Source]):
        self.sources = tuple(sources)

    async def fetch_with_results(
        self, keywords: Sequence[str], locations: Sequence[str]
    ) -> tuple[list[JobMatch], list[SiteResult]]:
        log.info("scraping keywords=[%s] locations=[%s]", ", ".join(keywords), ", ".join(locations))
        results = await asyncio.gather(
            *(_safe_run_source(source, keywords, locations) for source in self.sources)
        )

        all_jobs: list[JobMatch] = []
        for result in results:
            if result.error:
                log.warning(
                    "%s scraping failed (%d partial jobs kept): %s",
                    result.source,
                    len(result.jobs),
                    result.error,
                )
            else:
                log.info("%s: found %d jobs", result.source, len(result.jobs))
            all_jobs.extend(result.jobs)

        unique_jobs = dedupe_jobs(all_jobs)
        log.info("total unique jobs found: %d", len(unique_jobs))
        return unique_jobs, list(results)

    async def fetch(self, keywords: Sequence[str], locations: Sequence[str]) -> list[JobMatch]:
        jobs, _ = await self.fetch_with_results(keywords, locations)
        return jobs
