from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timezone

import httpx
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_fixed

from swiss_job_alert.log import get_logger
from swiss_job_alert.models import JobMatch, JobSource, SiteResult
from swiss_job_alert.scrapers.common import (
    dedupe_jobs,
    html_to_text,
    is_transient_http_error,
    parse_iso_date,
)

SOURCE_NAME = JobSource.JOBUP.value
ACTOR_ID = "drobnikj~jobup-scraper"
RUN_SYNC_URL = f"https://api.apify.com/v2/acts/{ACTOR_ID}/run-sync-get-dataset-items"
MAX_ITEMS_PER_QUERY = 50
# Synchronous actor runs block until the dataset is ready.
ACTOR_TIMEOUT_SECONDS = 300.0

log = get_logger(__name__)


def build_actor_input(keywords: Sequence[str], locations: Sequence[str]) -> dict:
    return {
        "queries": [
            {
                "keyword": keyword,
                "location": ",".join(locations),
                "maxItems": MAX_ITEMS_PER_QUERY,
            }
            for keyword in keywords
        ]
    }


def _item_to_job(item: dict, now: datetime) -> JobMatch | None:
    url = item.get("url") or ""
    external_id = item.get("id") or url
    title = (item.get("title") or "").strip()
    if not external_id or not title:
        return None
    return JobMatch(
        external_id=str(external_id),
        title=title,
        company=(item.get("company") or "").strip(),
        location=(item.get("location") or "").strip(),
        url=url,
        description=html_to_text(item.get("description")),
        posted_at=parse_iso_date(item.get("posted"), now),
        source=SOURCE_NAME,
    )


def parse_items(items: list[dict], now_utc: datetime | None = None) -> list[JobMatch]:
    now = now_utc or datetime.now(timezone.utc)
    jobs: list[JobMatch] = []
    for item in items:
        try:
            job = _item_to_job(item, now)
        except (AttributeError, TypeError, ValueError) as exc:
            log.warning("skipping malformed jobup item: %s", exc)
            continue
        if job is not None:
            jobs.append(job)
    return jobs


class JobupSource:
    """jobup.ch listings through the Apify jobup scraper actor."""

    name = SOURCE_NAME

    def __init__(
        self,
        api_token: str,
        *,
        timeout_seconds: float = ACTOR_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_token = api_token
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_fixed(1),
        retry=retry_if_exception(is_transient_http_error),
        reraise=True,
    )
    async def _run_actor(self, client: httpx.AsyncClient, actor_input: dict) -> list[dict]:
        response = await client.post(
            RUN_SYNC_URL,
            params={"token": self.api_token},
            json=actor_input,
        )
        response.raise_for_status()
        payload = response.json()
        if not isinstance(payload, list):
            raise ValueError(f"unexpected actor response type: {type(payload).__name__}")
        return payload

    async def __call__(self, keywords: Sequence[str], locations: Sequence[str]) -> SiteResult:
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
            try:
                items = await self._run_actor(client, build_actor_input(keywords, locations))
                jobs = dedupe_jobs(parse_items(items))
            except Exception as exc:
                return SiteResult(source=SOURCE_NAME, jobs=[], error=str(exc))

        return SiteResult(source=SOURCE_NAME, jobs=jobs, error=None)
