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
    parse_relative_date,
)

SOURCE_NAME = JobSource.GOOGLE.value
SEARCH_URL = "https://serpapi.com/search.json"
COUNTRY_SUFFIX = "Switzerland"

log = get_logger(__name__)


def build_query(keyword: str, location: str) -> str:
    return f"{keyword} jobs in {location} {COUNTRY_SUFFIX}"


def _hit_to_job(hit: dict, now: datetime) -> JobMatch | None:
    link = hit.get("share_link") or hit.get("link") or ""
    external_id = hit.get("job_id") or link
    title = (hit.get("title") or "").strip()
    if not external_id or not title:
        return None
    extensions = hit.get("detected_extensions") or {}
    return JobMatch(
        external_id=str(external_id),
        title=title,
        company=(hit.get("company_name") or "").strip(),
        location=(hit.get("location") or "").strip(),
        url=link,
        description=html_to_text(hit.get("description")),
        posted_at=parse_relative_date(extensions.get("posted_at"), now),
        source=SOURCE_NAME,
    )


def parse_results(payload: dict, now_utc: datetime | None = None) -> list[JobMatch]:
    now = now_utc or datetime.now(timezone.utc)
    jobs: list[JobMatch] = []
    for hit in payload.get("jobs_results") or []:
        try:
            job = _hit_to_job(hit, now)
        except (AttributeError, TypeError, ValueError) as exc:
            log.warning("skipping malformed google jobs result: %s", exc)
            continue
        if job is not None:
            jobs.append(job)
    return jobs


class GoogleJobsSource:
    """Google Jobs results through SerpAPI, one request per keyword/location pair."""

    name = SOURCE_NAME

    def __init__(
        self,
        api_key: str,
        *,
        timeout_seconds: float = 20.0,
        language: str = "fr",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.language = language
        self.transport = transport

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_fixed(1),
        retry=retry_if_exception(is_transient_http_error),
        reraise=True,
    )
    async def _fetch_json(self, client: httpx.AsyncClient, query: str) -> dict:
        response = await client.get(
            SEARCH_URL,
            params={
                "engine": "google_jobs",
                "q": query,
                "hl": self.language,
                "api_key": self.api_key,
            },
        )
        response.raise_for_status()
        payload = response.json()
        if not isinstance(payload, dict):
            raise ValueError(f"unexpected serpapi response type: {type(payload).__name__}")
        return payload

    async def __call__(self, keywords: Sequence[str], locations: Sequence[str]) -> SiteResult:
        jobs: list[JobMatch] = []
        errors: list[str] = []

        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
            for keyword in keywords:
                for location in locations:
                    query = build_query(keyword, location)
                    try:
                        payload = await self._fetch_json(client, query)
                    except Exception as exc:
                        errors.append(f"{query!r}: {exc}")
                        continue
                    if payload.get("error"):
                        # SerpAPI reports "no results" this way too.
                        log.debug("serpapi query=%r returned error: %s", query, payload["error"])
                        continue
                    batch = parse_results(payload)
                    log.debug("serpapi query=%r returned %d jobs", query, len(batch))
                    jobs.extend(batch)

        return SiteResult(
            source=SOURCE_NAME,
            jobs=dedupe_jobs(jobs),
            error="; ".join(errors) if errors else None,
        )
