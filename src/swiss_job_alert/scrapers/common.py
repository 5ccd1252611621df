from __future__ import annotations

import re
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone

import httpx
from bs4 import BeautifulSoup

from swiss_job_alert.models import JobMatch

DESCRIPTION_MAX_CHARS = 1_000

_NUMBER_RE = re.compile(r"(\d+)")
_NOW_PHRASES = ("just", "today", "aujourd'hui", "aujourd’hui", "à l'instant", "now")
_YESTERDAY_PHRASES = ("yesterday", "hier")
# Checked in order; "heure" before "jour" so "24 heures" is not read as days.
_UNIT_PATTERNS: tuple[tuple[tuple[str, ...], timedelta], ...] = (
    (("minute",), timedelta(minutes=1)),
    (("hour", "heure"), timedelta(hours=1)),
    (("day", "jour"), timedelta(days=1)),
    (("week", "semaine"), timedelta(weeks=1)),
    (("month", "mois"), timedelta(days=30)),
)


def _clean_spaces(value: str) -> str:
    return re.sub(r"\s+", " ", value).strip()


def parse_relative_date(value: str | None, now_utc: datetime | None = None) -> datetime:
    """Turn phrases like "3 days ago" or "il y a 2 semaines" into a UTC timestamp.

    Missing or unrecognised input maps to ``now`` so an undated listing is
    treated as fresh rather than dropped by the age filter.
    """
    now = now_utc or datetime.now(timezone.utc)
    if not value:
        return now

    lowered = value.casefold()
    if any(phrase in lowered for phrase in _NOW_PHRASES):
        return now
    if any(phrase in lowered for phrase in _YESTERDAY_PHRASES):
        return now - timedelta(days=1)

    number_match = _NUMBER_RE.search(lowered)
    amount = int(number_match.group(1)) if number_match else 1
    for tokens, unit in _UNIT_PATTERNS:
        if any(token in lowered for token in tokens):
            return now - unit * amount
    return now


def parse_iso_date(value: str | None, now_utc: datetime | None = None) -> datetime:
    now = now_utc or datetime.now(timezone.utc)
    if not value:
        return now
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return parse_relative_date(value, now)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def html_to_text(value: str | None, limit: int = DESCRIPTION_MAX_CHARS) -> str | None:
    if not value:
        return None
    text = _clean_spaces(BeautifulSoup(value, "html.parser").get_text(" ", strip=True))
    if not text:
        return None
    if len(text) > limit:
        return text[: limit - 1].rstrip() + "…"
    return text


def job_content_key(job: JobMatch) -> tuple[str, str, str]:
    return (
        job.title.strip().casefold(),
        job.company.strip().casefold(),
        job.location.strip().casefold(),
    )


def dedupe_jobs(jobs: Iterable[JobMatch]) -> list[JobMatch]:
    """Drop repeated (title, company, location) entries, keeping the first one seen."""
    seen: set[tuple[str, str, str]] = set()
    deduped: list[JobMatch] = []
    for job in jobs:
        key = job_content_key(job)
        if key in seen:
            continue
        seen.add(key)
        deduped.append(job)
    return deduped


def is_transient_http_error(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    return False
