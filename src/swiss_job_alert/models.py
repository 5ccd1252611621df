from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class JobSource(str, Enum):
    JOBUP = "jobup"
    GOOGLE = "google"


@dataclass(frozen=True)
class Subscriber:
    id: int
    chat_id: str
    display_name: str
    language: str
    active: bool


@dataclass(frozen=True)
class SavedSearch:
    id: int
    subscriber_id: int
    keywords: tuple[str, ...]
    locations: tuple[str, ...]
    max_age_days: int = 7
    active: bool = True


@dataclass(frozen=True)
class JobMatch:
    external_id: str
    title: str
    company: str
    location: str
    url: str
    posted_at: datetime
    source: str
    description: str | None = None


@dataclass(frozen=True)
class JobPosting:
    id: int
    external_id: str
    title: str
    company: str
    location: str
    url: str
    description: str | None
    posted_at: datetime
    source: str
    created_at: datetime


@dataclass(frozen=True)
class SiteResult:
    source: str
    jobs: list[JobMatch]
    error: str | None = None


@dataclass(frozen=True)
class SearchStats:
    jobs_found: int = 0
    notifications_sent: int = 0

    def __add__(self, other: SearchStats) -> SearchStats:
        return SearchStats(
            jobs_found=self.jobs_found + other.jobs_found,
            notifications_sent=self.notifications_sent + other.notifications_sent,
        )


@dataclass(frozen=True)
class ProcessResult:
    success: bool
    started_at: datetime
    finished_at: datetime
    duration_seconds: float
    users_processed: int
    jobs_found: int
    notifications_sent: int
    users_failed: int = 0
    error: str | None = None


@dataclass(frozen=True)
class CleanupResult:
    success: bool
    started_at: datetime
    finished_at: datetime
    duration_seconds: float
    deleted_jobs_count: int
    cutoff_date: datetime
    error: str | None = None


@dataclass(frozen=True)
class StoreStats:
    subscribers_total: int
    subscribers_active: int
    searches_total: int
    searches_active: int
    postings_total: int
    postings_recent_week: int
    postings_eligible_for_cleanup: int
    notifications_total: int
