from __future__ import annotations

import json
import sqlite3
import threading
from collections.abc import Iterable, Iterator, Sequence
from contextlib import AbstractContextManager
from datetime import datetime, timedelta, timezone
from pathlib import Path

from swiss_job_alert.keywords import normalize_terms
from swiss_job_alert.models import JobMatch, JobPosting, SavedSearch, StoreStats, Subscriber

# Stays well under SQLITE_MAX_VARIABLE_NUMBER on old builds (999).
_IN_CLAUSE_CHUNK = 500


def to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="seconds")


def from_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _utc_now_iso() -> str:
    return to_iso(datetime.now(timezone.utc))


def _chunks(values: Sequence[str], size: int = _IN_CLAUSE_CHUNK) -> Iterator[Sequence[str]]:
    for start in range(0, len(values), size):
        yield values[start : start + size]


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


class AlertStore(AbstractContextManager["AlertStore"]):
    """SQLite store for subscribers, saved searches, postings and notification history.

    The connection is shared between worker threads (the async pipeline calls
    into it via ``asyncio.to_thread``); a lock keeps each call atomic.
    """

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self._lock = threading.Lock()
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock, self.conn:
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS subscribers (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    chat_id TEXT NOT NULL UNIQUE,
                    display_name TEXT NOT NULL DEFAULT '',
                    language TEXT NOT NULL DEFAULT 'fr',
                    active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS saved_searches (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    subscriber_id INTEGER NOT NULL
                        REFERENCES subscribers(id) ON DELETE CASCADE,
                    keywords TEXT NOT NULL,
                    locations TEXT NOT NULL,
                    max_age_days INTEGER NOT NULL DEFAULT 7,
                    active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS job_postings (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    external_id TEXT NOT NULL UNIQUE,
                    title TEXT NOT NULL,
                    company TEXT NOT NULL,
                    location TEXT NOT NULL,
                    url TEXT NOT NULL,
                    description TEXT,
                    posted_at TEXT NOT NULL,
                    source TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            # Not unique on (subscriber_id, job_posting_id): any row means "already seen".
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS notifications (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    subscriber_id INTEGER NOT NULL
                        REFERENCES subscribers(id) ON DELETE CASCADE,
                    job_posting_id INTEGER NOT NULL
                        REFERENCES job_postings(id) ON DELETE CASCADE,
                    sent_at TEXT NOT NULL
                )
                """
            )
            self.conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_notifications_subscriber "
                "ON notifications (subscriber_id, job_posting_id)"
            )
            self.conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_job_postings_created_at ON job_postings (created_at)"
            )

    # -- subscribers -------------------------------------------------------

    @staticmethod
    def _row_to_subscriber(row: sqlite3.Row) -> Subscriber:
        return Subscriber(
            id=int(row["id"]),
            chat_id=str(row["chat_id"]),
            display_name=str(row["display_name"]),
            language=str(row["language"]),
            active=bool(row["active"]),
        )

    def add_subscriber(self, chat_id: str, display_name: str = "", language: str = "fr") -> Subscriber:
        now = _utc_now_iso()
        with self._lock, self.conn:
            self.conn.execute(
                """
                INSERT OR IGNORE INTO subscribers (chat_id, display_name, language, active, created_at, updated_at)
                VALUES (?, ?, ?, 1, ?, ?)
                """,
                (chat_id, display_name, language, now, now),
            )
            row = self.conn.execute(
                "SELECT * FROM subscribers WHERE chat_id = ?", (chat_id,)
            ).fetchone()
        if row is None:
            raise RuntimeError(f"subscriber {chat_id} missing right after insert")
        return self._row_to_subscriber(row)

    def get_subscriber(self, chat_id: str) -> Subscriber | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM subscribers WHERE chat_id = ?", (chat_id,)
            ).fetchone()
        return self._row_to_subscriber(row) if row is not None else None

    def set_subscriber_active(self, chat_id: str, active: bool) -> bool:
        with self._lock, self.conn:
            cursor = self.conn.execute(
                "UPDATE subscribers SET active = ?, updated_at = ? WHERE chat_id = ?",
                (int(active), _utc_now_iso(), chat_id),
            )
        return cursor.rowcount == 1

    def list_active_subscribers(self) -> list[Subscriber]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM subscribers WHERE active = 1 ORDER BY id"
            ).fetchall()
        return [self._row_to_subscriber(row) for row in rows]

    # -- saved searches ----------------------------------------------------

    @staticmethod
    def _row_to_search(row: sqlite3.Row) -> SavedSearch:
        return SavedSearch(
            id=int(row["id"]),
            subscriber_id=int(row["subscriber_id"]),
            keywords=tuple(json.loads(row["keywords"])),
            locations=tuple(json.loads(row["locations"])),
            max_age_days=int(row["max_age_days"]),
            active=bool(row["active"]),
        )

    def add_saved_search(
        self,
        subscriber_id: int,
        keywords: Sequence[str],
        locations: Sequence[str],
        max_age_days: int = 7,
    ) -> SavedSearch:
        cleaned_keywords = normalize_terms(keywords)
        cleaned_locations = normalize_terms(locations)
        if not cleaned_keywords:
            raise ValueError("a saved search needs at least one keyword")
        if not cleaned_locations:
            raise ValueError("a saved search needs at least one location")
        if max_age_days < 0:
            raise ValueError("max_age_days must be >= 0")

        now = _utc_now_iso()
        with self._lock, self.conn:
            cursor = self.conn.execute(
                """
                INSERT INTO saved_searches
                    (subscriber_id, keywords, locations, max_age_days, active, created_at, updated_at)
                VALUES (?, ?, ?, ?, 1, ?, ?)
                """,
                (
                    subscriber_id,
                    json.dumps(cleaned_keywords, ensure_ascii=False),
                    json.dumps(cleaned_locations, ensure_ascii=False),
                    max_age_days,
                    now,
                    now,
                ),
            )
        return SavedSearch(
            id=int(cursor.lastrowid),
            subscriber_id=subscriber_id,
            keywords=tuple(cleaned_keywords),
            locations=tuple(cleaned_locations),
            max_age_days=max_age_days,
            active=True,
        )

    def set_search_active(self, search_id: int, active: bool) -> bool:
        with self._lock, self.conn:
            cursor = self.conn.execute(
                "UPDATE saved_searches SET active = ?, updated_at = ? WHERE id = ?",
                (int(active), _utc_now_iso(), search_id),
            )
        return cursor.rowcount == 1

    def list_active_searches(self, subscriber_id: int) -> list[SavedSearch]:
        with self._lock:
            rows = self.conn.execute(
                """
                SELECT * FROM saved_searches
                WHERE subscriber_id = ? AND active = 1
                ORDER BY id
                """,
                (subscriber_id,),
            ).fetchall()
        return [self._row_to_search(row) for row in rows]

    # -- postings and notification history ---------------------------------

    def find_notified_external_ids(self, subscriber_id: int, external_ids: Iterable[str]) -> set[str]:
        """Return the subset of ``external_ids`` this subscriber was already notified about."""
        candidates = sorted(set(external_ids))
        notified: set[str] = set()
        if not candidates:
            return notified

        with self._lock:
            for chunk in _chunks(candidates):
                rows = self.conn.execute(
                    f"""
                    SELECT DISTINCT jp.external_id
                    FROM notifications AS n
                    JOIN job_postings AS jp ON jp.id = n.job_posting_id
                    WHERE n.subscriber_id = ?
                      AND jp.external_id IN ({_placeholders(len(chunk))})
                    """,
                    (subscriber_id, *chunk),
                ).fetchall()
                notified.update(str(row["external_id"]) for row in rows)
        return notified

    def save_postings(self, matches: Iterable[JobMatch], created_at_utc: datetime | None = None) -> int:
        created_at = to_iso(created_at_utc) if created_at_utc else _utc_now_iso()
        with self._lock, self.conn:
            before = self.conn.total_changes
            self.conn.executemany(
                """
                INSERT OR IGNORE INTO job_postings
                    (external_id, title, company, location, url, description, posted_at, source, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        match.external_id,
                        match.title,
                        match.company,
                        match.location,
                        match.url,
                        match.description,
                        to_iso(match.posted_at),
                        match.source,
                        created_at,
                    )
                    for match in matches
                ],
            )
            return self.conn.total_changes - before

    def get_posting_ids(self, external_ids: Iterable[str]) -> dict[str, int]:
        candidates = sorted(set(external_ids))
        ids: dict[str, int] = {}
        with self._lock:
            for chunk in _chunks(candidates):
                rows = self.conn.execute(
                    f"SELECT id, external_id FROM job_postings WHERE external_id IN ({_placeholders(len(chunk))})",
                    tuple(chunk),
                ).fetchall()
                ids.update({str(row["external_id"]): int(row["id"]) for row in rows})
        return ids

    def get_posting(self, external_id: str) -> JobPosting | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM job_postings WHERE external_id = ?", (external_id,)
            ).fetchone()
        if row is None:
            return None
        return JobPosting(
            id=int(row["id"]),
            external_id=str(row["external_id"]),
            title=str(row["title"]),
            company=str(row["company"]),
            location=str(row["location"]),
            url=str(row["url"]),
            description=row["description"],
            posted_at=from_iso(row["posted_at"]),
            source=str(row["source"]),
            created_at=from_iso(row["created_at"]),
        )

    def record_notifications(
        self,
        subscriber_id: int,
        posting_ids: Iterable[int],
        sent_at_utc: datetime | None = None,
    ) -> None:
        sent_at = to_iso(sent_at_utc) if sent_at_utc else _utc_now_iso()
        with self._lock, self.conn:
            self.conn.executemany(
                """
                INSERT INTO notifications (subscriber_id, job_posting_id, sent_at)
                VALUES (?, ?, ?)
                """,
                [(subscriber_id, posting_id, sent_at) for posting_id in posting_ids],
            )

    def delete_postings_created_before(self, cutoff: datetime) -> int:
        with self._lock, self.conn:
            cursor = self.conn.execute(
                "DELETE FROM job_postings WHERE created_at < ?", (to_iso(cutoff),)
            )
        return cursor.rowcount

    # -- reporting ---------------------------------------------------------

    def _count(self, sql: str, params: tuple = ()) -> int:
        with self._lock:
            row = self.conn.execute(sql, params).fetchone()
        return int(row["c"]) if row else 0

    def count_postings(self) -> int:
        return self._count("SELECT COUNT(*) AS c FROM job_postings")

    def count_notifications(self, subscriber_id: int | None = None) -> int:
        if subscriber_id is None:
            return self._count("SELECT COUNT(*) AS c FROM notifications")
        return self._count(
            "SELECT COUNT(*) AS c FROM notifications WHERE subscriber_id = ?", (subscriber_id,)
        )

    def get_stats(self, now_utc: datetime | None = None, retention_days: int = 90) -> StoreStats:
        now = now_utc or datetime.now(timezone.utc)
        week_ago = to_iso(now - timedelta(days=7))
        cleanup_cutoff = to_iso(now - timedelta(days=retention_days))
        return StoreStats(
            subscribers_total=self._count("SELECT COUNT(*) AS c FROM subscribers"),
            subscribers_active=self._count("SELECT COUNT(*) AS c FROM subscribers WHERE active = 1"),
            searches_total=self._count("SELECT COUNT(*) AS c FROM saved_searches"),
            searches_active=self._count("SELECT COUNT(*) AS c FROM saved_searches WHERE active = 1"),
            postings_total=self.count_postings(),
            postings_recent_week=self._count(
                "SELECT COUNT(*) AS c FROM job_postings WHERE created_at >= ?", (week_ago,)
            ),
            postings_eligible_for_cleanup=self._count(
                "SELECT COUNT(*) AS c FROM job_postings WHERE created_at < ?", (cleanup_cutoff,)
            ),
            notifications_total=self.count_notifications(),
        )

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    def __exit__(self, exc_type, exc, exc_tb) -> None:
        self.close()
