import asyncio
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from swiss_job_alert.scrapers.common import html_to_text, parse_iso_date, parse_relative_date
from swiss_job_alert.scrapers.google_jobs import GoogleJobsSource, build_query, parse_results
from swiss_job_alert.scrapers.jobup import JobupSource, build_actor_input, parse_items

NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    ("phrase", "expected"),
    [
        ("3 days ago", NOW - timedelta(days=3)),
        ("il y a 2 jours", NOW - timedelta(days=2)),
        ("5 hours ago", NOW - timedelta(hours=5)),
        ("il y a 24 heures", NOW - timedelta(hours=24)),
        ("2 weeks ago", NOW - timedelta(weeks=2)),
        ("il y a une semaine", NOW - timedelta(weeks=1)),
        ("1 month ago", NOW - timedelta(days=30)),
        ("30+ minutes ago", NOW - timedelta(minutes=30)),
        ("yesterday", NOW - timedelta(days=1)),
        ("Aujourd'hui", NOW),
        ("Just posted", NOW),
        ("", NOW),
        (None, NOW),
        ("sometime", NOW),
    ],
)
def test_parse_relative_date(phrase, expected) -> None:
    assert parse_relative_date(phrase, NOW) == expected


def test_parse_iso_date_handles_zulu_and_fallback() -> None:
    assert parse_iso_date("2024-03-10T08:30:00Z", NOW) == datetime(2024, 3, 10, 8, 30, tzinfo=timezone.utc)
    assert parse_iso_date("2024-03-10", NOW) == datetime(2024, 3, 10, tzinfo=timezone.utc)
    assert parse_iso_date("4 days ago", NOW) == NOW - timedelta(days=4)
    assert parse_iso_date(None, NOW) == NOW


def test_html_to_text_flattens_and_truncates() -> None:
    assert html_to_text("<p>Poste <b>80%</b></p><ul><li>CFC</li></ul>") == "Poste 80% CFC"
    assert html_to_text("") is None
    truncated = html_to_text("x" * 50, limit=10)
    assert truncated == "xxxxxxxxx…"


def test_google_parse_results_maps_fields() -> None:
    payload = {
        "jobs_results": [
            {
                "job_id": "eyJqb2JfdGl0bGUiOi",
                "title": "Secrétaire médicale",
                "company_name": "Hôpital de Morges",
                "location": "Morges, Vaud",
                "share_link": "https://www.google.com/search?ibp=htl;jobs#share",
                "link": "https://fallback.example",
                "description": "Vous êtes <b>organisée</b>",
                "detected_extensions": {"posted_at": "il y a 3 jours"},
            },
            {"title": "No id and no link"},
            {"job_id": "x", "title": ""},
        ]
    }

    jobs = parse_results(payload, NOW)

    assert len(jobs) == 1
    job = jobs[0]
    assert job.external_id == "eyJqb2JfdGl0bGUiOi"
    assert job.company == "Hôpital de Morges"
    assert job.url == "https://www.google.com/search?ibp=htl;jobs#share"
    assert job.description == "Vous êtes organisée"
    assert job.posted_at == NOW - timedelta(days=3)
    assert job.source == "google"


def test_google_source_queries_each_keyword_location_pair() -> None:
    seen_queries: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["engine"] == "google_jobs"
        assert request.url.params["api_key"] == "serp-key"
        assert request.url.params["hl"] == "fr"
        query = request.url.params["q"]
        seen_queries.append(query)
        return httpx.Response(
            200,
            json={
                "jobs_results": [
                    {
                        "job_id": f"id-{len(seen_queries)}",
                        "title": "Secrétaire",
                        "company_name": "ACME",
                        "location": query.split(" in ")[1],
                        "link": "https://example.ch/job",
                    }
                ]
            },
        )

    source = GoogleJobsSource("serp-key", transport=httpx.MockTransport(handler))
    result = asyncio.run(source(["secrétaire", "assistante"], ["Vaud", "Valais"]))

    assert seen_queries == [
        build_query("secrétaire", "Vaud"),
        build_query("secrétaire", "Valais"),
        build_query("assistante", "Vaud"),
        build_query("assistante", "Valais"),
    ]
    assert seen_queries[0] == "secrétaire jobs in Vaud Switzerland"
    assert result.error is None
    # Same title/company per location, so only the two locations survive dedup.
    assert [job.external_id for job in result.jobs] == ["id-1", "id-2"]


def test_google_source_reports_client_errors_without_retrying() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(401, json={"error": "Invalid API key"})

    source = GoogleJobsSource("bad-key", transport=httpx.MockTransport(handler))
    result = asyncio.run(source(["rh"], ["Vaud"]))

    assert calls["count"] == 1
    assert result.jobs == []
    assert "401" in result.error


def test_google_source_treats_serpapi_error_payload_as_empty() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"error": "Google hasn't returned any results for this query."})

    result = asyncio.run(GoogleJobsSource("k", transport=httpx.MockTransport(handler))(["rh"], ["Uri"]))

    assert result.jobs == []
    assert result.error is None


def test_jobup_actor_input_joins_locations() -> None:
    assert build_actor_input(["secrétaire", "rh"], ["Vaud", "Valais"]) == {
        "queries": [
            {"keyword": "secrétaire", "location": "Vaud,Valais", "maxItems": 50},
            {"keyword": "rh", "location": "Vaud,Valais", "maxItems": 50},
        ]
    }


def test_jobup_parse_items_falls_back_to_url_and_now() -> None:
    jobs = parse_items(
        [
            {
                "url": "https://www.jobup.ch/fr/emplois/detail/abc/",
                "title": "Réceptionniste",
                "company": "Hôtel Beau-Rivage",
                "location": "Lausanne",
            },
            {"id": "42", "title": "Comptable", "company": "Fidu SA", "location": "Sion", "posted": "2024-03-01T00:00:00Z"},
        ],
        NOW,
    )

    assert jobs[0].external_id == "https://www.jobup.ch/fr/emplois/detail/abc/"
    assert jobs[0].posted_at == NOW
    assert jobs[1].external_id == "42"
    assert jobs[1].posted_at == datetime(2024, 3, 1, tzinfo=timezone.utc)
    assert all(job.source == "jobup" for job in jobs)


def test_jobup_source_posts_actor_input_with_token() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "POST"
        assert request.url.path == "/v2/acts/drobnikj~jobup-scraper/run-sync-get-dataset-items"
        assert request.url.params["token"] == "apify-token"
        body = json.loads(request.content)
        assert body["queries"][0]["keyword"] == "secrétaire"
        return httpx.Response(
            201,
            json=[{"id": "1", "title": "Secrétaire", "company": "ACME", "location": "Nyon", "url": "https://j/1"}],
        )

    source = JobupSource("apify-token", transport=httpx.MockTransport(handler))
    result = asyncio.run(source(["secrétaire"], ["Vaud"]))

    assert result.error is None
    assert [job.external_id for job in result.jobs] == ["1"]


def test_jobup_source_reports_unexpected_payload() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"error": {"type": "actor-not-found"}})

    result = asyncio.run(JobupSource("t", transport=httpx.MockTransport(handler))(["rh"], ["Vaud"]))

    assert result.jobs == []
    assert "unexpected actor response" in result.error


def test_jobup_parse_items_skips_malformed_entries() -> None:
    jobs = parse_items(
        [
            {"id": "bad-date", "title": "Comptable", "company": "Fidu SA", "posted": 20240301},
            {"id": "bad-company", "title": "Assistante", "company": {"name": "ACME"}},
            "not an object",
            {"id": "ok", "title": "Réceptionniste", "company": "Beau-Rivage", "location": "Lausanne"},
        ],
        NOW,
    )

    assert [job.external_id for job in jobs] == ["ok"]


def test_google_parse_results_skips_malformed_hits() -> None:
    payload = {
        "jobs_results": [
            {"job_id": "bad", "title": "RH", "company_name": 42},
            {"job_id": "ok", "title": "RH", "company_name": "ACME", "location": "Sion"},
        ]
    }

    assert [job.external_id for job in parse_results(payload, NOW)] == ["ok"]


def test_jobup_source_keeps_good_items_when_some_are_malformed() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json=[
                {"id": "1", "title": "Secrétaire", "company": ["ACME"], "url": "https://j/1"},
                {"id": "2", "title": "Secrétaire", "company": "ACME", "location": "Nyon", "url": "https://j/2"},
            ],
        )

    result = asyncio.run(JobupSource("t", transport=httpx.MockTransport(handler))(["rh"], ["Vaud"]))

    assert result.error is None
    assert [job.external_id for job in result.jobs] == ["2"]
