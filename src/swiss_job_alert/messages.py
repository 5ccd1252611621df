from __future__ import annotations

from html import escape
from zoneinfo import ZoneInfo

from swiss_job_alert.models import JobMatch

DEFAULT_LANGUAGE = "fr"
DEFAULT_TIMEZONE = "Europe/Zurich"

MESSAGES: dict[str, dict[str, str]] = {
    "fr": {
        "header": "🔔 <b>Nouvelle offre d'emploi!</b>",
        "title": "📋 <b>Titre:</b>",
        "company": "🏢 <b>Entreprise:</b>",
        "location": "📍 <b>Lieu:</b>",
        "posted": "📅 <b>Publié:</b>",
        "apply": "📋 Postuler maintenant",
        "footer": "Tapez /pause pour arrêter les alertes",
        "admin_footer": "🔧 Cette alerte a été envoyée manuellement par l'administrateur",
        "date_format": "%d/%m/%Y",
    },
}


def _labels(language: str) -> dict[str, str]:
    return MESSAGES.get(language, MESSAGES[DEFAULT_LANGUAGE])


def _format_job(job: JobMatch, labels: dict[str, str], footer: str, timezone: str) -> str:
    # Local calendar day, not the UTC one.
    posted = job.posted_at.astimezone(ZoneInfo(timezone)).strftime(labels["date_format"])
    lines = [
        labels["header"],
        "",
        f"{labels['title']} {escape(job.title)}",
        f"{labels['company']} {escape(job.company)}",
        f"{labels['location']} {escape(job.location)}",
        f"{labels['posted']} {posted}",
        f"🔗 <a href=\"{escape(job.url, quote=True)}\">{labels['apply']}</a>",
        "",
        f"<i>{footer}</i>",
    ]
    return "\n".join(lines)


def format_job_message(
    job: JobMatch, language: str = DEFAULT_LANGUAGE, timezone: str = DEFAULT_TIMEZONE
) -> str:
    labels = _labels(language)
    return _format_job(job, labels, labels["footer"], timezone)


def format_test_message(
    job: JobMatch, language: str = DEFAULT_LANGUAGE, timezone: str = DEFAULT_TIMEZONE
) -> str:
    labels = _labels(language)
    return _format_job(job, labels, labels["admin_footer"], timezone)
