from __future__ import annotations

import argparse
import asyncio
import json
from dataclasses import asdict

from swiss_job_alert.config import (
    RUN_REQUIRED_ENVS,
    assert_required_envs,
    load_settings,
    mask_secret,
    missing_envs,
)
from swiss_job_alert.keywords import parse_csv
from swiss_job_alert.log import configure_logging
from swiss_job_alert.services import build_services
from swiss_job_alert.storage import AlertStore


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="swiss-job-alert")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("run", help="Run one scrape + dedup + Telegram notification pass")
    subparsers.add_parser("healthcheck", help="Validate config and local runtime readiness")
    subparsers.add_parser("serve", help="Start the admin HTTP server and the scheduler")
    subparsers.add_parser("status", help="Print subscriber, search, posting and notification counts")

    cleanup_parser = subparsers.add_parser("cleanup", help="Delete postings older than the retention window")
    cleanup_parser.add_argument("--retention-days", type=int, default=None)

    subscribe_parser = subparsers.add_parser("subscribe", help="Register a chat id with a saved search")
    subscribe_parser.add_argument("chat_id")
    subscribe_parser.add_argument("--keywords", required=True, help="Comma separated keywords")
    subscribe_parser.add_argument("--locations", required=True, help="Comma separated locations")
    subscribe_parser.add_argument("--max-age-days", type=int, default=7)
    subscribe_parser.add_argument("--name", default="")
    subscribe_parser.add_argument("--language", default="fr")

    pause_parser = subparsers.add_parser("pause", help="Pause alerts for a chat id")
    pause_parser.add_argument("chat_id")
    resume_parser = subparsers.add_parser("resume", help="Resume alerts for a chat id")
    resume_parser.add_argument("chat_id")

    return parser


def _cmd_run() -> int:
    settings = load_settings()
    configure_logging(settings.log_level)
    assert_required_envs(RUN_REQUIRED_ENVS)
    services = build_services(settings)
    try:
        result = asyncio.run(services.pipeline.process_all())
    finally:
        services.close()

    print(
        "run summary:",
        f"success={result.success}",
        f"users_processed={result.users_processed}",
        f"users_failed={result.users_failed}",
        f"jobs_found={result.jobs_found}",
        f"notifications_sent={result.notifications_sent}",
        f"duration={result.duration_seconds:.1f}s",
    )
    if result.error:
        print(f"error: {result.error}")
    return 0 if result.success else 1


def _cmd_cleanup(args: argparse.Namespace) -> int:
    settings = load_settings()
    configure_logging(settings.log_level)
    retention_days = settings.retention_days if args.retention_days is None else args.retention_days
    services = build_services(settings)
    try:
        result = asyncio.run(services.pipeline.cleanup(retention_days))
    finally:
        services.close()

    print(
        "cleanup summary:",
        f"success={result.success}",
        f"deleted_jobs={result.deleted_jobs_count}",
        f"cutoff={result.cutoff_date.isoformat()}",
    )
    if result.error:
        print(f"error: {result.error}")
    return 0 if result.success else 1


def _cmd_healthcheck() -> int:
    settings = load_settings()
    missing = missing_envs(RUN_REQUIRED_ENVS)
    if missing:
        print("missing required env vars:", ", ".join(missing))
        return 1

    try:
        with AlertStore(settings.database_path):
            pass
    except Exception as exc:
        print(f"state db check failed: {exc}")
        return 1

    print(f"telegram token: {mask_secret(settings.telegram_bot_token)}")
    print(f"serpapi key: {mask_secret(settings.serpapi_api_key)}")
    if settings.apify_api_token:
        print(f"apify token: {mask_secret(settings.apify_api_token)}")
    else:
        print("apify token not provided; jobup source disabled")
    print(f"database: {settings.database_path}")
    print("healthcheck passed")
    return 0


def _cmd_serve() -> int:
    import uvicorn

    from swiss_job_alert.api import create_app
    from swiss_job_alert.scheduler import AlertScheduler

    settings = load_settings()
    configure_logging(settings.log_level)
    assert_required_envs(RUN_REQUIRED_ENVS)
    services = build_services(settings)

    scheduler = None
    if settings.scheduler_enabled:
        scheduler = AlertScheduler(
            services.pipeline,
            alerts_cron=settings.scheduler_cron,
            cleanup_cron=settings.cleanup_cron,
            timezone=settings.tz,
            retention_days=settings.retention_days,
        )

    try:
        uvicorn.run(create_app(services, scheduler), host="0.0.0.0", port=settings.port)
    finally:
        services.close()
    return 0


def _cmd_status() -> int:
    settings = load_settings()
    with AlertStore(settings.database_path) as store:
        stats = store.get_stats(retention_days=settings.retention_days)
    print(json.dumps(asdict(stats), indent=2))
    return 0


def _cmd_subscribe(args: argparse.Namespace) -> int:
    settings = load_settings()
    with AlertStore(settings.database_path) as store:
        subscriber = store.add_subscriber(args.chat_id, display_name=args.name, language=args.language)
        search = store.add_saved_search(
            subscriber.id,
            parse_csv(args.keywords),
            parse_csv(args.locations),
            max_age_days=args.max_age_days,
        )
    print(
        f"saved search {search.id} for {subscriber.chat_id}:",
        f"keywords={list(search.keywords)}",
        f"locations={list(search.locations)}",
        f"max_age_days={search.max_age_days}",
    )
    return 0


def _cmd_set_active(chat_id: str, active: bool) -> int:
    settings = load_settings()
    with AlertStore(settings.database_path) as store:
        updated = store.set_subscriber_active(chat_id, active)
    if not updated:
        print(f"unknown chat id: {chat_id}")
        return 1
    print(f"alerts {'resumed' if active else 'paused'} for {chat_id}")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        if args.command == "run":
            return _cmd_run()
        if args.command == "cleanup":
            return _cmd_cleanup(args)
        if args.command == "healthcheck":
            return _cmd_healthcheck()
        if args.command == "serve":
            return _cmd_serve()
        if args.command == "status":
            return _cmd_status()
        if args.command == "subscribe":
            return _cmd_subscribe(args)
        if args.command == "pause":
            return _cmd_set_active(args.chat_id, False)
        if args.command == "resume":
            return _cmd_set_active(args.chat_id, True)
    except ValueError as exc:
        print(exc)
        return 1

    parser.print_help()
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
