from __future__ import annotations

from dataclasses import dataclass

from swiss_job_alert.aggregator import Aggregator, Source
from swiss_job_alert.config import Settings
from swiss_job_alert.log import get_logger
from swiss_job_alert.notifier_telegram import TelegramChannel
from swiss_job_alert.pipeline import AlertPipeline, DeliveryPolicy
from swiss_job_alert.scrapers.google_jobs import GoogleJobsSource
from swiss_job_alert.scrapers.jobup import JobupSource
from swiss_job_alert.storage import AlertStore

log = get_logger(__name__)


@dataclass
class Services:
    settings: Settings
    store: AlertStore
    aggregator: Aggregator
    channel: TelegramChannel
    pipeline: AlertPipeline

    def close(self) -> None:
        self.store.close()


def build_sources(settings: Settings) -> list[Source]:
    sources: list[Source] = []
    if settings.apify_api_token:
        sources.append(JobupSource(settings.apify_api_token))
    else:
        log.info("APIFY_API_TOKEN not set; jobup source disabled")
    if settings.serpapi_api_key:
        sources.append(
            GoogleJobsSource(settings.serpapi_api_key, timeout_seconds=settings.request_timeout_seconds)
        )
    else:
        log.info("SERPAPI_API_KEY not set; google jobs source disabled")
    return sources


def build_services(settings: Settings) -> Services:
    store = AlertStore(settings.database_path)
    aggregator = Aggregator(build_sources(settings))
    channel = TelegramChannel(settings.telegram_bot_token, timeout_seconds=settings.request_timeout_seconds)
    pipeline = AlertPipeline(store, aggregator, channel, DeliveryPolicy.from_settings(settings))
    return Services(
        settings=settings,
        store=store,
        aggregator=aggregator,
        channel=channel,
        pipeline=pipeline,
    )
