from __future__ import annotations

import asyncio
import json
import secrets
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from swiss_job_alert.log import get_logger
from swiss_job_alert.messages import format_test_message
from swiss_job_alert.pipeline import DEFAULT_RETENTION_DAYS, SubscriberNotFoundError
from swiss_job_alert.scheduler import AlertScheduler
from swiss_job_alert.services import Services

SERVICE_NAME = "swiss-job-alert"

log = get_logger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _seconds(value: float) -> str:
    return f"{round(value)}s"


def _error_response(message: str, exc: Exception, status_code: int = 500) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "timestamp": _now_iso(),
            "error": message,
            "details": str(exc) or exc.__class__.__name__,
        },
    )


async def _json_body(request: Request) -> dict:
    raw = await request.body()
    if not raw:
        return {}
    try:
        payload = json.loads(raw)
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


def _is_str_list(value: object) -> bool:
    return isinstance(value, list) and all(isinstance(item, str) for item in value)


def create_app(services: Services, scheduler: AlertScheduler | None = None) -> FastAPI:
    admin_token = services.settings.admin_api_token

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if scheduler is not None:
            scheduler.start()
        try:
            yield
        finally:
            if scheduler is not None:
                scheduler.stop()

    def require_admin(x_admin_token: str | None = Header(default=None)) -> None:
        if not admin_token:
            return
        if not x_admin_token or not secrets.compare_digest(x_admin_token, admin_token):
            raise HTTPException(status_code=401, detail="invalid admin token")

    app = FastAPI(title=SERVICE_NAME, lifespan=lifespan)
    admin = APIRouter(prefix="/admin", dependencies=[Depends(require_admin)])

    @app.get("/health")
    def health() -> dict:
        return {"status": "healthy", "timestamp": _now_iso(), "service": SERVICE_NAME}

    @admin.api_route("/process-jobs", methods=["GET", "POST"])
    async def process_jobs(request: Request, chat_id: str | None = None):
        chat_id = chat_id or (await _json_body(request)).get("chatId")
        if chat_id:
            return await _process_single_subscriber(str(chat_id))

        try:
            result = await services.pipeline.process_all()
        except Exception as exc:
            log.exception("unexpected error in process-jobs")
            return _error_response("Unexpected error in job processing", exc)

        return {
            "success": result.success,
            "timestamp": result.finished_at.isoformat(),
            "startTime": result.started_at.isoformat(),
            "duration": _seconds(result.duration_seconds),
            "message": (
                "Alert processing completed successfully"
                if result.success
                else "Alert processing failed"
            ),
            "results": {
                "usersProcessed": result.users_processed,
                "usersFailed": result.users_failed,
                "jobsFound": result.jobs_found,
                "notificationsSent": result.notifications_sent,
            },
            "error": result.error,
        }

    async def _process_single_subscriber(chat_id: str):
        log.info("admin trigger: processing alerts for user %s", chat_id)
        started = asyncio.get_running_loop().time()
        try:
            subscriber, stats = await services.pipeline.process_chat_id(chat_id)
        except SubscriberNotFoundError:
            return JSONResponse(
                status_code=404,
                content={"success": False, "error": f"User with chatId {chat_id} not found"},
            )
        except Exception as exc:
            log.exception("admin trigger failed for user %s", chat_id)
            return _error_response("Internal server error", exc)

        return {
            "success": True,
            "timestamp": _now_iso(),
            "user": {"chatId": subscriber.chat_id, "displayName": subscriber.display_name},
            "results": {
                "duration": _seconds(asyncio.get_running_loop().time() - started),
                "jobsFound": stats.jobs_found,
                "notificationsSent": stats.notifications_sent,
            },
        }

    @admin.post("/cleanup")
    async def cleanup(retention_days: int = Query(DEFAULT_RETENTION_DAYS, ge=0)):
        try:
            result = await services.pipeline.cleanup(retention_days)
        except Exception as exc:
            log.exception("unexpected error in cleanup")
            return _error_response("Unexpected error in job cleanup", exc)

        return {
            "success": result.success,
            "timestamp": result.finished_at.isoformat(),
            "startTime": result.started_at.isoformat(),
            "duration": _seconds(result.duration_seconds),
            "results": {
                "deletedJobsCount": result.deleted_jobs_count,
                "cutoffDate": result.cutoff_date.isoformat(),
            },
            "error": result.error,
        }

    @admin.get("/status")
    async def status():
        try:
            stats = await asyncio.to_thread(
                services.store.get_stats, None, services.settings.retention_days
            )
        except Exception as exc:
            log.exception("failed to get job status")
            return _error_response("Failed to get job status", exc)

        return {
            "success": True,
            "timestamp": _now_iso(),
            "system": {"status": "healthy", "service": SERVICE_NAME},
            "database": {
                "users": {"total": stats.subscribers_total, "active": stats.subscribers_active},
                "jobSearches": {"total": stats.searches_total, "active": stats.searches_active},
                "jobPostings": {
                    "total": stats.postings_total,
                    "recentWeek": stats.postings_recent_week,
                    "eligibleForCleanup": stats.postings_eligible_for_cleanup,
                },
                "notifications": {"total": stats.notifications_total},
            },
        }

    @admin.post("/test-scraper")
    async def test_scraper(request: Request):
        body = await _json_body(request)
        keywords = body.get("keywords")
        locations = body.get("locations")
        chat_id = body.get("chatId")
        if not keywords or not locations or not chat_id:
            return JSONResponse(
                status_code=400,
                content={"error": "Missing required fields: keywords, locations, chatId"},
            )
        if not _is_str_list(keywords) or not _is_str_list(locations):
            return JSONResponse(
                status_code=400,
                content={"error": "keywords and locations must be lists of strings"},
            )

        started = asyncio.get_running_loop().time()
        try:
            jobs, site_results = await services.aggregator.fetch_with_results(keywords, locations)
        except Exception as exc:
            log.exception("admin scraper test failed")
            return _error_response("Internal server error", exc)
        scrape_duration = asyncio.get_running_loop().time() - started

        notification_sent = False
        if jobs:
            try:
                message = format_test_message(jobs[0], timezone=services.settings.tz)
                await services.channel.send_message(str(chat_id), message)
                notification_sent = True
            except Exception as exc:
                log.warning("admin scraper test: failed to send test notification: %s", exc)

        return {
            "success": True,
            "timestamp": _now_iso(),
            "testCriteria": {"keywords": keywords, "locations": locations, "chatId": chat_id},
            "results": {
                "totalJobs": len(jobs),
                "scrapingDuration": _seconds(scrape_duration),
                "testNotificationSent": notification_sent,
                "sources": {
                    result.source: {"jobs": len(result.jobs), "error": result.error}
                    for result in site_results
                },
                "jobsSample": [
                    {
                        "title": job.title,
                        "company": job.company,
                        "location": job.location,
                        "source": job.source,
                        "postedDate": job.posted_at.isoformat(),
                    }
                    for job in jobs[:5]
                ],
            },
        }

    @admin.get("/scheduler")
    def scheduler_status():
        if scheduler is None:
            return JSONResponse(status_code=500, content={"error": "Scheduler not available"})
        return {"success": True, "timestamp": _now_iso(), "scheduler": scheduler.status()}

    app.include_router(admin)
    return app
