import asyncio
import logging
import time
from datetime import datetime, timezone

from sqlalchemy.exc import DBAPIError, OperationalError

from campaign_engine import database
from campaign_engine.core.config import Settings, get_settings
from campaign_engine.services.scheduler_service import DueStepPoller
from campaign_engine.services.stuck_detector import scan_stuck_executions
from campaign_engine.services.trigger_inbox import process_trigger_batch

logger = logging.getLogger(__name__)


def _dispose_engine() -> None:
    # Next tick gets fresh connections after Postgres restarts or kills them.
    engine = database.engine
    if engine is not None:
        engine.dispose()


async def scheduler_worker_loop(settings: Settings) -> None:
    """
    Poller loop. Safe to run in several processes at once: claims use row
    locks with SKIP LOCKED, so there is no advisory lock here.

    Each tick drains due trigger events, then queues due executions on the
    dispatch pool without waiting for them to finish. The stuck scan runs
    on its own, slower, period.
    """
    poll_seconds = float(settings.poll_seconds)
    poller = DueStepPoller(
        max_workers=settings.worker_threads,
        batch_size=settings.batch_size,
        per_org_limit=settings.per_org_limit,
    )
    last_stuck_scan = 0.0

    logger.info(
        "Campaign scheduler worker started",
        extra={
            "poll_seconds": poll_seconds,
            "batch_size": settings.batch_size,
            "worker_threads": settings.worker_threads,
        },
    )

    try:
        while True:
            try:
                now = datetime.now(timezone.utc)

                await asyncio.to_thread(
                    process_trigger_batch,
                    now=now,
                    batch_size=settings.trigger_batch_size,
                    max_retries=settings.trigger_max_retries,
                )
                await asyncio.to_thread(poller.tick, now)

                if time.monotonic() - last_stuck_scan >= float(settings.stuck_check_seconds):
                    last_stuck_scan = time.monotonic()
                    await asyncio.to_thread(
                        scan_stuck_executions,
                        now=now,
                        threshold_minutes=settings.stuck_threshold_minutes,
                    )

            except asyncio.CancelledError:
                raise

            except (OperationalError, DBAPIError):
                _dispose_engine()
                logger.exception(
                    "Campaign scheduler tick failed",
                    extra={"component": "scheduler_worker", "reason": "dbapi_error"},
                )

            except Exception:
                # Never crash the server; log and try again next tick.
                logger.exception(
                    "Campaign scheduler tick failed",
                    extra={"component": "scheduler_worker", "reason": "unexpected"},
                )

            await asyncio.sleep(poll_seconds)

    except asyncio.CancelledError:
        logger.info("Campaign scheduler worker cancelled; shutting down")
        raise

    finally:
        poller.shutdown(wait=False)


def start_scheduler_worker_task() -> asyncio.Task | None:
    settings = get_settings()
    if not settings.worker_enabled:
        logger.info("Campaign scheduler worker disabled")
        return None

    return asyncio.create_task(scheduler_worker_loop(settings))
