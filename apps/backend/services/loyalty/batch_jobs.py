# apps/backend/services/loyalty/batch_jobs.py

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from .loyalty_service import LoyaltyService

log = logging.getLogger("loyalty.jobs")


# --------------------------------------------------------
# Nightly re-evaluation
# --------------------------------------------------------

async def run_nightly(service: LoyaltyService) -> dict:
    """
    Expiry first so segment and health inputs see post-expiry balances.
    One failing job does not stop the others.
    """
    results = {}
    jobs = [
        ("expire_old_points", service.expire_old_points),
        ("update_all_customer_segments", service.update_all_customer_segments),
        ("refresh_custom_segment_counts", service.refresh_custom_segment_counts),
        ("refresh_all_health_scores", service.refresh_all_health_scores),
    ]
    for name, job in jobs:
        try:
            results[name] = await job()
            log.info(f"[JOBS] {name} done")
        except Exception as e:
            log.exception(f"[JOBS] {name} failed: {e}")
            results[name] = {"error": str(e)}
    return results


def start_batch_jobs(scheduler: AsyncIOScheduler, service: LoyaltyService, hour: int = 3):
    """
    Registers the nightly job on an already-created scheduler.
    """

    scheduler.add_job(
        run_nightly,
        "cron",
        hour=hour,
        minute=0,
        args=[service],
        id="loyalty_nightly",
        replace_existing=True,
        coalesce=True,
        max_instances=1,
    )

    log.info(f"[JOBS] Nightly loyalty jobs scheduled at {hour:02d}:00")
