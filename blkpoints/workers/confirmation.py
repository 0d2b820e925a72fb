import structlog

from ..service import get_service
from .celery_app import celery_app, settings

logger = structlog.get_logger(__name__)


@celery_app.task(name="blkpoints.workers.confirmation.run_confirmation_sweep")
def run_confirmation_sweep() -> dict[str, int]:
    result = get_service().run_sweep()
    if result["failed"] > 0:
        logger.warning("confirmation_sweep_had_failures", **result)
    return result


celery_app.conf.beat_schedule = celery_app.conf.beat_schedule or {}
celery_app.conf.beat_schedule.update(
    {
        "referral-confirmation-sweep": {
            "task": "blkpoints.workers.confirmation.run_confirmation_sweep",
            "schedule": settings.sweep_interval_seconds,
            "options": {"queue": "q_normal"},
        },
    }
)
