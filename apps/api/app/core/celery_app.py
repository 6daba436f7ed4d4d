from celery import Celery

from app.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "leadflow_api",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["app.automations.tasks"],
)
celery_app.conf.beat_schedule = {
    "sweep-due-automation-steps": {
        "task": "app.automations.sweep_due_steps",
        "schedule": float(settings.delayed_step_sweep_seconds),
    },
}

