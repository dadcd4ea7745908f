"""
Celery Application Configuration

Configures Celery with:
- Separate queue for render jobs
- Beat schedule for the asset preparation tick and render sweep
- Late acknowledgment; task-level retries are not used (the pipelines
  own their retry budgets)
"""

from celery import Celery
from kombu import Queue

from roomview.core.config import settings

# Create Celery app
celery_app = Celery(
    "roomview",
    broker=settings.CELERY_BROKER_URL or settings.REDIS_URL,
    backend=settings.CELERY_RESULT_BACKEND or settings.REDIS_URL,
    include=[
        "roomview.pipeline.tasks",
    ]
)

# Celery configuration
celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Task tracking
    task_track_started=True,
    task_time_limit=600,  # 10 minute hard limit
    task_soft_time_limit=540,  # 9 minute soft limit

    # Result expiration
    result_expires=86400,  # 24 hours

    # Worker settings
    worker_prefetch_multiplier=1,

    # Queue definitions
    task_queues=(
        Queue("default", routing_key="default"),
        Queue("render_queue", routing_key="render.#"),
    ),
    task_default_queue="default",

    # Task routing
    task_routes={
        "roomview.pipeline.tasks.run_render_job": {"queue": "render_queue"},
        "roomview.pipeline.tasks.prepare_assets_tick": {"queue": "default"},
        "roomview.pipeline.tasks.sweep_render_jobs": {"queue": "default"},
    },

    # Late acknowledgment for reliability
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "prepare-assets": {
        "task": "roomview.pipeline.tasks.prepare_assets_tick",
        "schedule": settings.PREP_POLL_INTERVAL_SECONDS,
    },
    "sweep-render-jobs": {
        "task": "roomview.pipeline.tasks.sweep_render_jobs",
        "schedule": 60.0,
    },
}
