from celery import Celery
from core.config import settings
from core.logging import configure_logging

configure_logging()

# Use Redis for production/development
broker_url = settings.REDIS_URL
backend_url = settings.REDIS_URL

# Create Celery app
celery_app = Celery(
    "commerce_checkout",
    broker=broker_url,
    backend=backend_url,
    include=["tasks.email_tasks", "tasks.order_tasks"]
)

# Configure Celery
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=30 * 60,  # 30 minutes
    task_soft_time_limit=25 * 60,  # 25 minutes
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,
    # Run tasks inline when testing so no broker is needed
    task_always_eager=settings.TESTING,
    task_eager_propagates=False,
)

celery_app.conf.beat_schedule = {
    "expire-pending-orders": {
        "task": "tasks.order_tasks.expire_pending_orders_task",
        "schedule": float(settings.EXPIRY_SWEEP_INTERVAL_SECONDS),
    },
    "purge-expired-carts": {
        "task": "tasks.order_tasks.purge_expired_carts_task",
        "schedule": 3600.0,
    },
}
