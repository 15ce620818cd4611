from core.celery import celery_app
from core.db import db_session
from core.logging import get_logger
from services import cart as cart_service
from services import orders as order_service

logger = get_logger(__name__)


@celery_app.task
def expire_pending_orders_task():
    """Cancel orders left unpaid past the payment window and release their stock."""
    with db_session() as db:
        expired = order_service.expire_stale_orders(db)
    return {"expired": expired}


@celery_app.task
def purge_expired_carts_task():
    with db_session() as db:
        purged = cart_service.purge_expired_carts(db)
    return {"purged": purged}
