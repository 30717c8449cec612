# cart_engine/tasks/expire.py
from datetime import datetime, timezone

from cart_engine.celery_worker import celery_app
from cart_engine.data.database import SessionLocal
from cart_engine.services.factory import build_cart_service
from cart_engine.utils.logging import get_logger

logger = get_logger(__name__)


@celery_app.task(name="cart_engine.tasks.expire.release_expired_reservations_task")
def release_expired_reservations_task():
    logger.info("Release expired reservations task started")

    db = SessionLocal()
    try:
        svc = build_cart_service(db)
        expired = svc.release_expired_reservations(datetime.now(timezone.utc))
        logger.info(f"Released {len(expired)} expired soft reservations")
        return {"expired": len(expired)}
    finally:
        db.close()


@celery_app.task(name="cart_engine.tasks.expire.sweep_carts_task")
def sweep_carts_task():
    logger.info("Sweep carts task started")

    db = SessionLocal()
    try:
        svc = build_cart_service(db)
        return svc.sweep_carts(datetime.now(timezone.utc))
    finally:
        db.close()
