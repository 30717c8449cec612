# cart_engine/celery_worker.py
from celery import Celery

from cart_engine.utils.settings import (
    CART_SWEEP_SECONDS,
    CELERY_BROKER_URL,
    CELERY_RESULT_BACKEND,
    RESERVATION_SWEEP_SECONDS,
)

celery_app = Celery(
    "cart_engine",
    broker=CELERY_BROKER_URL,
    backend=CELERY_RESULT_BACKEND,
)

# WAŻNE: Explicite importuj taski, żeby Celery je zarejestrował
celery_app.conf.imports = (
    "cart_engine.tasks.expire",
    "cart_engine.services.event_publisher",
)

# Konfiguracja beat schedule
celery_app.conf.beat_schedule = {
    "release-expired-reservations": {
        "task": "cart_engine.tasks.expire.release_expired_reservations_task",
        "schedule": RESERVATION_SWEEP_SECONDS,  # co 5 minut
    },
    "sweep-stale-carts": {
        "task": "cart_engine.tasks.expire.sweep_carts_task",
        "schedule": CART_SWEEP_SECONDS,  # co 10 minut
    },
}

celery_app.conf.timezone = "UTC"
