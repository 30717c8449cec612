# cart_engine/services/event_publisher.py
from cart_engine.celery_worker import celery_app
from cart_engine.domain.events import CartEvent
from cart_engine.services.event_outbox import EventOutbox
from cart_engine.utils.logging import get_logger

logger = get_logger(__name__)


class EventPublisher:
    """
    Publikacja zdarzen koszyka.
    Używa Celery do asynchronicznego przetwarzania, operacja koszyka nie czeka.
    """

    @staticmethod
    def publish(event: CartEvent):
        publish_cart_event_task.delay(event.to_dict())


def celery_outbox() -> EventOutbox:
    outbox = EventOutbox()
    outbox.subscribe(EventPublisher.publish)
    return outbox


@celery_app.task(name="cart_engine.services.event_publisher.publish_cart_event_task")
def publish_cart_event_task(event: dict):
    """
    Celery task - tu podpina sie broker zdarzen (analityka, powiadomienia).
    Teraz tylko loguje.
    """
    logger.info(
        f"[EVENT] {event['event_type']} cart={event['cart_id']} seq={event['sequence']} id={event['event_id']}"
    )
    return {"event_id": event["event_id"], "status": "published"}
