# cart_engine/services/event_outbox.py
from typing import Callable, List

from cart_engine.domain.events import CartEvent
from cart_engine.utils.logging import get_logger

logger = get_logger(__name__)


class EventOutbox:
    """
    Zdarzenia koszyka trafiaja tu dopiero po commicie.
    Subskrybent, ktory rzuci wyjatek, nie psuje operacji (at-least-once po stronie publishera).
    """

    def __init__(self):
        self.events: List[CartEvent] = []
        self._subscribers: List[Callable[[CartEvent], None]] = []

    def subscribe(self, handler: Callable[[CartEvent], None]):
        self._subscribers.append(handler)

    def emit(self, event: CartEvent):
        self.events.append(event)
        logger.info(f"Event {event.event_type} cart={event.cart_id} seq={event.sequence}")

        for handler in self._subscribers:
            try:
                handler(event)
            except Exception:
                logger.exception(f"Subscriber failed for event {event.event_id}")

    def drain(self) -> List[CartEvent]:
        events, self.events = self.events, []
        return events
