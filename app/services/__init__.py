"""Services package initialization."""
from services.event_bus import EventBus, event_bus
from services.mediator import ChatOperations, Mediator
from services.subscriptions import SubscriptionGate

__all__ = ["EventBus", "event_bus", "ChatOperations", "Mediator", "SubscriptionGate"]
