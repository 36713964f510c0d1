"""Presence registry, delivery router and message store for alumni direct messaging."""

from .messages import InMemoryMessageStore, InvalidMessage, Message
from .presence import PresenceRegistry
from .router import DeliveryResult, DeliveryRouter
from .server import main, simulate

__all__ = [
    "DeliveryResult",
    "DeliveryRouter",
    "InMemoryMessageStore",
    "InvalidMessage",
    "Message",
    "PresenceRegistry",
    "main",
    "simulate",
]
