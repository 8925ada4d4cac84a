"""Broker contracts, routing keys, intake and the AMQP transport."""

from action_processor.messaging.broker import Broker, Delivery, Publication, Publisher
from action_processor.messaging.intake import InboundAction, parse_delivery
from action_processor.messaging.routing import RoutingKey

__all__ = [
    "Broker",
    "Delivery",
    "InboundAction",
    "Publication",
    "Publisher",
    "RoutingKey",
    "parse_delivery",
]
