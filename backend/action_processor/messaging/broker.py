"""
Broker contracts used by the processor.

The delivery resolver and handlers only depend on these protocols; the
AMQP transport in kombu_broker implements them, and tests substitute a
recording double.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol


@dataclass
class Delivery:
    """One message received from the broker."""

    routing_key: str
    body: bytes
    priority: int = 0
    headers: Dict[str, Any] = field(default_factory=dict)
    delivery_tag: Any = None
    message: Any = None


@dataclass(frozen=True)
class Publication:
    """A message the processor intends to publish."""

    routing_key: str
    payload: Dict[str, Any]
    priority: Optional[int] = None
    headers: Optional[Dict[str, Any]] = None


class Publisher(Protocol):
    """Publishes JSON payloads to the action exchange."""

    async def publish(
        self,
        routing_key: str,
        payload: Dict[str, Any],
        priority: Optional[int] = None,
        headers: Optional[Dict[str, Any]] = None,
    ) -> None:
        ...


class Broker(Publisher, Protocol):
    """Publisher that also settles deliveries."""

    async def ack(self, delivery: Delivery) -> None:
        ...

    async def nack(self, delivery: Delivery, requeue: bool = True) -> None:
        ...
