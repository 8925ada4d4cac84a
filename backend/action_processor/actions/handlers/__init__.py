"""
Action handlers and the type-keyed registry.

build_registry() instantiates every handler once and maps each ActionType
it declares to that handler. SEQUENCE is executed by the dispatcher
itself and is the only type without a handler.
"""

from types import MappingProxyType
from typing import Mapping, Tuple, Type

from action_processor.actions.handlers.base import ActionHandler, HandlerDependencies
from action_processor.actions.handlers.email import EmailHandler
from action_processor.actions.handlers.engagement import EngagementHandler
from action_processor.actions.handlers.http import HttpHandler
from action_processor.actions.handlers.lookup import LookupHandler
from action_processor.actions.handlers.meta import MetaHandler
from action_processor.actions.handlers.reroute import RerouteHandler
from action_processor.actions.handlers.twitter import TwitterHandler
from action_processor.actions.models import ActionType

HANDLER_CLASSES: Tuple[Type[ActionHandler], ...] = (
    TwitterHandler,
    MetaHandler,
    HttpHandler,
    EmailHandler,
    LookupHandler,
    EngagementHandler,
    RerouteHandler,
)


def build_registry(deps: HandlerDependencies) -> Mapping[ActionType, ActionHandler]:
    """
    Immutable ActionType -> handler mapping.

    Raises:
        ValueError: If two handlers claim the same type
    """
    registry = {}
    for handler_class in HANDLER_CLASSES:
        handler = handler_class(deps)
        for action_type in handler_class.action_types:
            if action_type in registry:
                raise ValueError(f"Duplicate handler for {action_type.value}")
            registry[action_type] = handler
    return MappingProxyType(registry)


__all__ = [
    "ActionHandler",
    "EmailHandler",
    "EngagementHandler",
    "HandlerDependencies",
    "HttpHandler",
    "LookupHandler",
    "MetaHandler",
    "RerouteHandler",
    "TwitterHandler",
    "build_registry",
]
