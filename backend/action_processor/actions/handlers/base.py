"""
Base class and shared dependencies for action handlers.

A handler executes one family of action types and reduces every outcome
to a UniformResult. Handlers never acknowledge deliveries; they may only
publish through the publisher passed to handle().
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple

from action_processor.actions.models import Action, ActionType
from action_processor.actions.results import UniformResult
from action_processor.config.settings import ProcessorSettings
from action_processor.exceptions import InputValidationError
from action_processor.integrations.http.client import OutboundCallExecutor, parse_retry_budget
from action_processor.integrations.lookup.client import LookupClient
from action_processor.integrations.media.client import MediaClient
from action_processor.integrations.sendgrid.client import SendGridClient
from action_processor.integrations.twitter.client import TwitterClient
from action_processor.messaging.broker import Publisher
from action_processor.platform.secrets import SecretCipher, decrypt_secret
from action_processor.repositories.action_store import ActionStore
from action_processor.services.rate_limit_oracle import RateLimitOracle

logger = logging.getLogger(__name__)

HandlerMethod = Callable[[Action, Publisher], Awaitable[UniformResult]]


@dataclass(frozen=True)
class HandlerDependencies:
    """Collaborators shared by every handler, built once per worker."""

    settings: ProcessorSettings
    oracle: RateLimitOracle
    executor: OutboundCallExecutor
    store: ActionStore
    twitter: TwitterClient
    media: MediaClient
    sendgrid: SendGridClient
    lookup: LookupClient
    cipher: Optional[SecretCipher] = None


class ActionHandler(ABC):
    """
    Executes a family of action types.

    Subclasses list the types they own in `action_types` and map each type
    to a coroutine method in routes().
    """

    action_types: Tuple[ActionType, ...] = ()

    def __init__(self, deps: HandlerDependencies):
        self.deps = deps
        self.settings = deps.settings
        self.oracle = deps.oracle

    @abstractmethod
    def routes(self) -> Mapping[ActionType, HandlerMethod]:
        """Coroutine method for each owned action type."""

    async def handle(self, action: Action, publisher: Publisher) -> UniformResult:
        method = self.routes().get(action.action_type)
        if method is None:
            raise InputValidationError(
                f"{self.__class__.__name__} cannot handle {action.type}"
            )
        return await method(action, publisher)

    # Shared helpers

    def budget(self, action: Action, default: int) -> int:
        """The action's retryRemaining, or `default` when unset."""
        budget = parse_retry_budget(action.retry_remaining)
        return default if budget is None else budget

    def log_context(self, action: Action) -> Dict[str, Any]:
        return {"action_type": action.type, "user_id": action.subject, "widget_id": action.widget_id}

    async def decrypt(self, ciphertext: Optional[str], label: str) -> str:
        if not ciphertext:
            raise InputValidationError(f"No {label} available")
        return await decrypt_secret(ciphertext, self.deps.cipher)

    def require(self, action: Action, *fields: str) -> Dict[str, Any]:
        """
        Read required payload fields.

        Raises:
            InputValidationError: On the first missing field
        """
        payload = action.to_payload()
        for name in fields:
            if payload.get(name) in (None, ""):
                raise InputValidationError(f"Action is missing required field: '{name}'")
        return payload


def service_url(base: Optional[str], name: str, *parts: Any) -> str:
    """
    Join a configured service base URL with path parts.

    Raises:
        InputValidationError: When the service URL is not configured
    """
    if not base:
        raise InputValidationError(f"{name} is not configured")
    return "/".join([base.rstrip("/"), *(str(p) for p in parts)])
