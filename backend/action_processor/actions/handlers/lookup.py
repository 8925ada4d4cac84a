"""LOOKUP_API handler: fetch a value from a customer's API."""

import logging
from typing import Mapping

from action_processor.actions.handlers.base import ActionHandler, HandlerMethod
from action_processor.actions.models import Action, ActionType
from action_processor.actions.results import UniformResult
from action_processor.exceptions import InputValidationError
from action_processor.messaging.broker import Publisher
from action_processor.translators import translate_lookup

logger = logging.getLogger(__name__)


class LookupHandler(ActionHandler):
    action_types = (ActionType.LOOKUP_API,)

    def routes(self) -> Mapping[ActionType, HandlerMethod]:
        return {ActionType.LOOKUP_API: self.lookup}

    async def lookup(self, action: Action, publisher: Publisher) -> UniformResult:
        url = action.get("url")
        identifier = action.get("id")
        for name, value in (("url", url), ("id", identifier)):
            if not value:
                raise InputValidationError(f"Required field '{name}' is missing")

        response = await self.deps.lookup.fetch(
            url,
            identifier,
            username=action.get("username"),
            password=action.get("password"),
        )
        return translate_lookup(url, identifier, response)
