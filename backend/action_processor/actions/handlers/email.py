"""SEND_EMAIL handler, delivered through SendGrid."""

import logging
from typing import Mapping

from action_processor.actions.handlers.base import ActionHandler, HandlerMethod
from action_processor.actions.models import Action, ActionType
from action_processor.actions.results import UniformResult
from action_processor.exceptions import InputValidationError
from action_processor.integrations.sendgrid.client import build_mail_payload
from action_processor.messaging.broker import Publisher

logger = logging.getLogger(__name__)


class EmailHandler(ActionHandler):
    """Plain-text email with optional media links."""

    action_types = (ActionType.SEND_EMAIL,)

    def routes(self) -> Mapping[ActionType, HandlerMethod]:
        return {ActionType.SEND_EMAIL: self.send_email}

    async def send_email(self, action: Action, publisher: Publisher) -> UniformResult:
        recipients = action.get("recipients") or {}
        if not isinstance(recipients, Mapping) or not any(
            recipients.get(field) for field in ("to", "cc", "bcc")
        ):
            raise InputValidationError("Action is missing required field: 'recipients'")

        payload = build_mail_payload(
            from_email=self.deps.sendgrid.from_email,
            subject=action.get("subject"),
            text=action.get("body"),
            to=recipients.get("to"),
            cc=recipients.get("cc"),
            bcc=recipients.get("bcc"),
            media=action.get("media"),
        )
        status = await self.deps.sendgrid.send(payload)

        logger.info(
            "Email sent",
            extra={"widget_id": action.widget_id, "status": status},
        )
        return UniformResult.completed(status=status)
