"""
Follow-on action publishing.

An action may declare `success` and `failure` lists of follow-on actions.
After the resolver has decided the outcome they are published here:

- success follow-ons go one by one to their own throttle key
- failure follow-ons go as one bundle to the action builder of the widget

Each follow-on carries a `context` parsed from the completed call's body
and the platform enrichments the action builder needs to render merge
fields. Escaped merge fields (`\\$`) are un-escaped before publishing.
"""

import json
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from action_processor.actions.models import Action, ActionType
from action_processor.actions.results import UniformResult
from action_processor.config.settings import ProcessorSettings
from action_processor.messaging.broker import Publication
from action_processor.messaging.routing import RoutingKey

logger = logging.getLogger(__name__)

FOLLOW_ON_PRIORITY = 1
ESCAPED_MERGE_FIELD = "\\$"

META_TEXT_PATH = ("message", "message", "text")
WHATSAPP_TEXT_PATH = ("message", "text", "body")
DEFAULT_TEXT_PATH = ("text",)


def _has_path(data: Any, path: Sequence[str]) -> bool:
    for key in path:
        if not isinstance(data, Mapping) or key not in data:
            return False
        data = data[key]
    return True


def _replace_at(data: Dict[str, Any], path: Sequence[str]) -> Dict[str, Any]:
    """Copy of `data` with the string at `path` un-escaped. Missing paths are left alone."""
    if not _has_path(data, path):
        return data
    head, rest = path[0], path[1:]
    updated = dict(data)
    if rest:
        updated[head] = _replace_at(dict(data[head]), rest)
    elif isinstance(data[head], str):
        updated[head] = data[head].replace(ESCAPED_MERGE_FIELD, "$")
    return updated


def unescape_merge_fields(follow_on: Mapping[str, Any]) -> Dict[str, Any]:
    """Un-escape `\\$` in the text field a follow-on of this type templates."""
    follow_on = dict(follow_on)
    action_type = follow_on.get("type")

    if action_type == ActionType.SEND_INSTAGRAM_MESSAGE.value:
        return _replace_at(follow_on, META_TEXT_PATH)
    if action_type == ActionType.SEND_WHATSAPP_MESSAGE.value:
        return _replace_at(follow_on, WHATSAPP_TEXT_PATH)
    if action_type == ActionType.SEND_FACEBOOK_MESSAGE.value:
        # Rich media messages have no text to un-escape
        return _replace_at(follow_on, META_TEXT_PATH)
    return _replace_at(follow_on, DEFAULT_TEXT_PATH)


def parse_context(body: Any) -> Dict[str, Any]:
    """Context for follow-ons: the completed call's body as an object, else {}."""
    if isinstance(body, Mapping):
        return dict(body)
    if isinstance(body, (str, bytes)):
        try:
            parsed = json.loads(body)
        except ValueError:
            logger.debug("Could not parse result body, using empty context")
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def enrichments(follow_ons: Sequence[Mapping[str, Any]]) -> Dict[str, Any]:
    """Platform fields the action builder expects next to these follow-ons."""
    types = [f.get("type") for f in follow_ons]
    extra: Dict[str, Any] = {}

    instagram = [f for f in follow_ons if f.get("type") == ActionType.SEND_INSTAGRAM_MESSAGE.value]
    if instagram:
        message = instagram[0].get("message")
        recipient = message.get("recipient") if isinstance(message, Mapping) else None
        sender_id = recipient.get("id") if isinstance(recipient, Mapping) else None
        if sender_id is not None:
            # The original activity is not available here
            extra["instagramActivity"] = {
                "messageEvent": {
                    "sender": {"id": sender_id},
                    "recipient": {"id": "LOOKUP_API"},
                    "type": "text",
                }
            }

    if ActionType.SEND_WHATSAPP_MESSAGE.value in types:
        extra["whatsappMessage"] = {}

    if ActionType.SEND_FACEBOOK_MESSAGE.value in types:
        extra["facebookMessage"] = {}
        extra["facebookActivity"] = {
            "type": "comment",
            "changes": [{"value": {"comment_id": "1234"}}],
        }

    if ActionType.SEND_DARK_TWEET.value in types:
        extra["twitterActivity"] = {}
        extra["type"] = "favorite_event"

    return extra


class FollowOnPublisher:
    """Builds the publications for an action's success and failure lists."""

    def __init__(self, settings: ProcessorSettings):
        self.settings = settings

    def success_publications(self, action: Action, result: UniformResult) -> List[Publication]:
        """One publication per success follow-on, keyed by its own type and subject."""
        if not action.success:
            return []

        context = parse_context(result.body)
        publications = []
        for raw in action.success:
            follow_on = unescape_merge_fields(raw)
            extra = enrichments([follow_on])
            # The sub-action's own type wins over the activity type enrichment
            extra.pop("type", None)
            payload = {**follow_on, "context": context, **extra}
            subject = follow_on.get("userId") or action.subject
            if follow_on.get("userId") is None and subject is not None:
                payload["userId"] = subject

            routing_key = RoutingKey.throttle(
                follow_on.get("type"), subject, prefix=self.settings.throttle_prefix
            )
            publications.append(
                Publication(str(routing_key), payload, priority=FOLLOW_ON_PRIORITY)
            )
        return publications

    def failure_publication(
        self, action: Action, result: Optional[UniformResult] = None
    ) -> Optional[Publication]:
        """A single action-builder bundle for the failure follow-ons, if any."""
        if not action.failure:
            return None

        follow_ons = [unescape_merge_fields(raw) for raw in action.failure]
        context = parse_context(result.body) if result is not None else {}
        payload = {"actions": follow_ons, "context": context, **enrichments(follow_ons)}
        routing_key = RoutingKey.builder(action.widget_id, prefix=self.settings.builder_prefix)
        return Publication(str(routing_key), payload)

    def publications(
        self, action: Action, result: Optional[UniformResult], succeeded: bool
    ) -> Tuple[Publication, ...]:
        """
        Publications for the success or failure branch.

        A failure while building them is logged and yields none; it never
        changes the outcome of the delivery.
        """
        try:
            if succeeded:
                return tuple(self.success_publications(action, result or UniformResult.completed()))
            publication = self.failure_publication(action, result)
            return (publication,) if publication else ()
        except (TypeError, ValueError, AttributeError) as e:
            branch = "success" if succeeded else "failure"
            logger.error(
                f"Failed to build and route action {branch} due to building failure",
                extra={"action_type": action.type, "widget_id": action.widget_id, "error": str(e)},
            )
            return ()
