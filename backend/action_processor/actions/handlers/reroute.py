"""
Re-routing handlers.

These actions are executed by other services. The handler only publishes
the action (or a payload derived from it) to that service's routing key
and reports COMPLETED.
"""

import logging
from typing import Mapping

from action_processor.actions.handlers.base import ActionHandler, HandlerMethod
from action_processor.actions.models import Action, ActionType
from action_processor.actions.results import UniformResult
from action_processor.messaging.broker import Publisher
from action_processor.messaging.routing import RoutingKey
from action_processor.monitoring.metrics import get_processor_metrics

logger = logging.getLogger(__name__)

BLAST_BATCH_PREFIX = "actions.blastbatch"
GOOGLE_SHEET_PREFIX = "googlesheets.append"
IMAGE_MANIPULATION_PREFIX = "image.manipulation"
MOSAIC_V1_PREFIX = "actions.mosaic"
MOSAIC_V2_PREFIX = "actions.mosaic2"

OVERLAY_NEXT_ACTION = ActionType.SEND_DARK_TWEET.value
MOSAIC_REQUIRED_PROPERTIES = ("source", "identifier", "ownerId", "id", "type", "searchTerms")
PIPELINE_PRIORITY = 1


class RerouteHandler(ActionHandler):
    """Hands actions over to the blast, sheets, image and mosaic services."""

    action_types = (
        ActionType.SEND_BLAST_BATCH,
        ActionType.GOOGLE_SHEET_APPEND,
        ActionType.OVERLAY_IMAGE,
        ActionType.OVERLAY_GIF,
        ActionType.MOSAIC_OPT_IN,
        ActionType.MOSAIC_OPT_OUT,
    )

    def routes(self) -> Mapping[ActionType, HandlerMethod]:
        return {
            ActionType.SEND_BLAST_BATCH: self.send_blast_batch,
            ActionType.GOOGLE_SHEET_APPEND: self.google_sheet_append,
            ActionType.OVERLAY_IMAGE: self.overlay,
            ActionType.OVERLAY_GIF: self.overlay,
            ActionType.MOSAIC_OPT_IN: self.photo_mosaic,
            ActionType.MOSAIC_OPT_OUT: self.photo_mosaic,
        }

    async def _reroute(self, prefix: str, action: Action, publisher: Publisher) -> UniformResult:
        routing_key = RoutingKey.join(prefix, action.widget_id)
        logger.debug(
            f"Re-routing '{action.type}' action to '{routing_key}' for widget Id '{action.widget_id}'"
        )
        await publisher.publish(str(routing_key), action.to_payload())
        return UniformResult.completed(status=200)

    async def send_blast_batch(self, action: Action, publisher: Publisher) -> UniformResult:
        return await self._reroute(BLAST_BATCH_PREFIX, action, publisher)

    async def google_sheet_append(self, action: Action, publisher: Publisher) -> UniformResult:
        return await self._reroute(GOOGLE_SHEET_PREFIX, action, publisher)

    async def overlay(self, action: Action, publisher: Publisher) -> UniformResult:
        """Ask the image service to overlay the user's profile image, then dark tweet it."""
        payload = {
            "pipeline": {
                "imageUrl": action.get("profileImageUrl"),
                "responseType": "MEDIA_ID",
                "tasks": [{"type": action.type, "imageMediaId": action.get("overlayMediaId")}],
            },
            "action": {
                "type": OVERLAY_NEXT_ACTION,
                "widgetId": action.widget_id,
                "text": action.get("text"),
                "twitterAccessTokens": action.get("twitterAccessTokens"),
                "media": [],
            },
        }
        routing_key = RoutingKey.join(IMAGE_MANIPULATION_PREFIX, OVERLAY_NEXT_ACTION, action.subject)
        await publisher.publish(str(routing_key), payload, priority=PIPELINE_PRIORITY)
        return UniformResult.completed(status=200)

    # ------------------------------------------------------------------
    # Photo mosaic
    # ------------------------------------------------------------------

    def _uses_legacy_mosaic(self, action: Action) -> bool:
        return (
            self.settings.photo_mosaic_version == "1"
            or action.get("campaignId") in self.settings.legacy_mosaic_campaign_ids
            or action.widget_id in self.settings.legacy_mosaic_widget_ids
        )

    def _discard(self, action: Action, message: str) -> UniformResult:
        get_processor_metrics().record_discarded(action.type, "photomosaic")
        return UniformResult.handled(message=message)

    async def photo_mosaic(self, action: Action, publisher: Publisher) -> UniformResult:
        if self._uses_legacy_mosaic(action):
            return await self._photo_mosaic_v1(action, publisher)
        if self.settings.photo_mosaic_version == "2":
            return await self._photo_mosaic_v2(action, publisher)

        logger.warning(
            f"Unsupported photo mosaic version {self.settings.photo_mosaic_version}, discarding message..."
        )
        return self._discard(action, "Unsupported photo mosaic version")

    async def _photo_mosaic_v1(self, action: Action, publisher: Publisher) -> UniformResult:
        campaign_id = action.get("campaignId")
        if not campaign_id:
            message = (
                f"No mosaic campaign id specified for widget id {action.widget_id}, "
                "discarding message..."
            )
            logger.warning(message)
            return self._discard(action, message)

        routing_key = RoutingKey.join(MOSAIC_V1_PREFIX, action.type, campaign_id)
        await publisher.publish(
            str(routing_key), action.without("campaignId", "type"), priority=PIPELINE_PRIORITY
        )
        return UniformResult.completed(status=200)

    async def _photo_mosaic_v2(self, action: Action, publisher: Publisher) -> UniformResult:
        payload = action.to_payload()
        missing = [name for name in MOSAIC_REQUIRED_PROPERTIES if payload.get(name) is None]
        if missing:
            message = (
                f"Missing properties for photo mosaic action(s): {','.join(missing)}. Discarding..."
            )
            logger.error(message)
            return self._discard(action, message)

        image_urls = payload.get("imageUrls")
        if action.type == ActionType.MOSAIC_OPT_IN.value and image_urls is not None and not image_urls:
            message = "Missing required non-empty imageUrls parameter for photo mosaic opt in"
            logger.error(message)
            return self._discard(action, message)

        routing_key = RoutingKey.join(MOSAIC_V2_PREFIX, action.type, payload["id"])
        await publisher.publish(
            str(routing_key), action.without("type", "id"), priority=PIPELINE_PRIORITY
        )
        return UniformResult.completed(status=200)
