"""
Datastore-backed engagement actions.

- DATASET_INSERT / DATASET_UPDATE write to caller-named dataset tables
- SPEED_THREAD_START / SPEED_THREAD_STOP time how long a participant
  takes to finish a speed thread
- ADD_TIMED_THREAD_ACTIVITY records replies to a timed thread
- TRACK_INTERACTION stores an analytics interaction

Speed thread and interaction failures are reported as UNSUCCESSFUL so
the action's failure branch runs; they are never requeued.
"""

import json
import logging
from typing import Mapping

from sqlalchemy.exc import SQLAlchemyError

from action_processor.actions.handlers.base import ActionHandler, HandlerMethod
from action_processor.actions.models import Action, ActionType
from action_processor.actions.results import UniformResult
from action_processor.exceptions import InputValidationError
from action_processor.integrations.http.client import parse_retry_budget
from action_processor.messaging.broker import Publisher
from action_processor.monitoring.metrics import get_processor_metrics
from action_processor.repositories.action_store import ActionStoreError

logger = logging.getLogger(__name__)

TIMED_THREAD_RETRIES = 3


class EngagementHandler(ActionHandler):
    """Datasets, speed threads, timed threads and interaction tracking."""

    action_types = (
        ActionType.DATASET_INSERT,
        ActionType.DATASET_UPDATE,
        ActionType.SPEED_THREAD_START,
        ActionType.SPEED_THREAD_STOP,
        ActionType.ADD_TIMED_THREAD_ACTIVITY,
        ActionType.TRACK_INTERACTION,
    )

    def routes(self) -> Mapping[ActionType, HandlerMethod]:
        return {
            ActionType.DATASET_INSERT: self.dataset_insert,
            ActionType.DATASET_UPDATE: self.dataset_update,
            ActionType.SPEED_THREAD_START: self.speed_thread_start,
            ActionType.SPEED_THREAD_STOP: self.speed_thread_stop,
            ActionType.ADD_TIMED_THREAD_ACTIVITY: self.add_timed_thread_activity,
            ActionType.TRACK_INTERACTION: self.track_interaction,
        }

    # ------------------------------------------------------------------
    # Datasets
    # ------------------------------------------------------------------

    async def dataset_insert(self, action: Action, publisher: Publisher) -> UniformResult:
        inserted = self.deps.store.dataset_insert(
            action.get("dataset"),
            action.get("data"),
            insert_if_not_exist=bool(action.get("insertIfNotExist", False)),
        )
        return UniformResult.completed(status=200, body={"inserted": inserted})

    async def dataset_update(self, action: Action, publisher: Publisher) -> UniformResult:
        updated = self.deps.store.dataset_update(
            action.get("dataset"),
            action.get("column"),
            action.get("value"),
            action.get("searchColumn"),
            action.get("searchKey"),
        )
        return UniformResult.completed(status=200, body={"affectedRows": updated})

    # ------------------------------------------------------------------
    # Speed thread
    # ------------------------------------------------------------------

    async def speed_thread_start(self, action: Action, publisher: Publisher) -> UniformResult:
        widget_id = action.widget_id
        user_id = action.subject
        try:
            participant = self.deps.store.get_speed_thread_participant(widget_id, user_id)
            if participant is not None:
                if participant.get("last_interaction_time"):
                    message = (
                        f"User ID {user_id} has already finished the speed thread "
                        f"for widget {widget_id}"
                    )
                else:
                    message = (
                        f"User ID {user_id} is already participating in speed thread "
                        f"widget {widget_id}"
                    )
                logger.warning(message)
                return UniformResult.unsuccessful(message)

            self.deps.store.start_speed_thread(
                widget_id=widget_id,
                user_id=user_id,
                user_handle=action.get("userHandle"),
                first_interaction_time=action.get("timestamp"),
                optin_id=action.get("optinId"),
                timeout=action.get("timeout"),
            )
        except (SQLAlchemyError, ActionStoreError, InputValidationError) as e:
            logger.error(
                "Error starting speed thread participant",
                extra={"widget_id": widget_id, "error": str(e)},
            )
            get_processor_metrics().record_failed(action.type)
            return UniformResult.unsuccessful(str(e))

        return UniformResult.completed(status=200)

    async def speed_thread_stop(self, action: Action, publisher: Publisher) -> UniformResult:
        widget_id = action.widget_id
        user_id = action.subject
        try:
            participant = self.deps.store.get_speed_thread_participant(widget_id, user_id)
            if participant is None:
                message = f"User ID {user_id} has not started speed thread for widget {widget_id}"
                logger.warning(message)
                return UniformResult.unsuccessful(message)

            if participant.get("last_interaction_time"):
                message = (
                    f"Failed to update speed thread participant: User ID {user_id} "
                    f"has already finished for widget {widget_id}"
                )
                logger.warning(message)
                return UniformResult.unsuccessful(message)

            elapsed = self.deps.store.stop_speed_thread(
                widget_id, user_id, action.get("timestamp")
            )
        except (SQLAlchemyError, ActionStoreError, InputValidationError) as e:
            message = "Failed to update speed thread participant with finish timestamp"
            logger.error(message, extra={"widget_id": widget_id, "error": str(e)})
            get_processor_metrics().record_failed(action.type)
            return UniformResult.unsuccessful(message)

        # Follow-ons read the body as a JSON string
        return UniformResult.completed(
            status=200, body=json.dumps({"timeElapsedInMs": elapsed})
        )

    # ------------------------------------------------------------------
    # Timed thread
    # ------------------------------------------------------------------

    async def add_timed_thread_activity(
        self, action: Action, publisher: Publisher
    ) -> UniformResult:
        widget_id = action.widget_id
        logger.debug(f"Handling action {action.type} for widget {widget_id}")

        try:
            recorded = self.deps.store.add_timed_thread_activity(
                widget_id=widget_id,
                user_id=action.subject,
                user_handle=action.get("userHandle"),
                tweet_id=action.get("tweetId"),
                timestamp=action.get("timestamp"),
            )
        except SQLAlchemyError as e:
            budget = parse_retry_budget(action.retry_remaining)
            budget = TIMED_THREAD_RETRIES if budget is None else budget
            logger.error(
                "Failed to add timed thread activity",
                extra={"widget_id": widget_id, "error": str(e), "retry_remaining": budget},
            )
            get_processor_metrics().record_failed(action.type)
            return UniformResult.retry(
                status=None, body="Failed to add timed thread activity", retry_remaining=budget
            )

        if not recorded:
            get_processor_metrics().record_duplicate(action.type)
        return UniformResult.completed(status=200)

    # ------------------------------------------------------------------
    # Interaction tracking
    # ------------------------------------------------------------------

    async def track_interaction(self, action: Action, publisher: Publisher) -> UniformResult:
        try:
            self.deps.store.track_interaction(
                widget_id=action.widget_id,
                tracking_id=action.get("trackingId"),
                tracking_description=action.get("trackingDescription"),
                interaction=action.get("interaction"),
                event_id=action.get("eventId"),
            )
        except (SQLAlchemyError, InputValidationError) as e:
            logger.error(
                "Error tracking interaction",
                extra={"widget_id": action.widget_id, "error": str(e)},
            )
            return UniformResult.unsuccessful(str(e))
        return UniformResult.completed(status=200)
