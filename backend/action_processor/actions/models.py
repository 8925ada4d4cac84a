"""
Action model.

An action is one unit of work describing a single side-effecting call
against an external platform. Common fields are typed; every other key of
the wire payload is preserved verbatim as an extra so handlers can read
their variant-specific fields and republished actions round-trip intact.

Actions are immutable. Changes produce a new instance via with_payload().
"""

from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ActionType(str, Enum):
    """Every action type the processor can execute."""

    SEND_TWEET = "SEND_TWEET"
    SEND_DM = "SEND_DM"
    SEND_REPLY = "SEND_REPLY"
    SEND_EMAIL = "SEND_EMAIL"
    CALL_ENDPOINT = "CALL_ENDPOINT"
    DATASET_INSERT = "DATASET_INSERT"
    DATASET_UPDATE = "DATASET_UPDATE"
    SEND_DARK_TWEET = "SEND_DARK_TWEET"
    SEND_DARK_REPLY = "SEND_DARK_REPLY"
    SPEED_THREAD_START = "SPEED_THREAD_START"
    SPEED_THREAD_STOP = "SPEED_THREAD_STOP"
    ADD_TIMED_THREAD_ACTIVITY = "ADD_TIMED_THREAD_ACTIVITY"
    SEND_BLAST = "SEND_BLAST"
    SEND_BLAST_BATCH = "SEND_BLAST_BATCH"
    OPT_IN = "OPT_IN"
    OPT_OUT = "OPT_OUT"
    SEQUENCE = "SEQUENCE"
    INDICATE_TYPING = "INDICATE_TYPING"
    SEND_FEEDBACK_REQUEST = "SEND_FEEDBACK_REQUEST"
    OVERLAY_IMAGE = "OVERLAY_IMAGE"
    OVERLAY_GIF = "OVERLAY_GIF"
    MOSAIC_OPT_IN = "MOSAIC_OPT_IN"
    MOSAIC_OPT_OUT = "MOSAIC_OPT_OUT"
    DELETE_TWEET = "DELETE_TWEET"
    DASHBOT_TRACK = "DASHBOT_TRACK"
    CHATBASE_TRACK = "CHATBASE_TRACK"
    GOOGLE_ANALYTICS_TRACK_EVENT = "GOOGLE_ANALYTICS_TRACK_EVENT"
    GOOGLE_SHEET_APPEND = "GOOGLE_SHEET_APPEND"
    SEND_WHATSAPP_MESSAGE = "SEND_WHATSAPP_MESSAGE"
    SEND_INSTAGRAM_MESSAGE = "SEND_INSTAGRAM_MESSAGE"
    SEND_INSTAGRAM_COMMENT_REPLY = "SEND_INSTAGRAM_COMMENT_REPLY"
    LOOKUP_API = "LOOKUP_API"
    SEND_FACEBOOK_MESSAGE = "SEND_FACEBOOK_MESSAGE"
    SEND_FACEBOOK_COMMENT = "SEND_FACEBOOK_COMMENT"
    FB_OPT_IN_ONE_TIME = "FB_OPT_IN_ONE_TIME"
    FB_OPT_OUT_ONE_TIME = "FB_OPT_OUT_ONE_TIME"
    FB_OPT_IN_RECURRING = "FB_OPT_IN_RECURRING"
    FB_OPT_OUT_RECURRING = "FB_OPT_OUT_RECURRING"
    SEND_FACEBOOK_BLAST = "SEND_FACEBOOK_BLAST"
    UNLOCK_COUPONS = "UNLOCK_COUPONS"
    HIDE_TWITTER_REPLY = "HIDE_TWITTER_REPLY"
    TRACK_INTERACTION = "TRACK_INTERACTION"


class Platform(str, Enum):
    """Rate-limit partitions by upstream platform."""

    TWITTER = "TWITTER"
    FACEBOOK = "FACEBOOK"
    INSTAGRAM = "INSTAGRAM"
    WHATSAPP = "WHATSAPP"
    MEDIA = "MEDIA"


class Action(BaseModel):
    """
    A normalized action.

    `subject` is the platform-account identity the action runs as
    (wire name `userId`); it partitions rate limits and throttle keys.
    """

    model_config = ConfigDict(extra="allow", frozen=True)

    type: str
    subject: Optional[str] = Field(default=None, alias="userId")
    widget_id: Optional[str] = Field(default=None, alias="widgetId")
    delay: Optional[float] = None
    retry_remaining: Optional[Any] = Field(default=None, alias="retryRemaining")
    success: List[Dict[str, Any]] = Field(default_factory=list)
    failure: List[Dict[str, Any]] = Field(default_factory=list)
    expiration: Optional[float] = None

    @field_validator("subject", "widget_id", mode="before")
    @classmethod
    def _coerce_identifier(cls, value: Any) -> Any:
        # Platform ids arrive as numbers from some producers
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(int(value)) if float(value).is_integer() else str(value)
        return value

    @field_validator("success", "failure", mode="before")
    @classmethod
    def _default_follow_ons(cls, value: Any) -> Any:
        return [] if value is None else value

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Action":
        """Validate a wire payload (camelCase keys) into an Action."""
        return cls.model_validate(dict(payload))

    @property
    def action_type(self) -> Optional[ActionType]:
        """The ActionType for this action, or None when the type is unknown."""
        try:
            return ActionType(self.type)
        except ValueError:
            return None

    def to_payload(self) -> Dict[str, Any]:
        """Wire representation (camelCase keys, unset common fields omitted)."""
        return self.model_dump(by_alias=True, exclude_defaults=True, mode="json")

    def get(self, key: str, default: Any = None) -> Any:
        """Read a payload value by its wire name."""
        name = _WIRE_FIELDS.get(key)
        if name is not None:
            value = getattr(self, name)
        else:
            value = (self.model_extra or {}).get(key)
        return default if value is None else value

    def with_payload(self, updates: Mapping[str, Any]) -> "Action":
        """Return a copy with the given wire-name keys replaced."""
        payload = self.to_payload()
        payload.update(updates)
        return Action.from_payload(payload)

    def without(self, *keys: str) -> Dict[str, Any]:
        """Wire payload minus the given keys."""
        payload = self.to_payload()
        for key in keys:
            payload.pop(key, None)
        return payload


_WIRE_FIELDS = {field.alias or name: name for name, field in Action.model_fields.items()}
