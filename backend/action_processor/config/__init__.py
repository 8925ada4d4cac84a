"""Runtime configuration for the action processor."""

from action_processor.config.settings import ProcessorSettings, get_settings
from action_processor.config.error_policy import ErrorPolicy, ErrorPolicyLoader, MessageRule

__all__ = [
    "ProcessorSettings",
    "get_settings",
    "ErrorPolicy",
    "ErrorPolicyLoader",
    "MessageRule",
]
