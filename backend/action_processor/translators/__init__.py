"""
Platform error translators.

Each translator takes a raised error or an error-shaped result and
returns a UniformResult, or re-raises when no rule applies.
"""

from action_processor.translators.lookup import translate_lookup
from action_processor.translators.media import translate_media_error
from action_processor.translators.meta import (
    translate_facebook_error,
    translate_instagram_result,
    translate_whatsapp_result,
)
from action_processor.translators.twitter import translate_twitter_error

__all__ = [
    "translate_facebook_error",
    "translate_instagram_result",
    "translate_lookup",
    "translate_media_error",
    "translate_twitter_error",
    "translate_whatsapp_result",
]
