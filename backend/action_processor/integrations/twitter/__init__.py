"""Twitter API v2 client with OAuth 1.0a user-context signing."""

from action_processor.integrations.twitter.client import TwitterClient, TwitterCredentials

__all__ = ["TwitterClient", "TwitterCredentials"]
