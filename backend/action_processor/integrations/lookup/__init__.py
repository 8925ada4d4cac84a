"""Client for customer lookup APIs configured on LOOKUP_API actions."""

from action_processor.integrations.lookup.client import LookupClient, LookupResponse, is_valid_lookup_value

__all__ = ["LookupClient", "LookupResponse", "is_valid_lookup_value"]
