"""
Lookup API client.

A LOOKUP_API action asks a customer's own API for the value of one
identifier field (for example a customer number):

    GET <url>?identifier=<id>     (optional basic auth, 5 s timeout)

The value is the `<id>` property of the JSON response. Values that could
carry spam or abuse are rejected:

- empty or missing
- longer than 30 characters
- three or more consecutive punctuation tokens
- containing a URL
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from action_processor.integrations.http.client import parse_response_body

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SECONDS = 5.0
CHARACTER_LIMIT = 30
CONSECUTIVE_PUNCTUATION_LIMIT = 3

_PUNCTUATION_TOKEN = re.compile(r"\.\.\.|[.,;:!?'\"()\[\]{}\-–—…‘’“”«»]")
_WHITESPACE = re.compile(r"\s+")
_URL = re.compile(
    r"(?i)(?:\b(?:https?|ftp)://\S+|\bwww\.\S+|"
    r"\b[a-z0-9-]+(?:\.[a-z0-9-]+)*\.[a-z]{2,}\b)"
)


def _as_string(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def _max_consecutive_punctuation(text: str) -> int:
    longest = current = 0
    position = 0
    compact = _WHITESPACE.sub("", text)
    while position < len(compact):
        match = _PUNCTUATION_TOKEN.match(compact, position)
        if match:
            current += 1
            longest = max(longest, current)
            position = match.end()
        else:
            current = 0
            position += 1
    return longest


def is_valid_lookup_value(value: Any) -> bool:
    """True when a looked-up value is safe to use in a reply."""
    if value is None:
        return False
    text = _as_string(value)
    if not text:
        return False
    if len(text) > CHARACTER_LIMIT:
        return False
    if _max_consecutive_punctuation(text) >= CONSECUTIVE_PUNCTUATION_LIMIT:
        return False
    if _URL.search(text):
        return False
    return True


@dataclass(frozen=True)
class LookupResponse:
    """Raw outcome of one lookup call. `status` is None on transport failure."""

    status: Optional[int]
    body: Any = None
    error: Optional[str] = None


class LookupClient:
    """Async client for customer lookup endpoints."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self._client = client or httpx.AsyncClient(follow_redirects=False)

    async def close(self) -> None:
        await self._client.aclose()

    async def fetch(
        self,
        url: str,
        identifier: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
    ) -> LookupResponse:
        """Perform the lookup. Transport errors are reported, never raised."""
        auth = httpx.BasicAuth(username, password or "") if username else None
        try:
            response = await self._client.get(
                url,
                params={"identifier": identifier},
                auth=auth,
                timeout=httpx.Timeout(REQUEST_TIMEOUT_SECONDS),
            )
        except httpx.RequestError as e:
            logger.debug("Lookup request failed", extra={"url": url, "error": str(e)})
            return LookupResponse(status=None, error=str(e) or e.__class__.__name__)

        return LookupResponse(status=response.status_code, body=parse_response_body(response))
