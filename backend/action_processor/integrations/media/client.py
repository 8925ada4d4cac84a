"""
Media service client.

Media attached to actions is referenced by the id it was stored under in
cloud storage. Before Twitter can use it the media service must hand out a
Twitter media id, uploading the file on first use:

    GET /twitter/<id>?destination=tweet|dm          -> {"id": ...} when cached
    GET /twitter/upload/<userId>/<id>?destination=   -> {"id": ...} after upload

Ids that are not storage ids are assumed to already be Twitter media ids
and pass through unchanged.
"""

import asyncio
import logging
import re
from typing import Any, List, Optional

import httpx

from action_processor.exceptions import InputValidationError, MediaServiceError
from action_processor.integrations.http.client import parse_response_body

logger = logging.getLogger(__name__)

GCS_MEDIA_ID_PATTERN = re.compile(
    r"^[a-z0-9_]{8}-[a-z0-9_]{4}-[a-z0-9_]{4}-[a-z0-9_]{4}-[a-z0-9_]{12}$"
)

DESTINATIONS = ("tweet", "dm")


def is_gcs_media_id(value: Any) -> bool:
    """True for storage ids such as '118f0061-c489-11e7-8330-0242ac190002'."""
    return isinstance(value, str) and bool(GCS_MEDIA_ID_PATTERN.match(value))


class MediaClient:
    """Async client for the internal media service."""

    def __init__(
        self,
        base_url: Optional[str],
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.base_url = (base_url or "").rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    async def close(self) -> None:
        await self._client.aclose()

    async def _get_id(self, path: str, destination: str) -> Optional[str]:
        response = await self._client.get(
            f"{self.base_url}/{path}", params={"destination": destination}
        )
        body = parse_response_body(response)
        if response.status_code >= 400:
            raise MediaServiceError(
                f"Media service responded with {response.status_code}",
                status_code=response.status_code,
                body=body,
                headers=dict(response.headers),
            )
        if isinstance(body, dict) and body.get("id"):
            return str(body["id"])
        return None

    async def get_twitter_media_id(
        self, media_id: str, user_id: str, destination: str
    ) -> Optional[str]:
        """
        Resolve one media id.

        Raises:
            InputValidationError: On invalid parameters
            MediaServiceError: When the media service rejects a request
            httpx.RequestError: On transport failure
        """
        if not isinstance(media_id, str):
            raise InputValidationError("Param 'gcsMediaId' should be a string")

        if not is_gcs_media_id(media_id):
            logger.debug(
                "Media id is not a storage id, assuming Twitter format",
                extra={"media_id": media_id},
            )
            return media_id

        if not isinstance(user_id, str):
            raise InputValidationError("Param 'userId' should be a string")
        if destination not in DESTINATIONS:
            raise InputValidationError("Param 'destination' should be either 'tweet' or 'dm'")

        twitter_id = await self._get_id(f"twitter/{media_id}", destination)
        if twitter_id:
            return twitter_id

        logger.debug(
            "No cached Twitter media id, requesting upload",
            extra={"media_id": media_id, "destination": destination},
        )
        twitter_id = await self._get_id(f"twitter/upload/{user_id}/{media_id}", destination)
        if not twitter_id:
            logger.debug("No Twitter media id available", extra={"media_id": media_id})
        return twitter_id

    async def get_twitter_media_ids(
        self, media_ids: List[str], user_id: str, destination: str
    ) -> List[Optional[str]]:
        """Resolve several media ids concurrently, preserving order."""
        if not isinstance(media_ids, list):
            raise InputValidationError("Param 'gcsMediaIds' should be an array")
        return list(
            await asyncio.gather(
                *(self.get_twitter_media_id(m, user_id, destination) for m in media_ids)
            )
        )
