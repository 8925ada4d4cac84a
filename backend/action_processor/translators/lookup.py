"""
Lookup API translator.

Every lookup outcome except a valid value becomes LOOKUP_FAILED, which
sends the action down its failure branch:

    2xx, valid value        COMPLETED(200, body)
    2xx, invalid value      LOOKUP_FAILED (warn)
    502 / 503 / 504         LOOKUP_FAILED, transient (warn)
    404, other 5xx          LOOKUP_FAILED, permanent expected (warn)
    3xx, other 4xx          LOOKUP_FAILED, permanent unexpected (error)
    no status               LOOKUP_FAILED (error)
"""

import json
import logging
from typing import Any

from action_processor.actions.results import UniformResult
from action_processor.integrations.lookup.client import LookupResponse, is_valid_lookup_value

logger = logging.getLogger(__name__)

TRANSIENT_STATUSES = (502, 503, 504)
NOT_FOUND = 404


def _parse(body: Any) -> Any:
    if isinstance(body, (str, bytes)):
        try:
            return json.loads(body)
        except ValueError:
            return None
    return body


def translate_lookup(url: str, identifier: str, response: LookupResponse) -> UniformResult:
    status = response.status
    log_extra = {"url": url, "id": identifier, "status": status, "error": response.error}

    if status is not None and 200 <= status <= 299:
        data = _parse(response.body)
        value = data.get(identifier) if isinstance(data, dict) else None
        if not is_valid_lookup_value(value):
            logger.warning(
                "API response returned an invalid field value for request",
                extra={**log_extra, "error": f"Invalid field value: {value}"},
            )
            return UniformResult.lookup_failed("Invalid field value")
        body = json.dumps(data) if isinstance(data, (dict, list)) else data
        return UniformResult.completed(status=200, body=body)

    if status in TRANSIENT_STATUSES:
        logger.warning(f"Transient error occured making lookup request to: {url}", extra=log_extra)
        return UniformResult.lookup_failed("Transient error")

    if status == NOT_FOUND or (status is not None and 500 <= status <= 599):
        logger.warning(
            f"Permanent Expected error occured making lookup request to: {url}", extra=log_extra
        )
        return UniformResult.lookup_failed("Permanent expected error")

    if status is not None and (300 <= status <= 399 or 400 <= status <= 499):
        logger.error(
            f"Permanent Unexpected error occured making lookup request to: {url}", extra=log_extra
        )
        return UniformResult.lookup_failed("Permanent unexpected error")

    logger.error(f"Error occured making lookup request to: {url}", extra=log_extra)
    return UniformResult.lookup_failed("Lookup error")
