"""
Twitter API client.

This client handles:
- OAuth 1.0a (HMAC-SHA1) user-context request signing
- JSON POST / PUT / DELETE calls relative to TWITTER_API_URL
- Converting non-2xx responses into TwitterApiError

Timeouts and transport errors raised by httpx propagate unchanged; the
Twitter translator decides whether they are retried.

SECURITY:
- Access tokens and secrets are never logged
- The Authorization header is redacted by SecretRedactingFilter
"""

import base64
import hashlib
import hmac
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional
from urllib.parse import quote

import httpx

from action_processor.exceptions import InputValidationError, TwitterApiError
from action_processor.integrations.http.client import parse_response_body

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


def _percent_encode(value: Any) -> str:
    return quote(str(value), safe="~")


@dataclass(frozen=True)
class TwitterCredentials:
    """
    App and user credentials for one signed request.

    SECURITY: never log instances of this class.
    """

    consumer_key: str
    consumer_secret: str
    access_token: str
    access_secret: str

    @classmethod
    def from_action_tokens(
        cls,
        consumer_key: Optional[str],
        consumer_secret: Optional[str],
        tokens: Optional[Mapping[str, Any]],
    ) -> "TwitterCredentials":
        """
        Build credentials from an action's `twitterAccessTokens`.

        Raises:
            InputValidationError: If the action carries no token/secret pair
        """
        if not isinstance(tokens, Mapping) or not tokens.get("token") or not tokens.get("secret"):
            raise InputValidationError("Action is missing 'twitterAccessTokens'")
        return cls(
            consumer_key=consumer_key or "",
            consumer_secret=consumer_secret or "",
            access_token=str(tokens["token"]),
            access_secret=str(tokens["secret"]),
        )


def oauth1_header(
    method: str,
    url: str,
    credentials: TwitterCredentials,
    params: Optional[Mapping[str, Any]] = None,
    nonce: Optional[str] = None,
    timestamp: Optional[int] = None,
) -> str:
    """
    Build an OAuth 1.0a Authorization header.

    JSON bodies are not part of the signature base string; only query
    parameters and the oauth_* fields are signed.
    """
    oauth_params = {
        "oauth_consumer_key": credentials.consumer_key,
        "oauth_nonce": nonce or secrets.token_hex(16),
        "oauth_signature_method": "HMAC-SHA1",
        "oauth_timestamp": str(timestamp if timestamp is not None else int(time.time())),
        "oauth_token": credentials.access_token,
        "oauth_version": "1.0",
    }

    signed = {**{str(k): str(v) for k, v in (params or {}).items()}, **oauth_params}
    # Pairs are encoded once, then sorted by encoded name and value
    parameter_string = "&".join(
        f"{k}={v}"
        for k, v in sorted((_percent_encode(k), _percent_encode(v)) for k, v in signed.items())
    )
    base_string = "&".join(
        [method.upper(), _percent_encode(url), _percent_encode(parameter_string)]
    )
    signing_key = (
        f"{_percent_encode(credentials.consumer_secret)}&"
        f"{_percent_encode(credentials.access_secret)}"
    )
    digest = hmac.new(
        signing_key.encode("utf-8"), base_string.encode("utf-8"), hashlib.sha1
    ).digest()
    oauth_params["oauth_signature"] = base64.b64encode(digest).decode("utf-8")

    return "OAuth " + ", ".join(
        f'{_percent_encode(k)}="{_percent_encode(v)}"' for k, v in sorted(oauth_params.items())
    )


class TwitterClient:
    """
    Async client for the Twitter API.

    One client is shared by all Twitter handlers; credentials are passed
    per call because every action runs as a different brand account.
    """

    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> "TwitterClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def url_for(self, endpoint: str, base_url: Optional[str] = None) -> str:
        if endpoint.startswith("http://") or endpoint.startswith("https://"):
            return endpoint
        return f"{(base_url or self.base_url).rstrip('/')}/{endpoint.lstrip('/')}"

    async def _request(
        self,
        method: str,
        endpoint: str,
        credentials: TwitterCredentials,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        base_url: Optional[str] = None,
    ) -> Any:
        """
        Make a signed request.

        Returns:
            Parsed response body (None when empty)

        Raises:
            TwitterApiError: On a non-2xx response
            httpx.TimeoutException, httpx.RequestError: On transport failure
        """
        url = self.url_for(endpoint, base_url)
        headers = {
            "Authorization": oauth1_header(method, url, credentials, params),
        }

        response = await self._client.request(
            method=method, url=url, json=json, params=params, headers=headers
        )
        body = parse_response_body(response)

        if response.status_code >= 400:
            error = TwitterApiError(
                _describe_error(body, response.status_code),
                status_code=response.status_code,
                body=body,
                headers=dict(response.headers),
            )
            error.code = error.first_error_code
            logger.info(
                "Twitter API returned an error",
                extra={
                    "method": method,
                    "endpoint": endpoint,
                    "status_code": response.status_code,
                    "error_code": error.code,
                },
            )
            raise error

        return body

    async def post(self, endpoint: str, credentials: TwitterCredentials, body=None, base_url=None, params=None) -> Any:
        return await self._request("POST", endpoint, credentials, json=body, params=params, base_url=base_url)

    async def put(self, endpoint: str, credentials: TwitterCredentials, body=None) -> Any:
        return await self._request("PUT", endpoint, credentials, json=body)

    async def delete(self, endpoint: str, credentials: TwitterCredentials) -> Any:
        return await self._request("DELETE", endpoint, credentials)


def _describe_error(body: Any, status: int) -> str:
    if isinstance(body, dict):
        if body.get("detail"):
            return str(body["detail"])
        errors = body.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict):
            return str(errors[0].get("message") or errors[0].get("detail") or errors[0])
        if body.get("title"):
            return str(body["title"])
    return f"Twitter API error: {status}"
