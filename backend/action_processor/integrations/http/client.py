"""
Outbound call executor.

Makes exactly one HTTP attempt and classifies the outcome into a
UniformResult:

- 2xx/3xx: COMPLETED (an empty body is reported as status 204)
- timeout: RETRY with the action's budget, or the default budget when unset
- status in the retry set: RETRY, same budget rule
- any other failure with a positive budget: RETRY for transport errors,
  COMPLETED(status >= 400) for HTTP errors
- any failure with no budget (or an explicit 0): OutboundCallError

Retry statuses resolve from the request, then CALL_ENDPOINT_RETRY_STATUSES,
then 408/503/504.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

import httpx

from action_processor.actions.models import Action
from action_processor.actions.results import UniformResult
from action_processor.config.settings import ProcessorSettings, parse_status_list
from action_processor.exceptions import InputValidationError, OutboundCallError

logger = logging.getLogger(__name__)


def parse_retry_budget(value: Any) -> Optional[int]:
    """
    Parse a retryRemaining value. Numeric strings are accepted.

    Raises:
        InputValidationError: If the value is not a number
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise InputValidationError("'retryRemaining' must be a number")
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        raise InputValidationError("'retryRemaining' must be a number")


def parse_response_body(response: httpx.Response) -> Any:
    """JSON body when it parses, text otherwise, None when empty."""
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


def _error_message(body: Any, status: Any) -> str:
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if body.get("message"):
            return str(body["message"])
        return json.dumps(body)
    if body:
        return str(body)
    return f"Request failed with status {status}"


def transport_code(error: httpx.RequestError) -> str:
    if isinstance(error, httpx.ConnectTimeout):
        return "ETIMEDOUT"
    if isinstance(error, httpx.TimeoutException):
        return "ESOCKETTIMEDOUT"
    if isinstance(error, httpx.ConnectError):
        return "ECONNREFUSED"
    if isinstance(error, (httpx.RemoteProtocolError, httpx.ReadError, httpx.WriteError)):
        return "ECONNRESET"
    return error.__class__.__name__


@dataclass(frozen=True)
class OutboundRequest:
    """A validated outbound HTTP call."""

    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: Any = None
    query: Optional[Dict[str, Any]] = None
    form: Optional[Dict[str, Any]] = None
    auth: Optional[Dict[str, Any]] = None
    timeout_ms: Optional[int] = None
    # None means the configured defaults; an empty tuple retries nothing
    retry_statuses: Optional[Tuple[int, ...]] = None
    retry_remaining: Optional[int] = None

    @classmethod
    def build(
        cls,
        method: Optional[str],
        url: Optional[str],
        headers: Optional[Dict[str, str]] = None,
        body: Any = None,
        query: Optional[Dict[str, Any]] = None,
        form: Optional[Dict[str, Any]] = None,
        auth: Optional[Dict[str, Any]] = None,
        timeout: Any = None,
        retry_statuses: Any = None,
        retry_remaining: Any = None,
    ) -> "OutboundRequest":
        """
        Validate raw call parameters.

        Raises:
            InputValidationError: On a missing url or method, a non-numeric
                retry budget or a string body that is not JSON
        """
        if not url:
            raise InputValidationError("because required field 'url' is missing")
        if not method:
            raise InputValidationError("because required field 'method' is missing")

        budget = parse_retry_budget(retry_remaining)

        headers = dict(headers or {})
        if body is not None and body != "":
            if isinstance(body, str):
                try:
                    body = json.loads(body)
                except ValueError:
                    raise InputValidationError(
                        "because of badly formatted JSON in the request body"
                    )
            headers.setdefault("Content-Type", "application/json")
        else:
            body = None

        if retry_statuses is None or retry_statuses == "":
            statuses = None
        elif isinstance(retry_statuses, (list, tuple)):
            statuses = tuple(int(s) for s in retry_statuses if str(s).isdigit() and int(s))
        else:
            statuses = parse_status_list(retry_statuses)

        try:
            timeout_ms = int(float(timeout)) if timeout else None
        except (TypeError, ValueError):
            timeout_ms = None

        return cls(
            method=str(method).upper(),
            url=str(url),
            headers=headers,
            body=body,
            query=query or None,
            form=form or None,
            auth=auth or None,
            timeout_ms=timeout_ms,
            retry_statuses=statuses,
            retry_remaining=budget,
        )

    @classmethod
    def from_action(cls, action: Action, **overrides) -> "OutboundRequest":
        """Build a request from the HTTP fields carried on an action."""
        fields = dict(
            method=action.get("method"),
            url=action.get("url"),
            headers=action.get("headers"),
            body=action.get("body"),
            query=action.get("query"),
            form=action.get("form"),
            auth=action.get("auth"),
            timeout=action.get("timeout"),
            retry_statuses=action.get("retryStatuses"),
            retry_remaining=action.retry_remaining,
        )
        fields.update(overrides)
        return cls.build(**fields)


class OutboundCallExecutor:
    """
    Executes one outbound HTTP call and classifies the result.

    The underlying httpx.AsyncClient is shared for the worker's lifetime.
    """

    def __init__(
        self,
        settings: ProcessorSettings,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings
        self._client = client or httpx.AsyncClient(follow_redirects=True)

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> "OutboundCallExecutor":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _budget_or_default(self, budget: Optional[int]) -> int:
        return self.settings.default_retries if budget is None else budget

    def _auth(self, auth: Optional[Dict[str, Any]]) -> Optional[httpx.Auth]:
        if not auth:
            return None
        username = auth.get("username", auth.get("user"))
        password = auth.get("password", auth.get("pass"))
        if username is not None:
            return httpx.BasicAuth(str(username), str(password or ""))
        return None

    def _request_headers(self, request: OutboundRequest) -> Dict[str, str]:
        headers = {str(k): str(v) for k, v in request.headers.items()}
        if request.auth and request.auth.get("bearer"):
            headers["Authorization"] = f"Bearer {request.auth['bearer']}"
        return headers

    async def execute(
        self, request: OutboundRequest, context: Optional[Dict[str, Any]] = None
    ) -> UniformResult:
        """
        Perform the call.

        Args:
            request: Validated request
            context: Extra fields for log records (user id, widget id)

        Returns:
            COMPLETED or RETRY result

        Raises:
            OutboundCallError: When the call failed and no retry budget remains
        """
        context = context or {}
        budget = request.retry_remaining
        retry_statuses = (
            self.settings.retry_statuses
            if request.retry_statuses is None
            else request.retry_statuses
        )
        timeout_ms = request.timeout_ms or self.settings.call_endpoint_timeout_ms

        try:
            response = await self._client.request(
                method=request.method,
                url=request.url,
                headers=self._request_headers(request),
                json=request.body if request.form is None else None,
                data=request.form,
                params=request.query,
                auth=self._auth(request.auth),
                timeout=httpx.Timeout(timeout_ms / 1000.0),
            )
        except httpx.TimeoutException as e:
            code = transport_code(e)
            message = str(e) or code
            budget = self._budget_or_default(budget)
            logger.warning(
                "A timeout occurred processing a request",
                extra={
                    "method": request.method,
                    "url": request.url,
                    "code": code,
                    "timeout_ms": timeout_ms,
                    "retry_remaining": budget,
                    **context,
                },
            )
            if budget <= 0:
                raise OutboundCallError(message, code=code)
            return UniformResult.retry(status=code, body=message, retry_remaining=budget)
        except httpx.RequestError as e:
            code = transport_code(e)
            message = str(e) or code
            if not budget or budget <= 0:
                raise OutboundCallError(message, code=code)
            logger.warning(
                "Transport error processing a request",
                extra={"method": request.method, "url": request.url, "code": code, **context},
            )
            return UniformResult.retry(status=code, body=message, retry_remaining=budget)

        status = response.status_code
        body = parse_response_body(response)

        if status < 400:
            if body is None:
                status = 204
            return UniformResult.completed(status=status, body=body)

        if status in retry_statuses:
            budget = self._budget_or_default(budget)
            if budget > 0:
                return UniformResult.retry(status=status, body=body, retry_remaining=budget)

        if not budget or budget <= 0:
            raise OutboundCallError(
                _error_message(body, status),
                status_code=status,
                response_body=body,
                headers=dict(response.headers),
            )

        logger.info(
            "Request completed with error status",
            extra={"method": request.method, "url": request.url, "status": status, **context},
        )
        return UniformResult.completed(status=status, body=body)
