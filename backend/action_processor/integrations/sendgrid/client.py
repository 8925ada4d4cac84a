"""
SendGrid email client.

Sends plain-text mail through the v3 mail/send endpoint. Recipient fields
are comma-separated lists; media URLs are appended to the text body.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from action_processor.exceptions import SendGridError
from action_processor.integrations.http.client import parse_response_body

logger = logging.getLogger(__name__)


def _emails(recipients: str) -> List[Dict[str, str]]:
    return [{"email": r.strip()} for r in recipients.split(",") if r.strip()]


def _content(text: Optional[str], media: Optional[List[str]]) -> List[Dict[str, str]]:
    text = text or ""
    if media:
        text = f"{text}\n\nmedia:\n\n" + "\n".join(media)
    return [{"type": "text/plain", "value": text}]


def build_mail_payload(
    from_email: Optional[str],
    subject: Optional[str],
    text: Optional[str],
    to: Optional[str] = None,
    cc: Optional[str] = None,
    bcc: Optional[str] = None,
    media: Optional[List[str]] = None,
) -> Dict[str, Any]:
    """SendGrid mail/send request body."""
    personalization: Dict[str, Any] = {"subject": subject}
    if to:
        personalization["to"] = _emails(to)
    if cc:
        personalization["cc"] = _emails(cc)
    if bcc:
        personalization["bcc"] = _emails(bcc)

    return {
        "personalizations": [personalization],
        "from": {"email": from_email},
        "content": _content(text, media),
    }


class SendGridClient:
    """Async SendGrid client."""

    def __init__(
        self,
        api_key: Optional[str],
        from_email: Optional[str],
        base_url: str = "https://api.sendgrid.com/v3",
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.from_email = from_email
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(30.0))

        if not self.api_key:
            logger.warning("SendGrid API key not configured")

    async def close(self) -> None:
        await self._client.aclose()

    async def send(self, payload: Dict[str, Any]) -> int:
        """
        Send one email.

        Returns:
            HTTP status returned by SendGrid (202 on success)

        Raises:
            SendGridError: When SendGrid rejects the request
        """
        response = await self._client.post(
            f"{self.base_url}/mail/send",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            json=payload,
        )

        if response.status_code >= 400:
            body = parse_response_body(response)
            message = f"SendGrid error: {response.status_code}"
            if isinstance(body, dict) and body.get("errors"):
                first = body["errors"][0]
                if isinstance(first, dict) and first.get("message"):
                    message = f"SendGrid error: {first['message']}"
            logger.error(
                "SendGrid API error",
                extra={"status_code": response.status_code, "response": str(body)[:500]},
            )
            raise SendGridError(message, status_code=response.status_code, body=body)

        logger.info("Email sent successfully", extra={"status_code": response.status_code})
        return response.status_code
