"""
Tests for the Twitter, media, SendGrid and lookup clients.

All HTTP traffic goes through httpx.MockTransport.
"""

import base64
import hashlib
import hmac
import json
from urllib.parse import quote

import httpx
import pytest

from action_processor.exceptions import (
    InputValidationError,
    MediaServiceError,
    SendGridError,
    TwitterApiError,
)
from action_processor.integrations.lookup.client import LookupClient
from action_processor.integrations.media.client import MediaClient, is_gcs_media_id
from action_processor.integrations.sendgrid.client import SendGridClient
from action_processor.integrations.twitter.client import (
    TwitterClient,
    TwitterCredentials,
    oauth1_header,
)

GCS_ID = "118f0061-c489-11e7-8330-0242ac190002"

CREDENTIALS = TwitterCredentials(
    consumer_key="ck", consumer_secret="cs", access_token="at", access_secret="as"
)


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestTwitterCredentials:
    """Tests for building credentials from an action."""

    def test_from_action_tokens(self):
        creds = TwitterCredentials.from_action_tokens("ck", "cs", {"token": "t", "secret": "s"})

        assert creds.access_token == "t"
        assert creds.access_secret == "s"

    @pytest.mark.parametrize("tokens", [None, {}, {"token": "t"}, "t:s"])
    def test_missing_tokens(self, tokens):
        with pytest.raises(InputValidationError, match="twitterAccessTokens"):
            TwitterCredentials.from_action_tokens("ck", "cs", tokens)

    def test_oauth_header_is_deterministic(self):
        first = oauth1_header("POST", "https://api.twitter.test/2/tweets", CREDENTIALS, nonce="n", timestamp=1)
        second = oauth1_header("POST", "https://api.twitter.test/2/tweets", CREDENTIALS, nonce="n", timestamp=1)

        assert first == second
        assert first.startswith("OAuth ")
        assert 'oauth_token="at"' in first
        assert "oauth_signature=" in first

    def test_oauth_signature_matches_published_vector(self):
        credentials = TwitterCredentials(
            consumer_key="xvz1evFS4wEEPTGEFPHBog",
            consumer_secret="kAcSOqF21Fu85e7zjz7ZN2U4ZRhfV3WpwPAoE3Z7kBw",
            access_token="370773112-GmHxMAgYyLbNEtIKZeRNFsMKPR9EyMZeS9weJAEb",
            access_secret="LswwdoUaIvS8ltyTt5jkRh4J50vUPVVHtR2YPi5kE",
        )

        header = oauth1_header(
            "POST",
            "https://api.twitter.com/1.1/statuses/update.json",
            credentials,
            params={
                "include_entities": "true",
                "status": "Hello Ladies + Gentlemen, a signed OAuth request!",
            },
            nonce="kYjzVBB8Y0ZFabxSWbWovY3uYSQ2pTgmZeNu2VS4cg",
            timestamp=1318622958,
        )

        assert 'oauth_signature="hCtSmYh%2BiHYCEqBWrE7C7hYmtUk%3D"' in header

    def test_parameter_string_is_encoded_once(self):
        url = "https://api.twitter.test/2/dm"
        header = oauth1_header(
            "POST", url, CREDENTIALS, params={"recipient_id": "a b"}, nonce="n", timestamp=1
        )

        parameter_string = (
            "oauth_consumer_key=ck&oauth_nonce=n&oauth_signature_method=HMAC-SHA1"
            "&oauth_timestamp=1&oauth_token=at&oauth_version=1.0&recipient_id=a%20b"
        )
        base_string = "&".join(
            ["POST", quote(url, safe="~"), quote(parameter_string, safe="~")]
        )
        digest = hmac.new(b"cs&as", base_string.encode("utf-8"), hashlib.sha1).digest()
        expected = quote(base64.b64encode(digest).decode("utf-8"), safe="~")

        assert f'oauth_signature="{expected}"' in header


class TestTwitterClient:
    """Tests for signed Twitter requests."""

    @pytest.mark.asyncio
    async def test_post_returns_body(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={"data": {"id": "1"}})

        client = TwitterClient("https://api.twitter.test/2", client=_client(handler))
        body = await client.post("tweets", CREDENTIALS, {"text": "hi"})

        assert body == {"data": {"id": "1"}}
        assert seen["url"] == "https://api.twitter.test/2/tweets"
        assert seen["auth"].startswith("OAuth ")
        assert seen["body"] == {"text": "hi"}

    @pytest.mark.asyncio
    async def test_base_url_override(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            return httpx.Response(204)

        client = TwitterClient("https://api.twitter.test/2", client=_client(handler))
        await client.post("direct_messages/indicate_typing.json", CREDENTIALS, base_url="https://api.twitter.test/1.1")

        assert seen["url"] == "https://api.twitter.test/1.1/direct_messages/indicate_typing.json"

    @pytest.mark.asyncio
    async def test_error_raises_with_code(self):
        def handler(request):
            return httpx.Response(
                403,
                json={"errors": [{"code": 187, "message": "Status is a duplicate."}]},
                headers={"x-rate-limit-reset": "1700000100"},
            )

        client = TwitterClient("https://api.twitter.test/2", client=_client(handler))

        with pytest.raises(TwitterApiError) as exc_info:
            await client.delete("tweets/1", CREDENTIALS)

        error = exc_info.value
        assert error.status_code == 403
        assert error.code == 187
        assert error.first_error_code == 187
        assert error.message == "Status is a duplicate."
        assert error.headers["x-rate-limit-reset"] == "1700000100"

    @pytest.mark.asyncio
    async def test_error_without_body(self):
        def handler(request):
            return httpx.Response(503)

        client = TwitterClient("https://api.twitter.test/2", client=_client(handler))

        with pytest.raises(TwitterApiError, match="Twitter API error: 503"):
            await client.put("tweets/1/hidden", CREDENTIALS, {"hidden": True})


class TestMediaClient:
    """Tests for Twitter media id resolution."""

    def test_is_gcs_media_id(self):
        assert is_gcs_media_id(GCS_ID)
        assert not is_gcs_media_id("1234567890")
        assert not is_gcs_media_id(None)

    @pytest.mark.asyncio
    async def test_twitter_ids_pass_through(self):
        def handler(request):
            raise AssertionError("no request expected")

        client = MediaClient("https://media.test", client=_client(handler))

        assert await client.get_twitter_media_id("1234567890", "42", "tweet") == "1234567890"

    @pytest.mark.asyncio
    async def test_cached_id(self):
        def handler(request):
            assert request.url.path == f"/twitter/{GCS_ID}"
            assert request.url.params["destination"] == "dm"
            return httpx.Response(200, json={"id": "tw-1"})

        client = MediaClient("https://media.test", client=_client(handler))

        assert await client.get_twitter_media_id(GCS_ID, "42", "dm") == "tw-1"

    @pytest.mark.asyncio
    async def test_upload_when_not_cached(self):
        paths = []

        def handler(request):
            paths.append(request.url.path)
            if "upload" in request.url.path:
                return httpx.Response(200, json={"id": "tw-2"})
            return httpx.Response(200, json={})

        client = MediaClient("https://media.test", client=_client(handler))

        assert await client.get_twitter_media_id(GCS_ID, "42", "tweet") == "tw-2"
        assert paths == [f"/twitter/{GCS_ID}", f"/twitter/upload/42/{GCS_ID}"]

    @pytest.mark.asyncio
    async def test_error_status(self):
        def handler(request):
            return httpx.Response(423, json={"message": "processing"})

        client = MediaClient("https://media.test", client=_client(handler))

        with pytest.raises(MediaServiceError) as exc_info:
            await client.get_twitter_media_id(GCS_ID, "42", "tweet")
        assert exc_info.value.status_code == 423

    @pytest.mark.asyncio
    async def test_invalid_destination(self):
        client = MediaClient("https://media.test", client=_client(lambda r: httpx.Response(200)))

        with pytest.raises(InputValidationError, match="destination"):
            await client.get_twitter_media_id(GCS_ID, "42", "story")

    @pytest.mark.asyncio
    async def test_many_ids_preserve_order(self):
        client = MediaClient("https://media.test", client=_client(lambda r: httpx.Response(200)))

        assert await client.get_twitter_media_ids(["1", "2"], "42", "tweet") == ["1", "2"]

        with pytest.raises(InputValidationError):
            await client.get_twitter_media_ids("1", "42", "tweet")


class TestSendGridClient:
    """Tests for sending email."""

    @pytest.mark.asyncio
    async def test_send(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            return httpx.Response(202)

        client = SendGridClient("SG.test", "noreply@example.com", client=_client(handler))

        assert await client.send({"personalizations": []}) == 202
        assert seen["url"] == "https://api.sendgrid.com/v3/mail/send"
        assert seen["auth"] == "Bearer SG.test"

    @pytest.mark.asyncio
    async def test_rejected(self):
        def handler(request):
            return httpx.Response(400, json={"errors": [{"message": "bad from address"}]})

        client = SendGridClient("SG.test", "noreply@example.com", client=_client(handler))

        with pytest.raises(SendGridError, match="bad from address") as exc_info:
            await client.send({})
        assert exc_info.value.status_code == 400


class TestLookupClient:
    """Tests for customer lookup calls."""

    @pytest.mark.asyncio
    async def test_fetch(self):
        seen = {}

        def handler(request):
            seen["params"] = dict(request.url.params)
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json={"code": "ABC"})

        client = LookupClient(client=_client(handler))
        response = await client.fetch("https://customer.test/api", "code", username="u", password="p")

        assert response.status == 200
        assert response.body == {"code": "ABC"}
        assert seen["params"] == {"identifier": "code"}
        assert seen["auth"].startswith("Basic ")

    @pytest.mark.asyncio
    async def test_transport_error_reported(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = LookupClient(client=_client(handler))
        response = await client.fetch("https://customer.test/api", "code")

        assert response.status is None
        assert response.error == "refused"
