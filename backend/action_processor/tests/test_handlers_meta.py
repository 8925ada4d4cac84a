"""
Tests for the Facebook, Instagram and WhatsApp handlers.

The outbound call executor is mocked; page access tokens are stored
encrypted in SQLite and decrypted with the test cipher.
"""

import json

import pytest

from action_processor.actions.handlers.meta import MetaHandler, is_consent_message
from action_processor.actions.models import Action
from action_processor.actions.results import ResultKind, UniformResult
from action_processor.exceptions import InputValidationError, OutboundCallError
from action_processor.models import FacebookParticipant, MetaAccount

PAGE_TOKEN = "EAAtestpagetoken1234567890"

CONSENT_MESSAGE = {
    "recipient": {"id": "psid-1"},
    "message": {
        "attachment": {
            "type": "template",
            "payload": {"template_type": "notification_messages"},
        }
    },
}


@pytest.fixture
def handler(handler_deps):
    return MetaHandler(handler_deps)


@pytest.fixture
def meta_account(session_factory, cipher):
    with session_factory() as session:
        session.add(
            MetaAccount(
                id="page-1",
                instagram_business_id="ig-1",
                page_access_token=cipher.encrypt(PAGE_TOKEN),
            )
        )
        session.commit()


def _sent_request(executor):
    return executor.execute.call_args.args[0]


class TestConsentMessage:
    """Tests for notification opt-in detection."""

    def test_consent_template(self):
        assert is_consent_message(CONSENT_MESSAGE)

    def test_plain_message(self):
        assert not is_consent_message({"message": {"text": "hi"}})
        assert not is_consent_message(None)


@pytest.mark.usefixtures("meta_account")
class TestFacebook:
    """Tests for SEND_FACEBOOK_MESSAGE and SEND_FACEBOOK_COMMENT."""

    @pytest.mark.asyncio
    async def test_message_sent_with_decrypted_token(self, handler, executor, broker):
        executor.execute.return_value = UniformResult.completed(status=200, body={"message_id": "m1"})
        action = Action.from_payload(
            {"type": "SEND_FACEBOOK_MESSAGE", "userId": "page-1", "message": {"text": "hi"}}
        )

        result = await handler.handle(action, broker)

        assert result.kind is ResultKind.COMPLETED
        request = _sent_request(executor)
        assert request.url == "https://graph.facebook.test/v19.0/me/messages"
        assert request.query == {"access_token": PAGE_TOKEN}
        assert request.retry_remaining == 100

    @pytest.mark.asyncio
    async def test_existing_participant_consent_is_duplicate(
        self, handler, executor, session_factory, broker
    ):
        with session_factory() as session:
            session.add(FacebookParticipant(widget_id="w1", user_psid="psid-1"))
            session.commit()
        action = Action.from_payload(
            {
                "type": "SEND_FACEBOOK_MESSAGE",
                "userId": "page-1",
                "widgetId": "w1",
                "participantId": "psid-1",
                "message": CONSENT_MESSAGE,
            }
        )

        result = await handler.handle(action, broker)

        assert result.status == 409
        executor.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_user_unavailable_is_handled(self, handler, executor, broker):
        executor.execute.return_value = UniformResult.completed(
            status=400, body={"error": {"code": 551, "message": "This person isn't available"}}
        )
        action = Action.from_payload(
            {"type": "SEND_FACEBOOK_MESSAGE", "userId": "page-1", "message": {"text": "hi"}}
        )

        result = await handler.handle(action, broker)

        assert result.kind is ResultKind.HANDLED

    @pytest.mark.asyncio
    async def test_exhausted_rate_limit_is_delayed(self, handler, executor, oracle, broker):
        executor.execute.side_effect = OutboundCallError(
            "limited", status_code=400, response_body={"error": {"code": 32}}
        )
        action = Action.from_payload(
            {"type": "SEND_FACEBOOK_MESSAGE", "userId": "page-1", "message": {"text": "hi"}}
        )

        result = await handler.handle(action, broker)

        assert result.kind is ResultKind.DELAY
        throttled = oracle.check(action, "FACEBOOK", "POST", "messages")
        assert throttled is not None

    @pytest.mark.asyncio
    async def test_stopped_notifications_cached_with_participant_deletion(
        self, handler, executor, broker
    ):
        executor.execute.side_effect = [
            UniformResult.completed(
                status=400, body={"error": {"code": 10, "error_subcode": 1893015}}
            ),
            UniformResult.completed(status=200, body={}),
        ]
        message = {"recipient": {"notification_messages_token": "nt-1"}, "message": {"text": "hi"}}
        action = Action.from_payload(
            {
                "type": "SEND_FACEBOOK_MESSAGE",
                "userId": "page-1",
                "widgetId": "w1",
                "blastId": "b1",
                "participantId": "psid-1",
                "message": message,
            }
        )

        result = await handler.handle(action, broker)

        assert result.kind is ResultKind.HANDLED
        cache_request = executor.execute.call_args_list[1].args[0]
        assert cache_request.url == "https://fb-subscriptions.test/cache/blast/w1"
        assert cache_request.body["deleteParticipant"] is True
        assert cache_request.body["blastId"] == "b1"
        assert cache_request.body["participantId"] == "psid-1"
        assert cache_request.body["message"] == message

    @pytest.mark.asyncio
    async def test_plain_message_cached_without_page_token(self, handler, executor, broker):
        executor.execute.side_effect = [
            UniformResult.completed(status=200, body={"message_id": "m1"}),
            UniformResult.completed(status=200, body={}),
        ]
        action = Action.from_payload(
            {
                "type": "SEND_FACEBOOK_MESSAGE",
                "userId": "page-1",
                "widgetId": "w1",
                "message": {"text": "hi"},
            }
        )

        await handler.handle(action, broker)

        cache_request = executor.execute.call_args_list[1].args[0]
        assert cache_request.url == "https://fb-subscriptions.test/cache/request/w1"
        assert cache_request.body["facebookResponseCode"] == 200
        assert cache_request.body["facebookResponseBody"] == {"message_id": "m1"}
        assert PAGE_TOKEN not in json.dumps(cache_request.body)
        assert cache_request.query is None

    @pytest.mark.asyncio
    async def test_cache_failure_keeps_send_result(self, handler, executor, broker):
        executor.execute.side_effect = [
            UniformResult.completed(status=200, body={"message_id": "m1"}),
            OutboundCallError("subscriptions down", code="ECONNREFUSED"),
        ]
        action = Action.from_payload(
            {
                "type": "SEND_FACEBOOK_MESSAGE",
                "userId": "page-1",
                "widgetId": "w1",
                "message": {"text": "hi"},
            }
        )

        result = await handler.handle(action, broker)

        assert result.kind is ResultKind.COMPLETED
        assert executor.execute.await_count == 2

    @pytest.mark.asyncio
    async def test_missing_page_token(self, handler, broker):
        action = Action.from_payload(
            {"type": "SEND_FACEBOOK_MESSAGE", "userId": "page-unknown", "message": {"text": "hi"}}
        )

        with pytest.raises(InputValidationError, match="No page access token available"):
            await handler.handle(action, broker)

    @pytest.mark.asyncio
    async def test_comment(self, handler, executor, broker):
        executor.execute.return_value = UniformResult.completed(status=200, body={"id": "c2"})
        action = Action.from_payload(
            {
                "type": "SEND_FACEBOOK_COMMENT",
                "userId": "page-1",
                "objectId": "post-1",
                "message": {"message": "thanks"},
            }
        )

        await handler.handle(action, broker)

        assert _sent_request(executor).url == "https://graph.facebook.test/v19.0/post-1/comments"

    @pytest.mark.asyncio
    async def test_comment_requires_object_id(self, handler, broker):
        action = Action.from_payload({"type": "SEND_FACEBOOK_COMMENT", "userId": "page-1"})

        with pytest.raises(InputValidationError, match="objectId"):
            await handler.handle(action, broker)


@pytest.mark.usefixtures("meta_account")
class TestInstagram:
    """Tests for SEND_INSTAGRAM_MESSAGE and SEND_INSTAGRAM_COMMENT_REPLY."""

    @pytest.mark.asyncio
    async def test_message_uses_business_id_token(self, handler, executor, broker):
        executor.execute.return_value = UniformResult.completed(status=200, body={})
        action = Action.from_payload(
            {
                "type": "SEND_INSTAGRAM_MESSAGE",
                "userId": "ig-1",
                "message": {"recipient": {"id": "u"}, "message": {"text": "hi"}},
            }
        )

        result = await handler.handle(action, broker)

        assert result.kind is ResultKind.COMPLETED
        request = _sent_request(executor)
        assert request.url == "https://graph.facebook.test/v19.0/me/messages"
        assert request.query == {"access_token": PAGE_TOKEN}
        assert request.retry_remaining == 10

    @pytest.mark.asyncio
    async def test_quick_replies_use_older_api(self, handler, executor, cipher, broker):
        executor.execute.return_value = UniformResult.completed(status=200, body={})
        action = Action.from_payload(
            {
                "type": "SEND_INSTAGRAM_MESSAGE",
                "userId": "ig-2",
                "accessToken": cipher.encrypt("action-token"),
                "message": {"messaging_type": "RESPONSE", "message": {"text": "pick"}},
            }
        )

        await handler.handle(action, broker)

        request = _sent_request(executor)
        assert request.url == "https://graph.facebook.test/v8.0/me/messages"
        assert request.query == {"access_token": "action-token"}

    @pytest.mark.asyncio
    async def test_rate_limited(self, handler, executor, broker):
        executor.execute.return_value = UniformResult.completed(
            status=400, body={"error": {"code": 613}}
        )
        action = Action.from_payload(
            {"type": "SEND_INSTAGRAM_MESSAGE", "userId": "ig-1", "message": {"text": "hi"}}
        )

        result = await handler.handle(action, broker)

        assert result.kind is ResultKind.DELAY

    @pytest.mark.asyncio
    async def test_message_required(self, handler, broker):
        action = Action.from_payload({"type": "SEND_INSTAGRAM_MESSAGE", "userId": "ig-1"})

        with pytest.raises(InputValidationError, match="'message'"):
            await handler.handle(action, broker)

    @pytest.mark.asyncio
    async def test_comment_reply(self, handler, executor, broker):
        executor.execute.return_value = UniformResult.completed(status=200, body={"id": "r1"})
        action = Action.from_payload(
            {
                "type": "SEND_INSTAGRAM_COMMENT_REPLY",
                "userId": "ig-1",
                "message": {"recipient": {"comment_id": "c1"}, "message": {"text": "thanks"}},
            }
        )

        await handler.handle(action, broker)

        request = _sent_request(executor)
        assert request.url == "https://graph.facebook.test/v19.0/c1/replies"
        assert request.body == {"message": "thanks"}


class TestWhatsApp:
    """Tests for SEND_WHATSAPP_MESSAGE."""

    @pytest.mark.asyncio
    async def test_sends_with_decrypted_api_key(self, handler, executor, cipher, broker):
        executor.execute.return_value = UniformResult.completed(status=201, body={"messages": []})
        action = Action.from_payload(
            {
                "type": "SEND_WHATSAPP_MESSAGE",
                "userId": "wa-1",
                "apiKey": cipher.encrypt("d360-key"),
                "message": {"to": "15550001111", "text": {"body": "hi"}},
            }
        )

        result = await handler.handle(action, broker)

        assert result.status == 201
        request = _sent_request(executor)
        assert request.url == "https://waba.360dialog.test/v1/messages"
        assert request.headers["D360-Api-Key"] == "d360-key"
        assert request.retry_statuses == (429, 503)

    @pytest.mark.asyncio
    async def test_throttled_result_is_delayed(self, handler, executor, cipher, broker):
        executor.execute.return_value = UniformResult.retry(status=429, body=None, retry_remaining=100)
        action = Action.from_payload(
            {"type": "SEND_WHATSAPP_MESSAGE", "userId": "wa-1", "apiKey": cipher.encrypt("k")}
        )

        result = await handler.handle(action, broker)

        assert result.kind is ResultKind.DELAY
        assert result.delay_ms == 5000

    @pytest.mark.asyncio
    async def test_missing_api_key(self, handler, broker):
        action = Action.from_payload({"type": "SEND_WHATSAPP_MESSAGE", "userId": "wa-1"})

        with pytest.raises(InputValidationError, match="No WhatsApp API key available"):
            await handler.handle(action, broker)
