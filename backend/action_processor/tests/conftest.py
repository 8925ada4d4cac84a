"""
Test configuration and fixtures for the action processor.

Provides:
- db_engine / session_factory: SQLite in-memory database with all tables
- settings: ProcessorSettings pointing every service at test hosts
- clock: controllable time source for the rate-limit oracle
- store / oracle: real repository-backed collaborators
- broker: RecordingBroker
- handler_deps: HandlerDependencies with mocked platform clients
"""

import os
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from helpers.recording_broker import RecordingBroker

# Set test environment
os.environ.setdefault("ENV", "test")

from action_processor.actions.handlers import HandlerDependencies
from action_processor.config.settings import ProcessorSettings
from action_processor.integrations.http.client import OutboundCallExecutor
from action_processor.platform.secrets import SecretCipher
from action_processor.repositories.action_store import ActionStore
from action_processor.repositories.rate_limit_repo import RateLimitRepository
from action_processor.services.rate_limit_oracle import RateLimitOracle

TEST_ENCRYPTION_KEY = "test-encryption-key-32-chars-long!"
NOW = 1_700_000_000.0


class FakeClock:
    """Callable time source; advance() moves it forward in seconds."""

    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def db_engine():
    """SQLite in-memory engine shared across connections via StaticPool."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    from action_processor.db_base import Base
    from action_processor import models  # noqa: F401 - registers tables

    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def settings():
    return ProcessorSettings(
        database_url="sqlite:///:memory:",
        twitter_consumer_key="consumer-key",
        twitter_consumer_secret="consumer-secret",
        twitter_api_url="https://api.twitter.test/2",
        twitter_legacy_api_url="https://api.twitter.test/1.1",
        facebook_api_url="https://graph.facebook.test/v19.0",
        facebook_base_api_url="https://graph.facebook.test/",
        d360_api_url="https://waba.360dialog.test/v1/messages",
        media_url="https://media.test",
        kraken_url="https://kraken.test",
        subscriptions_url="https://subscriptions.test",
        facebook_subscription_url="https://fb-subscriptions.test",
        coupon_service_url="https://coupons.test",
        dashbot_api_version="10.1.1-rest",
        sendgrid_api_key="SG.test",
        sendgrid_email_from="noreply@example.com",
        encryption_key=TEST_ENCRYPTION_KEY,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(session_factory):
    return ActionStore(session_factory)


@pytest.fixture
def rate_limit_repo(session_factory):
    return RateLimitRepository(session_factory)


@pytest.fixture
def oracle(rate_limit_repo, settings, clock):
    return RateLimitOracle(rate_limit_repo, settings, clock=clock)


@pytest.fixture
def cipher():
    return SecretCipher(TEST_ENCRYPTION_KEY)


@pytest.fixture
def broker():
    return RecordingBroker()


@pytest.fixture
def executor():
    """Executor double; tests set `execute.return_value` / `side_effect`."""
    mock = MagicMock(spec=OutboundCallExecutor)
    mock.execute = AsyncMock()
    return mock


@pytest.fixture
def handler_deps(settings, oracle, executor, store, cipher):
    twitter = MagicMock()
    twitter.post = AsyncMock()
    twitter.put = AsyncMock()
    twitter.delete = AsyncMock()

    media = MagicMock()
    media.get_twitter_media_id = AsyncMock()
    media.get_twitter_media_ids = AsyncMock(return_value=[])

    sendgrid = MagicMock()
    sendgrid.from_email = settings.sendgrid_email_from
    sendgrid.send = AsyncMock(return_value=202)

    lookup = MagicMock()
    lookup.fetch = AsyncMock()

    return HandlerDependencies(
        settings=settings,
        oracle=oracle,
        executor=executor,
        store=store,
        twitter=twitter,
        media=media,
        sendgrid=sendgrid,
        lookup=lookup,
        cipher=cipher,
    )
