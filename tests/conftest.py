"""
Pytest configuration and fixtures for the bookproxy test suite.
"""
from typing import AsyncGenerator, Generator

import pytest
from aiohttp import ClientSession
from aioresponses import aioresponses

from bookproxy.internal.cache_store import CacheStore
from bookproxy.internal.env_settings import CacheSettings, RateLimitSettings
from bookproxy.internal.orchestrator import ProviderOrchestrator
from bookproxy.internal.quota import QuotaStore
from bookproxy.util.db import create_memory_engine, init_db
from tests.fakes import FakeClock, FakeProvider


# Database fixtures
@pytest.fixture(scope="function")
def db_engine():
    """Create an in-memory SQLite database for testing."""
    engine = create_memory_engine()
    init_db(engine)
    return engine


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache_settings() -> CacheSettings:
    return CacheSettings()


@pytest.fixture
def rate_limit_settings() -> RateLimitSettings:
    return RateLimitSettings()


@pytest.fixture
def cache_store(db_engine, cache_settings, clock) -> CacheStore:
    return CacheStore(db_engine, cache_settings, clock=clock)


@pytest.fixture
def quota_store(db_engine, clock) -> QuotaStore:
    return QuotaStore(db_engine, clock=clock)


@pytest.fixture
def fake_providers() -> list[FakeProvider]:
    return [
        FakeProvider("alpha", quality=90),
        FakeProvider("beta", quality=80),
        FakeProvider("gamma", quality=60),
    ]


@pytest.fixture
def orchestrator(fake_providers, quota_store) -> ProviderOrchestrator:
    return ProviderOrchestrator(fake_providers, quota_store, client_session=None)  # pyright: ignore[reportArgumentType]


# Async HTTP mocking fixtures
@pytest.fixture(scope="function")
async def mock_client_session() -> AsyncGenerator[ClientSession, None]:
    """Provide a real ClientSession; HTTP calls are intercepted by aioresponses."""
    async with ClientSession() as session:
        yield session


@pytest.fixture(scope="function")
def aioresponses_mocker() -> Generator[aioresponses, None, None]:
    """Provide aioresponses context manager for manual HTTP mocking."""
    with aioresponses() as mocked:
        yield mocked


@pytest.fixture
def mock_google_books_response():
    """Sample Google Books volumes response."""
    return {
        "totalItems": 1,
        "items": [
            {
                "id": "zyTCAlFPjgYC",
                "volumeInfo": {
                    "title": "The Way of Kings",
                    "authors": ["Brandon Sanderson"],
                    "publisher": "Tor Books",
                    "description": "An epic fantasy novel",
                    "categories": ["Fiction"],
                    "imageLinks": {
                        "thumbnail": "http://books.google.com/books/content?id=abc&zoom=1",
                        "large": "http://books.google.com/books/content?id=abc&zoom=3",
                    },
                    "publishedDate": "2010-08-31",
                    "pageCount": 1007,
                    "language": "en",
                    "industryIdentifiers": [
                        {"type": "ISBN_10", "identifier": "0765326353"},
                        {"type": "ISBN_13", "identifier": "9780765326355"},
                    ],
                },
            }
        ],
    }
