"""
Pytest configuration and shared fixtures for adcount-bot tests.

Provides an in-memory database, an item store, fake Playwright
pages/contexts and a context pool built on them.
"""

import os

# No log files from test runs
os.environ["LOG_DIR"] = "none"

import random
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import pytest
from playwright.async_api import Error as PlaywrightError
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from db.item_store import ItemStore, create_session_factory
from db.models import Base
from scrape_ads.session_pool import SessionPool
from scrape_ads.worker_config import WorkerConfig


# Test markers
def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests that run the full worker pipeline"
    )
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )


# Database fixtures
@pytest.fixture
def engine():
    """In-memory SQLite engine shared by every session of a test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine):
    return ItemStore(create_session_factory(engine))


@pytest.fixture
def add_items(store):
    """Insert items and return them as loaded from the store."""

    def _add(*rows):
        ids = store.add_items(rows)
        return [store.get(item_id) for item_id in ids]

    return _add


# Fake renderer
@dataclass
class Render:
    """What the fake site serves for one navigation."""

    status: int = 200
    texts: Dict[str, str] = field(default_factory=dict)
    body: str = ""
    html: str = "<html><body></body></html>"
    frame_texts: List[Dict[str, str]] = field(default_factory=list)
    error: Optional[str] = None
    raises: Optional[Exception] = None


COUNTER = 'div[role="heading"][aria-level="3"]'


def found(text="~1.234 resultados"):
    return Render(texts={COUNTER: text}, html=f"<html><body>{text}</body></html>")


def empty(body="Nothing here"):
    return Render(body=body, html=f"<html><body>{body}</body></html>")


def forbidden():
    return Render(status=403, html="<html><body>Forbidden</body></html>")


class FakeSite:
    """
    Per-URL render queues shared by every fake page.

    Each navigation pops the next render of its URL; the last one repeats.
    """

    def __init__(self, pages=None):
        self.pages = {url: list(renders) for url, renders in (pages or {}).items()}
        self.visits: Dict[str, int] = {}

    def render(self, url) -> Render:
        self.visits[url] = self.visits.get(url, 0) + 1
        queue = self.pages.get(url) or [Render(status=404)]
        if len(queue) > 1:
            return queue.pop(0)
        return queue[0]


class FakeResponse:
    def __init__(self, status):
        self.status = status


class FakeLocator:
    def __init__(self, text):
        self.text = text

    @property
    def first(self):
        return self

    async def text_content(self, timeout=None):
        if self.text is None:
            raise PlaywrightError(f"Timeout {timeout}ms exceeded")
        return self.text

    async def inner_text(self, timeout=None):
        return await self.text_content(timeout=timeout)


class FakeFrame:
    def __init__(self, texts):
        self.texts = texts

    def locator(self, selector):
        return FakeLocator(self.texts.get(selector))


class FakePage:
    """Minimal async Playwright page driven by a FakeSite."""

    def __init__(self, site: FakeSite):
        self.site = site
        self.url = None
        self.current: Optional[Render] = None
        self.gotos = 0
        self.reloads = 0
        self.waits: List[int] = []
        self.closed = False

    def _navigate(self):
        self.current = self.site.render(self.url)
        if self.current.raises is not None:
            raise self.current.raises
        if self.current.error:
            raise PlaywrightError(self.current.error)
        return FakeResponse(self.current.status)

    async def goto(self, url, wait_until=None, timeout=None):
        self.gotos += 1
        self.url = url
        return self._navigate()

    async def reload(self, wait_until=None, timeout=None):
        self.reloads += 1
        return self._navigate()

    async def wait_for_timeout(self, ms):
        self.waits.append(ms)

    def locator(self, selector):
        if self.current is None:
            return FakeLocator(None)
        if selector == "body":
            return FakeLocator(self.current.body)
        return FakeLocator(self.current.texts.get(selector))

    @property
    def frames(self):
        if self.current is None:
            return []
        return [FakeFrame(texts) for texts in self.current.frame_texts]

    async def content(self):
        if self.current is None:
            return ""
        return self.current.html

    def is_closed(self):
        return self.closed

    async def close(self):
        self.closed = True


class FakeContext:
    def __init__(self, site: FakeSite, identity=None):
        self.site = site
        self.identity = identity
        self.pages: List[FakePage] = []
        self.closed = False

    async def new_page(self):
        page = FakePage(self.site)
        self.pages.append(page)
        return page

    async def close(self):
        self.closed = True


class FakeSession:
    """Stand-in for a SessionHandle outside a pool."""

    def __init__(self, site: FakeSite, slot=0):
        self.slot = slot
        self.context = FakeContext(site)

    async def new_page(self):
        return await self.context.new_page()


@pytest.fixture
def site():
    return FakeSite()


@pytest.fixture
def make_pool():
    """Build a SessionPool whose contexts are FakeContexts on a site."""

    def _make(site, pool_size=2, max_uses=50, fail_after=None):
        created: List[FakeContext] = []

        async def factory(identity):
            if fail_after is not None and len(created) >= fail_after:
                raise RuntimeError("context creation failed")
            context = FakeContext(site, identity)
            created.append(context)
            return context

        pool = SessionPool(
            pool_size=pool_size,
            max_uses_before_recycle=max_uses,
            device_names=["Desktop Chrome", "Pixel 7"],
            user_agents=["UA-one", "UA-two"],
            context_factory=factory,
            rng=random.Random(7),
        )
        pool.created = created
        return pool

    return _make


@pytest.fixture
def config():
    """Worker configuration without waits, for a single worker."""
    return WorkerConfig(
        database_url="sqlite://",
        total_workers=1,
        worker_index=0,
        worker_id="worker-test",
        partition_seed="test-seed",
        parallel=2,
        wait_time_ms=0,
        wait_jitter_ms=0,
        selector_timeout_ms=10,
        long_pause_every=0,
        retry_attempts=1,
        max_fails=3,
    )


@pytest.fixture
def no_sleep():
    async def _sleep(seconds):
        return None

    return _sleep
