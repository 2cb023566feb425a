#!/usr/bin/env python3
"""
Async Browser Context Pool for ad library scraping.

Keeps a bounded set of isolated browser contexts, each with its own rotated
device/user-agent identity and heavy-resource blocking, on top of one
persistent Playwright Chromium browser.

Features:
- Fixed number of slots, filled on start()
- Random slot selection per item
- Context recycling after max_uses_before_recycle processed items
- Deferred close: a retired context is closed only after its last
  in-flight item finishes, so callers holding a handle are unaffected
- Construction failures leave the slot empty; callers fall back to
  another live context
"""

import asyncio
import random
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Set

from scrape_ads.ads_stealth import (
    SessionIdentity,
    get_context_params,
    make_resource_blocker,
    pick_identity,
)
from scrape_ads.worker_config import BLOCKED_RESOURCE_TYPES, WorkerConfig
from runner.logging_setup import get_logger

logger = get_logger("ads_session_pool")


ContextFactory = Callable[[SessionIdentity], Awaitable[object]]


class SessionPoolExhausted(RuntimeError):
    """No browser context could be produced."""


class SessionHandle:
    """One pooled browser context and its bookkeeping."""

    def __init__(self, slot: int, context, identity: SessionIdentity, generation: int):
        self.slot = slot
        self.context = context
        self.identity = identity
        self.generation = generation
        self.uses = 0
        self.in_flight = 0
        self.retired = False
        self.closed = False

    async def new_page(self):
        """Open a new page in this context."""
        return await self.context.new_page()

    def __repr__(self) -> str:
        return (
            f"<SessionHandle(slot={self.slot}, gen={self.generation}, "
            f"uses={self.uses}, in_flight={self.in_flight}, retired={self.retired})>"
        )


class SessionPool:
    """
    Pool of isolated browser contexts owned by a single worker process.

    A context_factory can be injected (tests, alternative browsers);
    otherwise start() launches Playwright Chromium.
    """

    def __init__(
        self,
        pool_size: int,
        max_uses_before_recycle: int,
        device_names: Sequence[str],
        user_agents: Sequence[str],
        blocked_resource_types: Sequence[str] = BLOCKED_RESOURCE_TYPES,
        headless: bool = True,
        context_factory: Optional[ContextFactory] = None,
        rng: Optional[random.Random] = None,
    ):
        """
        Initialize context pool.

        Args:
            pool_size: Number of contexts kept alive
            max_uses_before_recycle: Replace a context after this many items
            device_names: Playwright device names to rotate through
            user_agents: User agents to rotate through
            blocked_resource_types: Resource types aborted by the route handler
            headless: Launch Chromium headless
            context_factory: Async callable building a context for an identity
            rng: Random source for slot/identity selection
        """
        if pool_size < 1:
            raise ValueError("pool_size must be at least 1")

        self.pool_size = pool_size
        self.max_uses = max_uses_before_recycle
        self.device_names = list(device_names)
        self.user_agents = list(user_agents)
        self.blocked_resource_types = list(blocked_resource_types)
        self.headless = headless
        self._context_factory = context_factory
        self._rng = rng or random.Random()
        self.lock = asyncio.Lock()

        self._slots: List[Optional[SessionHandle]] = [None] * pool_size
        self._retired: Set[SessionHandle] = set()
        self._generation = 0
        self._recycled = 0
        self._build_failures = 0

        self.playwright_instance = None
        self.browser = None
        self._device_registry: Dict[str, dict] = {}

    @classmethod
    def from_config(cls, config: WorkerConfig, context_factory: Optional[ContextFactory] = None) -> "SessionPool":
        return cls(
            pool_size=config.context_pool_size,
            max_uses_before_recycle=config.max_uses_per_context,
            device_names=config.device_names,
            user_agents=config.user_agents,
            blocked_resource_types=config.blocked_resource_types,
            headless=config.headless,
            context_factory=context_factory,
        )

    async def start(self):
        """
        Launch the browser (if needed) and fill every slot.

        Raises:
            SessionPoolExhausted: If not a single context could be created
        """
        if self._context_factory is None:
            await self._launch_browser()
            self._context_factory = self._new_playwright_context

        async with self.lock:
            for slot in range(self.pool_size):
                self._slots[slot] = await self._build(slot)

        live = self.live_count()
        if live == 0:
            raise SessionPoolExhausted("Could not create any browser context")

        logger.info(f"Context pool started: {live}/{self.pool_size} contexts, "
                    f"recycle after {self.max_uses} uses")

    async def _launch_browser(self):
        from playwright.async_api import async_playwright

        self.playwright_instance = await async_playwright().start()
        self._device_registry = dict(self.playwright_instance.devices)
        self.browser = await self.playwright_instance.chromium.launch(
            headless=self.headless,
            args=["--no-sandbox", "--disable-setuid-sandbox"],
        )
        logger.info("Chromium browser launched")

    async def _new_playwright_context(self, identity: SessionIdentity):
        params = get_context_params(identity, self._device_registry)
        context = await self.browser.new_context(**params)
        await context.route("**/*", make_resource_blocker(self.blocked_resource_types))
        return context

    async def _build(self, slot: int) -> Optional[SessionHandle]:
        """Create a fresh context for a slot; None on failure (logged)."""
        identity = pick_identity(self.device_names, self.user_agents, self._rng)
        try:
            context = await self._context_factory(identity)
        except Exception as e:
            self._build_failures += 1
            logger.warning(f"Context creation failed for slot {slot} ({identity.describe()}): {e}")
            return None

        self._generation += 1
        handle = SessionHandle(slot, context, identity, self._generation)
        logger.debug(f"Created context for slot {slot}: {identity.describe()}")
        return handle

    def live_count(self) -> int:
        return sum(1 for handle in self._slots if handle is not None)

    async def acquire_session(self) -> SessionHandle:
        """
        Get a context for one item.

        Picks a random slot. An empty slot is rebuilt once; if that fails
        another live context is shared for this item.

        Returns:
            SessionHandle (caller must release() it)

        Raises:
            SessionPoolExhausted: If no context is available at all
        """
        async with self.lock:
            slot = self._rng.randrange(self.pool_size)
            handle = self._slots[slot]
            if handle is None:
                handle = await self._build(slot)
                self._slots[slot] = handle

            if handle is None:
                live = [h for h in self._slots if h is not None]
                if not live:
                    raise SessionPoolExhausted("No live browser context available")
                handle = self._rng.choice(live)
                logger.debug(f"Slot {slot} empty, sharing slot {handle.slot}")

            handle.in_flight += 1
            return handle

    async def acquire_alternate(self, current: SessionHandle) -> Optional[SessionHandle]:
        """
        Get a context with a different identity than current.

        Returns:
            SessionHandle (caller must release() it), or None if the pool
            has no other context
        """
        async with self.lock:
            for slot in range(self.pool_size):
                if self._slots[slot] is None and slot != current.slot:
                    self._slots[slot] = await self._build(slot)

            candidates = [h for h in self._slots if h is not None and h is not current]
            if not candidates:
                return None

            # Prefer the neighbouring slot, as a second fingerprint
            candidates.sort(key=lambda h: (h.slot - current.slot - 1) % self.pool_size)
            handle = candidates[0]
            handle.in_flight += 1
            return handle

    async def release(self, handle: SessionHandle):
        """
        Finish one item on a context.

        Counts the use and recycles the slot once the use ceiling is hit.
        """
        to_close = None
        async with self.lock:
            handle.in_flight = max(0, handle.in_flight - 1)
            handle.uses += 1

            if not handle.retired and handle.uses >= self.max_uses:
                logger.info(f"Context in slot {handle.slot} reached max uses ({self.max_uses}), recycling")
                await self._retire_and_replace(handle)

            if handle.retired and handle.in_flight == 0 and not handle.closed:
                to_close = handle

        if to_close is not None:
            await self._close(to_close)

    async def recycle(self, handle: SessionHandle):
        """Replace the handle's slot now; close it once idle."""
        async with self.lock:
            if handle.retired:
                return
            await self._retire_and_replace(handle)
            idle = handle.in_flight == 0

        if idle:
            await self._close(handle)

    async def recycle_all(self):
        """Replace every context (fresh fingerprints after a failure streak)."""
        idle: List[SessionHandle] = []
        async with self.lock:
            for handle in list(self._slots):
                if handle is None:
                    continue
                await self._retire_and_replace(handle)
                if handle.in_flight == 0:
                    idle.append(handle)
            for slot in range(self.pool_size):
                if self._slots[slot] is None:
                    self._slots[slot] = await self._build(slot)

        for handle in idle:
            await self._close(handle)
        logger.info(f"Recycled all contexts ({self.live_count()}/{self.pool_size} live)")

    async def _retire_and_replace(self, handle: SessionHandle):
        handle.retired = True
        self._retired.add(handle)
        self._recycled += 1
        if self._slots[handle.slot] is handle:
            self._slots[handle.slot] = await self._build(handle.slot)

    async def _close(self, handle: SessionHandle):
        if handle.closed:
            return
        handle.closed = True
        self._retired.discard(handle)
        try:
            await handle.context.close()
        except Exception as e:
            logger.warning(f"Error closing context (slot {handle.slot}): {e}")

    async def shutdown(self):
        """Close every context, the browser and Playwright."""
        async with self.lock:
            handles = [h for h in self._slots if h is not None] + list(self._retired)
            self._slots = [None] * self.pool_size

        for handle in handles:
            await self._close(handle)

        if self.browser is not None:
            try:
                await self.browser.close()
            except Exception as e:
                logger.warning(f"Error closing browser: {e}")
            finally:
                self.browser = None

        if self.playwright_instance is not None:
            try:
                await self.playwright_instance.stop()
            except Exception as e:
                logger.warning(f"Error stopping Playwright: {e}")
            finally:
                self.playwright_instance = None

        logger.info("Context pool shut down")

    def get_stats(self) -> dict:
        """Pool statistics."""
        return {
            "pool_size": self.pool_size,
            "live": self.live_count(),
            "uses": [h.uses if h else None for h in self._slots],
            "recycled": self._recycled,
            "build_failures": self._build_failures,
            "pending_close": len(self._retired),
        }
