#!/usr/bin/env python3
"""
Active-ads counter extraction from rendered ad library pages.

This module provides:
- parse_count_from_text: locale-tolerant "N results" parser
- ExtractionResult: outcome of one extraction attempt
- AdCountExtractor: navigation, settle wait and ordered fallback lookups

Lookup strategies run in order and the first one producing a parsable
count wins:
1. primary_selector   - the result-count heading
2. secondary_selectors - candidate selectors for older/alternate layouts
3. frame_scan         - primary selector inside embedded frames
4. text_scan          - regex heuristic over body text and raw HTML
"""

import re
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

from playwright.async_api import Error as PlaywrightError

from scrape_ads.ads_stealth import jitter_ms
from scrape_ads.worker_config import WorkerConfig
from runner.logging_setup import get_logger

logger = get_logger("ads_extract")


# "~1.234" style approximations
APPROX_PATTERN = re.compile(r"~\s*([0-9.,]+)")

# "1.234 resultados", "1 234 results", "12 anúncios"
RESULTS_PATTERN = re.compile(
    r"([\d.,\s\u00A0\u202F]+)\s*(?:resultados|results|an[uú]ncios|ads)\b",
    re.IGNORECASE,
)

# Stricter form for raw HTML, where stray whitespace runs are common
HTML_RESULTS_PATTERN = re.compile(
    r"(\d+(?:[.,\u00A0\u202F ]\d{3})*)\s*(?:resultados|results)\b",
    re.IGNORECASE,
)

SEPARATORS = re.compile(r"[.,\s\u00A0\u202F]")


def _to_int(digits: str) -> Optional[int]:
    cleaned = SEPARATORS.sub("", digits)
    if not cleaned.isdigit():
        return None
    return int(cleaned)


def parse_count_from_text(text: Optional[str]) -> Optional[int]:
    """
    Parse an ads counter out of free text.

    Thousands separators (dot, comma, space, NBSP, narrow NBSP) are
    dropped, so "~1.234" and "1,234 results" both give 1234.

    Args:
        text: Text of the counter element

    Returns:
        Parsed count, or None when the text holds no counter
    """
    if not text:
        return None

    match = APPROX_PATTERN.search(text) or RESULTS_PATTERN.search(text)
    if match and match.group(1):
        return _to_int(match.group(1))
    return None


def parse_count_from_html(html: Optional[str]) -> Optional[int]:
    """Find an 'N results' counter in raw HTML."""
    if not html:
        return None
    match = HTML_RESULTS_PATTERN.search(html)
    if match:
        return _to_int(match.group(1))
    return None


@dataclass
class ExtractionResult:
    """Outcome of one extraction attempt."""

    found: bool
    value: Optional[int] = None
    raw: Optional[str] = None
    status_code: Optional[int] = None
    content: Optional[str] = None
    strategy: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def not_found(cls, status_code=None, content=None, error=None) -> "ExtractionResult":
        return cls(found=False, status_code=status_code, content=content, error=error)


DEFAULT_STRATEGIES = ("primary_selector", "secondary_selectors", "frame_scan", "text_scan")


class AdCountExtractor:
    """Drives a page through navigation and the lookup strategy chain."""

    def __init__(
        self,
        config: WorkerConfig,
        parser: Callable[[Optional[str]], Optional[int]] = parse_count_from_text,
        strategies: Sequence[str] = DEFAULT_STRATEGIES,
    ):
        """
        Args:
            config: Worker configuration (selectors, timeouts, waits)
            parser: Text-to-count parser
            strategies: Strategy names, in the order they are tried
        """
        self.config = config
        self.parser = parser
        self.strategies: List[str] = list(strategies)
        for name in self.strategies:
            if not hasattr(self, f"_strategy_{name}"):
                raise ValueError(f"Unknown extraction strategy: {name}")

    async def attempt(self, session, item) -> ExtractionResult:
        """
        Run one full attempt for an item on a fresh page of a session.

        Args:
            session: SessionHandle providing new_page()
            item: WorkItem with target_url

        Returns:
            ExtractionResult
        """
        page = await session.new_page()
        try:
            return await self.attempt_on_page(page, item.target_url, item_id=item.id)
        finally:
            await close_page(page)

    async def attempt_on_page(
        self,
        page,
        url: str,
        reload: bool = False,
        item_id=None,
        settle_ms: Optional[int] = None,
    ) -> ExtractionResult:
        """
        Load (or reload) a page, wait for it to settle and extract.

        Navigation failures are not raised: they give found=False with
        the error text and whatever content the page still holds.

        Args:
            page: Playwright page
            url: Target URL
            reload: Reload the current page instead of navigating
            item_id: Item ID for log messages
            settle_ms: Settle wait override (default: config wait + jitter)

        Returns:
            ExtractionResult
        """
        status_code, nav_error = await self._navigate(page, url, reload, item_id)

        if settle_ms is None:
            settle_ms = self.config.wait_time_ms + jitter_ms(self.config.wait_jitter_ms)
        if settle_ms > 0:
            await page.wait_for_timeout(settle_ms)

        found = await self.extract(page, item_id)
        if found is not None:
            value, raw, strategy = found
            logger.debug(f"[{item_id}] counter {value} via {strategy}")
            return ExtractionResult(
                found=True, value=value, raw=raw, status_code=status_code, strategy=strategy
            )

        content = await page_content(page)
        return ExtractionResult.not_found(status_code=status_code, content=content, error=nav_error)

    async def _navigate(self, page, url: str, reload: bool, item_id) -> Tuple[Optional[int], Optional[str]]:
        try:
            if reload:
                response = await page.reload(
                    wait_until="domcontentloaded", timeout=self.config.nav_timeout_ms
                )
            else:
                response = await page.goto(
                    url, wait_until="domcontentloaded", timeout=self.config.nav_timeout_ms
                )
        except PlaywrightError as e:
            logger.warning(f"[{item_id}] {'reload' if reload else 'goto'} error: {e}")
            return None, str(e)

        return (response.status if response is not None else None), None

    async def extract(self, page, item_id=None) -> Optional[Tuple[int, str, str]]:
        """
        Run the strategy chain against an already rendered page.

        Returns:
            (value, raw_text, strategy_name) or None if every strategy failed
        """
        for name in self.strategies:
            strategy = getattr(self, f"_strategy_{name}")
            try:
                found = await strategy(page)
            except Exception as e:
                logger.debug(f"[{item_id}] strategy {name} failed: {e}")
                continue
            if found is not None:
                value, raw = found
                return value, raw, name
        return None

    async def _lookup(self, target, selector: str) -> Optional[str]:
        """First matching element's text, or None on timeout/absence."""
        try:
            return await target.locator(selector).first.text_content(
                timeout=self.config.selector_timeout_ms
            )
        except PlaywrightError:
            return None

    def _parsed(self, text: Optional[str]) -> Optional[Tuple[int, str]]:
        if not text:
            return None
        value = self.parser(text)
        if value is None:
            return None
        return value, text

    async def _strategy_primary_selector(self, page):
        return self._parsed(await self._lookup(page, self.config.primary_selector))

    async def _strategy_secondary_selectors(self, page):
        for selector in self.config.secondary_selectors:
            found = self._parsed(await self._lookup(page, selector))
            if found is not None:
                return found
        return None

    async def _strategy_frame_scan(self, page):
        for frame in page.frames:
            found = self._parsed(await self._lookup(frame, self.config.primary_selector))
            if found is not None:
                return found
        return None

    async def _strategy_text_scan(self, page):
        try:
            body_text = await page.locator("body").inner_text(
                timeout=self.config.selector_timeout_ms
            )
        except PlaywrightError:
            body_text = None

        found = self._parsed(body_text)
        if found is not None:
            return found

        html = await page_content(page)
        value = parse_count_from_html(html)
        if value is None:
            return None
        return value, "html"


async def page_content(page) -> Optional[str]:
    """page.content(), or None if the page can no longer render it."""
    try:
        return await page.content()
    except PlaywrightError:
        return None


async def close_page(page):
    try:
        if not page.is_closed():
            await page.close()
    except PlaywrightError as e:
        logger.debug(f"Error closing page: {e}")
