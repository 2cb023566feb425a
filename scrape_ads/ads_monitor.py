#!/usr/bin/env python3
"""
Block detection and confirmation for ad library scraping.

This module provides:
- Block classification from HTTP status and page content
- The confirmation protocol: a "possibly blocked" first attempt is only
  accepted as blocked after a second, independent attempt (another
  context, or a reload when the pool has a single context) shows the
  same signal and also finds no counter
"""

from typing import Iterable, Optional, Tuple

from scrape_ads.ads_extract import AdCountExtractor, ExtractionResult
from scrape_ads.worker_config import DEFAULT_BLOCK_INDICATORS
from runner.logging_setup import get_logger

logger = get_logger("ads_monitor")


# Unauthorized, Forbidden, Proxy Auth Required, Too Many Requests
BLOCK_STATUS_CODES = frozenset({401, 403, 407, 429})


def detect_blocking(
    html: Optional[str],
    status_code: Optional[int] = None,
    indicators: Iterable[str] = DEFAULT_BLOCK_INDICATORS,
) -> Tuple[bool, str]:
    """
    Detect if a render was blocked or rate limited.

    Args:
        html: Rendered page content
        status_code: HTTP status code of the navigation
        indicators: Block phrases (matched case-insensitively)

    Returns:
        Tuple of (is_blocked, block_reason)
    """
    if status_code and status_code in BLOCK_STATUS_CODES:
        return True, f"HTTP {status_code}"

    if html:
        html_lower = html.lower()
        for indicator in indicators:
            if indicator and indicator.lower() in html_lower:
                return True, f"Content indicates: {indicator}"

    return False, ""


def classify(
    status_code: Optional[int],
    content: Optional[str],
    indicators: Iterable[str] = DEFAULT_BLOCK_INDICATORS,
) -> bool:
    """True if either block signal fires."""
    blocked, _ = detect_blocking(content, status_code, indicators)
    return blocked


def is_possibly_blocked(
    result: ExtractionResult,
    indicators: Iterable[str] = DEFAULT_BLOCK_INDICATORS,
) -> bool:
    """A result is possibly blocked when nothing was found and a block signal fired."""
    return not result.found and classify(result.status_code, result.content, indicators)


class BlockConfirmer:
    """Runs the second, independent attempt that confirms or clears a block."""

    def __init__(self, extractor: AdCountExtractor, pool, indicators: Iterable[str] = DEFAULT_BLOCK_INDICATORS):
        """
        Args:
            extractor: Extraction orchestrator
            pool: SessionPool supplying an alternate context
            indicators: Block phrases
        """
        self.extractor = extractor
        self.pool = pool
        self.indicators = list(indicators)

    async def confirm(self, item, page, handle, first: ExtractionResult) -> Tuple[ExtractionResult, bool]:
        """
        Confirm a possible block.

        Args:
            item: WorkItem being processed
            page: Page of the first attempt (reloaded if no alternate context)
            handle: SessionHandle of the first attempt
            first: The possibly-blocked first result

        Returns:
            (result, confirmed_blocked). A successful second attempt
            supersedes the first; a second failure without block signals
            is a plain not-found.
        """
        _, reason = detect_blocking(first.content, first.status_code, self.indicators)
        logger.warning(f"[{item.id}] possible block ({reason}), confirming...")

        alternate = None
        try:
            alternate = await self.pool.acquire_alternate(handle)
            if alternate is not None:
                second = await self.extractor.attempt(alternate, item)
                source = f"alternate context {alternate.slot}"
            else:
                second = await self.extractor.attempt_on_page(
                    page, item.target_url, reload=True, item_id=item.id
                )
                source = "reload"
        except Exception as e:
            logger.warning(f"[{item.id}] block confirmation error: {e}")
            return first, False
        finally:
            if alternate is not None:
                await self.pool.release(alternate)

        if second.found:
            logger.info(f"[{item.id}] {source} succeeded: {second.value}")
            return second, False

        if classify(second.status_code, second.content, self.indicators):
            logger.warning(f"[{item.id}] block confirmed via {source}")
            return second, True

        logger.info(f"[{item.id}] {source} did not extract but block not confirmed")
        return second, False
