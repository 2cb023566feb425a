"""
In-process retries for a single claimed item.

After an initial attempt that found nothing (and was not a confirmed
block) the page is reloaded up to max_attempts more times, waiting a
settle delay plus jitter after each reload. Retries stop at the first
counter found. The persisted attempts counter is not touched here.
"""

import random
from typing import Optional

from scrape_ads.ads_extract import AdCountExtractor, ExtractionResult
from runner.logging_setup import get_logger

logger = get_logger("ads_retry")


class RetryController:
    """Bounded reload-and-extract loop with backoff delay."""

    def __init__(
        self,
        max_attempts: int = 1,
        settle_ms: int = 7000,
        jitter_ms: int = 400,
        backoff_factor: float = 1.0,
        max_delay_ms: Optional[int] = None,
        rng: Optional[random.Random] = None,
    ):
        """
        Args:
            max_attempts: Additional attempts after the first (>= 0)
            settle_ms: Base wait after each reload
            jitter_ms: Random extra wait in [0, jitter_ms)
            backoff_factor: Growth of the base wait per retry (1.0 = flat)
            max_delay_ms: Cap on the base wait before jitter
        """
        if max_attempts < 0:
            raise ValueError("max_attempts must not be negative")
        self.max_attempts = max_attempts
        self.settle_ms = settle_ms
        self.jitter_ms = jitter_ms
        self.backoff_factor = backoff_factor
        self.max_delay_ms = max_delay_ms
        self._rng = rng or random.Random()

    def compute_delay_ms(self, retry_number: int) -> int:
        """
        Wait before the given retry (1-based).

        delay = settle * backoff_factor ^ (retry_number - 1), capped at
        max_delay_ms, plus jitter.
        """
        delay = self.settle_ms * (self.backoff_factor ** max(0, retry_number - 1))
        if self.max_delay_ms is not None:
            delay = min(delay, self.max_delay_ms)
        jitter = self._rng.randrange(self.jitter_ms) if self.jitter_ms > 0 else 0
        return int(delay) + jitter

    async def run(
        self,
        page,
        item,
        first: ExtractionResult,
        extractor: AdCountExtractor,
    ) -> ExtractionResult:
        """
        Retry extraction on the same page until found or attempts exhausted.

        Args:
            page: Page of the initial attempt
            item: WorkItem being processed
            first: Result of the initial attempt
            extractor: Extraction orchestrator

        Returns:
            The first found result, or the last failed one
        """
        result = first
        for retry_number in range(1, self.max_attempts + 1):
            if result.found:
                break

            logger.info(f"[{item.id}] retry attempt {retry_number}/{self.max_attempts}")
            try:
                result = await extractor.attempt_on_page(
                    page,
                    item.target_url,
                    reload=True,
                    item_id=item.id,
                    settle_ms=self.compute_delay_ms(retry_number),
                )
            except Exception as e:
                logger.warning(f"[{item.id}] retry error: {e}")
                continue

            if result.found:
                logger.info(f"[{item.id}] retry succeeded: {result.value}")

        return result
