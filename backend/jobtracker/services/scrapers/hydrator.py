"""
Adaptive batched detail fetching.

Detail endpoints are the most rate-limited part of a scrape. Batches run
concurrently; after each batch the size and inter-batch delay adapt:

    failures in batch  -> size - 1 (floor min_batch_size), delay + 250ms
    clean batch        -> size + 1 (cap max_batch_size), delay - 100ms

A fetcher returning None or raising counts as a failure.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

TItem = TypeVar("TItem")
TResult = TypeVar("TResult")

FAILURE_DELAY_STEP_MS = 250
SUCCESS_DELAY_STEP_MS = 100


async def hydrate_details_in_batches(
    items: List[TItem],
    fetcher: Callable[[TItem], Awaitable[Optional[TResult]]],
    initial_batch_size: int,
    initial_delay_ms: int,
    min_batch_size: int = 1,
    max_batch_size: Optional[int] = None,
    min_delay_ms: Optional[int] = None,
    max_delay_ms: Optional[int] = None,
) -> Tuple[List[TResult], int]:
    """
    Returns:
        (successful results in input order, number of failures)
    """
    if max_batch_size is None:
        max_batch_size = initial_batch_size
    if min_delay_ms is None:
        min_delay_ms = max(0, initial_delay_ms - 300)
    if max_delay_ms is None:
        max_delay_ms = initial_delay_ms + 2000

    batch_size = max(min_batch_size, min(max_batch_size, initial_batch_size))
    delay_ms = max(min_delay_ms, min(max_delay_ms, initial_delay_ms))

    async def safe_fetch(item: TItem) -> Optional[TResult]:
        try:
            return await fetcher(item)
        except Exception as e:
            logger.debug(f"Detail fetch failed: {e}")
            return None

    results: List[TResult] = []
    failures = 0
    index = 0

    while index < len(items):
        batch = items[index:index + batch_size]
        batch_results = await asyncio.gather(*(safe_fetch(item) for item in batch))

        batch_failures = 0
        for result in batch_results:
            if result is None:
                batch_failures += 1
            else:
                results.append(result)
        failures += batch_failures

        if batch_failures:
            batch_size = max(min_batch_size, batch_size - 1)
            delay_ms = min(max_delay_ms, delay_ms + FAILURE_DELAY_STEP_MS)
        else:
            batch_size = min(max_batch_size, batch_size + 1)
            delay_ms = max(min_delay_ms, delay_ms - SUCCESS_DELAY_STEP_MS)

        index += len(batch)
        if index < len(items):
            await asyncio.sleep(delay_ms / 1000)

    if failures:
        logger.info(f"Detail hydration: {len(results)} fetched, {failures} failed")
    return results, failures
