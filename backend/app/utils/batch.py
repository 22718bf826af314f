"""
Concurrent optimization of several uploads.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from app.utils.exceptions import ImageOptimizationError
from app.utils.image_processing import Codec, PillowWebPCodec, SourceImage
from app.utils.optimizer import AttemptObserver, ConversionOutcome, SearchPolicy, optimize_image

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BatchItemResult:
    """Outcome or error for one input, tagged with its input position."""
    index: int
    source: SourceImage
    outcome: Optional[ConversionOutcome] = None
    error: Optional[ImageOptimizationError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def optimize_batch(
    sources: Sequence[SourceImage],
    codec: Optional[Codec] = None,
    policy: Optional[SearchPolicy] = None,
    observer: Optional[AttemptObserver] = None,
    max_concurrency: Optional[int] = None
) -> List[BatchItemResult]:
    """
    Optimizes every source independently and waits for all of them.

    A failure on one image never affects the others; it is reported on that
    item's result instead of being raised.

    Args:
        sources: Images to optimize
        codec: Shared stateless codec (defaults to Pillow WebP)
        policy: Search tunables
        observer: Optional per-attempt telemetry callback
        max_concurrency: Upper bound on conversions running at once

    Returns:
        One BatchItemResult per source, in input order
    """
    codec = codec or PillowWebPCodec()
    semaphore = asyncio.Semaphore(max_concurrency) if max_concurrency else None

    async def run(index: int, source: SourceImage) -> BatchItemResult:
        try:
            if semaphore is None:
                outcome = await optimize_image(source, codec, policy, observer)
            else:
                async with semaphore:
                    outcome = await optimize_image(source, codec, policy, observer)
        except ImageOptimizationError as e:
            logger.warning(f'Image {index} failed: {e}', extra={
                'image_name': source.filename,
                'status': e.error_code
            })
            return BatchItemResult(index=index, source=source, error=e)
        return BatchItemResult(index=index, source=source, outcome=outcome)

    results = await asyncio.gather(*(run(i, s) for i, s in enumerate(sources)))

    failed = sum(1 for r in results if not r.ok)
    logger.info(f'Batch finished: {len(results) - failed} converted, {failed} failed')
    return list(results)
