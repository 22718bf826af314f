"""
Adaptive WebP recompression.

Decodes an upload once, then re-encodes it at decreasing quality (and, when
needed, inside a 1920px bounding box) until the output is meaningfully
smaller than the original. If nothing beats the original, a low-quality
resized encode is returned anyway so callers always get a candidate.
"""
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Sequence, Tuple

from app.utils.exceptions import ConversionFailed, EncodeError
from app.utils.image_processing import (
    Bitmap,
    Codec,
    EncodeResult,
    PillowWebPCodec,
    SourceImage,
    compute_target_size,
)

logger = logging.getLogger(__name__)

PHASE_QUALITY_SWEEP = 'quality_sweep'
PHASE_FORCED_RESIZE = 'forced_resize'
PHASE_FALLBACK = 'fallback'


@dataclass(frozen=True)
class SearchPolicy:
    """
    Tunables for the quality/size search.

    Fields:
        resize_threshold: Originals larger than this (bytes) are resized in the first sweep
        max_dimension: Bounding box edge used whenever resizing applies
        quality_levels: First sweep, descending
        retry_quality_levels: Forced-resize sweep, descending
        early_exit_ratio: A sweep stops once an output is below original_size * ratio
        fallback_quality: Quality of the last-resort encode
    """
    resize_threshold: int = 1024 * 1024
    max_dimension: int = 1920
    quality_levels: Tuple[float, ...] = (0.70, 0.60, 0.50, 0.40, 0.30, 0.25)
    retry_quality_levels: Tuple[float, ...] = (0.50, 0.40, 0.30)
    early_exit_ratio: float = 0.7
    fallback_quality: float = 0.25

    def __post_init__(self):
        levels = tuple(self.quality_levels) + tuple(self.retry_quality_levels) + (self.fallback_quality,)
        if not all(0 < q <= 1 for q in levels):
            raise ValueError(f"Quality levels must be in (0, 1], got {levels}")
        if self.max_dimension <= 0:
            raise ValueError("max_dimension must be positive")
        if not 0 < self.early_exit_ratio <= 1:
            raise ValueError("early_exit_ratio must be in (0, 1]")

    @property
    def max_attempts(self) -> int:
        return len(self.quality_levels) + len(self.retry_quality_levels) + 1


def policy_from_config(config) -> SearchPolicy:
    """Builds a SearchPolicy from a Flask config mapping, falling back to defaults."""
    defaults = SearchPolicy()
    return SearchPolicy(
        resize_threshold=config.get('RESIZE_THRESHOLD_BYTES', defaults.resize_threshold),
        max_dimension=config.get('MAX_DIMENSION', defaults.max_dimension),
        quality_levels=tuple(config.get('QUALITY_LEVELS', defaults.quality_levels)),
        retry_quality_levels=tuple(config.get('RETRY_QUALITY_LEVELS', defaults.retry_quality_levels)),
        early_exit_ratio=config.get('EARLY_EXIT_RATIO', defaults.early_exit_ratio),
        fallback_quality=config.get('FALLBACK_QUALITY', defaults.fallback_quality),
    )


@dataclass(frozen=True)
class AttemptRecord:
    """Telemetry for one encode attempt, passed to observers."""
    phase: str
    quality: float
    width: int
    height: int
    size: Optional[int] = None
    error: Optional[str] = None
    improved: bool = False


AttemptObserver = Callable[[AttemptRecord], None]


@dataclass(frozen=True)
class ConversionOutcome:
    """Result of one optimization."""
    data: bytes
    size: int
    quality: float
    width: int
    height: int
    original_size: int
    fallback: bool = False
    attempts: int = 0

    @property
    def reduction_percent(self) -> float:
        if self.original_size <= 0:
            return 0.0
        return round((1 - self.size / self.original_size) * 100, 1)

    @classmethod
    def from_result(cls, result: EncodeResult, original_size: int,
                    fallback: bool = False, attempts: int = 0) -> 'ConversionOutcome':
        return cls(
            data=result.data,
            size=result.size,
            quality=result.quality,
            width=result.width,
            height=result.height,
            original_size=original_size,
            fallback=fallback,
            attempts=attempts,
        )

    def size_info(self, name: Optional[str] = None) -> dict:
        return {'original': self.original_size, 'converted': self.size, 'name': name}


class BestCandidate:
    """Smallest encode seen so far. Starts at the original size with no result."""

    def __init__(self, original_size: int):
        self.size = original_size
        self.result: Optional[EncodeResult] = None

    def update(self, result: EncodeResult) -> bool:
        if result.size < self.size:
            self.size = result.size
            self.result = result
            return True
        return False

    def improves_on(self, original_size: int) -> bool:
        return self.result is not None and self.size < original_size


class _Search:
    """State for a single optimization run."""

    def __init__(self, source: SourceImage, bitmap: Bitmap, codec: Codec,
                 policy: SearchPolicy, observer: Optional[AttemptObserver]):
        self.source = source
        self.bitmap = bitmap
        self.codec = codec
        self.policy = policy
        self.observer = observer
        self.best = BestCandidate(source.size)
        self.attempts = 0

    def _notify(self, record: AttemptRecord):
        logger.debug('Encode attempt', extra={
            'image_name': self.source.filename,
            'phase': record.phase,
            'quality': record.quality,
            'original_size': self.source.size,
            'converted_size': record.size,
            'status': 'error' if record.error else 'ok'
        })
        if self.observer is not None:
            self.observer(record)

    async def encode(self, phase: str, quality: float, max_dimension: Optional[int]) -> EncodeResult:
        size = compute_target_size(self.bitmap.width, self.bitmap.height, max_dimension, max_dimension)
        self.attempts += 1
        try:
            result = await self.codec.encode(self.bitmap, quality, size)
        except EncodeError as e:
            self._notify(AttemptRecord(phase, quality, size[0], size[1], error=str(e)))
            raise

        improved = self.best.update(result)
        self._notify(AttemptRecord(phase, quality, result.width, result.height,
                                   size=result.size, improved=improved))
        return result

    async def sweep(self, phase: str, qualities: Sequence[float], max_dimension: Optional[int]):
        threshold = self.source.size * self.policy.early_exit_ratio
        for quality in qualities:
            try:
                result = await self.encode(phase, quality, max_dimension)
            except EncodeError as e:
                logger.warning(f'Failed to convert with quality {quality}: {e}', extra={
                    'image_name': self.source.filename,
                    'phase': phase,
                    'quality': quality
                })
                continue

            if result.size < threshold:
                logger.info(f'Found good compression at quality {quality}', extra={
                    'image_name': self.source.filename,
                    'phase': phase,
                    'quality': quality,
                    'original_size': self.source.size,
                    'converted_size': result.size
                })
                break


async def optimize_image(
    source: SourceImage,
    codec: Optional[Codec] = None,
    policy: Optional[SearchPolicy] = None,
    observer: Optional[AttemptObserver] = None
) -> ConversionOutcome:
    """
    Converts an image to the smallest acceptable WebP found by the search.

    Args:
        source: The upload to optimize
        codec: Decode/encode implementation (defaults to Pillow WebP)
        policy: Search tunables (defaults to SearchPolicy())
        observer: Optional callable receiving an AttemptRecord per encode

    Returns:
        ConversionOutcome. ``fallback`` is True when the last-resort encode
        was used, in which case the output may be larger than the original.

    Raises:
        DecodeError: If the source cannot be decoded
        SurfaceError: If the working raster cannot be created
        ConversionFailed: If even the last-resort encode fails
    """
    codec = codec or PillowWebPCodec()
    policy = policy or SearchPolicy()
    original_size = source.size

    bitmap = await codec.decode(source.data)
    search = _Search(source, bitmap, codec, policy, observer)

    should_resize = original_size > policy.resize_threshold
    max_dimension = policy.max_dimension if should_resize else None
    await search.sweep(PHASE_QUALITY_SWEEP, policy.quality_levels, max_dimension)

    if search.best.size >= original_size and not should_resize:
        logger.info('Trying with resizing', extra={'image_name': source.filename, 'phase': PHASE_FORCED_RESIZE})
        await search.sweep(PHASE_FORCED_RESIZE, policy.retry_quality_levels, policy.max_dimension)

    if not search.best.improves_on(original_size):
        try:
            result = await search.encode(PHASE_FALLBACK, policy.fallback_quality, policy.max_dimension)
        except EncodeError as e:
            logger.error(f'Last-resort encode failed: {e}', extra={
                'image_name': source.filename,
                'phase': PHASE_FALLBACK,
                'status': 'error'
            })
            raise ConversionFailed(f"Could not convert image: {e}") from e

        # Returned even when larger than the original
        logger.warning('Using very low quality as last resort', extra={
            'image_name': source.filename,
            'phase': PHASE_FALLBACK,
            'quality': policy.fallback_quality,
            'original_size': original_size,
            'converted_size': result.size
        })
        return ConversionOutcome.from_result(result, original_size, fallback=True, attempts=search.attempts)

    outcome = ConversionOutcome.from_result(search.best.result, original_size, attempts=search.attempts)
    logger.info(f'Best compression: quality {outcome.quality}, {outcome.reduction_percent}% reduction', extra={
        'image_name': source.filename,
        'quality': outcome.quality,
        'original_size': original_size,
        'converted_size': outcome.size
    })
    return outcome
