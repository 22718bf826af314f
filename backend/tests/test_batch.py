"""
Tests for concurrent batch optimization.
"""
import asyncio
import io

import pytest
from PIL import Image

from app.utils.batch import optimize_batch
from app.utils.exceptions import ConversionFailed, DecodeError, EncodeError
from app.utils.image_processing import Bitmap, EncodeResult, SourceImage


class SlowCodec:
    """
    Codec stub that yields to the event loop on every call.

    Sources whose data is b'corrupt' fail to decode, b'crash' raises an
    unexpected error and b'stubborn' can never be encoded.
    """

    def __init__(self):
        self.in_flight = 0
        self.peak = 0

    async def decode(self, data):
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            # Later items finish first
            await asyncio.sleep(0.001 * (10 - len(data) % 10))
            if data == b'corrupt':
                raise DecodeError('Invalid image file')
            if data == b'crash':
                raise RuntimeError('codec bug')
            return Bitmap(image=data, width=100, height=100)
        finally:
            self.in_flight -= 1

    async def encode(self, bitmap, quality, size):
        await asyncio.sleep(0)
        if bitmap.image == b'stubborn':
            raise EncodeError('no output')
        return EncodeResult(data=b'w', size=1, quality=quality, width=size[0], height=size[1])


def source(data, name):
    return SourceImage.from_bytes(data, 'image/jpeg', name)


class TestOptimizeBatch:
    """Tests for optimize_batch."""

    def test_failure_is_isolated(self):
        """10-item batch, item 5 corrupted."""
        sources = [source(b'ok' * (i + 1), f'{i}.jpg') for i in range(10)]
        sources[5] = source(b'corrupt', '5.jpg')

        results = asyncio.run(optimize_batch(sources, SlowCodec()))

        assert [r.index for r in results] == list(range(10))
        assert [r.source for r in results] == sources
        assert sum(1 for r in results if r.ok) == 9
        assert isinstance(results[5].error, DecodeError)
        assert results[5].outcome is None
        for r in results[:5] + results[6:]:
            assert r.outcome is not None
            assert r.outcome.size == 1

    def test_conversion_failed_reported_per_item(self):
        sources = [source(b'stubborn', 'a.jpg'), source(b'fine', 'b.jpg')]

        results = asyncio.run(optimize_batch(sources, SlowCodec()))

        assert isinstance(results[0].error, ConversionFailed)
        assert results[1].ok

    def test_max_concurrency(self):
        codec = SlowCodec()
        sources = [source(b'x' * i, f'{i}.jpg') for i in range(1, 9)]

        results = asyncio.run(optimize_batch(sources, codec, max_concurrency=2))

        assert all(r.ok for r in results)
        assert codec.peak <= 2

    def test_unbounded_runs_concurrently(self):
        codec = SlowCodec()
        sources = [source(b'x' * i, f'{i}.jpg') for i in range(1, 6)]

        asyncio.run(optimize_batch(sources, codec))

        assert codec.peak > 1

    def test_unexpected_errors_propagate(self):
        sources = [source(b'fine', 'a.jpg'), source(b'crash', 'b.jpg')]

        with pytest.raises(RuntimeError):
            asyncio.run(optimize_batch(sources, SlowCodec()))

    def test_empty_batch(self):
        assert asyncio.run(optimize_batch([], SlowCodec())) == []

    def test_with_pillow_codec(self):
        buf = io.BytesIO()
        Image.new('RGB', (64, 48), color='green').save(buf, format='PNG')
        sources = [
            source(buf.getvalue(), 'green.png'),
            source(b'not an image', 'broken.jpg'),
        ]

        results = asyncio.run(optimize_batch(sources))

        assert results[0].ok
        assert results[0].outcome.data[8:12] == b'WEBP'
        assert isinstance(results[1].error, DecodeError)
