"""
Exception classes raised by the image optimization pipeline.
"""


class ImageOptimizationError(Exception):
    """
    Base class for errors raised while optimizing a single image.

    Each subclass carries an ``error_code`` used in API responses.
    """

    error_code = 'OPTIMIZATION_ERROR'

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class DecodeError(ImageOptimizationError):
    """Input bytes are not a decodable raster image. Fatal for that image."""

    error_code = 'DECODE_ERROR'


class SurfaceError(ImageOptimizationError):
    """The working raster for decoding/resampling could not be created. Fatal."""

    error_code = 'SURFACE_ERROR'


class EncodeError(ImageOptimizationError):
    """A single (quality, dimensions) attempt produced no output. Non-fatal."""

    error_code = 'ENCODE_ERROR'


class ConversionFailed(ImageOptimizationError):
    """
    Even the guaranteed fallback encode failed.

    Callers should upload the original, unmodified image instead.
    """

    error_code = 'CONVERSION_FAILED'
