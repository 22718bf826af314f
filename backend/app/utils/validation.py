"""
Input validation utilities for the backend API.
"""
import os
from typing import List, Tuple

MAX_IMAGE_SIZE = 10 * 1024 * 1024  # 10MB


def validate_image(file, max_size: int = MAX_IMAGE_SIZE) -> Tuple[bool, str]:
    """
    Validates uploaded image file.

    Only the declared type and the size are checked here; whether the bytes
    actually decode is decided by the optimizer.

    Args:
        file: FileStorage object from Flask request
        max_size: Maximum accepted size in bytes

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not file:
        return False, "No image file provided"

    name = file.filename or 'image'

    # Check file type
    if not (file.content_type or '').startswith('image/'):
        return False, f"Invalid image type for \"{name}\". Please select only image files"

    # Check file size
    file.seek(0, os.SEEK_END)
    size = file.tell()
    file.seek(0)

    if size > max_size:
        return False, f"Image \"{name}\" is too large (max {max_size // (1024 * 1024)}MB)"

    if size == 0:
        return False, f"Image \"{name}\" is empty"

    return True, ""


def validate_batch(files: List, max_files: int, max_size: int = MAX_IMAGE_SIZE) -> Tuple[bool, str]:
    """
    Validates a multi-file upload. One bad file rejects the whole selection.

    Args:
        files: List of FileStorage objects
        max_files: Maximum number of files per request
        max_size: Maximum accepted size per file in bytes

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not files:
        return False, "No image files provided"

    if len(files) > max_files:
        return False, f"Too many images. Maximum {max_files} per request"

    for file in files:
        is_valid, error_msg = validate_image(file, max_size)
        if not is_valid:
            return False, error_msg

    return True, ""


def parse_quality(quality_str: str) -> Tuple[bool, float, str]:
    """
    Validates and parses a quality factor.

    Args:
        quality_str: Quality as a string, e.g. "0.75"

    Returns:
        Tuple of (is_valid, quality, error_message)
    """
    try:
        quality = float(quality_str)
    except (TypeError, ValueError):
        return False, 0.0, "Quality must be a number"

    if not 0 < quality <= 1:
        return False, 0.0, "Quality must be greater than 0 and at most 1"

    return True, quality, ""


def sanitize_string(input_str: str) -> str:
    """
    Sanitize string input to prevent injection attacks.

    Args:
        input_str: String to sanitize

    Returns:
        Sanitized string
    """
    if not input_str:
        return ""

    # Remove any null bytes
    sanitized = input_str.replace('\x00', '')

    # Strip whitespace
    sanitized = sanitized.strip()

    # Limit length to prevent DoS
    max_length = 256
    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length]

    return sanitized
