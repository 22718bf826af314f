"""
Helpers for turning optimizer output into upload-ready artifacts.
"""
import base64
import os

OUTPUT_MIME_TYPE = 'image/webp'
OUTPUT_EXTENSION = '.webp'


def base_filename(filename: str) -> str:
    """Final path component of a client-supplied filename, with either separator."""
    return os.path.basename((filename or '').replace('\\', '/'))


def webp_filename(filename: str) -> str:
    """Replaces the final extension of ``filename`` with ``.webp`` and drops any directories."""
    name, _ = os.path.splitext(base_filename(filename))
    name = name.strip('. ') or 'image'
    return f"{name}{OUTPUT_EXTENSION}"


def to_data_url(data: bytes, mime_type: str = OUTPUT_MIME_TYPE) -> str:
    """Builds a base64 data URL for previews."""
    encoded = base64.b64encode(data).decode('utf-8')
    return f"data:{mime_type};base64,{encoded}"
