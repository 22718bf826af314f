"""
Tests for upload artifact helpers.
"""
import base64

import pytest

from app.utils.artifacts import OUTPUT_MIME_TYPE, base_filename, to_data_url, webp_filename


class TestWebpFilename:
    """Tests for renaming converted images."""

    @pytest.mark.parametrize('name,expected', [
        ('photo.jpg', 'photo.webp'),
        ('IMG_0001.JPEG', 'IMG_0001.webp'),
        ('archive.tar.png', 'archive.tar.webp'),
        ('already.webp', 'already.webp'),
        ('no_extension', 'no_extension.webp'),
        ('', 'image.webp'),
    ])
    def test_rename(self, name, expected):
        assert webp_filename(name) == expected

    @pytest.mark.parametrize('name,expected', [
        ('uploads/user/shirt.png', 'shirt.webp'),
        ('../x.png', 'x.webp'),
        ('../../etc/passwd', 'passwd.webp'),
        ('C:\\Users\\me\\shirt.png', 'shirt.webp'),
        ('..', 'image.webp'),
        ('photos/', 'image.webp'),
    ])
    def test_strips_directories(self, name, expected):
        assert webp_filename(name) == expected


class TestBaseFilename:
    """Tests for stripping client-side paths from upload names."""

    @pytest.mark.parametrize('name,expected', [
        ('photo.jpg', 'photo.jpg'),
        ('../x.png', 'x.png'),
        ('a\\b\\c.jpg', 'c.jpg'),
        ('', ''),
        (None, ''),
    ])
    def test_base_filename(self, name, expected):
        assert base_filename(name) == expected


class TestToDataUrl:
    """Tests for preview data URLs."""

    def test_default_mime(self):
        url = to_data_url(b'RIFF\x00\x00\x00\x00WEBP')
        assert url.startswith('data:image/webp;base64,')
        assert base64.b64decode(url.split(',', 1)[1]) == b'RIFF\x00\x00\x00\x00WEBP'

    def test_custom_mime(self):
        assert to_data_url(b'\xff\xd8', 'image/jpeg') == 'data:image/jpeg;base64,/9g='

    def test_output_mime(self):
        assert OUTPUT_MIME_TYPE == 'image/webp'
