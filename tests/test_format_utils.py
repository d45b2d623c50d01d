"""Tests for size formatting and file naming helpers."""

from pathlib import Path

import pytest

from mediaqueue.utils.format_utils import (
    extension_of,
    formatted_size,
    is_reserved_name,
    parse_height,
    sanitize_filename,
    to_mb,
)


class TestFormattedSize:
    @pytest.mark.parametrize(
        "size_bytes, expected",
        [
            (0, "0 B"),
            (-5, "0 B"),
            (500, "500 B"),
            (1536, "1.50 KB"),
            (2097152, "2 MB"),
        ],
    )
    def test_units(self, size_bytes, expected):
        assert formatted_size(size_bytes) == expected


class TestSanitizeFilename:
    def test_forbidden_characters_become_spaces(self):
        assert sanitize_filename('a/b:c?"d"') == "a b c d"

    def test_unicode_letters_kept(self):
        assert sanitize_filename("Konzert – 東京 2024") == "Konzert _ 東京 2024"

    def test_curly_quotes_folded(self):
        assert sanitize_filename("Don’t stop") == "Don't stop"

    def test_reserved_device_name_prefixed(self):
        assert sanitize_filename("CON") == "_CON"

    def test_empty_uses_fallback(self):
        assert sanitize_filename("  ...  ", fallback="video") == "video"
        assert sanitize_filename(None) == "file"


class TestReservedNames:
    @pytest.mark.parametrize("name", ["nul", "NUL.txt", "com1.mp4", "LPT9"])
    def test_reserved(self, name):
        assert is_reserved_name(name)

    @pytest.mark.parametrize("name", ["null.mp4", "console.txt", "com10"])
    def test_not_reserved(self, name):
        assert not is_reserved_name(name)


class TestMisc:
    def test_parse_height(self):
        assert parse_height("1920x1080") == 1080
        assert parse_height("720p") == 720
        assert parse_height("audio only") is None
        assert parse_height(None) is None

    def test_to_mb(self):
        assert to_mb(1024, "KiB") == pytest.approx(1.0)
        assert to_mb(2, "GiB") == pytest.approx(2048.0)
        assert to_mb(3, "MB") == pytest.approx(3.0)

    def test_extension_of(self):
        assert extension_of(Path("/x/Clip.MP4")) == "mp4"
        assert extension_of(Path("/x/noext")) == ""
