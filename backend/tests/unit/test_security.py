"""
Unit tests for security helpers.
"""

import pytest

from siftstream.core.security import (
    generate_session_id,
    generate_stream_token,
    is_allowed_image_ref,
    sanitize_for_llm,
)


class TestImageRefs:
    """Tests for image reference checks."""

    @pytest.mark.parametrize(
        "image_ref",
        ["https://example.com/flood.jpg", "http://example.com/a.png", "data:image/png;base64,iVBORw0KGgo="],
    )
    def test_allowed(self, image_ref):
        """Test http(s) and inline image URLs are accepted."""
        assert is_allowed_image_ref(image_ref)

    @pytest.mark.parametrize(
        "image_ref",
        ["ftp://example.com/a.png", "file:///etc/passwd", "data:text/html;base64,PGI+", "example.com/a.png"],
    )
    def test_refused(self, image_ref):
        """Other schemes and non-image data URLs are refused."""
        assert not is_allowed_image_ref(image_ref)


class TestTokens:
    """Tests for identifier generation."""

    def test_session_id_prefix(self):
        """Test prefixed ids keep the prefix and a short random tail."""
        session_id = generate_session_id("sift_")
        assert session_id.startswith("sift_")
        assert len(session_id) == len("sift_") + 16

    def test_stream_tokens_are_unique(self):
        """Test stream tokens do not repeat."""
        assert len({generate_stream_token() for _ in range(50)}) == 50


class TestSanitize:
    """Tests for prompt input sanitization."""

    def test_control_characters_removed(self):
        """Control characters go, newlines stay."""
        assert sanitize_for_llm("claim\x00 X\nline two") == "claim X\nline two"

    def test_truncates(self):
        """Test long input is cut with a marker."""
        assert sanitize_for_llm("a" * 30, max_length=10) == "a" * 10 + "... [truncated]"
