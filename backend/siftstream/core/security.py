"""Security utilities for session and stream handle generation."""

import re
import secrets
from typing import Optional


def generate_session_id(prefix: Optional[str] = None) -> str:
    """
    Generate a cryptographically secure session ID.

    Args:
        prefix: Optional prefix for the session ID (e.g., "sift_")

    Returns:
        A URL-safe base64-encoded 32-byte random string (43 chars without prefix)
    """
    token = secrets.token_urlsafe(32)
    if prefix:
        return f"{prefix}{token[:16]}"
    return token


def generate_stream_token() -> str:
    """
    Generate the unguessable token embedded in a stream URL.

    Possession of the token is the only capability needed to open the
    stream, so it comes from the OS random generator.
    """
    return secrets.token_urlsafe(32)


def sanitize_for_llm(text: str, max_length: int = 20000) -> str:
    """
    Sanitize user input before including it in a prompt.

    Removes control characters, normalizes whitespace and truncates.
    """
    if not text:
        return ""

    # Keep newlines and tabs
    text = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]', '', text)

    text = re.sub(r'[ \t]+', ' ', text)
    text = re.sub(r'\n{4,}', '\n\n\n', text)

    if len(text) > max_length:
        text = text[:max_length] + "... [truncated]"

    return text.strip()


# Schemes an image reference may use
IMAGE_REF_PREFIXES = ("https://", "http://", "data:image/")


def is_allowed_image_ref(image_ref: str) -> bool:
    """True for an http(s) URL or a ``data:image/`` URL."""
    return image_ref.startswith(IMAGE_REF_PREFIXES)
