"""Base64url helpers for WebAuthn and OAuth wire formats.

Challenges, credential ids and authenticator responses travel as unpadded
base64url text while the authenticator works on raw bytes.
"""

import base64
import binascii
import re
from typing import Any

_BASE64URL_RE = re.compile(r"[A-Za-z0-9_-]*")


def encode(data: bytes) -> str:
    """Encode bytes as unpadded base64url text."""
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def decode(text: str) -> bytes:
    """Decode unpadded (or padded) base64url text to bytes.

    Raises:
        ValueError: If the text is not valid base64url
    """
    stripped = text.rstrip("=")
    if not _BASE64URL_RE.fullmatch(stripped) or len(stripped) % 4 == 1:
        raise ValueError(f"Invalid base64url value: {text!r}")

    padded = stripped + "=" * (-len(stripped) % 4)
    try:
        data = base64.urlsafe_b64decode(padded)
    except binascii.Error as e:
        raise ValueError(f"Invalid base64url value: {text!r}") from e

    # Unused trailing bits must be zero so every value has exactly one encoding
    if encode(data) != stripped:
        raise ValueError(f"Non-canonical base64url value: {text!r}")
    return data


def decode_binary_field(value: Any) -> bytes:
    """Decode a binary field from server-issued ceremony options.

    Accepts base64url text, raw bytes, a list of byte values, or the
    ``{"type": "Buffer", "data": [...]}`` shape produced by Node.js JSON
    serialization.
    """
    if isinstance(value, bytes):
        return value
    if isinstance(value, str):
        return decode(value)
    if isinstance(value, dict) and value.get("type") == "Buffer":
        value = value.get("data")
    if isinstance(value, list):
        try:
            return bytes(value)
        except (TypeError, ValueError) as e:
            raise ValueError("Invalid byte list in binary field") from e
    raise ValueError(f"Unsupported binary field type: {type(value).__name__}")
