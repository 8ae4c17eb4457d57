from __future__ import annotations

import base64
import hmac
import secrets
import string
from enum import Enum

BASE62_ALPHABET = string.ascii_letters + string.digits


class TokenEncoding(str, Enum):
    HEX = "hex"
    BASE64 = "base64"
    BASE62 = "base62"


def generate(byte_length: int, encoding: TokenEncoding = TokenEncoding.HEX) -> str:
    """Return an opaque random token.

    ``HEX`` and ``BASE64`` encode ``byte_length`` random bytes; ``BASE62``
    draws ``byte_length`` characters uniformly from ``[A-Za-z0-9]``.
    """

    if byte_length <= 0:
        raise ValueError("byte_length must be positive")
    if encoding == TokenEncoding.HEX:
        return secrets.token_hex(byte_length)
    if encoding == TokenEncoding.BASE64:
        return base64.b64encode(secrets.token_bytes(byte_length)).decode("ascii")
    if encoding == TokenEncoding.BASE62:
        return "".join(secrets.choice(BASE62_ALPHABET) for _ in range(byte_length))
    raise ValueError(f"unsupported encoding: {encoding}")


def tokens_match(expected: str | None, provided: str | None) -> bool:
    """Constant-time comparison that treats missing values as a mismatch."""

    if not expected or not provided:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


__all__ = ["BASE62_ALPHABET", "TokenEncoding", "generate", "tokens_match"]
