"""
Store key layout for per-identity bucket state.
"""

import base64
import binascii
import hashlib
from enum import Enum


LAST_REFILL_SUFFIX = "_lastRefillTime"


class KeyEncoding(str, Enum):
    """How a caller identity is transformed before it becomes part of a store key."""

    PLAIN = "plain"
    BASE64 = "base64"
    SHA256 = "sha256"


def encode_identity(identity: str, encoding: KeyEncoding = KeyEncoding.PLAIN) -> str:
    """Encode an identity for use inside a store key."""
    if encoding == KeyEncoding.BASE64:
        return base64.b64encode(identity.encode("utf-8")).decode("ascii")
    if encoding == KeyEncoding.SHA256:
        return hashlib.sha256(identity.encode("utf-8")).hexdigest()
    return identity


def decode_identity(encoded: str, encoding: KeyEncoding = KeyEncoding.PLAIN) -> str:
    """Recover the identity from an encoded key segment.

    Only meaningful for reversible encodings; used when inspecting the store by key.
    """
    if encoding == KeyEncoding.SHA256:
        raise ValueError("sha256 key encoding is one-way")
    if encoding == KeyEncoding.BASE64:
        try:
            return base64.b64decode(encoded.encode("ascii"), validate=True).decode("utf-8")
        except (binascii.Error, UnicodeError) as e:
            raise ValueError(f"Not a base64 encoded identity: {encoded!r}") from e
    return encoded


class BucketKeys:
    """Builds the store keys owned by one limiter configuration."""

    def __init__(self, prefix: str, encoding: KeyEncoding = KeyEncoding.PLAIN):
        self.prefix = prefix
        self.encoding = encoding

    def tokens(self, identity: str) -> str:
        """Key holding the token count (or window counter) for an identity."""
        return f"{self.prefix}{encode_identity(identity, self.encoding)}"

    def last_refill(self, identity: str) -> str:
        """Key holding the RFC-3339 timestamp of the last refill."""
        return f"{self.tokens(identity)}{LAST_REFILL_SUFFIX}"

    def is_reserved(self, identity: str) -> bool:
        """True when the identity's token key would be another identity's timestamp key.

        Only PLAIN can collide; base64 and hex digests never contain ``_``.
        """
        return self.encoding == KeyEncoding.PLAIN and identity.endswith(LAST_REFILL_SUFFIX)

    def identity_from_key(self, key: str) -> str:
        """Reverse :meth:`tokens` for a key read back from the store."""
        if not key.startswith(self.prefix):
            raise ValueError(f"Key {key!r} is outside prefix {self.prefix!r}")
        segment = key[len(self.prefix):]
        if segment.endswith(LAST_REFILL_SUFFIX):
            segment = segment[:-len(LAST_REFILL_SUFFIX)]
        return decode_identity(segment, self.encoding)
