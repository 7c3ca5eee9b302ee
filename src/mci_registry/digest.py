# src/mci_registry/digest.py
"""
Digest Verifier - content hashing and object key derivation.

Digests are written as "<algorithm>:<hex>" (only sha256 is supported).
Payload bytes are hashed exactly as received, no normalization.

Object keys are content-addressed: "<namespace>/<digest>". The same bytes
always map to the same key, so identical payloads share one blob.
"""

import hashlib
import hmac
import re
from enum import Enum
from typing import Tuple

from mci_registry.errors import IntegrityError, ValidationError

DEFAULT_ALGORITHM = "sha256"

HASH_PATTERNS = {
    "sha256": re.compile(r"^[a-f0-9]{64}$"),
}


class PayloadKind(str, Enum):
    """Payload kinds, each stored under its own key namespace."""

    DEFINITION = "definition"
    CONFIGURATION = "configuration"
    SECRETS = "secrets"

    @property
    def namespace(self) -> str:
        return NAMESPACES[self]


NAMESPACES = {
    PayloadKind.DEFINITION: "definitions",
    PayloadKind.CONFIGURATION: "configurations",
    PayloadKind.SECRETS: "secrets",
}


def compute(payload: bytes, algorithm: str = DEFAULT_ALGORITHM) -> str:
    """
    Compute the digest of a payload.

    Args:
        payload: Raw payload bytes (may be empty)
        algorithm: Hash algorithm name

    Returns:
        Digest string, e.g. "sha256:e3b0c442..."
    """
    if algorithm not in HASH_PATTERNS:
        raise ValidationError(f"Unsupported digest algorithm: {algorithm}")
    return f"{algorithm}:{hashlib.new(algorithm, payload).hexdigest()}"


def parse_digest(digest: str) -> Tuple[str, str]:
    """
    Split and validate a digest string.

    Raises:
        ValidationError: If the format, algorithm or hash is invalid
    """
    if not isinstance(digest, str) or ":" not in digest:
        raise ValidationError(
            f"Invalid digest format: {digest!r}, expected 'algorithm:hash'"
        )
    algorithm, hex_hash = digest.split(":", 1)
    pattern = HASH_PATTERNS.get(algorithm)
    if pattern is None:
        raise ValidationError(f"Unsupported digest algorithm: {algorithm}")
    if not pattern.match(hex_hash):
        raise ValidationError(f"Invalid {algorithm} hash in digest: {digest!r}")
    return algorithm, hex_hash


def matches(payload: bytes, expected_digest: str) -> bool:
    """Return True when the payload hashes to expected_digest."""
    algorithm, _ = parse_digest(expected_digest)
    # Constant-time comparison
    return hmac.compare_digest(compute(payload, algorithm), expected_digest)


def verify(payload: bytes, expected_digest: str) -> str:
    """
    Verify a payload against a caller-supplied digest.

    Returns:
        The verified digest

    Raises:
        ValidationError: expected_digest is malformed
        IntegrityError: The payload does not hash to expected_digest
    """
    algorithm, _ = parse_digest(expected_digest)
    actual = compute(payload, algorithm)
    if not hmac.compare_digest(actual, expected_digest):
        raise IntegrityError(
            f"Digest mismatch: expected {expected_digest}, got {actual}"
        )
    return actual


def object_key(kind: PayloadKind, digest: str) -> str:
    """Derive the content-addressed object key for a payload digest."""
    parse_digest(digest)
    return f"{PayloadKind(kind).namespace}/{digest}"


def digest_from_key(key: str) -> str:
    """
    Recover the digest embedded in a content-addressed key.

    Raises:
        ValidationError: The key is not of the form "<namespace>/<digest>"
    """
    namespace, sep, digest = key.partition("/")
    if not sep or namespace not in NAMESPACES.values():
        raise ValidationError(f"Not a content-addressed key: {key!r}")
    parse_digest(digest)
    return digest
