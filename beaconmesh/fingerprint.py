"""Certificate fingerprint helpers.

Descriptions carry the DTLS certificate fingerprint as
``a=fingerprint:sha-256 AB:CD:...``.  The codec stores only the digest, as
separator-free lower-case hex, and re-inserts the algorithm label and colons
when rebuilding a description.  Only SHA-256 is assumed.
"""

from __future__ import annotations

import logging
import string

from cryptography import x509
from cryptography.hazmat.primitives import hashes

logger = logging.getLogger(__name__)

FINGERPRINT_ALGORITHM = "sha-256"
SHA256_HEX_LENGTH = 64

_HEX_DIGITS = frozenset(string.hexdigits)


def is_hex_digest(value: str) -> bool:
    """Return ``True`` when *value* is a non-empty, even-length hex string."""

    return bool(value) and len(value) % 2 == 0 and all(ch in _HEX_DIGITS for ch in value)


def normalize_fingerprint(digest: str) -> str:
    """Strip ``:`` separators and lower-case a fingerprint digest.

    Raises :class:`ValueError` when the result is not a hex digest.
    """

    compact = digest.strip().replace(":", "").lower()
    if not is_hex_digest(compact):
        raise ValueError(f"Fingerprint digest is not hex: {digest!r}")
    return compact


def format_fingerprint(compact: str) -> str:
    """Render a separator-free digest as colon-delimited upper-case pairs."""

    if not is_hex_digest(compact):
        raise ValueError(f"Fingerprint digest is not hex: {compact!r}")
    upper = compact.upper()
    return ":".join(upper[idx : idx + 2] for idx in range(0, len(upper), 2))


def certificate_fingerprint(certificate: x509.Certificate) -> str:
    """Return the ``sha-256`` fingerprint line value for *certificate*."""

    digest = certificate.fingerprint(hashes.SHA256()).hex()
    return f"{FINGERPRINT_ALGORITHM} {format_fingerprint(digest)}"


def load_certificate_fingerprint(pem_data: bytes) -> str:
    """Load a PEM certificate and return its ``sha-256`` fingerprint value."""

    certificate = x509.load_pem_x509_certificate(pem_data)
    logger.debug("Computed fingerprint for certificate %s", certificate.subject.rfc4514_string())
    return certificate_fingerprint(certificate)
