"""Description codec turning full session descriptions into scannable tokens.

Encoding keeps only the attributes in :class:`~beaconmesh.model.EssentialRecord`,
serializes them as compact JSON, and optionally deflates the result before
base-64 encoding.  The first character of a token says how the body was
produced:

``Z``
    zlib-compressed JSON, base-64 encoded.
``B``
    plain JSON, base-64 encoded.
anything else
    legacy tokens: the whole string is base-64 encoded JSON.

Decoding either yields a complete description or raises :class:`InvalidToken`
(or its :class:`UnsupportedToken` subclass); it never returns partial data.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import zlib
from typing import Any, Dict, List

from .fingerprint import is_hex_digest
from .model import (
    DEFAULT_MAX_CANDIDATES,
    ESSENTIAL_FORMAT_VERSION,
    FOUNDATION_MAX_LENGTH,
    CandidateKind,
    CandidateRecord,
    DescriptionKind,
    EssentialRecord,
    SessionDescription,
)
from .sdp import DescriptionParseError, build_description, extract_essentials

logger = logging.getLogger(__name__)

COMPRESSED_TAG = "Z"
PLAIN_TAG = "B"
CANDIDATE_FIELD_SEPARATOR = "|"
MAX_TOKEN_CANDIDATES = 32
# Inflated bodies larger than this are rejected; a full record is well under 2 KiB.
MAX_BODY_BYTES = 16 * 1024
COMPACT_JSON_SEPARATORS = (",", ":")


class CodecError(ValueError):
    """Base class for codec failures."""


class MalformedDescription(CodecError):
    """Raised when a local description lacks the attributes needed to encode it."""


class InvalidToken(CodecError):
    """Raised when a remote token cannot be decoded."""


class UnsupportedToken(InvalidToken):
    """Raised when a token decodes but its record is structurally invalid."""


def _record_to_payload(record: EssentialRecord) -> Dict[str, Any]:
    return {
        "v": record.version,
        "u": record.ufrag,
        "p": record.password,
        "f": record.fingerprint,
        "s": record.role,
        "c": [
            CANDIDATE_FIELD_SEPARATOR.join(
                (candidate.foundation, candidate.address, str(candidate.port), candidate.kind.tag)
            )
            for candidate in record.candidates
        ],
    }


def _is_token_text(value: Any) -> bool:
    return isinstance(value, str) and bool(value) and not any(ch.isspace() for ch in value)


def _candidate_from_entry(entry: Any) -> CandidateRecord:
    if not isinstance(entry, str):
        raise UnsupportedToken("Candidate entries must be strings")
    parts = entry.split(CANDIDATE_FIELD_SEPARATOR)
    if len(parts) != 4:
        raise UnsupportedToken(f"Candidate entry has {len(parts)} fields, expected 4")
    foundation, address, port, kind_tag = parts
    if not _is_token_text(foundation) or len(foundation) > FOUNDATION_MAX_LENGTH:
        raise UnsupportedToken(f"Invalid candidate foundation: {foundation!r}")
    if not _is_token_text(address):
        raise UnsupportedToken(f"Invalid candidate address: {address!r}")
    if not (port.isascii() and port.isdigit()) or not 1 <= int(port) <= 65535:
        raise UnsupportedToken(f"Invalid candidate port: {port!r}")
    try:
        kind = CandidateKind.from_tag(kind_tag)
    except ValueError as exc:
        raise UnsupportedToken(str(exc)) from exc
    return CandidateRecord(foundation=foundation, address=address, port=int(port), kind=kind)


def _record_from_payload(payload: Any) -> EssentialRecord:
    if not isinstance(payload, dict):
        raise UnsupportedToken("Token body is not a JSON object")

    required_fields = {"v", "u", "p", "f", "s", "c"}
    missing = required_fields - payload.keys()
    if missing:
        raise UnsupportedToken(f"Token body missing fields: {sorted(missing)}")

    version = payload["v"]
    if type(version) is not int or version != ESSENTIAL_FORMAT_VERSION:
        raise UnsupportedToken(f"Unsupported token format version: {version!r}")
    if not _is_token_text(payload["u"]):
        raise UnsupportedToken("Token ufrag must be a non-empty string")
    if not _is_token_text(payload["p"]):
        raise UnsupportedToken("Token password must be a non-empty string")
    fingerprint = payload["f"]
    if not isinstance(fingerprint, str) or not is_hex_digest(fingerprint):
        raise UnsupportedToken("Token fingerprint must be an even-length hex string")
    role = payload["s"]
    if not isinstance(role, str) or len(role) > 1:
        raise UnsupportedToken(f"Invalid role tag: {role!r}")
    entries = payload["c"]
    if not isinstance(entries, list) or len(entries) > MAX_TOKEN_CANDIDATES:
        raise UnsupportedToken("Token candidates must be a list of at most %d entries" % MAX_TOKEN_CANDIDATES)

    return EssentialRecord(
        ufrag=payload["u"],
        password=payload["p"],
        fingerprint=fingerprint.lower(),
        role=role,
        candidates=[_candidate_from_entry(entry) for entry in entries],
        version=version,
    )


def _b64decode(body: str) -> bytes:
    try:
        return base64.b64decode(body, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidToken("Token body is not valid base-64") from exc


def _inflate(data: bytes) -> bytes:
    inflater = zlib.decompressobj()
    try:
        body = inflater.decompress(data, MAX_BODY_BYTES)
    except zlib.error as exc:
        raise InvalidToken("Token body is not a valid compressed stream") from exc
    if inflater.unconsumed_tail:
        raise InvalidToken(f"Token body inflates beyond {MAX_BODY_BYTES} bytes")
    if not inflater.eof:
        raise InvalidToken("Token body is a truncated compressed stream")
    return body


def _deflate(data: bytes) -> bytes:
    return zlib.compress(data)


def _read_body(token: str) -> bytes:
    text = token.strip()
    if not text:
        raise InvalidToken("Token is empty")
    tag, body = text[0], text[1:]
    if tag == COMPRESSED_TAG:
        return _inflate(_b64decode(body))
    if tag == PLAIN_TAG:
        return _b64decode(body)
    logger.debug("Token has no format tag; reading it as legacy base-64")
    return _b64decode(text)


def pack_record(record: EssentialRecord, *, use_compression: bool = True) -> str:
    """Serialize *record* into a tagged token string."""

    raw = json.dumps(_record_to_payload(record), separators=COMPACT_JSON_SEPARATORS).encode("utf-8")
    if use_compression:
        try:
            compressed = _deflate(raw)
        except zlib.error:
            logger.warning("Compression failed, falling back to plain base-64", exc_info=True)
        else:
            return COMPRESSED_TAG + base64.b64encode(compressed).decode("ascii")
    return PLAIN_TAG + base64.b64encode(raw).decode("ascii")


def unpack_token(token: str) -> EssentialRecord:
    """Decode *token* into the :class:`EssentialRecord` it carries."""

    body = _read_body(token)
    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise InvalidToken("Token body is not valid JSON") from exc
    except RecursionError as exc:
        raise InvalidToken("Token body is nested too deeply") from exc
    return _record_from_payload(payload)


def encode_description(
    description: SessionDescription | str,
    candidate_cap: int = DEFAULT_MAX_CANDIDATES,
    *,
    use_compression: bool = True,
) -> str:
    """Encode a full description into a compact token.

    Only host and server-reflexive candidates are kept, and only the first
    ``candidate_cap`` of them in their original order.
    """

    text = description.sdp if isinstance(description, SessionDescription) else description
    try:
        record = extract_essentials(text, candidate_cap)
    except DescriptionParseError as exc:
        raise MalformedDescription(str(exc)) from exc
    token = pack_record(record, use_compression=use_compression)
    logger.debug(
        "Encoded description with %d candidates into %d-character token",
        len(record.candidates),
        len(token),
    )
    return token


def decode_token(token: str, expected_kind: DescriptionKind) -> SessionDescription:
    """Rebuild a full description of *expected_kind* from *token*."""

    record = unpack_token(token)
    return SessionDescription(kind=expected_kind, sdp=build_description(record, expected_kind))


class DescriptionCodec:
    """Codec bound to a candidate cap and compression preference."""

    def __init__(self, candidate_cap: int = DEFAULT_MAX_CANDIDATES, *, use_compression: bool = True) -> None:
        if candidate_cap < 0:
            raise ValueError("candidate_cap must not be negative")
        self.candidate_cap = candidate_cap
        self.use_compression = use_compression

    @classmethod
    def from_config(cls, config: Any) -> "DescriptionCodec":
        return cls(config.max_candidates, use_compression=config.use_compression)

    def encode(self, description: SessionDescription | str) -> str:
        return encode_description(
            description,
            self.candidate_cap,
            use_compression=self.use_compression,
        )

    def decode(self, token: str, expected_kind: DescriptionKind) -> SessionDescription:
        return decode_token(token, expected_kind)

    def inspect(self, token: str) -> List[str]:
        """Return a human-readable summary of the record inside *token*."""

        record = unpack_token(token)
        lines = [
            f"version: {record.version}",
            f"ufrag: {record.ufrag}",
            f"password: {record.password}",
            f"fingerprint: {record.fingerprint}",
            f"role: {record.role or '-'}",
            f"candidates: {len(record.candidates)}",
        ]
        for candidate in record.candidates:
            lines.append(
                f"  {candidate.foundation} {candidate.address}:{candidate.port} {candidate.kind.value}"
            )
        return lines
