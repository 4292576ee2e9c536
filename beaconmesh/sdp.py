"""Line-oriented session description parsing and synthesis.

Parsing pulls the attributes :class:`~beaconmesh.model.EssentialRecord` needs
out of a full description.  Synthesis goes the other way and emits a complete
data-channel-only description around those attributes, filling every other
line with fixed boilerplate.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from .fingerprint import FINGERPRINT_ALGORITHM, format_fingerprint, normalize_fingerprint
from .model import (
    FOUNDATION_MAX_LENGTH,
    CandidateKind,
    CandidateRecord,
    DescriptionKind,
    EssentialRecord,
)

logger = logging.getLogger(__name__)

UFRAG_PREFIX = "a=ice-ufrag:"
PASSWORD_PREFIX = "a=ice-pwd:"
FINGERPRINT_PREFIX = "a=fingerprint:"
SETUP_PREFIX = "a=setup:"
CANDIDATE_PREFIX = "a=candidate:"

ROLE_TAGS = {"actpass": "a", "passive": "p", "active": "h"}
ROLE_NAMES = {tag: name for name, tag in ROLE_TAGS.items()}
DEFAULT_ROLE = "actpass"

# Fixed per-kind priorities written into rebuilt candidate lines.
CANDIDATE_PRIORITIES = {
    CandidateKind.HOST: 2130706431,
    CandidateKind.SERVER_REFLEXIVE: 1694498815,
}

_CANDIDATE_RE = re.compile(
    r"^(?:a=)?candidate:(\S+)\s+(\d+)\s+(\S+)\s+(\d+)\s+(\S+)\s+(\d+)\s+typ\s+(\S+)"
)


class DescriptionParseError(ValueError):
    """Raised when a description lacks attributes required for encoding."""


@dataclass
class DescriptionAttributes:
    """Attributes extracted from a description, before any truncation."""

    ufrag: Optional[str] = None
    password: Optional[str] = None
    fingerprint_algorithm: Optional[str] = None
    fingerprint_digest: Optional[str] = None
    setup: Optional[str] = None
    candidates: List[CandidateRecord] = field(default_factory=list)


def parse_candidate_line(line: str) -> CandidateRecord | None:
    """Parse an ICE candidate attribute.

    Accepts both ``a=candidate:...`` and the bare ``candidate:...`` form that
    transports report during discovery.  Returns ``None`` for lines that do
    not match the candidate grammar and for relay/peer-reflexive candidates.
    """

    match = _CANDIDATE_RE.match(line.strip())
    if not match:
        return None
    foundation, _component, _transport, _priority, address, port, kind = match.groups()
    try:
        candidate_kind = CandidateKind(kind)
    except ValueError:
        return None
    port_number = int(port)
    if not 1 <= port_number <= 65535:
        return None
    return CandidateRecord(
        foundation=foundation[:FOUNDATION_MAX_LENGTH],
        address=address,
        port=port_number,
        kind=candidate_kind,
    )


def parse_description(text: str) -> DescriptionAttributes:
    """Extract recognized attributes from description text.

    Repeated attributes keep their last occurrence; candidates are kept in
    order of appearance.
    """

    attributes = DescriptionAttributes()
    for line in text.splitlines():
        if line.startswith(UFRAG_PREFIX):
            attributes.ufrag = line[len(UFRAG_PREFIX) :].strip()
        elif line.startswith(PASSWORD_PREFIX):
            attributes.password = line[len(PASSWORD_PREFIX) :].strip()
        elif line.startswith(FINGERPRINT_PREFIX):
            parts = line[len(FINGERPRINT_PREFIX) :].split()
            if len(parts) >= 2:
                attributes.fingerprint_algorithm = parts[0].lower()
                attributes.fingerprint_digest = parts[1]
            elif parts:
                attributes.fingerprint_algorithm = None
                attributes.fingerprint_digest = parts[0]
        elif line.startswith(SETUP_PREFIX):
            attributes.setup = line[len(SETUP_PREFIX) :].strip()
        elif line.startswith(CANDIDATE_PREFIX):
            candidate = parse_candidate_line(line)
            if candidate is not None:
                attributes.candidates.append(candidate)
    return attributes


def role_tag(setup: str | None) -> str:
    """Reduce a DTLS setup value to its one-character tag."""

    if setup is None:
        return ROLE_TAGS[DEFAULT_ROLE]
    return ROLE_TAGS.get(setup.lower(), ROLE_TAGS[DEFAULT_ROLE])


def role_name(tag: str) -> str:
    """Expand a role tag, defaulting to ``actpass`` for unknown tags."""

    return ROLE_NAMES.get(tag, DEFAULT_ROLE)


def extract_essentials(text: str, candidate_cap: int) -> EssentialRecord:
    """Build an :class:`EssentialRecord` from description text."""

    if candidate_cap < 0:
        raise ValueError("candidate_cap must not be negative")

    attributes = parse_description(text)
    missing = [
        name
        for name, value in (
            ("ice-ufrag", attributes.ufrag),
            ("ice-pwd", attributes.password),
            ("fingerprint", attributes.fingerprint_digest),
        )
        if not value
    ]
    if missing:
        raise DescriptionParseError(f"Description missing required attributes: {missing}")

    if attributes.fingerprint_algorithm != FINGERPRINT_ALGORITHM:
        logger.warning(
            "Fingerprint algorithm %r is not %s; it will be relabelled on decode",
            attributes.fingerprint_algorithm,
            FINGERPRINT_ALGORITHM,
        )
    try:
        fingerprint = normalize_fingerprint(attributes.fingerprint_digest or "")
    except ValueError as exc:
        raise DescriptionParseError(str(exc)) from exc

    return EssentialRecord(
        ufrag=attributes.ufrag or "",
        password=attributes.password or "",
        fingerprint=fingerprint,
        role=role_tag(attributes.setup),
        candidates=attributes.candidates[:candidate_cap],
    )


def format_candidate_line(candidate: CandidateRecord) -> str:
    priority = CANDIDATE_PRIORITIES[candidate.kind]
    return (
        f"a=candidate:{candidate.foundation} 1 udp {priority} "
        f"{candidate.address} {candidate.port} typ {candidate.kind.value}"
    )


def build_description(
    record: EssentialRecord,
    kind: DescriptionKind,
    *,
    session_id: int | None = None,
) -> str:
    """Synthesize a complete description around *record*.

    The setup attribute follows *kind* rather than the stored role tag: an
    offer always advertises ``actpass`` and an answer ``active``.
    """

    if session_id is None:
        session_id = int(time.time() * 1000)
    setup = "actpass" if kind is DescriptionKind.OFFER else "active"
    lines = [
        "v=0",
        f"o=- {session_id} 2 IN IP4 127.0.0.1",
        "s=-",
        "t=0 0",
        "a=group:BUNDLE 0",
        "a=extmap-allow-mixed",
        "a=msid-semantic: WMS",
        "m=application 9 UDP/DTLS/SCTP webrtc-datachannel",
        "c=IN IP4 0.0.0.0",
        "a=ice-options:trickle",
        f"{UFRAG_PREFIX}{record.ufrag}",
        f"{PASSWORD_PREFIX}{record.password}",
        f"{FINGERPRINT_PREFIX}{FINGERPRINT_ALGORITHM} {format_fingerprint(record.fingerprint)}",
        f"{SETUP_PREFIX}{setup}",
        "a=mid:0",
        "a=sctp-port:5000",
        "a=max-message-size:262144",
    ]
    lines.extend(format_candidate_line(candidate) for candidate in record.candidates)
    return "\r\n".join(lines) + "\r\n"


def merge_candidates(text: str, candidates: Iterable[CandidateRecord]) -> str:
    """Append candidate lines for *candidates* missing from *text*.

    Candidates already present (same address, port and kind) are skipped so
    the snapshot keeps the description's own order first, then discovery
    order.
    """

    present = {
        (candidate.address, candidate.port, candidate.kind)
        for candidate in parse_description(text).candidates
    }
    extra: List[str] = []
    for candidate in candidates:
        key = (candidate.address, candidate.port, candidate.kind)
        if key in present:
            continue
        present.add(key)
        extra.append(format_candidate_line(candidate))
    if not extra:
        return text
    separator = "\r\n" if "\r\n" in text else "\n"
    body = text if not text or text.endswith(separator) else text + separator
    return body + separator.join(extra) + separator
