"""Domain models for BeaconMesh session descriptions.

A full session description is several kilobytes of line-oriented SDP text.
Only a handful of its attributes are needed to resume a session on the remote
side; :class:`EssentialRecord` captures exactly those so that they fit in a
single scannable optical code.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List

ESSENTIAL_FORMAT_VERSION = 2
DEFAULT_MAX_CANDIDATES = 4
FOUNDATION_MAX_LENGTH = 8


class DescriptionKind(Enum):
    """Whether a description proposes (offer) or accepts (answer) a session."""

    OFFER = "offer"
    ANSWER = "answer"


class CandidateKind(Enum):
    """Candidate kinds that survive encoding."""

    HOST = "host"
    SERVER_REFLEXIVE = "srflx"

    @property
    def tag(self) -> str:
        return self.value[0]

    @classmethod
    def from_tag(cls, tag: str) -> "CandidateKind":
        for kind in cls:
            if kind.tag == tag:
                return kind
        raise ValueError(f"Unknown candidate kind tag: {tag!r}")


@dataclass
class SessionDescription:
    """Opaque SDP text together with its negotiation kind."""

    kind: DescriptionKind
    sdp: str


@dataclass(frozen=True)
class CandidateRecord:
    """One reachable network endpoint offered during connectivity checks."""

    foundation: str
    address: str
    port: int
    kind: CandidateKind


@dataclass
class EssentialRecord:
    """Compact representation of the fields needed to rebuild a description."""

    ufrag: str
    password: str
    fingerprint: str
    role: str = "a"
    candidates: List[CandidateRecord] = field(default_factory=list)
    version: int = ESSENTIAL_FORMAT_VERSION
