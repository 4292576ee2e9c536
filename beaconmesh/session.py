"""Handshake session state.

A :class:`HandshakeSession` holds everything belonging to one connection
attempt: the transport handle, the candidates observed during discovery,
pending timers and the remote input source.  It is exclusively owned by the
orchestrator that created it and is discarded on teardown.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, auto
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Mapping, Optional

from .model import CandidateRecord, DescriptionKind
from .optical import TokenInbox
from .transport import PeerTransport

if TYPE_CHECKING:
    from .chat import ChatChannel

PROTOCOL_NAME = "WebRTC DataChannel"


class HandshakeRole(Enum):
    """Whether we produce the offer or answer it."""

    INITIATOR = "initiator"
    RESPONDER = "responder"

    @property
    def local_kind(self) -> DescriptionKind:
        return DescriptionKind.OFFER if self is HandshakeRole.INITIATOR else DescriptionKind.ANSWER

    @property
    def remote_kind(self) -> DescriptionKind:
        return DescriptionKind.ANSWER if self is HandshakeRole.INITIATOR else DescriptionKind.OFFER


class HandshakeState(Enum):
    IDLE = "idle"
    CREATING_DESCRIPTION = "creating-description"
    DISCOVERING_CANDIDATES = "discovering-candidates"
    READY_TO_TRANSMIT = "ready-to-transmit"
    AWAITING_REMOTE = "awaiting-remote"
    APPLYING_REMOTE = "applying-remote"
    ESTABLISHED = "established"
    FAILED = "failed"


class DiscoveryOutcome(Enum):
    """Why candidate discovery stopped."""

    COMPLETE = auto()
    TIMEOUT = auto()
    CAP_REACHED = auto()
    FORCED = auto()


@dataclass
class Notice:
    """User-facing notification; ``level`` is info, success, warning or error."""

    level: str
    title: str
    message: str


@dataclass
class HandshakeSession:
    role: HandshakeRole
    transport: PeerTransport
    inbox: TokenInbox
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    state: HandshakeState = HandshakeState.IDLE
    candidates: List[CandidateRecord] = field(default_factory=list)
    discovery_complete: bool = False
    discovery_started_at: Optional[float] = None
    discovery_outcome: Optional[DiscoveryOutcome] = None
    force_available: bool = False
    connected_at: Optional[float] = None
    local_token: Optional[str] = None
    chat: Optional["ChatChannel"] = None
    failure: Optional[BaseException] = None
    task: Optional[asyncio.Task] = None
    discovery_done: Optional[asyncio.Future] = None
    unsubscribe: Optional[Callable[[], None]] = None
    timers: Dict[str, asyncio.TimerHandle] = field(default_factory=dict)

    def schedule(self, name: str, delay: float, callback: Callable[[], None]) -> None:
        """Arm a named timer, replacing any pending timer of the same name."""

        self.cancel_timer(name)
        loop = asyncio.get_running_loop()
        self.timers[name] = loop.call_later(delay, callback)

    def cancel_timer(self, name: str) -> None:
        handle = self.timers.pop(name, None)
        if handle is not None:
            handle.cancel()

    def cancel_timers(self) -> None:
        for handle in self.timers.values():
            handle.cancel()
        self.timers.clear()


def format_duration(seconds: float | None) -> str:
    """Render a duration as ``M:SS`` or ``H:MM:SS``."""

    if not seconds or seconds < 0:
        return "0:00"
    total = int(seconds)
    minutes, secs = divmod(total, 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def describe_session(session: HandshakeSession | None, now: float) -> "OrderedDict[str, Any]":
    """Summarize a session for display; *now* is on the event loop clock."""

    info: "OrderedDict[str, Any]" = OrderedDict()
    if session is None:
        info["State"] = HandshakeState.IDLE.value
        return info

    transport = session.transport
    channel = session.chat.channel if session.chat is not None else None
    connected_for = now - session.connected_at if session.connected_at is not None else None
    info["State"] = session.state.value
    info["Connection State"] = transport.connection_state.value if transport.connection_state else "Unknown"
    info["ICE State"] = transport.ice_connection_state or "Unknown"
    info["Signaling State"] = transport.signaling_state or "Unknown"
    info["Data Channel"] = channel.ready_state if channel is not None else "Not created"
    info["Role"] = "Host (Initiator)" if session.role is HandshakeRole.INITIATOR else "Joiner (Responder)"
    info["Connected For"] = format_duration(connected_for)
    info["Local Candidates"] = len(session.candidates)
    info["Protocol"] = PROTOCOL_NAME
    return info


def format_stats(reports: Iterable[Mapping[str, Any]]) -> List[str]:
    """Render transport stats reports as text lines.

    Only the succeeded candidate pair and the local/remote candidates are
    shown; every other report type is skipped.
    """

    lines = ["Connection Stats", "================", ""]
    for report in reports:
        kind = report.get("type")
        if kind == "candidate-pair" and report.get("state") == "succeeded":
            rtt = report.get("current_round_trip_time")
            lines.extend(
                [
                    "Active Candidate Pair:",
                    f"  Local: {report.get('local_candidate_id')}",
                    f"  Remote: {report.get('remote_candidate_id')}",
                    f"  Bytes Sent: {report.get('bytes_sent') or 0}",
                    f"  Bytes Received: {report.get('bytes_received') or 0}",
                    f"  Round Trip Time: {rtt if rtt is not None else 'N/A'}s",
                    "",
                ]
            )
        elif kind in ("local-candidate", "remote-candidate"):
            lines.extend(
                [
                    f"{kind}:",
                    f"  Address: {report.get('address')}:{report.get('port')}",
                    f"  Protocol: {report.get('protocol')}",
                    f"  Type: {report.get('candidate_type')}",
                    "",
                ]
            )
    return lines
