"""Transport capability interfaces.

The secure transport (offer/answer negotiation, ICE, DTLS) is an external
collaborator.  BeaconMesh only drives it through the protocols below and
reacts to the events it reports to a :class:`TransportListener`.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Callable, List, Mapping, Protocol

from .model import SessionDescription

Unsubscribe = Callable[[], None]


class TransportFailure(RuntimeError):
    """Raised when the transport reports that the connection failed."""


class ConnectionState(Enum):
    NEW = "new"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"


class DataChannelListener(Protocol):
    def channel_opened(self) -> None: ...

    def channel_closed(self) -> None: ...

    def message_received(self, data: str) -> None: ...

    def channel_error(self, error: Exception) -> None: ...


class DataChannel(Protocol):
    """Ordered, reliable message channel carried by the transport."""

    label: str

    @property
    def ready_state(self) -> str:
        """One of ``connecting``, ``open``, ``closing`` or ``closed``."""

    def send(self, data: str) -> None: ...

    def close(self) -> None: ...

    def subscribe(self, listener: DataChannelListener) -> Unsubscribe: ...


class TransportListener(Protocol):
    def candidate_discovered(self, candidate: str) -> None:
        """Called with a ``candidate:...`` attribute for each new candidate."""

    def discovery_complete(self) -> None: ...

    def connection_state_changed(self, state: ConnectionState) -> None: ...

    def data_channel_received(self, channel: DataChannel) -> None: ...


class PeerTransport(Protocol):
    """One peer connection, exclusively owned by a handshake session."""

    @property
    def local_description(self) -> SessionDescription | None: ...

    @property
    def connection_state(self) -> ConnectionState: ...

    @property
    def ice_connection_state(self) -> str: ...

    @property
    def signaling_state(self) -> str: ...

    async def create_offer(self) -> SessionDescription: ...

    async def create_answer(self) -> SessionDescription: ...

    async def set_local_description(self, description: SessionDescription) -> None: ...

    async def set_remote_description(self, description: SessionDescription) -> None: ...

    def create_data_channel(self, label: str, *, ordered: bool = True) -> DataChannel: ...

    def subscribe(self, listener: TransportListener) -> Unsubscribe: ...

    async def restart_ice(self) -> None:
        """Discard gathered candidates and credentials so the next offer starts fresh."""

    async def get_stats(self) -> List[Mapping[str, Any]]:
        """Return one mapping per stats report.

        Every report has a ``type`` (``candidate-pair``, ``local-candidate``,
        ``remote-candidate`` or others). Candidate pairs carry ``state``,
        ``local_candidate_id``, ``remote_candidate_id``, ``bytes_sent``,
        ``bytes_received`` and ``current_round_trip_time``; candidates carry
        ``address``, ``port``, ``protocol`` and ``candidate_type``.
        """

    async def close(self) -> None: ...


# Called with the configured ICE server URLs.
TransportFactory = Callable[[List[str]], PeerTransport]
