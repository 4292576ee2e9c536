"""Shared fixtures: description builders and in-memory transport fakes."""

from __future__ import annotations

import asyncio
from typing import Callable, List, Sequence

import pytest

from beaconmesh.model import DescriptionKind, SessionDescription
from beaconmesh.transport import ConnectionState

FINGERPRINT = "AB:CD:" + ":".join(["EF"] * 29) + ":01"

_CANDIDATE_TEMPLATES = {
    "host": "a=candidate:{foundation} 1 udp 2122260223 192.168.1.{octet} {port} typ host generation 0 network-id 1",
    "srflx": (
        "a=candidate:{foundation} 1 udp 1686052607 203.0.113.{octet} {port} typ srflx "
        "raddr 192.168.1.10 rport 50000 generation 0 network-id 1"
    ),
    "relay": (
        "a=candidate:{foundation} 1 udp 41885439 198.51.100.{octet} {port} typ relay "
        "raddr 203.0.113.7 rport 61000 generation 0 network-id 1"
    ),
    "prflx": "a=candidate:{foundation} 1 udp 1845501695 10.0.0.{octet} {port} typ prflx raddr 0.0.0.0 rport 0",
}


def candidate_line(kind: str, index: int, *, foundation: str | None = None) -> str:
    return _CANDIDATE_TEMPLATES[kind].format(
        foundation=foundation or f"{kind}{index}",
        octet=10 + index,
        port=50000 + index,
    )


def build_sdp(
    *,
    ufrag: str = "4Zk9",
    password: str = "pwd123456789012345678",
    fingerprint: str | None = FINGERPRINT,
    algorithm: str = "sha-256",
    setup: str | None = "actpass",
    candidates: Sequence[str] = (),
    line_ending: str = "\r\n",
) -> str:
    lines = [
        "v=0",
        "o=- 4611731400430051336 2 IN IP4 127.0.0.1",
        "s=-",
        "t=0 0",
        "a=group:BUNDLE 0",
        "a=extmap-allow-mixed",
        "a=msid-semantic: WMS",
        "m=application 9 UDP/DTLS/SCTP webrtc-datachannel",
        "c=IN IP4 0.0.0.0",
    ]
    lines.extend(candidates)
    if ufrag is not None:
        lines.append(f"a=ice-ufrag:{ufrag}")
    if password is not None:
        lines.append(f"a=ice-pwd:{password}")
    lines.append("a=ice-options:trickle")
    if fingerprint is not None:
        lines.append(f"a=fingerprint:{algorithm} {fingerprint}")
    if setup is not None:
        lines.append(f"a=setup:{setup}")
    lines.extend(["a=mid:0", "a=sctp-port:5000", "a=max-message-size:262144"])
    return line_ending.join(lines) + line_ending


class FakeDataChannel:
    def __init__(self, label: str) -> None:
        self.label = label
        self.ready_state = "connecting"
        self.sent: List[str] = []
        self.listeners: list = []

    def send(self, data: str) -> None:
        if self.ready_state != "open":
            raise RuntimeError("channel is not open")
        self.sent.append(data)

    def close(self) -> None:
        self.ready_state = "closed"

    def subscribe(self, listener) -> Callable[[], None]:
        self.listeners.append(listener)
        return lambda: self.listeners.remove(listener) if listener in self.listeners else None

    def open(self) -> None:
        self.ready_state = "open"
        for listener in list(self.listeners):
            listener.channel_opened()

    def receive(self, data: str) -> None:
        for listener in list(self.listeners):
            listener.message_received(data)


class FakeTransport:
    """Peer connection double that replays planned discovery events."""

    def __init__(
        self,
        ice_servers: List[str],
        *,
        candidates: Sequence[str] = (),
        complete: bool = True,
        reject_remote: int = 0,
        local_sdp: str | None = None,
        stats: Sequence[dict] = (),
        stats_error: Exception | None = None,
    ) -> None:
        self.ice_servers = ice_servers
        self.planned_candidates = list(candidates)
        self.complete = complete
        self.reject_remote = reject_remote
        self.local_sdp = local_sdp
        self.local_description: SessionDescription | None = None
        self.remote_descriptions: List[SessionDescription] = []
        self.channels: List[FakeDataChannel] = []
        self.listeners: list = []
        self.closed = False
        self.stats = list(stats)
        self.stats_error = stats_error
        self.local_sets = 0
        self.ice_restarts = 0
        self.offers = 0
        self.connection_state = ConnectionState.NEW
        self.ice_connection_state = "new"
        self.signaling_state = "stable"

    async def create_offer(self) -> SessionDescription:
        self.offers += 1
        ufrag = "offr" if self.offers == 1 else f"off{self.offers}"
        return SessionDescription(DescriptionKind.OFFER, self.local_sdp or build_sdp(ufrag=ufrag))

    async def create_answer(self) -> SessionDescription:
        sdp = self.local_sdp or build_sdp(ufrag="answ", password="answerpassword12345678", setup="active")
        return SessionDescription(DescriptionKind.ANSWER, sdp)

    async def set_local_description(self, description: SessionDescription) -> None:
        self.local_description = description
        self.local_sets += 1
        self.signaling_state = "have-local-offer" if description.kind is DescriptionKind.OFFER else "stable"
        loop = asyncio.get_running_loop()
        for line in self.planned_candidates:
            loop.call_soon(self.emit_candidate, line.replace("a=", "", 1))
        if self.complete:
            loop.call_soon(self.emit_complete)

    async def set_remote_description(self, description: SessionDescription) -> None:
        if self.reject_remote:
            self.reject_remote -= 1
            raise ValueError("remote description rejected")
        self.remote_descriptions.append(description)
        self.signaling_state = "have-remote-offer" if description.kind is DescriptionKind.OFFER else "stable"

    def create_data_channel(self, label: str, *, ordered: bool = True) -> FakeDataChannel:
        channel = FakeDataChannel(label)
        self.channels.append(channel)
        return channel

    def subscribe(self, listener) -> Callable[[], None]:
        self.listeners.append(listener)
        return lambda: self.listeners.remove(listener) if listener in self.listeners else None

    async def restart_ice(self) -> None:
        self.ice_restarts += 1
        self.ice_connection_state = "new"

    async def get_stats(self) -> List[dict]:
        if self.stats_error is not None:
            raise self.stats_error
        return list(self.stats)

    async def close(self) -> None:
        self.closed = True

    def emit_candidate(self, line: str) -> None:
        for listener in list(self.listeners):
            listener.candidate_discovered(line)

    def emit_complete(self) -> None:
        for listener in list(self.listeners):
            listener.discovery_complete()

    def emit_state(self, state: ConnectionState) -> None:
        self.connection_state = state
        for listener in list(self.listeners):
            listener.connection_state_changed(state)

    def emit_data_channel(self, channel: FakeDataChannel) -> None:
        for listener in list(self.listeners):
            listener.data_channel_received(channel)


class FakeTransportFactory:
    def __init__(self) -> None:
        self.options: dict = {}
        self.created: List[FakeTransport] = []

    def __call__(self, ice_servers: List[str]) -> FakeTransport:
        transport = FakeTransport(ice_servers, **self.options)
        self.created.append(transport)
        return transport


class RecordingRenderer:
    def __init__(self) -> None:
        self.rendered: List[str] = []

    def render(self, text: str) -> str:
        self.rendered.append(text)
        return f"<code {len(text)}>"


class FakeScanner:
    """Scanner yielding queued frames; each scan() starts a fresh sequence."""

    def __init__(self) -> None:
        self.frames: asyncio.Queue | None = None
        self.scans = 0
        self.stopped = 0

    def push(self, text: str) -> None:
        if self.frames is None:
            self.frames = asyncio.Queue()
        self.frames.put_nowait(text)

    async def scan(self):
        self.scans += 1
        if self.frames is None:
            self.frames = asyncio.Queue()
        try:
            while True:
                yield await self.frames.get()
        finally:
            self.stopped += 1


@pytest.fixture
def make_sdp() -> Callable[..., str]:
    return build_sdp


@pytest.fixture
def make_candidate() -> Callable[..., str]:
    return candidate_line


@pytest.fixture
def fingerprint() -> str:
    return FINGERPRINT


@pytest.fixture
def transport_factory() -> FakeTransportFactory:
    return FakeTransportFactory()


@pytest.fixture
def renderer() -> RecordingRenderer:
    return RecordingRenderer()


@pytest.fixture
def scanner_factory() -> Callable[[], FakeScanner]:
    return FakeScanner


@pytest.fixture
def data_channel() -> FakeDataChannel:
    return FakeDataChannel("beaconmesh-v2")
