"""Chat messages exchanged over the established data channel.

Every frame is a compact JSON envelope ``{"t": <type>, ...}``.  Text messages
look like ``{"t": "m", "d": "hello", "ts": 1700000000000}``; the remaining
types carry typing indicators, keep-alive pings and a polite disconnect.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from .transport import DataChannel

logger = logging.getLogger(__name__)

MESSAGE = "m"
TYPING = "typing"
PING = "ping"
PONG = "pong"
DISCONNECT = "disconnect"

COMPACT_JSON_SEPARATORS = (",", ":")


class ChatError(ValueError):
    """Raised when a chat message cannot be sent."""


class MessageTooLong(ChatError):
    pass


class ChannelNotOpen(ChatError):
    pass


@dataclass
class ChatMessage:
    text: str
    sent: bool
    timestamp_ms: int


def _now_ms() -> int:
    return int(time.time() * 1000)


def build_envelope(kind: str, data: Any = None, *, timestamp_ms: int | None = None) -> str:
    """Serialize a chat envelope of type *kind*."""

    envelope: Dict[str, Any] = {"t": kind}
    if data is not None:
        envelope["d"] = data
    if kind in (MESSAGE, PING, PONG):
        envelope["ts"] = _now_ms() if timestamp_ms is None else timestamp_ms
    return json.dumps(envelope, separators=COMPACT_JSON_SEPARATORS)


def parse_envelope(raw: str) -> Dict[str, Any]:
    """Parse a chat envelope, raising :class:`ValueError` when malformed."""

    envelope = json.loads(raw)
    if not isinstance(envelope, dict) or not isinstance(envelope.get("t"), str):
        raise ValueError("Chat envelope must be an object with a string 't' field")
    return envelope


class ChatChannel:
    """Chat protocol bound to one data channel."""

    def __init__(
        self,
        channel: DataChannel,
        *,
        max_message_length: int = 1000,
        on_open: Optional[Callable[[], None]] = None,
        on_message: Optional[Callable[[ChatMessage], None]] = None,
        on_typing: Optional[Callable[[bool], None]] = None,
        on_peer_disconnect: Optional[Callable[[], None]] = None,
    ) -> None:
        self.channel = channel
        self.max_message_length = max_message_length
        self.on_open = on_open
        self.on_message = on_message
        self.on_typing = on_typing
        self.on_peer_disconnect = on_peer_disconnect
        self.history: List[ChatMessage] = []
        self._unsubscribe = channel.subscribe(self)

    @property
    def is_open(self) -> bool:
        return self.channel.ready_state == "open"

    def send_text(self, text: str) -> ChatMessage:
        message = text.strip()
        if not message:
            raise ChatError("Message is empty")
        if len(message) > self.max_message_length:
            raise MessageTooLong(f"Message exceeds {self.max_message_length} characters")
        if not self.is_open:
            raise ChannelNotOpen("Connection not ready")
        timestamp = _now_ms()
        self.channel.send(build_envelope(MESSAGE, message, timestamp_ms=timestamp))
        sent = ChatMessage(text=message, sent=True, timestamp_ms=timestamp)
        self.history.append(sent)
        return sent

    def send_typing(self, typing: bool) -> None:
        if self.is_open:
            self.channel.send(build_envelope(TYPING, typing))

    def send_disconnect(self) -> None:
        if not self.is_open:
            return
        try:
            self.channel.send(build_envelope(DISCONNECT))
        except Exception:  # the channel is being torn down anyway
            logger.debug("Failed to send disconnect envelope", exc_info=True)

    def close(self) -> None:
        self._unsubscribe()
        self.channel.close()

    # DataChannelListener

    def channel_opened(self) -> None:
        logger.info("Data channel %s opened", self.channel.label)
        if self.on_open is not None:
            self.on_open()

    def channel_closed(self) -> None:
        logger.info("Data channel %s closed", self.channel.label)

    def channel_error(self, error: Exception) -> None:
        logger.error("Data channel %s error: %s", self.channel.label, error)

    def message_received(self, data: str) -> None:
        try:
            envelope = parse_envelope(data)
        except ValueError:
            logger.warning("Ignoring malformed chat frame")
            return

        kind = envelope["t"]
        if kind == MESSAGE:
            text = envelope.get("d")
            if not isinstance(text, str):
                logger.warning("Ignoring chat message without text")
                return
            timestamp = envelope.get("ts")
            message = ChatMessage(
                text=text,
                sent=False,
                timestamp_ms=timestamp if isinstance(timestamp, int) else _now_ms(),
            )
            self.history.append(message)
            if self.on_message is not None:
                self.on_message(message)
        elif kind == TYPING:
            if self.on_typing is not None:
                self.on_typing(bool(envelope.get("d")))
        elif kind == PING:
            self.channel.send(build_envelope(PONG))
        elif kind == PONG:
            logger.debug("Received pong")
        elif kind == DISCONNECT:
            logger.info("Peer announced disconnect")
            if self.on_peer_disconnect is not None:
                self.on_peer_disconnect()
        else:
            logger.info("Unknown chat message type: %s", kind)
