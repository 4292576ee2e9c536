"""Handshake orchestrator driving the two-role offer/answer exchange.

The initiator creates an offer, waits for candidate discovery, renders the
encoded offer and then waits for the responder's answer token.  The responder
starts by waiting for that offer token, applies it, and only then creates,
encodes and renders its answer.  Both flows share one state machine::

    idle -> creating-description -> discovering-candidates
         -> ready-to-transmit -> awaiting-remote -> applying-remote
         -> established

``failed`` is reachable from every state except ``idle`` and always resets to
``idle``.  A token that fails to decode, or that the transport rejects, sends
the session back to ``awaiting-remote`` with discovery state untouched.
An initiator still waiting for its answer may regenerate, which restarts ICE
and runs the offer flow again from ``creating-description``.

Everything runs on one asyncio loop.  Long waits are futures and every timer
is owned by the session so teardown can cancel it.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from typing import Any, Awaitable, Callable, List, Optional, Set, Tuple

from .chat import ChannelNotOpen, ChatChannel, ChatMessage
from .codec import DescriptionCodec, InvalidToken, MalformedDescription
from .config import MeshConfig
from .model import SessionDescription
from .optical import CodeRenderer, CodeScanner, TokenInbox
from .sdp import merge_candidates, parse_candidate_line
from .session import (
    DiscoveryOutcome,
    HandshakeRole,
    HandshakeSession,
    HandshakeState,
    Notice,
    describe_session,
    format_stats,
)
from .transport import ConnectionState, DataChannel, TransportFactory, TransportFailure

logger = logging.getLogger(__name__)

DISCOVERY_TIMER = "discovery"
FORCE_TIMER = "force-generate"
CONNECTION_TIMER = "connection"

_NOTICE_LOG_LEVELS = {
    "error": logging.ERROR,
    "warning": logging.WARNING,
}


class _SessionListener:
    """Routes transport events for one session back to the orchestrator."""

    def __init__(self, orchestrator: "HandshakeOrchestrator", session: HandshakeSession) -> None:
        self._orchestrator = orchestrator
        self._session = session

    def candidate_discovered(self, candidate: str) -> None:
        self._orchestrator._on_candidate(self._session, candidate)

    def discovery_complete(self) -> None:
        self._orchestrator._on_discovery_complete(self._session)

    def connection_state_changed(self, state: ConnectionState) -> None:
        self._orchestrator._on_connection_state(self._session, state)

    def data_channel_received(self, channel: DataChannel) -> None:
        self._orchestrator._on_data_channel(self._session, channel)


class HandshakeOrchestrator:
    """Own at most one :class:`HandshakeSession` and drive it to completion."""

    def __init__(
        self,
        transport_factory: TransportFactory,
        *,
        config: Optional[MeshConfig] = None,
        renderer: Optional[CodeRenderer] = None,
        scanner: Optional[CodeScanner] = None,
        on_notice: Optional[Callable[[Notice], None]] = None,
        on_state_change: Optional[Callable[[HandshakeSession, HandshakeState], None]] = None,
        on_message: Optional[Callable[[ChatMessage], None]] = None,
    ) -> None:
        self.config = config or MeshConfig()
        self.codec = DescriptionCodec.from_config(self.config)
        self.renderer = renderer
        self.scanner = scanner
        self.on_notice = on_notice
        self.on_state_change = on_state_change
        self.on_message = on_message
        self._transport_factory = transport_factory
        self._session: Optional[HandshakeSession] = None
        self._waiters: List[Tuple[frozenset, asyncio.Future]] = []
        self._closing: Set[asyncio.Task] = set()

    @property
    def session(self) -> Optional[HandshakeSession]:
        return self._session

    @property
    def state(self) -> HandshakeState:
        return self._session.state if self._session is not None else HandshakeState.IDLE

    # Public operations

    async def start_initiator(self) -> HandshakeSession:
        """Tear down any current session and start producing an offer."""

        session = await self._new_session(HandshakeRole.INITIATOR)
        channel = session.transport.create_data_channel(self.config.data_channel_name, ordered=True)
        self._attach_chat(session, channel)
        session.task = asyncio.get_running_loop().create_task(
            self._run(session, self._initiator_flow)
        )
        return session

    async def start_responder(self) -> HandshakeSession:
        """Tear down any current session and wait for an offer token."""

        session = await self._new_session(HandshakeRole.RESPONDER)
        session.task = asyncio.get_running_loop().create_task(
            self._run(session, self._responder_flow)
        )
        return session

    def submit_token(self, text: str) -> bool:
        """Hand a pasted token to the session waiting for one."""

        if self._session is None:
            return False
        return self._session.inbox.submit(text)

    def force_generate(self) -> bool:
        """Stop discovery early; only honored once the option has been offered."""

        session = self._session
        if (
            session is None
            or session.state is not HandshakeState.DISCOVERING_CANDIDATES
            or not session.force_available
        ):
            return False
        logger.info("Discovery cut short by operator", extra={"session_id": session.session_id})
        self._finish_discovery(session, DiscoveryOutcome.FORCED)
        return True

    def send_message(self, text: str) -> ChatMessage:
        session = self._session
        if session is None or session.chat is None:
            raise ChannelNotOpen("No active connection")
        return session.chat.send_text(text)

    async def disconnect(self) -> None:
        """Tell the peer we are leaving, then return to idle."""

        session = self._session
        if session is None:
            return
        if session.chat is not None:
            session.chat.send_disconnect()
        await self.reset()
        self._notify(Notice("info", "Disconnected", "You have left the mesh"))

    async def reset(self) -> None:
        """Tear down the current session, if any, and wait for cleanup."""

        session = self._session
        if session is not None:
            self._teardown(session)
            self._transition(session, HandshakeState.IDLE)
        if self._closing:
            await asyncio.gather(*list(self._closing), return_exceptions=True)

    async def wait_for_state(self, *states: HandshakeState, timeout: float | None = None) -> HandshakeState:
        """Suspend until the current session enters one of *states*."""

        if self.state in states:
            return self.state
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        entry = (frozenset(states), future)
        self._waiters.append(entry)
        try:
            return await asyncio.wait_for(future, timeout)
        finally:
            if entry in self._waiters:
                self._waiters.remove(entry)

    def connection_info(self) -> "OrderedDict[str, Any]":
        return describe_session(self._session, asyncio.get_running_loop().time())

    async def regenerate(self) -> bool:
        """Restart candidate discovery and produce a fresh offer code.

        Only available to the initiator while its offer is shown or an answer
        is awaited.  Discovery state and the rendered token are discarded.
        """

        session = self._session
        if (
            session is None
            or session.role is not HandshakeRole.INITIATOR
            or session.state not in (HandshakeState.READY_TO_TRANSMIT, HandshakeState.AWAITING_REMOTE)
        ):
            return False

        task = session.task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        if session is not self._session:
            return False

        session.cancel_timers()
        session.candidates.clear()
        session.discovery_complete = False
        session.discovery_outcome = None
        session.force_available = False
        session.local_token = None
        logger.info("Regenerating offer", extra={"session_id": session.session_id})
        session.task = asyncio.get_running_loop().create_task(self._run(session, self._regenerate_flow))
        return True

    async def detailed_stats(self) -> List[str]:
        """Fetch transport stats for the current session and log them."""

        session = self._session
        if session is None:
            self._notify(Notice("error", "No Connection", "No active connection to get stats from"))
            return []
        try:
            reports = await session.transport.get_stats()
        except Exception:
            logger.warning("Failed to get stats", exc_info=True, extra={"session_id": session.session_id})
            self._notify(Notice("error", "Stats Error", "Failed to retrieve connection stats"))
            return []
        lines = format_stats(reports)
        logger.info("Connection stats:\n%s", "\n".join(lines))
        return lines

    # Flows

    async def _run(
        self,
        session: HandshakeSession,
        flow: Callable[[HandshakeSession], Awaitable[None]],
    ) -> None:
        try:
            await flow(session)
        except asyncio.CancelledError:
            raise
        except MalformedDescription as exc:
            self._fail(session, exc, "Setup Failed")
        except TransportFailure as exc:
            self._fail(session, exc, "Connection Failed")
        except Exception as exc:
            logger.exception("Handshake flow crashed", extra={"session_id": session.session_id})
            self._fail(session, exc, "Setup Failed")

    async def _initiator_flow(self, session: HandshakeSession) -> None:
        self._transition(session, HandshakeState.CREATING_DESCRIPTION)
        offer = await session.transport.create_offer()
        await session.transport.set_local_description(offer)
        await self._discover(session)
        self._transmit(session)
        await self._receive_remote(session)
        if session.state is not HandshakeState.ESTABLISHED:
            session.schedule(
                CONNECTION_TIMER,
                self.config.connection_timeout,
                lambda: self._connection_deadline(session),
            )

    async def _regenerate_flow(self, session: HandshakeSession) -> None:
        await session.transport.restart_ice()
        await self._initiator_flow(session)

    async def _responder_flow(self, session: HandshakeSession) -> None:
        await self._receive_remote(session)
        self._transition(session, HandshakeState.CREATING_DESCRIPTION)
        answer = await session.transport.create_answer()
        await session.transport.set_local_description(answer)
        await self._discover(session)
        self._transmit(session)

    async def _discover(self, session: HandshakeSession) -> None:
        loop = asyncio.get_running_loop()
        self._transition(session, HandshakeState.DISCOVERING_CANDIDATES)
        session.discovery_started_at = loop.time()
        session.discovery_outcome = None
        session.discovery_done = loop.create_future()
        session.schedule(
            DISCOVERY_TIMER,
            self.config.ice_gathering_timeout,
            lambda: self._finish_discovery(session, DiscoveryOutcome.TIMEOUT),
        )
        session.schedule(
            FORCE_TIMER,
            self.config.force_generate_delay,
            lambda: self._offer_force_generate(session),
        )

        # Discovery may already be done by the time local description is set.
        if session.discovery_complete:
            self._finish_discovery(session, DiscoveryOutcome.COMPLETE)
        elif len(session.candidates) >= self.codec.candidate_cap:
            self._finish_discovery(session, DiscoveryOutcome.CAP_REACHED)

        outcome = await session.discovery_done
        logger.info(
            "Candidate discovery finished (%s) with %d candidates after %.2fs",
            outcome.name.lower(),
            len(session.candidates),
            loop.time() - session.discovery_started_at,
            extra={"session_id": session.session_id},
        )

    def _transmit(self, session: HandshakeSession) -> None:
        self._transition(session, HandshakeState.READY_TO_TRANSMIT)
        local = session.transport.local_description
        if local is None:
            raise MalformedDescription("Transport has no local description")

        snapshot = SessionDescription(kind=local.kind, sdp=merge_candidates(local.sdp, session.candidates))
        token = self.codec.encode(snapshot)
        session.local_token = token
        logger.info(
            "Encoded %s into %d-character token",
            local.kind.value,
            len(token),
            extra={"session_id": session.session_id},
        )
        if len(token) > self.config.large_token_warning:
            self._notify(Notice("warning", "Large Code", "The code may be hard to scan. Ensure good lighting."))
        if self.renderer is not None:
            self.renderer.render(token)
        if session.role is HandshakeRole.RESPONDER:
            self._notify(Notice("success", "Answer Ready", "Show this code to the host"))

    async def _receive_remote(self, session: HandshakeSession) -> None:
        kind = session.role.remote_kind
        label = kind.value.title()
        while True:
            self._transition(session, HandshakeState.AWAITING_REMOTE)
            token = await session.inbox.next_token()
            self._transition(session, HandshakeState.APPLYING_REMOTE)

            try:
                description = self.codec.decode(token, kind)
            except InvalidToken as exc:
                logger.warning("Rejected %s token: %s", kind.value, exc, extra={"session_id": session.session_id})
                self._notify(Notice("error", f"Invalid {label}", "Please try scanning again"))
                continue

            try:
                await session.transport.set_remote_description(description)
            except (asyncio.CancelledError, TransportFailure):
                raise
            except Exception as exc:
                logger.warning(
                    "Transport rejected remote %s: %s", kind.value, exc, extra={"session_id": session.session_id}
                )
                self._notify(Notice("error", f"Invalid {label}", "Please try scanning again"))
                continue

            logger.info("Applied remote %s", kind.value, extra={"session_id": session.session_id})
            if session.role is HandshakeRole.INITIATOR:
                self._notify(Notice("success", "Answer Received", "Establishing connection..."))
            return

    # Transport events

    def _on_candidate(self, session: HandshakeSession, line: str) -> None:
        if session is not self._session:
            return
        candidate = parse_candidate_line(line)
        if candidate is None:
            logger.debug("Ignoring unusable candidate: %s", line)
            return
        session.candidates.append(candidate)
        logger.debug("Candidate %s %s:%d", candidate.kind.value, candidate.address, candidate.port)
        if (
            session.state is HandshakeState.DISCOVERING_CANDIDATES
            and len(session.candidates) >= self.codec.candidate_cap
        ):
            self._finish_discovery(session, DiscoveryOutcome.CAP_REACHED)

    def _on_discovery_complete(self, session: HandshakeSession) -> None:
        if session is not self._session:
            return
        session.discovery_complete = True
        if session.state is HandshakeState.DISCOVERING_CANDIDATES:
            self._finish_discovery(session, DiscoveryOutcome.COMPLETE)

    def _on_connection_state(self, session: HandshakeSession, state: ConnectionState) -> None:
        if session is not self._session:
            return
        logger.info("Connection state: %s", state.value, extra={"session_id": session.session_id})
        if state is ConnectionState.CONNECTED:
            self._establish(session)
        elif state is ConnectionState.FAILED:
            self._fail(session, TransportFailure("Unable to establish peer connection"), "Connection Failed")
        elif state is ConnectionState.DISCONNECTED:
            self._notify(Notice("warning", "Disconnected", "Connection lost"))
        elif state is ConnectionState.CLOSED:
            if session.state is HandshakeState.ESTABLISHED:
                self._close_session(session, Notice("info", "Disconnected", "The connection was closed"))
            else:
                self._fail(session, TransportFailure("Connection closed before it was established"), "Connection Failed")

    def _on_data_channel(self, session: HandshakeSession, channel: DataChannel) -> None:
        if session is not self._session or session.chat is not None:
            return
        self._attach_chat(session, channel)

    def _on_scan_error(self, error: Exception) -> None:
        self._notify(Notice("error", "Camera Error", "Failed to read codes from the camera; paste the code instead"))

    # State helpers

    def _finish_discovery(self, session: HandshakeSession, outcome: DiscoveryOutcome) -> None:
        done = session.discovery_done
        if done is None or done.done():
            return
        session.cancel_timer(DISCOVERY_TIMER)
        session.cancel_timer(FORCE_TIMER)
        session.force_available = False
        session.discovery_outcome = outcome
        done.set_result(outcome)

    def _offer_force_generate(self, session: HandshakeSession) -> None:
        if session is not self._session or session.state is not HandshakeState.DISCOVERING_CANDIDATES:
            return
        session.force_available = True
        self._notify(Notice("info", "Still Gathering", "You can generate the code now with the candidates found so far"))

    def _connection_deadline(self, session: HandshakeSession) -> None:
        if session is not self._session or session.state is HandshakeState.ESTABLISHED:
            return
        self._fail(session, TransportFailure("Timed out waiting for the peer connection"), "Connection Failed")

    def _establish(self, session: HandshakeSession) -> None:
        if session.state is HandshakeState.ESTABLISHED:
            return
        session.cancel_timers()
        session.inbox.close()
        task = session.task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        session.connected_at = asyncio.get_running_loop().time()
        self._transition(session, HandshakeState.ESTABLISHED)

    def _attach_chat(self, session: HandshakeSession, channel: DataChannel) -> None:
        session.chat = ChatChannel(
            channel,
            max_message_length=self.config.max_message_length,
            on_open=lambda: self._notify(Notice("success", "Connected!", "Secure channel established")),
            on_message=self.on_message,
            on_peer_disconnect=lambda: self._close_session(
                session, Notice("info", "Peer Disconnected", "The other side left the mesh")
            ),
        )

    def _transition(self, session: HandshakeSession, state: HandshakeState) -> None:
        previous = session.state
        session.state = state
        logger.debug(
            "Session %s: %s -> %s", session.session_id, previous.value, state.value
        )
        if self.on_state_change is not None:
            self.on_state_change(session, state)
        for states, future in list(self._waiters):
            if state in states and not future.done():
                future.set_result(state)

    def _fail(self, session: HandshakeSession, error: BaseException, title: str) -> None:
        if session is not self._session or session.state in (HandshakeState.FAILED, HandshakeState.IDLE):
            return
        session.failure = error
        self._transition(session, HandshakeState.FAILED)
        self._notify(Notice("error", title, str(error)))
        self._teardown(session)
        self._transition(session, HandshakeState.IDLE)

    def _close_session(self, session: HandshakeSession, notice: Notice) -> None:
        if session is not self._session:
            return
        self._teardown(session)
        self._transition(session, HandshakeState.IDLE)
        self._notify(notice)

    def _teardown(self, session: HandshakeSession) -> None:
        session.cancel_timers()
        if session.discovery_done is not None and not session.discovery_done.done():
            session.discovery_done.cancel()
        if session.unsubscribe is not None:
            session.unsubscribe()
            session.unsubscribe = None
        session.inbox.close()
        if session.chat is not None:
            try:
                session.chat.close()
            except Exception:
                logger.debug("Data channel close failed", exc_info=True)

        task = session.task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            self._track(task)
        self._track(asyncio.get_running_loop().create_task(self._close_transport(session)))
        if self._session is session:
            self._session = None
        logger.info("Session torn down", extra={"session_id": session.session_id})

    def _track(self, task: asyncio.Task) -> None:
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def _close_transport(self, session: HandshakeSession) -> None:
        try:
            await session.transport.close()
        except Exception:
            logger.warning("Transport close failed", exc_info=True, extra={"session_id": session.session_id})

    async def _new_session(self, role: HandshakeRole) -> HandshakeSession:
        await self.reset()
        transport = self._transport_factory(list(self.config.ice_servers))
        inbox = TokenInbox(self.scanner, on_error=self._on_scan_error)
        session = HandshakeSession(role=role, transport=transport, inbox=inbox)
        session.unsubscribe = transport.subscribe(_SessionListener(self, session))
        self._session = session
        logger.info("Creating %s handshake session", role.value, extra={"session_id": session.session_id})
        return session

    def _notify(self, notice: Notice) -> None:
        logger.log(_NOTICE_LOG_LEVELS.get(notice.level, logging.INFO), "%s: %s", notice.title, notice.message)
        if self.on_notice is not None:
            self.on_notice(notice)
