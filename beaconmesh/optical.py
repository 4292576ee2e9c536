"""Optical-code services and the remote token inbox."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Callable, Optional, Protocol

logger = logging.getLogger(__name__)


class CodeRenderer(Protocol):
    def render(self, text: str) -> Any:
        """Render *text* as a scannable code and return the visual."""


class CodeScanner(Protocol):
    def scan(self) -> AsyncIterator[str]:
        """Yield one decoded string per recognized frame until closed."""


class TokenInbox:
    """Re-armable source of remote tokens.

    Each :meth:`next_token` call arms the inbox: a scan is started when a
    scanner is available, and the first non-blank string from the scan or
    from :meth:`submit` (manual paste) resolves the call.  The scan is
    stopped as soon as a token has been obtained.  A failing scanner is
    reported to *on_error* and the call keeps waiting for a pasted token.
    """

    def __init__(
        self,
        scanner: Optional[CodeScanner] = None,
        *,
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> None:
        self.scanner = scanner
        self.on_error = on_error
        self._pending: Optional[asyncio.Future] = None
        self._scan_task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def armed(self) -> bool:
        return self._pending is not None and not self._pending.done()

    async def next_token(self) -> str:
        if self._closed:
            raise RuntimeError("Token inbox is closed")
        if self.armed:
            raise RuntimeError("Token inbox is already armed")

        loop = asyncio.get_running_loop()
        self._pending = loop.create_future()
        if self.scanner is not None:
            self._scan_task = loop.create_task(self._run_scan(self._pending))
        try:
            return await self._pending
        finally:
            self._stop_scan()
            self._pending = None

    def submit(self, text: str) -> bool:
        """Deliver a pasted token; returns ``False`` when nobody is waiting."""

        token = text.strip()
        if not token or not self.armed:
            return False
        self._pending.set_result(token)
        return True

    def close(self) -> None:
        self._closed = True
        self._stop_scan()
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()

    async def _run_scan(self, pending: asyncio.Future) -> None:
        frames = self.scanner.scan()
        try:
            async for text in frames:
                token = text.strip()
                if token and not pending.done():
                    pending.set_result(token)
                    return
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Scanner stopped with an error: %s", exc)
            if self.on_error is not None and not pending.done():
                self.on_error(exc)
        finally:
            aclose = getattr(frames, "aclose", None)
            if aclose is not None:
                await aclose()

    def _stop_scan(self) -> None:
        if self._scan_task is not None and not self._scan_task.done():
            self._scan_task.cancel()
        self._scan_task = None
