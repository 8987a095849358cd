"""
╔══════════════════════════════════════════════════════════════════╗
║  EVENT SOURCE — Server-Sent Events client over aiohttp           ║
║                                                                    ║
║  One persistent GET with Accept: text/event-stream.              ║
║  Signals open / error / message to its owner, one at a time,     ║
║  from a single read task. Reconnects with exponential backoff:   ║
║  3s → 6s → 12s → … → 60s max, reset after a successful open.     ║
║  A server "retry:" field replaces the initial delay.             ║
╚══════════════════════════════════════════════════════════════════╝
"""

import asyncio
import codecs
import contextlib
import logging
import re
import time
from dataclasses import dataclass
from typing import Callable, Optional

import aiohttp

from config.settings import StreamConfig

logger = logging.getLogger("stream")

MIN_SERVER_RETRY_SECS = 0.1

_LINE_BREAK = re.compile(r"\r\n|\r|\n")


@dataclass(frozen=True)
class ServerEvent:
    data: str
    event: str = "message"
    id: Optional[str] = None


class SSEDecoder:
    """Decoder for the text/event-stream format. CRLF, LF and bare CR all end a line."""

    def __init__(self):
        self._pending = ""
        self._skip_lf = False
        self._data: list[str] = []
        self._event = ""
        self.last_event_id: Optional[str] = None
        self.retry_ms: Optional[int] = None

    def feed(self, text: str) -> list[ServerEvent]:
        """Feed a decoded chunk of the stream. Returns the events it completes."""
        if not text:
            return []
        # A CR ending the previous chunk already closed the line; drop its LF half
        if self._skip_lf and text.startswith("\n"):
            text = text[1:]
        self._skip_lf = text.endswith("\r")
        *lines, self._pending = _LINE_BREAK.split(self._pending + text)

        events = []
        for line in lines:
            event = self.feed_line(line)
            if event is not None:
                events.append(event)
        return events

    def feed_line(self, line: str) -> Optional[ServerEvent]:
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None

        name, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]

        if name == "data":
            self._data.append(value)
        elif name == "event":
            self._event = value
        elif name == "id":
            if "\0" not in value:
                self.last_event_id = value
        elif name == "retry":
            if value.isdigit():
                self.retry_ms = int(value)
        return None

    def _dispatch(self) -> Optional[ServerEvent]:
        data, event = self._data, self._event
        self._data, self._event = [], ""
        if not data:
            return None
        return ServerEvent(data="\n".join(data), event=event or "message", id=self.last_event_id)


class EventSource:
    """
    Persistent SSE connection with reconnection.

    The owner passes three callbacks. They are invoked synchronously from the
    read task, so open, error and message handling never interleave.
    After close() no callback fires again.
    """

    def __init__(
        self,
        url: str,
        *,
        on_open: Callable[[], None],
        on_error: Callable[[], None],
        on_message: Callable[[str], None],
        config: Optional[StreamConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.url = url
        self.config = config or StreamConfig()
        self._on_open = on_open
        self._on_error = on_error
        self._on_message = on_message
        self._session = session
        self._owns_session = session is None
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._decoder = SSEDecoder()
        self._reconnect_backoff = self.config.reconnect_initial_secs
        # Connection health tracking
        self._consecutive_failures = 0
        self._total_attempts = 0
        self._total_successes = 0
        self._messages = 0
        self._last_message = 0.0

    @property
    def is_running(self) -> bool:
        return self._running

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def start(self):
        if self._task is not None:
            return
        self._running = True
        self._task = asyncio.create_task(self._run())

    async def close(self):
        self._running = False
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    # ── Read loop ────────────────────────────────────────────────

    def _initial_delay(self) -> float:
        if self._decoder.retry_ms is not None:
            return max(self._decoder.retry_ms / 1000, MIN_SERVER_RETRY_SECS)
        return self.config.reconnect_initial_secs

    async def _connect_and_read(self):
        session = await self._get_session()
        headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache"}
        if self._decoder.last_event_id:
            headers["Last-Event-ID"] = self._decoder.last_event_id
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=self.config.connect_timeout_secs)

        async with session.get(self.url, headers=headers, timeout=timeout) as resp:
            if resp.status != 200:
                logger.warning(f"🔌 Stream rejected — HTTP {resp.status}")
                self._consecutive_failures += 1
                return
            if resp.content_type != "text/event-stream":
                logger.warning(f"🔌 Stream rejected — content type {resp.content_type!r}")
                self._consecutive_failures += 1
                return

            self._consecutive_failures = 0
            self._total_successes += 1
            # A fresh connection starts with an empty event buffer
            self._decoder = _carry_over(self._decoder)
            logger.info(f"🔌 Stream connected — {self.url}")
            self._on_open()

            decode = codecs.getincrementaldecoder("utf-8")(errors="replace").decode
            async for chunk in resp.content.iter_any():
                if not self._running:
                    return
                for event in self._decoder.feed(decode(chunk)):
                    if event.event != "message":
                        continue
                    self._messages += 1
                    self._last_message = time.time()
                    self._on_message(event.data)
                    if not self._running:
                        return

            logger.warning("🔌 Stream ended by server — will reconnect")

    async def _run(self):
        while self._running:
            self._total_attempts += 1
            try:
                await self._connect_and_read()
            except asyncio.CancelledError:
                logger.info("🔌 Stream cancelled")
                raise
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.warning(f"🔌 Stream error: {type(e).__name__}: {e}")
                self._consecutive_failures += 1

            if not self._running:
                break
            self._on_error()

            limit = self.config.max_reconnect_attempts
            if limit and self._consecutive_failures >= limit:
                logger.error(f"🔌 Giving up after {self._consecutive_failures} consecutive failures")
                self._running = False
                break

            if self._consecutive_failures <= 1:
                # First failure after an open (or a clean end of stream)
                self._reconnect_backoff = self._initial_delay()
            backoff = min(self._reconnect_backoff, self.config.reconnect_max_secs)
            logger.info(
                f"🔌 Reconnecting in {backoff:.1f}s "
                f"(failures: {self._consecutive_failures}, "
                f"lifetime: {self._success_rate():.0f}% success)"
            )
            await asyncio.sleep(backoff)
            self._reconnect_backoff = min(backoff * 2, self.config.reconnect_max_secs)

        logger.info("🔌 Stream stopped")

    def _success_rate(self) -> float:
        return (self._total_successes / max(1, self._total_attempts)) * 100

    def get_health(self) -> dict:
        return {
            "consecutive_failures": self._consecutive_failures,
            "last_message_ago_secs": round(time.time() - self._last_message, 1) if self._last_message > 0 else None,
            "lifetime_attempts": self._total_attempts,
            "lifetime_successes": self._total_successes,
            "messages": self._messages,
            "success_rate_pct": round(self._success_rate(), 1),
        }


def _carry_over(decoder: SSEDecoder) -> SSEDecoder:
    fresh = SSEDecoder()
    fresh.last_event_id = decoder.last_event_id
    fresh.retry_ms = decoder.retry_ms
    return fresh
