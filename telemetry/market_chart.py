"""
╔══════════════════════════════════════════════════════════════════╗
║  MARKET CHART — live sparkline over {base_url}/sse/market        ║
║                                                                    ║
║  Three transport signals drive the state:                        ║
║    open    → LIVE                                                 ║
║    error   → DISCONNECTED (trace is kept)                         ║
║    message → append bar to the 121-sample window, re-project      ║
║  Malformed messages are dropped without touching state.          ║
╚══════════════════════════════════════════════════════════════════╝
"""

import json
import logging
import math
from collections import deque
from enum import Enum
from typing import Callable, Optional

from config.settings import TelemetryConfig
from telemetry.event_source import EventSource
from telemetry.sparkline import PathProjection, StreamSample, build_path

logger = logging.getLogger("chart")


class ConnectionStatus(Enum):
    CONNECTING = "connecting"
    LIVE = "live"
    DISCONNECTED = "disconnected"

    @property
    def label(self) -> str:
        return "connecting…" if self is ConnectionStatus.CONNECTING else self.value


def _finite_number(value) -> bool:
    return not isinstance(value, bool) and isinstance(value, (int, float)) and math.isfinite(value)


def parse_bar(data: str) -> Optional[StreamSample]:
    """Decode ``{"payload": {"bar": {"t": .., "c": ..}}}``; None if anything is off."""
    try:
        doc = json.loads(data)
    except ValueError:
        return None
    if not isinstance(doc, dict):
        return None
    payload = doc.get("payload")
    bar = payload.get("bar") if isinstance(payload, dict) else None
    if not isinstance(bar, dict):
        return None
    t, c = bar.get("t"), bar.get("c")
    if not (_finite_number(t) and _finite_number(c)):
        return None
    return StreamSample(t=t, c=c)


TransportFactory = Callable[..., object]


class MarketChart:
    """
    Bounded window of stream samples plus the path derived from it.

    Exactly one transport per activation. After stop() every signal is a
    no-op, including ones already queued by the transport.
    """

    def __init__(self, config: TelemetryConfig, transport_factory: Optional[TransportFactory] = None):
        self.config = config.chart
        self.url = config.backend.stream_url
        self._stream_config = config.stream
        self._transport_factory = transport_factory or self._default_transport
        self._transport = None
        self._window: deque[StreamSample] = deque(maxlen=self.config.window_size)
        self._projection = build_path((), self.config.width, self.config.height)
        self._status = ConnectionStatus.CONNECTING
        self._active = False
        self._received = 0
        self._dropped = 0

    def _default_transport(self, url, *, on_open, on_error, on_message):
        return EventSource(
            url,
            on_open=on_open,
            on_error=on_error,
            on_message=on_message,
            config=self._stream_config,
        )

    # ── Observed state ───────────────────────────────────────────

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def status_label(self) -> str:
        return self._status.label

    @property
    def samples(self) -> tuple[StreamSample, ...]:
        return tuple(self._window)

    @property
    def projection(self) -> PathProjection:
        return self._projection

    @property
    def is_active(self) -> bool:
        return self._active

    # ── Transport signals ────────────────────────────────────────

    def handle_open(self):
        if not self._active:
            return
        if self._status is not ConnectionStatus.LIVE:
            logger.info("Chart live")
        self._status = ConnectionStatus.LIVE

    def handle_error(self):
        if not self._active:
            return
        if self._status is not ConnectionStatus.DISCONNECTED:
            logger.warning(f"Chart disconnected — keeping {len(self._window)} samples on screen")
        self._status = ConnectionStatus.DISCONNECTED

    def handle_message(self, data: str):
        if not self._active:
            return
        self._received += 1
        sample = parse_bar(data)
        if sample is None:
            self._dropped += 1
            logger.debug(f"Dropped malformed message: {data[:80]!r}")
            return
        self._window.append(sample)
        self._projection = build_path(self._window, self.config.width, self.config.height)

    # ── Lifecycle ────────────────────────────────────────────────

    async def start(self):
        if self._transport is not None:
            return
        self._active = True
        self._status = ConnectionStatus.CONNECTING
        self._transport = self._transport_factory(
            self.url,
            on_open=self.handle_open,
            on_error=self.handle_error,
            on_message=self.handle_message,
        )
        await self._transport.start()

    async def stop(self):
        # Flip first so nothing the transport still delivers can land
        self._active = False
        transport, self._transport = self._transport, None
        if transport is not None:
            await transport.close()

    async def __aenter__(self) -> "MarketChart":
        await self.start()
        return self

    async def __aexit__(self, *exc_info):
        await self.stop()

    def get_stats(self) -> dict:
        health = self._transport.get_health() if self._transport is not None else None
        return {
            "status": self._status.value,
            "received": self._received,
            "accepted": self._received - self._dropped,
            "dropped": self._dropped,
            "window": len(self._window),
            "transport": health,
        }
