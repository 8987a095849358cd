"""
╔══════════════════════════════════════════════════════════════════╗
║  METRICS POLLER — /health snapshot on a fixed cadence            ║
║                                                                    ║
║    1. Polls GET {base_url}/health immediately on start            ║
║    2. Re-polls every poll_interval_secs, whatever the outcome     ║
║    3. Replaces the snapshot wholesale on success                  ║
║    4. Keeps the last good snapshot on any failure                 ║
╚══════════════════════════════════════════════════════════════════╝
"""

import asyncio
import contextlib
import logging
import math
import time
from dataclasses import dataclass
from typing import Optional

import aiohttp

from config.settings import PollerConfig, TelemetryConfig

logger = logging.getLogger("poller")


def _as_number(value, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{name} is not a number: {value!r}")
    if not math.isfinite(value):
        raise ValueError(f"{name} is not finite")
    return value


@dataclass(frozen=True)
class MetricsSnapshot:
    latency_p95_ms: float
    integrations: float
    control_checks: float

    @classmethod
    def default(cls, config: Optional[PollerConfig] = None) -> "MetricsSnapshot":
        config = config or PollerConfig()
        return cls(
            latency_p95_ms=config.default_latency_p95_ms,
            integrations=config.default_integrations,
            control_checks=config.default_control_checks,
        )

    @classmethod
    def from_payload(cls, payload) -> "MetricsSnapshot":
        """Build from a decoded /health body. Raises ValueError on a bad shape."""
        if not isinstance(payload, dict):
            raise ValueError(f"expected a JSON object, got {type(payload).__name__}")
        try:
            return cls(
                latency_p95_ms=_as_number(payload["latency_p95_ms"], "latency_p95_ms"),
                integrations=_as_number(payload["integrations"], "integrations"),
                control_checks=_as_number(payload["control_checks"], "control_checks"),
            )
        except KeyError as e:
            raise ValueError(f"missing field {e.args[0]}") from None

    def as_dict(self) -> dict:
        return {
            "latency_p95_ms": self.latency_p95_ms,
            "integrations": self.integrations,
            "control_checks": self.control_checks,
        }


class MetricsPoller:
    """
    Holds the latest MetricsSnapshot for rendering.

    Failures never escape: a bad cycle is logged and the previous snapshot
    stays in place. The poll loop is a scoped resource; stop() (or leaving
    the ``async with`` block) cancels it together with any in-flight request.
    """

    def __init__(self, config: TelemetryConfig, session: Optional[aiohttp.ClientSession] = None):
        self.config = config.poller
        self.url = config.backend.health_url
        self._session = session
        self._owns_session = session is None
        self._snapshot = MetricsSnapshot.default(self.config)
        self._task: Optional[asyncio.Task] = None
        self._active = False
        self._stopped = False
        # Health tracking
        self._attempts = 0
        self._successes = 0
        self._failures = 0
        self._last_success = 0.0

    @property
    def snapshot(self) -> MetricsSnapshot:
        return self._snapshot

    @property
    def is_running(self) -> bool:
        return self._active

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    # ── Single poll ──────────────────────────────────────────────

    async def poll_once(self) -> bool:
        """Fetch /health once. Returns True if the snapshot was replaced."""
        if self._stopped:
            return False
        self._attempts += 1
        try:
            session = await self._get_session()
            timeout = aiohttp.ClientTimeout(total=self.config.request_timeout_secs)
            async with session.get(self.url, timeout=timeout) as resp:
                if not 200 <= resp.status < 300:
                    logger.warning(f"Health {resp.status} — keeping last snapshot")
                    self._failures += 1
                    return False
                payload = await resp.json(content_type=None)
            snapshot = MetricsSnapshot.from_payload(payload)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Health unreachable: {type(e).__name__}: {e}")
            self._failures += 1
            return False
        except ValueError as e:
            # json.JSONDecodeError is a ValueError too
            logger.debug(f"Health payload rejected: {e}")
            self._failures += 1
            return False

        if self._stopped:
            logger.debug("Health response arrived after stop — ignored")
            return False
        self._snapshot = snapshot
        self._successes += 1
        self._last_success = time.time()
        return True

    # ── Lifecycle ────────────────────────────────────────────────

    async def start(self):
        if self._task is not None:
            return
        self._active = True
        self._stopped = False
        self._task = asyncio.create_task(self._run())
        logger.info(f"Polling {self.url} every {self.config.poll_interval_secs:g}s")

    async def _run(self):
        loop = asyncio.get_running_loop()
        next_tick = loop.time()
        while self._active:
            await self.poll_once()
            # Fixed cadence anchored to the first tick, independent of outcome
            next_tick += self.config.poll_interval_secs
            await asyncio.sleep(max(0.0, next_tick - loop.time()))

    async def stop(self):
        self._active = False
        self._stopped = True
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        logger.info(f"Poller stopped ({self._successes}/{self._attempts} polls succeeded)")

    async def __aenter__(self) -> "MetricsPoller":
        await self.start()
        return self

    async def __aexit__(self, *exc_info):
        await self.stop()

    def get_stats(self) -> dict:
        return {
            "attempts": self._attempts,
            "successes": self._successes,
            "failures": self._failures,
            "last_success_ago_secs": round(time.time() - self._last_success, 1) if self._last_success > 0 else None,
        }
