"""
╔══════════════════════════════════════════════════════════════════════╗
║  HYPER TELEMETRY — CONFIGURATION                                     ║
║                                                                      ║
║  Backend endpoints, poll cadence, stream reconnection, dashboard.   ║
╚══════════════════════════════════════════════════════════════════════╝
"""

import os
from dataclasses import dataclass, field
from typing import Optional

DEFAULT_BACKEND_URL = "http://localhost:8000"


def resolve_base_url(value: Optional[str] = None) -> str:
    """Explicit value, then $BACKEND_URL, then the local dev address."""
    url = value or os.getenv("BACKEND_URL") or DEFAULT_BACKEND_URL
    return url.rstrip("/")


@dataclass
class BackendConfig:
    base_url: str = field(default_factory=resolve_base_url)
    health_path: str = "/health"
    stream_path: str = "/sse/market"

    def __post_init__(self):
        self.base_url = resolve_base_url(self.base_url)

    @property
    def health_url(self) -> str:
        return f"{self.base_url}{self.health_path}"

    @property
    def stream_url(self) -> str:
        return f"{self.base_url}{self.stream_path}"


@dataclass
class PollerConfig:
    poll_interval_secs: float = 5.0
    request_timeout_secs: float = 4.0    # kept below the interval so polls never overlap
    default_latency_p95_ms: float = 150
    default_integrations: int = 18
    default_control_checks: int = 42

    def __post_init__(self):
        if self.poll_interval_secs <= 0:
            raise ValueError("poll_interval_secs must be positive")
        if self.request_timeout_secs <= 0:
            raise ValueError("request_timeout_secs must be positive")
        self.request_timeout_secs = min(self.request_timeout_secs, self.poll_interval_secs)


@dataclass
class StreamConfig:
    # ── Reconnection (3s → 6s → 12s … capped) ──
    reconnect_initial_secs: float = 3.0
    reconnect_max_secs: float = 60.0
    max_reconnect_attempts: int = 0      # consecutive failures before giving up, 0 = never
    connect_timeout_secs: float = 10.0

    def __post_init__(self):
        if self.reconnect_initial_secs <= 0:
            raise ValueError("reconnect_initial_secs must be positive")
        if self.reconnect_max_secs < self.reconnect_initial_secs:
            raise ValueError("reconnect_max_secs must be >= reconnect_initial_secs")
        if self.max_reconnect_attempts < 0:
            raise ValueError("max_reconnect_attempts must be >= 0")


@dataclass
class ChartConfig:
    window_size: int = 121
    width: float = 280
    height: float = 80

    def __post_init__(self):
        if self.window_size < 1:
            raise ValueError("window_size must be >= 1")


@dataclass
class DashboardConfig:
    host: str = "0.0.0.0"
    port: int = 8765
    broadcast_secs: float = 1.0


@dataclass
class LoggingConfig:
    level: str = os.getenv("LOG_LEVEL", "INFO")
    format: str = "%(asctime)s [%(name)s] %(levelname)s  %(message)s"
    datefmt: str = "%H:%M:%S"


@dataclass
class TelemetryConfig:
    backend: BackendConfig = field(default_factory=BackendConfig)
    poller: PollerConfig = field(default_factory=PollerConfig)
    stream: StreamConfig = field(default_factory=StreamConfig)
    chart: ChartConfig = field(default_factory=ChartConfig)
    dashboard: DashboardConfig = field(default_factory=DashboardConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    site_name: str = "Hyper Trading Automation"
    version: str = "0.1.0"
