"""
╔══════════════════════════════════════════════════════════════════════════╗
║  HYPER TELEMETRY — Live site monitor                                     ║
║                                                                          ║
║  Polls {backend}/health, follows {backend}/sse/market and serves the    ║
║  demo page with stat cards and the live chart on :8765                  ║
╚══════════════════════════════════════════════════════════════════════════╝
"""

import argparse
import asyncio
import logging
import signal
from typing import Optional

from config.settings import BackendConfig, PollerConfig, TelemetryConfig, resolve_base_url
from core.dashboard_server import DashboardServer, build_dashboard_state
from telemetry.market_chart import MarketChart
from telemetry.metrics_poller import MetricsPoller

logger = logging.getLogger("monitor")


class SiteMonitor:
    def __init__(self, config: TelemetryConfig, dashboard: bool = True):
        self.config = config
        self.running = False
        self.poller = MetricsPoller(config)
        self.chart = MarketChart(config)
        self.dashboard = (
            DashboardServer(config.dashboard.host, config.dashboard.port, title=config.site_name)
            if dashboard else None
        )
        self._broadcasts = 0

    async def start(self):
        self.running = True
        if self.dashboard:
            await self.dashboard.start()
        await self.poller.start()
        await self.chart.start()
        logger.info(f"Monitoring {self.config.backend.base_url} (v{self.config.version})")

    async def broadcast_once(self):
        state = build_dashboard_state(self.poller, self.chart)
        self._broadcasts += 1
        if self.dashboard and self.dashboard.is_running:
            await self.dashboard.broadcast(state)
        return state

    async def run(self, cycles: int = 0):
        await self.start()
        while self.running:
            await self.broadcast_once()
            if cycles and self._broadcasts >= cycles:
                break
            await asyncio.sleep(self.config.dashboard.broadcast_secs)

    def stop(self):
        self.running = False

    async def shutdown(self):
        self.running = False
        await self.chart.stop()
        await self.poller.stop()
        if self.dashboard:
            await self.dashboard.stop()
        logger.info(f"Monitor stopped after {self._broadcasts} broadcasts")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Hyper live telemetry — poller, market stream and demo page")
    parser.add_argument("--backend-url", type=str, default=None, help="Backend base URL (default: $BACKEND_URL or http://localhost:8000)")
    parser.add_argument("--host", type=str, default="0.0.0.0", help="Dashboard bind host (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8765, help="Dashboard port (default: 8765)")
    parser.add_argument("--poll-secs", type=float, default=5.0, help="Health poll interval in seconds (default: 5)")
    parser.add_argument("--broadcast-secs", type=float, default=1.0, help="Dashboard push interval in seconds (default: 1)")
    parser.add_argument("--cycles", type=int, default=0, help="Stop after N broadcasts, 0=unlimited (default: 0)")
    parser.add_argument("--no-dashboard", action="store_true", help="Run poller and stream without serving the page")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def build_config(args: argparse.Namespace) -> TelemetryConfig:
    config = TelemetryConfig(
        backend=BackendConfig(base_url=resolve_base_url(args.backend_url)),
        poller=PollerConfig(poll_interval_secs=args.poll_secs),
    )
    config.dashboard.host = args.host
    config.dashboard.port = args.port
    config.dashboard.broadcast_secs = max(0.1, args.broadcast_secs)
    if args.verbose:
        config.logging.level = "DEBUG"
    return config


async def main(argv: Optional[list[str]] = None):
    args = build_parser().parse_args(argv)
    config = build_config(args)
    logging.basicConfig(
        level=config.logging.level,
        format=config.logging.format,
        datefmt=config.logging.datefmt,
    )

    monitor = SiteMonitor(config, dashboard=not args.no_dashboard)

    def handle_signal(sig, frame):
        print("\n\nCtrl+C — shutting down...")
        monitor.stop()
    signal.signal(signal.SIGINT, handle_signal)

    try:
        await monitor.run(cycles=args.cycles)
    finally:
        await monitor.shutdown()


def cli():
    asyncio.run(main())


if __name__ == "__main__":
    cli()
