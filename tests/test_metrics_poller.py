"""Tests for the /health metrics poller.

Run:
    pytest tests/test_metrics_poller.py -v
"""

import asyncio
import socket

import pytest
from aiohttp import test_utils, web

from config.settings import BackendConfig, PollerConfig, TelemetryConfig
from telemetry.metrics_poller import MetricsPoller, MetricsSnapshot

DEFAULT = MetricsSnapshot(latency_p95_ms=150, integrations=18, control_checks=42)


def ok(latency, integrations, checks) -> web.Response:
    return web.json_response(
        {"latency_p95_ms": latency, "integrations": integrations, "control_checks": checks}
    )


class ScriptedHealth:
    """Serves queued responses in order; repeats the last one when the queue is empty."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = 0

    async def handle(self, request):
        self.calls += 1
        factory = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        return factory()

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self.handle)
        return app


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def make_config(server: test_utils.TestServer, interval: float = 5.0) -> TelemetryConfig:
    return TelemetryConfig(
        backend=BackendConfig(base_url=str(server.make_url(""))),
        poller=PollerConfig(poll_interval_secs=interval, request_timeout_secs=2.0),
    )


class TestSnapshot:
    def test_default(self):
        assert MetricsSnapshot.default() == DEFAULT

    def test_from_payload_ignores_extra_keys(self):
        snap = MetricsSnapshot.from_payload(
            {"latency_p95_ms": 99.5, "integrations": 20, "control_checks": 40, "uptime": 1}
        )
        assert snap.as_dict() == {"latency_p95_ms": 99.5, "integrations": 20, "control_checks": 40}

    @pytest.mark.parametrize(
        "payload",
        [
            None,
            [],
            "ok",
            {"latency_p95_ms": 1, "integrations": 2},
            {"latency_p95_ms": "1", "integrations": 2, "control_checks": 3},
            {"latency_p95_ms": 1, "integrations": False, "control_checks": 3},
            {"latency_p95_ms": float("nan"), "integrations": 2, "control_checks": 3},
        ],
    )
    def test_from_payload_rejects_bad_shapes(self, payload):
        with pytest.raises(ValueError):
            MetricsSnapshot.from_payload(payload)


class TestPollOnce:
    @pytest.mark.asyncio
    async def test_snapshot_tracks_last_success(self):
        script = ScriptedHealth([
            lambda: web.Response(status=503),
            lambda: ok(120, 19, 44),
            lambda: web.Response(status=500, text="boom"),
            lambda: web.Response(text="{not json", content_type="application/json"),
            lambda: web.json_response({"latency_p95_ms": 1}),
            lambda: ok(110, 21, 45),
            lambda: web.Response(status=404),
        ])
        async with test_utils.TestServer(script.app()) as server:
            poller = MetricsPoller(make_config(server))
            try:
                results = []
                last_good = DEFAULT
                for good in (None, MetricsSnapshot(120, 19, 44), None, None, None, MetricsSnapshot(110, 21, 45), None):
                    results.append(await poller.poll_once())
                    last_good = good or last_good
                    assert poller.snapshot == last_good
            finally:
                await poller.stop()

        assert results == [False, True, False, False, False, True, False]
        stats = poller.get_stats()
        assert stats["attempts"] == 7
        assert stats["successes"] == 2
        assert stats["failures"] == 5

    @pytest.mark.asyncio
    async def test_plain_text_json_body_is_accepted(self):
        body = '{"latency_p95_ms": 80, "integrations": 3, "control_checks": 9}'
        script = ScriptedHealth([lambda: web.Response(text=body, content_type="text/plain")])
        async with test_utils.TestServer(script.app()) as server:
            poller = MetricsPoller(make_config(server))
            try:
                assert await poller.poll_once()
            finally:
                await poller.stop()
        assert poller.snapshot == MetricsSnapshot(80, 3, 9)

    @pytest.mark.asyncio
    async def test_unreachable_backend_keeps_default(self):
        config = TelemetryConfig(
            backend=BackendConfig(base_url=f"http://127.0.0.1:{free_port()}"),
            poller=PollerConfig(request_timeout_secs=1.0),
        )
        poller = MetricsPoller(config)
        try:
            assert await poller.poll_once() is False
        finally:
            await poller.stop()
        assert poller.snapshot == DEFAULT

    @pytest.mark.asyncio
    async def test_stop_cancels_in_flight_request(self):
        arrived = asyncio.Event()
        release = asyncio.Event()

        async def slow(request):
            arrived.set()
            await release.wait()
            return ok(1, 1, 1)

        app = web.Application()
        app.router.add_get("/health", slow)
        async with test_utils.TestServer(app) as server:
            poller = MetricsPoller(make_config(server))
            await poller.start()
            await asyncio.wait_for(arrived.wait(), timeout=2)

            await poller.stop()
            release.set()
            await asyncio.sleep(0.1)

            assert not poller.is_running
            assert poller.snapshot == DEFAULT
            stats = poller.get_stats()
            assert stats["attempts"] == 1
            assert stats["successes"] == 0
            assert await poller.poll_once() is False
        assert poller.snapshot == DEFAULT


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_polls_immediately_then_on_cadence_until_stopped(self):
        script = ScriptedHealth([lambda: ok(100, 1, 2)])
        async with test_utils.TestServer(script.app()) as server:
            poller = MetricsPoller(make_config(server, interval=0.2))
            await poller.start()
            await asyncio.sleep(0.05)
            assert script.calls == 1
            assert poller.snapshot == MetricsSnapshot(100, 1, 2)

            await asyncio.sleep(0.5)
            assert 3 <= script.calls <= 4

            await poller.stop()
            assert not poller.is_running
            calls = script.calls
            await asyncio.sleep(0.5)
            assert script.calls == calls

    @pytest.mark.asyncio
    async def test_failing_endpoint_is_retried_at_the_same_interval(self):
        script = ScriptedHealth([lambda: web.Response(status=500)])
        async with test_utils.TestServer(script.app()) as server:
            async with MetricsPoller(make_config(server, interval=0.1)) as poller:
                await asyncio.sleep(0.35)
            assert script.calls >= 3
        assert poller.snapshot == DEFAULT

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self):
        script = ScriptedHealth([lambda: ok(1, 2, 3)])
        async with test_utils.TestServer(script.app()) as server:
            poller = MetricsPoller(make_config(server))
            await poller.start()
            await poller.stop()
            await poller.stop()
