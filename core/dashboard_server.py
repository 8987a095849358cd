"""
Dashboard Server — HTTP + WebSocket via aiohttp.

  http://localhost:8765        → Live telemetry page (stat cards + chart)
  ws://localhost:8765/ws       → Live state broadcast
  http://localhost:8765/state  → JSON snapshot

  python site_monitor.py --backend-url http://localhost:8000
  → Open http://localhost:8765 in your browser
"""

import html
import logging
import time
from typing import Optional

import aiohttp
from aiohttp import web

from telemetry.market_chart import ConnectionStatus, MarketChart
from telemetry.metrics_poller import MetricsPoller, MetricsSnapshot
from telemetry.sparkline import DEFAULT_HEIGHT, DEFAULT_WIDTH, PathProjection

logger = logging.getLogger("dashboard")

STATUS_COLORS = {"live": "#16a34a", "other": "#d97706"}


class DashboardServer:
    def __init__(self, host="0.0.0.0", port=8765, title="Hyper Trading Automation"):
        self.host = host
        self.port = port
        self.title = title
        self.clients: set[web.WebSocketResponse] = set()
        self._state: dict = {}
        self._running = False
        self._runner: Optional[web.AppRunner] = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/", self._handle_page)
        app.router.add_get("/ws", self._handle_ws)
        app.router.add_get("/state", self._handle_state)
        return app

    async def start(self):
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        self._running = True
        logger.info(f"Dashboard: http://localhost:{self.port}")

    async def _handle_page(self, request):
        return web.Response(text=_build_html(self.title, self._state), content_type="text/html")

    async def _handle_state(self, request):
        return web.json_response(self._state)

    async def _handle_ws(self, request):
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self.clients.add(ws)
        logger.info(f"Dashboard client connected ({len(self.clients)} total)")
        try:
            if self._state:
                await ws.send_json(self._state)
            async for msg in ws:
                if msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.ERROR):
                    break
        finally:
            self.clients.discard(ws)
            logger.info(f"Dashboard client disconnected ({len(self.clients)} remaining)")
        return ws

    async def broadcast(self, state: dict):
        self._state = state
        dead = set()
        for ws in list(self.clients):
            try:
                await ws.send_json(state)
            except (ConnectionResetError, RuntimeError, aiohttp.ClientError):
                dead.add(ws)
        self.clients -= dead

    async def stop(self):
        self._running = False
        for ws in list(self.clients):
            await ws.close()
        self.clients.clear()
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        logger.info("Dashboard server stopped")

    @property
    def client_count(self):
        return len(self.clients)

    @property
    def is_running(self):
        return self._running


# ── Rendering ────────────────────────────────────────────────────

def _fmt_number(value) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def render_stat_cards(snapshot: MetricsSnapshot) -> list[dict]:
    return [
        {"label": "Latency (p95)", "value": f"< {_fmt_number(snapshot.latency_p95_ms)}ms", "sub": "end-to-end"},
        {"label": "Integrations", "value": _fmt_number(snapshot.integrations), "sub": "venues connected"},
        {"label": "Control Checks", "value": _fmt_number(snapshot.control_checks), "sub": "per route"},
    ]


def render_chart_svg(projection: PathProjection, status: ConnectionStatus) -> str:
    """Status header plus the sparkline. Renders an empty trace rather than failing."""
    w = _fmt_number(projection.w or DEFAULT_WIDTH)
    h = _fmt_number(projection.h or DEFAULT_HEIGHT)
    color = STATUS_COLORS["live"] if status is ConnectionStatus.LIVE else STATUS_COLORS["other"]
    return (
        '<div class="chart-head"><span class="chart-title">Live Demo</span>'
        f'<span class="status" style="color:{color}">{html.escape(status.label)}</span></div>'
        f'<svg width="{w}" height="{h}" viewBox="0 0 {w} {h}">'
        f'<path d="{html.escape(projection.d)}" fill="none" stroke="url(#g)" stroke-width="2"/>'
        '<defs><linearGradient id="g" x1="0" y1="0" x2="1" y2="0">'
        '<stop offset="0%" stop-color="#22d3ee"/><stop offset="100%" stop-color="#a78bfa"/>'
        "</linearGradient></defs></svg>"
    )


def render_cards_html(cards: list[dict]) -> str:
    return "".join(
        f'<div class="stat"><div class="sl">{html.escape(c["label"])}</div>'
        f'<div class="sv">{html.escape(c["value"])}</div>'
        f'<div class="ss">{html.escape(c["sub"])}</div></div>'
        for c in cards
    )


def build_dashboard_state(poller: MetricsPoller, chart: MarketChart) -> dict:
    snapshot = poller.snapshot
    cards = render_stat_cards(snapshot)
    projection = chart.projection
    return {
        "type": "state",
        "timestamp": time.time(),
        "metrics": snapshot.as_dict(),
        "cards": cards,
        "cards_html": render_cards_html(cards),
        "chart": {
            "status": chart.status.value,
            "status_label": chart.status_label,
            "path": projection.as_dict(),
            "samples": len(chart.samples),
            "svg": render_chart_svg(projection, chart.status),
        },
        "stream": {"poller": poller.get_stats(), "chart": chart.get_stats()},
    }


# ── HTML Builder ─────────────────────────────────────────────────

CSS = r"""
*{box-sizing:border-box;margin:0;padding:0}
body{font-family:'Space Grotesk','DM Sans',sans-serif;background:#0a0a0a;color:#fff;min-height:100vh}
.hero{max-width:72rem;margin:0 auto;padding:64px 40px}
h1{font-size:44px;font-weight:700;line-height:1.1;max-width:42rem}
.lead{margin-top:16px;font-size:19px;color:#d1d5db;max-width:42rem}
.stats{display:grid;grid-template-columns:repeat(3,1fr);gap:12px;margin-top:32px;max-width:42rem}
.stat{border-radius:12px;background:rgba(255,255,255,.1);border:1px solid rgba(255,255,255,.3);padding:16px}
.stat .sl{font-size:12px;text-transform:uppercase;letter-spacing:.05em;color:#d1d5db}
.stat .sv{font-size:24px;font-weight:600}
.stat .ss{font-size:12px;color:#9ca3af}
.feed{max-width:72rem;margin:0 auto;padding:0 40px 64px}
.feed h3{font-size:22px;font-weight:600;margin-bottom:12px}
.feed p{color:#d1d5db;margin-bottom:16px}
.chart{display:inline-block;border-radius:12px;border:1px solid rgba(255,255,255,.2);background:rgba(255,255,255,.05);padding:16px}
.chart-head{display:flex;justify-content:space-between;margin-bottom:8px;font-size:14px}
.chart-title{font-weight:500}
footer{padding:32px;text-align:center;font-size:14px;color:#9ca3af}
"""

JS = r"""
function apply(s){
  if(!s||s.type!=='state')return;
  document.getElementById('stats').innerHTML=s.cards_html;
  document.getElementById('chart').innerHTML=s.chart.svg;
}
function connect(){
  const ws=new WebSocket((location.protocol==='https:'?'wss://':'ws://')+location.host+'/ws');
  ws.onmessage=(m)=>{try{apply(JSON.parse(m.data))}catch(e){}};
  ws.onclose=()=>setTimeout(connect,3000);
}
connect();
"""


def _build_html(title: str, state: Optional[dict] = None) -> str:
    if state:
        cards_html = state["cards_html"]
        chart_html = state["chart"]["svg"]
    else:
        cards_html = render_cards_html(render_stat_cards(MetricsSnapshot.default()))
        chart_html = render_chart_svg(PathProjection(d=""), ConnectionStatus.CONNECTING)
    year = time.strftime("%Y")
    safe_title = html.escape(title)
    return f"""<!doctype html>
<html lang="en">
<head>
<meta charset="utf-8"/>
<title>{safe_title}</title>
<style>{CSS}</style>
</head>
<body>
<header class="hero">
  <h1>Disciplined crypto automation without the hype</h1>
  <p class="lead">Transparent, risk-first pipelines with real-time telemetry and cryptographically signed demo feeds.</p>
  <div class="stats" id="stats">{cards_html}</div>
</header>
<section class="feed">
  <h3>Live demo feed</h3>
  <p>Signed SSE stream with synthetic market data for demonstration.</p>
  <div class="chart" id="chart">{chart_html}</div>
</section>
<footer>© {year} {safe_title} — Demo site</footer>
<script>{JS}</script>
</body>
</html>"""
