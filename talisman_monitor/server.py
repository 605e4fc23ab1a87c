import logging
from typing import Dict, Set

import aiohttp
from aiohttp import web

from .config import MonitorConfig, NO_LAST_USER, SERVER_HOST, SERVER_PORT
from .render import RenderSink
from .state import IDLE_STATUS, NodeRow, SessionStatus, Snapshot
from .tasks import start_background_tasks, cleanup_background_tasks
from .websocket_utils import safe_send_json, robust_broadcast

log = logging.getLogger("TalismanMonitor.Server")


class WebSocketRenderSink(RenderSink):
    """
    Pushes every snapshot to the connected browser clients.

    Keeps the merged full table so a client that connects late gets the whole
    picture without touching the shared monitor state.
    """

    def __init__(self, config: MonitorConfig):
        self.config = config
        self.websockets: Set[web.WebSocketResponse] = set()
        self.rows: Dict[int, SessionStatus] = {n: IDLE_STATUS for n in range(1, config.max_nodes + 1)}
        self.last_user = NO_LAST_USER
        self.todays_calls = 0

    async def render(self, snapshot: Snapshot):
        for row in snapshot.rows:
            self.rows[row.node] = row.status
        self.last_user = snapshot.last_logged_off_user
        self.todays_calls = snapshot.todays_calls
        await robust_broadcast(self.websockets, snapshot.to_payload())

    def full_payload(self, payload_type: str = "init") -> dict:
        snapshot = Snapshot(tuple(NodeRow(n, s) for n, s in sorted(self.rows.items())),
                            self.last_user, self.todays_calls, full=True)
        payload = snapshot.to_payload(payload_type)
        payload["system_name"] = self.config.system_name
        payload["max_nodes"] = self.config.max_nodes
        payload["excluded_users"] = sorted(self.config.excluded_users)
        return payload

    async def close(self):
        for ws in list(self.websockets):
            await ws.close(code=aiohttp.WSCloseCode.GOING_AWAY, message=b"Server shutdown")
        self.websockets.clear()


INDEX_HTML = """<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<title>Talisman Node Monitor</title>
<style>
  body { background: #000; color: #0ff; font-family: monospace; }
  table { border-collapse: collapse; }
  td, th { padding: 0 1.5em 0 0; text-align: left; }
  .idle { color: #0a0; }
  .stats { color: #ff0; margin-top: 1em; }
  #system { color: #f00; background: #fff; padding: 0 .5em; }
</style>
</head>
<body>
<div id="system"></div>
<table>
  <thead><tr><th>Node</th><th>User</th><th>Location</th></tr></thead>
  <tbody id="nodes"></tbody>
</table>
<div class="stats">Last User: <b id="last-user"></b></div>
<div class="stats">Today's Calls: <b id="calls"></b></div>
<script>
  const rows = {};
  let excluded = "";
  function draw(msg) {
    for (const n of msg.nodes) { rows[n.node] = n; }
    const body = document.getElementById("nodes");
    body.innerHTML = "";
    for (const key of Object.keys(rows).map(Number).sort((a, b) => a - b)) {
      const r = rows[key];
      const tr = document.createElement("tr");
      for (const [value, cls] of [[r.node, ""], [r.user, r.idle ? "idle" : ""], [r.location, ""]]) {
        const td = document.createElement("td");
        td.textContent = value;
        if (cls) td.className = cls;
        tr.appendChild(td);
      }
      body.appendChild(tr);
    }
    document.getElementById("last-user").textContent = msg.last_user;
    document.getElementById("calls").textContent = msg.todays_calls + excluded;
  }
  function connect() {
    const ws = new WebSocket((location.protocol === "https:" ? "wss://" : "ws://") + location.host + "/ws");
    ws.onmessage = (e) => {
      const msg = JSON.parse(e.data);
      if (msg.type === "init") {
        document.getElementById("system").textContent = "System Name: " + msg.system_name;
        excluded = msg.excluded_users.length ? " (excluding " + msg.excluded_users.join(", ") + ")" : "";
      }
      draw(msg);
    };
    ws.onclose = () => setTimeout(connect, 2000);
  }
  connect();
</script>
</body>
</html>
"""


async def handle_index(request):
    return web.Response(text=INDEX_HTML, content_type="text/html")


async def handle_nodes(request):
    return web.json_response(request.app["web_sink"].full_payload("nodes"))


async def websocket_handler(request):
    ws = web.WebSocketResponse(heartbeat=10)
    await ws.prepare(request)
    sink = request.app["web_sink"]
    sink.websockets.add(ws)
    log.info(f"WebSocket client connected. Total clients: {len(sink.websockets)}")

    try:
        await safe_send_json(ws, sink.full_payload())
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.ERROR:
                log.warning(f"WebSocket connection closed with exception: {ws.exception()}")
    finally:
        sink.websockets.discard(ws)
        log.info(f"WebSocket client disconnected. Total clients: {len(sink.websockets)}")
    return ws


async def close_websockets(app):
    await app["web_sink"].close()


def create_app(config: MonitorConfig) -> web.Application:
    app = web.Application()
    app["config"] = config
    app["web_sink"] = WebSocketRenderSink(config)
    app["render_sinks"] = [app["web_sink"]]

    app.on_startup.append(start_background_tasks)
    app.on_shutdown.append(close_websockets)
    app.on_cleanup.append(cleanup_background_tasks)
    app.router.add_get("/", handle_index)
    app.router.add_get("/api/nodes", handle_nodes)
    app.router.add_get("/ws", websocket_handler)
    return app


def run_server(config: MonitorConfig, host: str = SERVER_HOST, port: int = SERVER_PORT):
    app = create_app(config)
    log.info(f"Server starting on http://{host}:{port}")
    log.info(f"Monitoring '{config.system_name}' ({config.max_nodes} nodes) from {config.log_file}")
    web.run_app(app, host=host, port=port)
