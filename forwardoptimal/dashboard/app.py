# forwardoptimal/dashboard/app.py
# run with: uvicorn forwardoptimal.dashboard.app:app
from fastapi import FastAPI
from fastapi.responses import HTMLResponse, StreamingResponse
import asyncio, json, os, time, redis

from forwardoptimal.lb.telemetry import EVENTS_STREAM, SNAPSHOT_KEY

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", "6379"))
REDIS_DB   = int(os.getenv("REDIS_DB", "0"))

r = redis.Redis(host=REDIS_HOST, port=REDIS_PORT, db=REDIS_DB, decode_responses=True)

app = FastAPI()

INDEX_HTML = """
<!doctype html>
<html>
<head>
  <meta charset="utf-8" />
  <title>ForwardOptimal</title>
  <style>
    body{font-family:Inter,Segoe UI,system-ui,Arial;margin:24px;background:#0b1020;color:#e6e8ef}
    h1,h2{margin:0 0 12px}
    .grid{display:grid;grid-template-columns:1fr 1fr;gap:18px}
    table{border-collapse:collapse;width:100%;font-size:14px}
    th,td{border-bottom:1px solid #1f2750;padding:8px 10px}
    th{color:#9fb0ff;text-align:left}
    .ok{color:#54f29c;font-weight:600}
    .down{color:#ff6b6b;font-weight:600}
    .best{background:#143725}
    pre{background:#0a0f24;border:1px solid #1f2750;border-radius:12px;padding:10px;height:320px;overflow:auto}
    #meta{margin:6px 0 16px;color:#9fb0ff}
  </style>
</head>
<body>
  <h1>ForwardOptimal</h1>
  <div id="meta"></div>
  <div class="grid">
    <div>
      <h2>Targets</h2>
      <table id="tbl"><thead><tr><th>Target</th><th>Status</th><th>Latency</th></tr></thead><tbody></tbody></table>
    </div>
    <div>
      <h2>Recent Events</h2>
      <pre id="log"></pre>
    </div>
  </div>
<script>
const meta  = document.getElementById('meta');
const tbody = document.querySelector('#tbl tbody');
const log   = document.getElementById('log');

function renderSnapshot(s) {
  if (!s || !s.backends) return;
  const ts = typeof s.ts === "number" ? s.ts : parseFloat(s.ts||0);
  const selected = s.selected || "none (rejecting connections)";
  meta.textContent = `Selected: ${selected} | PROXY: ${s.proxy_protocol||"?"} | Updated: ${new Date(ts*1000).toLocaleTimeString()}`;
  let backends = s.backends;
  if (typeof backends === "string") {
    try { backends = JSON.parse(backends); } catch(e) { backends = []; }
  }
  tbody.innerHTML = '';
  backends.forEach(b => {
    const tr = document.createElement('tr');
    if (b.name === s.selected) tr.className = 'best';
    const latency = b.latency_ms == null ? "N/A" : `${b.latency_ms.toFixed(2)}ms`;
    tr.innerHTML = `<td>${b.name}</td>
                    <td class="${b.healthy?'ok':'down'}">${b.healthy?'UP':'DOWN'}</td>
                    <td>${latency}</td>`;
    tbody.appendChild(tr);
  });
}

function appendEvent(d) {
  const t = new Date(parseFloat(d.ts||0)*1000).toLocaleTimeString();
  let line = `[${t}] ${d.type}`;
  if (d.type === "select") line += ` -> ${d.backend || "none"}`;
  else if (d.type === "end") line += ` ${d.client_peer} -> ${d.backend} ${d.duration_ms}ms ↑${d.bytes_up} ↓${d.bytes_down}`;
  else if (d.client_peer) line += ` ${d.client_peer}${d.backend ? " -> " + d.backend : ""}`;
  log.textContent = line + "\\n" + log.textContent;
}

const es = new EventSource("/stream");
es.addEventListener("snapshot", ev => renderSnapshot(JSON.parse(ev.data)));
es.addEventListener("lb_event", ev => appendEvent(JSON.parse(ev.data)));
</script>
</body>
</html>
"""


def decode_snapshot(snap):
    snap = dict(snap or {})
    if "ts" in snap:
        try:
            snap["ts"] = float(snap["ts"])
        except (TypeError, ValueError):
            pass
    if isinstance(snap.get("backends"), str):
        try:
            snap["backends"] = json.loads(snap["backends"])
        except ValueError:
            snap["backends"] = []
    return snap


@app.get("/", response_class=HTMLResponse)
def index():
    return INDEX_HTML


@app.get("/api/snapshot")
async def snapshot():
    snap = await asyncio.to_thread(r.hgetall, SNAPSHOT_KEY)
    return decode_snapshot(snap)


@app.get("/stream")
def stream(last: str = "$"):
    """
    Named SSE events:
      - event: snapshot   data: {...}
      - event: lb_event   data: {...}
    """
    async def event_gen():
        nonlocal last
        while True:
            # 1) snapshot once per loop
            try:
                snap = await asyncio.to_thread(r.hgetall, SNAPSHOT_KEY)
                yield f"event: snapshot\ndata: {json.dumps(decode_snapshot(snap))}\n\n"
            except redis.RedisError as e:
                # keep the stream alive even if redis hiccups
                yield f": snapshot_error {str(e)}\n\n"

            # 2) new events (long-poll up to 5s) in a thread
            try:
                resp = await asyncio.to_thread(r.xread, {EVENTS_STREAM: last}, 100, 5000)
                if resp:
                    _, entries = resp[0]
                    for _id, fields in entries:
                        last = _id
                        item = dict(fields)
                        item["id"] = _id
                        try:
                            item["ts"] = float(item.get("ts", time.time()))
                        except ValueError:
                            item["ts"] = time.time()
                        yield f"event: lb_event\ndata: {json.dumps(item)}\n\n"
                else:
                    # idle heartbeat helps some proxies keep the connection open
                    yield ": idle\n\n"
            except redis.RedisError as e:
                yield f": xread_error {str(e)}\n\n"

            await asyncio.sleep(1.0)

    headers = {
        "Cache-Control": "no-cache",
        "Connection": "keep-alive",
    }
    return StreamingResponse(event_gen(), media_type="text/event-stream", headers=headers)
