#!/usr/bin/env python3
"""
camagent_web.py — Flask control API and console for camagent

Usage:
  ./camagent_web.py [--addr 0.0.0.0:8091] [--state-file data/agent_state.json]
Then open:
  http://<host-ip>:8091/

Endpoints:
  GET  /api/cameras          camera table, ordered by name
  POST /api/cameras/toggle   {"deviceUid": "...", "enabled": true|false}
  GET  /health
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
from pathlib import Path
from typing import Optional, Tuple

from flask import Flask, jsonify, render_template_string, request

from camagent import AgentConfig, CameraAgent, CameraNotFound, setup_logging


logger = logging.getLogger(__name__)

HTML = """
<!doctype html>
<html>
<head>
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>CamHub Agent</title>
<style>
  body { font-family: sans-serif; background:#111; color:#eee; margin: 0 auto; max-width: 640px; padding: 12px; }
  header { display:flex; justify-content:space-between; align-items:center; }
  .camera {
    background:#1c1c1c;
    border-radius: 12px;
    padding: 14px;
    margin: 12px 0;
    display:flex;
    justify-content:space-between;
    align-items:center;
  }
  .camera-title { font-size: 1.2em; }
  .camera-meta, .muted { color:#999; font-size: 0.9em; }
  .live { color:#2ecc71; }
  button {
    font-size: 1em;
    padding: 12px 16px;
    border-radius: 10px;
    border: none;
  }
  .start { background:#2ecc71; }
  .stop  { background:#e74c3c; }
  .ghost { background:#333; color:#eee; }
</style>
</head>
<body>
<header>
  <h2>CamHub Agent</h2>
  <button class="ghost" id="refresh">Refresh</button>
</header>
<div id="status" class="muted"></div>
<div id="cameras"></div>

<script>
const listEl = document.getElementById("cameras");
const statusEl = document.getElementById("status");

async function fetchCameras() {
  statusEl.textContent = "Refreshing...";
  try {
    const res = await fetch("/api/cameras");
    const data = await res.json();
    render(data);
    statusEl.textContent = `Found ${data.length}`;
  } catch (e) {
    statusEl.textContent = "Failed to load";
  }
}

function render(cameras) {
  listEl.innerHTML = "";
  if (!cameras.length) {
    listEl.innerHTML = '<p class="muted">No cameras detected.</p>';
    return;
  }
  cameras.forEach((cam) => {
    const card = document.createElement("div");
    card.className = "camera";

    const info = document.createElement("div");
    const title = document.createElement("div");
    title.className = "camera-title";
    title.textContent = cam.name;
    const node = document.createElement("div");
    node.className = "camera-meta";
    node.textContent = cam.node;
    const stream = document.createElement("div");
    stream.className = "camera-meta" + (cam.publishing ? " live" : "");
    stream.textContent = `Stream: ${cam.streamPath}` + (cam.publishing ? " (live)" : "");
    info.append(title, node, stream);

    const toggle = document.createElement("button");
    toggle.className = cam.enabled ? "stop" : "start";
    toggle.textContent = cam.enabled ? "Stop Streaming" : "Start Streaming";
    toggle.addEventListener("click", async () => {
      toggle.disabled = true;
      await fetch("/api/cameras/toggle", {
        method: "POST",
        headers: { "Content-Type": "application/json" },
        body: JSON.stringify({ deviceUid: cam.deviceUid, enabled: !cam.enabled })
      });
      await fetchCameras();
    });

    card.append(info, toggle);
    listEl.append(card);
  });
}

document.getElementById("refresh").addEventListener("click", fetchCameras);
fetchCameras();
setInterval(fetchCameras, 10000);
</script>
</body>
</html>
"""


def create_app(agent: CameraAgent) -> Flask:
    app = Flask(__name__)

    @app.route("/")
    def index():
        return render_template_string(HTML)

    @app.route("/health")
    def health():
        return jsonify(status="ok")

    @app.route("/api/cameras", methods=["GET"])
    def cameras():
        return jsonify(agent.list_cameras())

    @app.route("/api/cameras/toggle", methods=["POST"])
    def toggle():
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            return jsonify(error="invalid payload"), 400
        uid = payload.get("deviceUid")
        enabled = payload.get("enabled")
        if not isinstance(uid, str) or not uid or not isinstance(enabled, bool):
            return jsonify(error="invalid payload"), 400

        try:
            agent.toggle(uid, enabled)
        except CameraNotFound:
            return jsonify(error="camera not found"), 404
        return jsonify(ok=True)

    return app


def split_addr(addr: str) -> Tuple[str, int]:
    host, _, port = addr.rpartition(":")
    return (host or "0.0.0.0"), int(port)


def main(argv: Optional[list] = None) -> int:
    ap = argparse.ArgumentParser(prog="camagent_web.py", add_help=True)
    ap.add_argument("--env-file", type=Path, default=None)
    ap.add_argument("--addr", default=None, help="listen address host:port (default AGENT_ADDR)")
    ap.add_argument("--state-file", type=Path, default=None)
    ap.add_argument("--log-level", default=None)
    args = ap.parse_args(argv)

    config = AgentConfig.from_env(args.env_file)
    overrides = {}
    if args.addr:
        overrides["agent_addr"] = args.addr
    if args.state_file:
        overrides["state_file"] = args.state_file
    if args.log_level:
        overrides["log_level"] = args.log_level
    config = dataclasses.replace(config, **overrides)
    setup_logging(config.log_level)

    host, port = split_addr(config.agent_addr)
    agent = CameraAgent(config)
    agent.start()
    logger.info("agent listening on %s", config.agent_addr)
    try:
        create_app(agent).run(host=host, port=port, debug=False, threaded=True)
    finally:
        agent.stop()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
