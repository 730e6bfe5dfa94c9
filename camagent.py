#!/usr/bin/env python3
"""
camagent.py — discover local V4L2 cameras, republish each one to an RTSP relay via ffmpeg,
and report the resulting stream inventory to a CamHub control plane.

Key design:
  - Each enabled camera /dev/video* is opened by exactly ONE supervised ffmpeg process.
  - Every discovery tick rebuilds the camera table from scratch and reconciles it with
    the live ffmpeg set: start what is enabled, stop what is disabled or gone.
  - The camera table, the ffmpeg set and the enabled-state map sit behind one lock.
    Spawning and signalling happen under it; waiting for ffmpeg to exit never does.
  - Enabled flags persist to a small JSON file keyed by deviceUid (<hostname>:<node>).
  - A dead ffmpeg is restarted after a fixed delay if its camera is still enabled then.

Commands:
  ./camagent.py discover
  ./camagent.py state [--state-file data/agent_state.json]

The HTTP control API and console live in camagent_web.py.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import re
import signal
import socket
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

import requests
from dotenv import load_dotenv


logger = logging.getLogger(__name__)

DEVICE_PREFIX = "/dev/video"
DEVICE_DIR = Path("/dev")
DEVICE_GLOB = "video*"

V4L2_LIST_CMD = ["v4l2-ctl", "--list-devices"]
V4L2_TIMEOUT = 5.0

REGISTER_PATH = "/api/agents/register"

RE_SLUG = re.compile(r"[^a-z0-9]+")
RE_DURATION = re.compile(r"^(\d+(?:\.\d+)?)(ms|s|m|h)$")
DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


# ---------------------------------------------------------------------------
# configuration


def _env(key: str, fallback: str) -> str:
    value = os.environ.get(key, "")
    return value if value else fallback


def parse_duration(value: str, fallback: float) -> float:
    """Seconds from "2500" (milliseconds), "2.5s", "500ms", "1m" or "1h"."""
    value = value.strip()
    if not value:
        return fallback
    if value.isdigit():
        return int(value) / 1000.0
    m = RE_DURATION.match(value)
    if not m:
        return fallback
    return float(m.group(1)) * DURATION_UNITS[m.group(2)]


def _env_duration(key: str, fallback: float) -> float:
    return parse_duration(os.environ.get(key, ""), fallback)


@dataclass(frozen=True)
class AgentConfig:
    camhub_url: str = "http://localhost:3001"
    auth_token: str = ""
    rtsp_base: str = "rtsp://localhost:8554"
    heartbeat_interval: float = 10.0
    discovery_interval: float = 15.0
    ffmpeg_path: str = "ffmpeg"
    ffmpeg_loglevel: str = "warning"
    agent_addr: str = "0.0.0.0:8091"
    state_file: Path = Path("data") / "agent_state.json"
    restart_delay: float = 2.0
    register_user_agent: str = "camhub-agent/1.0"
    register_timeout: float = 5.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None) -> "AgentConfig":
        # existing environment wins over .env
        load_dotenv(env_file if env_file is not None else Path(".") / ".env", override=False)
        d = cls()
        return cls(
            camhub_url=_env("CAMHUB_URL", d.camhub_url),
            auth_token=_env("AUTH_TOKEN", d.auth_token),
            rtsp_base=_env("MEDIAMTX_RTSP_BASE", d.rtsp_base),
            heartbeat_interval=_env_duration("HEARTBEAT_MS", d.heartbeat_interval),
            discovery_interval=_env_duration("DISCOVERY_INTERVAL_MS", d.discovery_interval),
            ffmpeg_path=_env("FFMPEG_PATH", d.ffmpeg_path),
            ffmpeg_loglevel=_env("FFMPEG_LOGLEVEL", d.ffmpeg_loglevel),
            agent_addr=_env("AGENT_ADDR", d.agent_addr),
            state_file=Path(_env("STATE_FILE", str(d.state_file))),
            restart_delay=_env_duration("RESTART_DELAY_MS", d.restart_delay),
            register_user_agent=_env("REGISTER_USER_AGENT", d.register_user_agent),
            register_timeout=_env_duration("REGISTER_TIMEOUT_MS", d.register_timeout),
            log_level=_env("LOG_LEVEL", d.log_level),
        )


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


# ---------------------------------------------------------------------------
# data model


@dataclass(frozen=True)
class Device:
    name: str
    node: str


@dataclass
class Camera:
    device_uid: str
    name: str
    node: str
    stream_path: str
    rtsp_url: str
    enabled: bool = True
    publishing: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deviceUid": self.device_uid,
            "name": self.name,
            "node": self.node,
            "streamPath": self.stream_path,
            "rtspUrl": self.rtsp_url,
            "enabled": self.enabled,
            "publishing": self.publishing,
        }

    def to_registration(self) -> Dict[str, str]:
        return {
            "deviceUid": self.device_uid,
            "name": self.name,
            "rtspUrl": self.rtsp_url,
            "streamPath": self.stream_path,
        }


class CameraNotFound(LookupError):
    """Raised when a toggle names a deviceUid that is not in the camera table."""


# ---------------------------------------------------------------------------
# identity & naming


def slugify(value: str) -> str:
    return RE_SLUG.sub("-", value.lower()).strip("-")


def device_uid(hostname: str, node: str) -> str:
    return f"{hostname}:{node}"


def plan_cameras(hostname: str, devices: Iterable[Device], rtsp_base: str) -> List[Camera]:
    """Derive cameras for one scan. Order is by node, and the position feeds streamPath.

    streamPath is positional: if enumeration changes, unrelated cameras are renumbered
    while their deviceUid stays put. Consumers must key on deviceUid.
    """
    host_slug = slugify(hostname)
    base = rtsp_base.rstrip("/")
    cams: List[Camera] = []
    for idx, dev in enumerate(sorted(devices, key=lambda d: d.node)):
        name = dev.name or f"Camera {idx + 1}"
        stream_path = f"{host_slug}-{slugify(name)}-{idx}"
        cams.append(
            Camera(
                device_uid=device_uid(hostname, dev.node),
                name=name,
                node=dev.node,
                stream_path=stream_path,
                rtsp_url=f"{base}/{stream_path}",
            )
        )
    return cams


# ---------------------------------------------------------------------------
# device discovery


def parse_v4l2_list_devices(output: str) -> List[Device]:
    """Parse `v4l2-ctl --list-devices`: one block per card, label line then device nodes.

    Only the first /dev/video node of a block is kept. Blocks without one are dropped.
    """
    devices: List[Device] = []
    label: Optional[str] = None
    node: Optional[str] = None

    def flush() -> None:
        if label is not None and node:
            devices.append(Device(name=label, node=node))

    for raw in output.splitlines():
        line = raw.strip()
        if not line:
            flush()
            label, node = None, None
            continue
        if label is None:
            label = line.rstrip(":").strip()
            continue
        if node is None and line.startswith(DEVICE_PREFIX):
            node = line

    flush()
    return devices


def glob_devices(device_dir: Path = DEVICE_DIR, pattern: str = DEVICE_GLOB) -> List[Device]:
    nodes = sorted(str(p) for p in device_dir.glob(pattern))
    return [Device(name=f"Camera {i + 1}", node=n) for i, n in enumerate(nodes)]


def run_cmd(cmd: List[str], timeout: float = V4L2_TIMEOUT) -> subprocess.CompletedProcess:
    return subprocess.run(
        cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True, check=False, timeout=timeout
    )


def discover_devices(platform: Optional[str] = None) -> List[Device]:
    """Never raises. v4l2-ctl first, then a plain /dev/video* glob."""
    platform = platform if platform is not None else sys.platform
    if not platform.startswith("linux"):
        return []

    try:
        cp = run_cmd(V4L2_LIST_CMD)
        # v4l2-ctl exits non-zero on a single unreadable node but still lists the rest
        devices = parse_v4l2_list_devices(cp.stdout or "")
        if devices:
            return devices
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug("v4l2-ctl unavailable, falling back to glob: %s", e)

    try:
        return glob_devices()
    except OSError as e:
        logger.debug("device glob failed: %s", e)
        return []


# ---------------------------------------------------------------------------
# state store


def load_state(path: Path) -> Dict[str, bool]:
    """Missing or corrupt state is an empty mapping, never an error."""
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}
    except (OSError, ValueError) as e:
        logger.warning("ignoring unreadable state file %s: %s", path, e)
        return {}
    if not isinstance(data, dict) or not all(isinstance(v, bool) for v in data.values()):
        logger.warning("ignoring malformed state file %s", path)
        return {}
    return {str(k): v for k, v in data.items()}


def save_state(path: Path, state: Dict[str, bool]) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        json.dump(state, f, indent=2, sort_keys=True)
        f.write("\n")
    tmp.replace(path)


# ---------------------------------------------------------------------------
# publisher supervisor


def ffmpeg_command(config: AgentConfig, camera: Camera) -> List[str]:
    return [
        config.ffmpeg_path,
        "-hide_banner",
        "-loglevel", config.ffmpeg_loglevel,
        "-f", "v4l2",
        "-i", camera.node,
        "-vf", "format=yuv420p",
        "-c:v", "libx264",
        "-preset", "veryfast",
        "-tune", "zerolatency",
        "-profile:v", "baseline",
        "-level:v", "3.1",
        "-pix_fmt", "yuv420p",
        "-f", "rtsp",
        "-rtsp_transport", "tcp",
        camera.rtsp_url,
    ]


@dataclass(eq=False)
class Publisher:
    device_uid: str
    proc: Any
    rtsp_url: str
    started_at: float = field(default_factory=time.time)

    @property
    def pid(self) -> int:
        return self.proc.pid


class PublisherSupervisor:
    """At most one live ffmpeg per deviceUid.

    ensure/retire/retire_all must be called with `lock` held. The exit watchers take
    the lock themselves, and only for bookkeeping.
    """

    def __init__(
        self,
        config: AgentConfig,
        lock: threading.Lock,
        lookup: Callable[[str], Optional[Camera]],
        stopped: threading.Event,
        popen: Optional[Callable[..., Any]] = None,
    ) -> None:
        self.config = config
        self._lock = lock
        self._lookup = lookup
        self._stopped = stopped
        self._popen = popen or subprocess.Popen
        self._live: Dict[str, Publisher] = {}

    def is_live(self, uid: str) -> bool:
        return uid in self._live

    def live_uids(self) -> List[str]:
        return list(self._live)

    def ensure(self, camera: Camera) -> bool:
        if camera.device_uid in self._live:
            camera.publishing = True
            return True

        cmd = ffmpeg_command(self.config, camera)
        try:
            proc = self._popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
                start_new_session=True,
            )
        except (OSError, ValueError) as e:
            logger.warning("ffmpeg start failed for %s: %s", camera.device_uid, e)
            camera.publishing = False
            return False

        pub = Publisher(device_uid=camera.device_uid, proc=proc, rtsp_url=camera.rtsp_url)
        self._live[camera.device_uid] = pub
        camera.publishing = True
        logger.info("publishing %s (%s) -> %s pid=%s", camera.device_uid, camera.node, camera.rtsp_url, pub.pid)

        threading.Thread(
            target=self._drain, args=(pub,), name=f"ffmpeg-log-{pub.pid}", daemon=True
        ).start()
        threading.Thread(
            target=self._watch, args=(pub,), name=f"ffmpeg-wait-{pub.pid}", daemon=True
        ).start()
        return True

    def retire(self, uid: str) -> Optional[Publisher]:
        pub = self._live.pop(uid, None)
        if pub is None:
            return None
        try:
            pub.proc.send_signal(signal.SIGINT)
        except (ProcessLookupError, OSError) as e:
            logger.debug("ffmpeg for %s already gone: %s", uid, e)
        cam = self._lookup(uid)
        if cam is not None:
            cam.publishing = False
        logger.info("stopped publishing %s pid=%s", uid, pub.pid)
        return pub

    def retire_all(self) -> List[Publisher]:
        retired = []
        for uid in list(self._live):
            pub = self.retire(uid)
            if pub is not None:
                retired.append(pub)
        return retired

    def _drain(self, pub: Publisher) -> None:
        stream = pub.proc.stderr
        if stream is None:
            return
        try:
            for line in stream:
                line = line.strip()
                if line:
                    logger.info("[ffmpeg:%s] %s", pub.device_uid, line)
        except (OSError, ValueError):
            # pipe closed under us on shutdown
            pass

    def _watch(self, pub: Publisher) -> None:
        rc = pub.proc.wait()
        uid = pub.device_uid

        with self._lock:
            # a retire (and maybe a fresh ensure) may already have replaced us
            crashed = self._live.get(uid) is pub
            if crashed:
                del self._live[uid]
            cam = self._lookup(uid)
            if crashed and cam is not None:
                cam.publishing = False
            restart = crashed and cam is not None and cam.enabled

        if crashed:
            logger.warning("ffmpeg exited for %s: code %s", uid, rc)
        else:
            logger.debug("retired ffmpeg for %s exited: code %s", uid, rc)

        if not restart:
            return
        if self._stopped.wait(self.config.restart_delay):
            return

        with self._lock:
            if self._stopped.is_set():
                return
            cam = self._lookup(uid)
            if cam is not None and cam.enabled:
                self.ensure(cam)


# ---------------------------------------------------------------------------
# registration client


class RegistrationClient:
    def __init__(self, config: AgentConfig, hostname: str, session: Optional[Any] = None) -> None:
        self.config = config
        self.hostname = hostname
        self.session = session or requests.Session()

    @property
    def url(self) -> str:
        return self.config.camhub_url.rstrip("/") + REGISTER_PATH

    def headers(self) -> Dict[str, str]:
        h = {"Content-Type": "application/json", "User-Agent": self.config.register_user_agent}
        if self.config.auth_token:
            h["Authorization"] = f"Bearer {self.config.auth_token}"
        return h

    def payload(self, cameras: Iterable[Camera]) -> Dict[str, Any]:
        return {"host": self.hostname, "cameras": [c.to_registration() for c in cameras]}

    def register(self, cameras: Iterable[Camera]) -> bool:
        """One attempt, no retry. The next heartbeat is the retry."""
        try:
            res = self.session.post(
                self.url,
                json=self.payload(cameras),
                headers=self.headers(),
                timeout=self.config.register_timeout,
            )
        except requests.RequestException as e:
            logger.warning("register failed: %s", e)
            return False
        if not 200 <= res.status_code <= 299:
            logger.warning("register failed: %s %s", res.status_code, (res.text or "").strip())
            return False
        return True


# ---------------------------------------------------------------------------
# reconciliation engine


class CameraAgent:
    """Camera table + publisher set + enabled state, all behind one lock."""

    def __init__(
        self,
        config: AgentConfig,
        hostname: Optional[str] = None,
        discover: Optional[Callable[[], List[Device]]] = None,
        popen: Optional[Callable[..., Any]] = None,
        registrar: Optional[RegistrationClient] = None,
    ) -> None:
        self.config = config
        self.hostname = hostname or socket.gethostname()
        self._discover = discover or discover_devices
        self._lock = threading.Lock()
        self._stopped = threading.Event()
        self._cameras: Dict[str, Camera] = {}
        self._state = load_state(config.state_file)
        self.supervisor = PublisherSupervisor(
            config, self._lock, self._cameras_get, self._stopped, popen=popen
        )
        self.registrar = registrar or RegistrationClient(config, self.hostname)
        self._threads: List[threading.Thread] = []

    def _cameras_get(self, uid: str) -> Optional[Camera]:
        return self._cameras.get(uid)

    def _persist_locked(self) -> None:
        try:
            save_state(self.config.state_file, self._state)
        except OSError as e:
            logger.warning("could not save state to %s: %s", self.config.state_file, e)

    # -- reconciliation

    def refresh(self) -> None:
        devices = self._discover()

        with self._lock:
            if self._stopped.is_set():
                return
            nxt: Dict[str, Camera] = {}
            for cam in plan_cameras(self.hostname, devices, self.config.rtsp_base):
                uid = cam.device_uid
                enabled = self._state.get(uid)
                if enabled is None:
                    enabled = True
                    self._state[uid] = True
                    logger.info("new camera %s (%s)", uid, cam.name)
                    self._persist_locked()
                cam.enabled = enabled
                cam.publishing = self.supervisor.is_live(uid)
                nxt[uid] = cam
                if enabled:
                    self.supervisor.ensure(cam)
                else:
                    self.supervisor.retire(uid)
                    cam.publishing = False

            for uid in self._cameras:
                if uid not in nxt:
                    logger.info("camera gone: %s", uid)
                    self.supervisor.retire(uid)

            self._cameras = nxt
            self._persist_locked()

    # -- control api

    def list_cameras(self) -> List[Dict[str, Any]]:
        with self._lock:
            cams = sorted(self._cameras.values(), key=lambda c: (c.name, c.device_uid))
            return [c.to_dict() for c in cams]

    def toggle(self, uid: str, enabled: bool) -> Camera:
        with self._lock:
            cam = self._cameras.get(uid)
            if cam is None:
                raise CameraNotFound(uid)
            cam.enabled = enabled
            self._state[uid] = enabled
            if enabled:
                self.supervisor.ensure(cam)
            else:
                self.supervisor.retire(uid)
            self._persist_locked()
            logger.info("camera %s %s", uid, "enabled" if enabled else "disabled")
            return cam

    def enabled_cameras(self) -> List[Camera]:
        with self._lock:
            return [replace(c) for c in self._cameras.values() if c.enabled]

    def heartbeat(self) -> bool:
        return self.registrar.register(self.enabled_cameras())

    # -- lifecycle

    def _loop(self, interval: float, fn: Callable[[], Any], immediate: bool) -> None:
        if immediate and not self._stopped.is_set():
            self._tick(fn)
        while not self._stopped.wait(interval):
            self._tick(fn)

    def _tick(self, fn: Callable[[], Any]) -> None:
        try:
            fn()
        except Exception:
            logger.exception("background task %s failed", getattr(fn, "__name__", fn))

    def start(self) -> None:
        """Reconcile once, then run discovery and heartbeat timers in the background."""
        self.refresh()
        for name, interval, fn, immediate in (
            ("discovery", self.config.discovery_interval, self.refresh, False),
            ("heartbeat", self.config.heartbeat_interval, self.heartbeat, True),
        ):
            t = threading.Thread(target=self._loop, args=(interval, fn, immediate), name=name, daemon=True)
            t.start()
            self._threads.append(t)

    def stop(self, timeout: float = 3.0) -> None:
        self._stopped.set()
        with self._lock:
            retired = self.supervisor.retire_all()

        deadline = time.time() + timeout
        for pub in retired:
            try:
                pub.proc.wait(timeout=max(0.0, deadline - time.time()))
            except subprocess.TimeoutExpired:
                logger.warning("ffmpeg for %s ignored interrupt, killing pid=%s", pub.device_uid, pub.pid)
                try:
                    pub.proc.kill()
                except OSError:
                    pass

        for t in self._threads:
            t.join(timeout=1.0)
        self._threads = []


# ---------------------------------------------------------------------------
# cli


def main() -> int:
    ap = argparse.ArgumentParser(prog="camagent.py", add_help=True)
    ap.add_argument("--env-file", type=Path, default=None)
    sub = ap.add_subparsers(dest="cmd", required=True)

    sub.add_parser("discover")

    p_state = sub.add_parser("state")
    p_state.add_argument("--state-file", type=Path, default=None)

    args = ap.parse_args()
    config = AgentConfig.from_env(args.env_file)
    setup_logging(config.log_level)

    if args.cmd == "discover":
        devices = discover_devices()
        if not devices:
            print("No V4L2 devices found.", file=sys.stderr)
            return 1
        hostname = socket.gethostname()
        for cam in plan_cameras(hostname, devices, config.rtsp_base):
            print(f"{cam.node}  ({cam.name})")
            print(f"  deviceUid={cam.device_uid}")
            print(f"  streamPath={cam.stream_path}")
            print(f"  rtspUrl={cam.rtsp_url}")
        return 0

    if args.cmd == "state":
        path = args.state_file or config.state_file
        state = load_state(path)
        if not state:
            print("No camera state found under:", path)
            return 0
        for uid in sorted(state):
            print(f"{uid}: {'enabled' if state[uid] else 'disabled'}")
        return 0

    return 1


if __name__ == "__main__":
    raise SystemExit(main())
