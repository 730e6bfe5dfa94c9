from __future__ import annotations

import io
import itertools
import subprocess
import threading
import time
from pathlib import Path
from typing import Callable, List, Optional

import pytest

from camagent import AgentConfig, CameraAgent, Device, RegistrationClient


_pids = itertools.count(4000)


class FakeProcess:
    """Stands in for an ffmpeg Popen. Exits on SIGINT unless told to ignore it."""

    def __init__(self, args: List[str], stderr_text: str = "", ignore_sigint: bool = False, **kwargs) -> None:
        self.args = args
        self.kwargs = kwargs
        self.pid = next(_pids)
        self.stderr = io.StringIO(stderr_text)
        self.returncode: Optional[int] = None
        self.signals: List[int] = []
        self.ignore_sigint = ignore_sigint
        self._exited = threading.Event()

    @property
    def alive(self) -> bool:
        return self.returncode is None

    def _exit(self, code: int) -> None:
        if self.returncode is None:
            self.returncode = code
            self._exited.set()

    def crash(self, code: int = 1) -> None:
        self._exit(code)

    def send_signal(self, sig: int) -> None:
        self.signals.append(sig)
        if not self.ignore_sigint:
            self._exit(255)

    def kill(self) -> None:
        self._exit(-9)

    def poll(self) -> Optional[int]:
        return self.returncode

    def wait(self, timeout: Optional[float] = None) -> int:
        if not self._exited.wait(timeout):
            raise subprocess.TimeoutExpired(self.args, timeout)
        return self.returncode


class FakePopen:
    def __init__(self, stderr_text: str = "", ignore_sigint: bool = False) -> None:
        self.spawned: List[FakeProcess] = []
        self.fail = False
        self.stderr_text = stderr_text
        self.ignore_sigint = ignore_sigint

    def __call__(self, args: List[str], **kwargs) -> FakeProcess:
        if self.fail:
            raise FileNotFoundError(2, "No such file or directory", args[0])
        proc = FakeProcess(args, stderr_text=self.stderr_text, ignore_sigint=self.ignore_sigint, **kwargs)
        self.spawned.append(proc)
        return proc

    def for_node(self, node: str) -> List[FakeProcess]:
        return [p for p in self.spawned if node in p.args]

    def alive(self, node: Optional[str] = None) -> List[FakeProcess]:
        procs = self.spawned if node is None else self.for_node(node)
        return [p for p in procs if p.alive]


class FakeResponse:
    def __init__(self, status_code: int = 200, text: str = "") -> None:
        self.status_code = status_code
        self.text = text


class FakeSession:
    def __init__(self, response: Optional[FakeResponse] = None, error: Optional[Exception] = None) -> None:
        self.response = response or FakeResponse()
        self.error = error
        self.calls: List[dict] = []

    def post(self, url: str, **kwargs) -> FakeResponse:
        self.calls.append({"url": url, **kwargs})
        if self.error is not None:
            raise self.error
        return self.response


@pytest.fixture
def config(tmp_path: Path) -> AgentConfig:
    return AgentConfig(
        camhub_url="http://camhub.local:3001/",
        rtsp_base="rtsp://relay:8554/",
        state_file=tmp_path / "data" / "agent_state.json",
        restart_delay=0.05,
        heartbeat_interval=60.0,
        discovery_interval=60.0,
    )


@pytest.fixture
def devices() -> List[Device]:
    return [Device(name="HD USB Camera", node="/dev/video0"), Device(name="", node="/dev/video2")]


@pytest.fixture
def popen() -> FakePopen:
    return FakePopen()


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def make_agent(config, devices, popen, session):
    agents: List[CameraAgent] = []

    def factory(cfg: Optional[AgentConfig] = None, proc_factory: Optional[FakePopen] = None,
                hostname: str = "cam-1") -> CameraAgent:
        cfg = cfg or config
        agent = CameraAgent(
            cfg,
            hostname=hostname,
            discover=lambda: list(devices),
            popen=proc_factory or popen,
            registrar=RegistrationClient(cfg, hostname, session=session),
        )
        agents.append(agent)
        return agent

    yield factory
    for agent in agents:
        agent.stop(timeout=0.5)


@pytest.fixture
def wait_for() -> Callable[..., bool]:
    def wait(cond: Callable[[], bool], timeout: float = 2.0) -> bool:
        deadline = time.time() + timeout
        while time.time() < deadline:
            if cond():
                return True
            time.sleep(0.01)
        return cond()

    return wait
