"""Pytest configuration and fixtures."""

import itertools
import os
import shutil
import signal
import stat
import sys
from pathlib import Path
from typing import List, Optional, Tuple

import pytest

from rec_pilot.config import RecConfig
from rec_pilot.controller import SessionController
from rec_pilot.engine import CaptureProcessManager, ProcessHandle, RecoveryAnchors
from rec_pilot.errors import RecError, SignalDeliveryFailed
from rec_pilot.geometry import GeometryResolver
from rec_pilot.host import HeadlessHost
from rec_pilot.metadata import MetadataStore
from rec_pilot.overlay import OverlayRenderer
from rec_pilot.platform import Platform
from rec_pilot.selector import RegionSelector
from rec_pilot.titles import TitleGenerator


# Skip markers for tools that may not be available
def _check_command(cmd: str) -> bool:
    """Check if a command is available."""
    return shutil.which(cmd) is not None


requires_sh = pytest.mark.skipif(
    not _check_command("sh"),
    reason="sh not available",
)

requires_git = pytest.mark.skipif(
    not _check_command("git"),
    reason="git not available",
)


# Prints REC_STARTED, then announces the output file when interrupted
FAKE_ENGINE = """#!/bin/sh
cmd="$1"
shift
case "$cmd" in
  start)
    out="$FAKE_ENGINE_OUTPUT"
    echo "Output: $out"
    echo "REC_STARTED"
    trap 'printf "video" > "$out"; echo "Recording saved: $out"; exit 0' INT TERM
    while true; do sleep 0.05; done
    ;;
  status)
    echo "REC_IDLE"
    ;;
  devices)
    echo "[0] Capture screen 0" >&2
    ;;
  *)
    echo "ERR_NOT_RECORDING"
    exit 1
    ;;
esac
"""

FAILING_ENGINE = """#!/bin/sh
echo "ERR_PERMISSION_DENIED"
exit 1
"""

CRASHING_ENGINE = """#!/bin/sh
echo "ffmpeg: device busy" >&2
exit 3
"""

# Encoder left behind by DETACHING_ENGINE; writes the file when interrupted
FAKE_ENCODER = """import signal
import sys
import time
from pathlib import Path

out = Path(sys.argv[1])


def finish(signum, frame):
    out.write_bytes(b"video")
    sys.exit(0)


signal.signal(signal.SIGINT, finish)
signal.signal(signal.SIGTERM, finish)
Path(sys.argv[2]).touch()
while True:
    time.sleep(0.05)
"""

# `start` backgrounds the encoder and exits 0, like rec-cli. The encoder keeps
# our stderr pipe open. @...@ placeholders are filled in by the fixture.
DETACHING_ENGINE = """#!/bin/sh
cmd="$1"
shift
case "$cmd" in
  start)
    out="$FAKE_ENGINE_OUTPUT"
    rm -f "@PIDFILE@.ready"
    "@PYTHON@" "@ENCODER@" "$out" "@PIDFILE@.ready" >/dev/null &
    echo "$!" > "@PIDFILE@"
    i=0
    while [ "$i" -lt 100 ] && [ ! -e "@PIDFILE@.ready" ]; do
      sleep 0.05
      i=$((i + 1))
    done
    if [ -n "$FAKE_ENGINE_ANNOUNCE_PID" ]; then
      echo "PID: $(cat "@PIDFILE@")"
    fi
    echo "Recording started"
    echo "Output: $out"
    ;;
  stop)
    pid=$(cat "@PIDFILE@" 2>/dev/null)
    if [ -z "$pid" ]; then
      echo "REC_NOT_RUNNING"
      exit 0
    fi
    kill -INT "$pid" 2>/dev/null
    i=0
    while [ "$i" -lt 100 ] && [ ! -s "$FAKE_ENGINE_OUTPUT" ]; do
      sleep 0.05
      i=$((i + 1))
    done
    rm -f "@PIDFILE@"
    echo "Recording stopped"
    echo "Recording saved: $FAKE_ENGINE_OUTPUT"
    ;;
  pause)
    kill -STOP "$(cat "@PIDFILE@")"
    ;;
  resume)
    kill -CONT "$(cat "@PIDFILE@")"
    ;;
  *)
    echo "ERR_NOT_RECORDING"
    ;;
esac
"""


def write_script(path: Path, body: str) -> Path:
    path.write_text(body)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


class FakePlatform(Platform):
    """Platform with no window system: every query comes back empty."""

    def __init__(self, screen: Optional[Tuple[int, int]] = None):
        self.screen = screen

    async def window_origin(self):
        return None

    async def screen_size(self):
        return self.screen

    def open_command(self):
        return None

    def cell_size(self):
        return None


class FakeCaptureManager(CaptureProcessManager):
    """
    Capture manager that never launches a process.

    Handles get fake pids; terminate writes the output file the way a
    real engine would finalize it.
    """

    def __init__(self, output_dir: Path, anchors: RecoveryAnchors):
        super().__init__("fake-engine", anchors)
        self.output_dir = output_dir
        self.calls: List[str] = []
        self.running = set()
        self.spawn_error: Optional[RecError] = None
        self.signal_error: Optional[str] = None
        self.announce = True
        self._pids = itertools.count(40000)

    async def spawn(self, args):
        self.calls.append("spawn")
        self.last_args = list(args)
        if self.spawn_error is not None:
            raise self.spawn_error
        pid = next(self._pids)
        output = self.output_dir / f"rec-{pid}.mp4"
        handle = ProcessHandle(pid=pid, output_path=output, started=True)
        self.running.add(pid)
        self.anchors.write(pid, output)
        return handle

    async def pause(self, handle):
        self.calls.append("pause")
        if self.signal_error:
            raise SignalDeliveryFailed(self.signal_error)

    async def resume(self, handle):
        self.calls.append("resume")
        if self.signal_error:
            raise SignalDeliveryFailed(self.signal_error)

    async def terminate(self, handle):
        self.calls.append("terminate")
        if handle.pid in self.running:
            self.running.discard(handle.pid)
            target = handle.output_path or self.output_dir / f"rec-{handle.pid}.mp4"
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(b"video")
            if self.announce:
                handle.saved_path = target
        self.anchors.clear()
        return True

    def is_alive(self, pid):
        return pid in self.running

    def is_running(self, handle):
        return handle.pid in self.running


@pytest.fixture
def test_config(tmp_path: Path) -> RecConfig:
    """Create a test configuration with temp directories and no delays."""
    return RecConfig(
        engine_path=str(tmp_path / "fake-engine"),
        output_dir=tmp_path / "recordings",
        recovery_dir=tmp_path / "recovery",
        engine_pid_file=tmp_path / "engine.pid",
        cell_width=8,
        cell_height=18,
        window_x=100,
        window_y=50,
        finalize_grace=0.0,
        cancel_grace=0.0,
        preview_ms=0,
    )


@pytest.fixture
def host(tmp_path: Path) -> HeadlessHost:
    return HeadlessHost(grid=(40, 120), cwd=tmp_path)


@pytest.fixture
def platform() -> FakePlatform:
    return FakePlatform(screen=(1920, 1080))


@pytest.fixture
def resolver(host, test_config, platform) -> GeometryResolver:
    return GeometryResolver(host, test_config, platform)


@pytest.fixture
def fake_engine(test_config: RecConfig) -> FakeCaptureManager:
    return FakeCaptureManager(test_config.output_dir, RecoveryAnchors(test_config.recovery_dir))


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def build_controller(config, host, engine, platform, clock) -> SessionController:
    resolver = GeometryResolver(host, config, platform)
    titles = TitleGenerator(
        lambda: "",
        # Outside any repository so git yields nothing
        lambda: config.recovery_dir,
        config.trunk_branches,
        config.title_max_length,
    )
    return SessionController(
        config=config,
        host=host,
        engine=engine,
        store=MetadataStore(config.output_dir),
        resolver=resolver,
        selector=RegionSelector(host, resolver),
        overlay=OverlayRenderer(host, config.hud_position, clock),
        titles=titles,
        platform=platform,
        clock=clock,
    )


@pytest.fixture
def controller(test_config, host, fake_engine, platform, clock) -> SessionController:
    test_config.ensure_directories()
    return build_controller(test_config, host, fake_engine, platform, clock)


@pytest.fixture
def engine_script(tmp_path: Path) -> Path:
    """Shell stand-in for the capture engine."""
    return write_script(tmp_path / "fake-engine", FAKE_ENGINE)


@pytest.fixture
def detaching_engine(tmp_path: Path):
    """
    Shell engine whose `start` leaves a background encoder running.

    Yields (script, engine pid file). Any encoder still alive afterwards
    is killed.
    """
    encoder = tmp_path / "fake-encoder.py"
    encoder.write_text(FAKE_ENCODER)
    pid_file = tmp_path / "engine.pid"
    body = (
        DETACHING_ENGINE
        .replace("@PYTHON@", sys.executable)
        .replace("@ENCODER@", str(encoder))
        .replace("@PIDFILE@", str(pid_file))
    )
    yield write_script(tmp_path / "detaching-engine", body), pid_file

    try:
        os.kill(int(pid_file.read_text().strip()), signal.SIGKILL)
    except (OSError, ValueError):
        pass
