"""Capture engine process management and crash-recovery anchors."""

import asyncio
import logging
import os
import re
import signal
import tempfile
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .errors import (
    AlreadyRecording,
    ExecutableNotFound,
    NoDeviceFound,
    NotRecording,
    PermissionDenied,
    RecError,
    SignalDeliveryFailed,
    SpawnFailed,
)
from .geometry import Rect
from .platform import pid_alive, send_signal

logger = logging.getLogger(__name__)


class EngineEventKind(Enum):
    """Everything the capture engine can tell us, as a closed set."""

    STARTED = "started"
    STOPPED = "stopped"
    RECORDING = "recording"
    IDLE = "idle"
    PERMISSION_DENIED = "permission_denied"
    ALREADY_RECORDING = "already_recording"
    NOT_RECORDING = "not_recording"
    NO_SCREEN_DEVICE = "no_screen_device"
    ENGINE_FAILED = "engine_failed"
    START_FAILED = "start_failed"
    OUTPUT = "output"        # Expected output path, announced at startup
    SAVED = "saved"          # Final output path, announced at stop
    PID = "pid"              # Encoder PID, announced by engines that detach
    INFO = "info"
    WARNING = "warning"


SENTINELS: Dict[str, EngineEventKind] = {
    "REC_STARTED": EngineEventKind.STARTED,
    "REC_STOPPED": EngineEventKind.STOPPED,
    "REC_RECORDING": EngineEventKind.RECORDING,
    "REC_IDLE": EngineEventKind.IDLE,
    "ERR_PERMISSION_DENIED": EngineEventKind.PERMISSION_DENIED,
    "ERR_ALREADY_RECORDING": EngineEventKind.ALREADY_RECORDING,
    "ERR_NOT_RECORDING": EngineEventKind.NOT_RECORDING,
    "ERR_NO_SCREEN_DEVICE": EngineEventKind.NO_SCREEN_DEVICE,
    "ERR_FFMPEG_FAILED": EngineEventKind.ENGINE_FAILED,
    # Older engine builds
    "REC_ALREADY_RUNNING": EngineEventKind.ALREADY_RECORDING,
    "REC_NOT_RUNNING": EngineEventKind.NOT_RECORDING,
    "REC_START_ERR": EngineEventKind.START_FAILED,
    "REC_STOP_ERR": EngineEventKind.WARNING,
}

ERROR_KINDS = frozenset({
    EngineEventKind.PERMISSION_DENIED,
    EngineEventKind.ALREADY_RECORDING,
    EngineEventKind.NOT_RECORDING,
    EngineEventKind.NO_SCREEN_DEVICE,
    EngineEventKind.ENGINE_FAILED,
    EngineEventKind.START_FAILED,
})

SAVED_PATTERN = re.compile(r"^Recording saved:\s*(.+)$")
OUTPUT_PATTERN = re.compile(r"^Output:\s*(.+)$")
PID_PATTERN = re.compile(r"^(?:Encoder )?PID:\s*(\d+)$")


@dataclass(frozen=True)
class EngineEvent:
    """One translated line of engine output."""

    kind: EngineEventKind
    text: str
    path: Optional[Path] = None
    pid: Optional[int] = None

    @property
    def is_error(self) -> bool:
        return self.kind in ERROR_KINDS


def parse_engine_line(line: str, stream: str = "stdout") -> Optional[EngineEvent]:
    """
    Translate one line of engine output into an event.

    This is the only place engine strings are interpreted. Empty lines yield
    None; any stderr line is a warning; unrecognized stdout is informational.
    """
    text = line.strip()
    if not text:
        return None
    if stream == "stderr":
        return EngineEvent(EngineEventKind.WARNING, text)

    kind = SENTINELS.get(text)
    if kind is not None:
        return EngineEvent(kind, text)

    match = SAVED_PATTERN.match(text)
    if match:
        return EngineEvent(EngineEventKind.SAVED, text, Path(match.group(1).strip()))

    match = OUTPUT_PATTERN.match(text)
    if match:
        return EngineEvent(EngineEventKind.OUTPUT, text, Path(match.group(1).strip()))

    match = PID_PATTERN.match(text)
    if match:
        return EngineEvent(EngineEventKind.PID, text, pid=int(match.group(1)))

    return EngineEvent(EngineEventKind.INFO, text)


def error_for_event(event: EngineEvent) -> RecError:
    """Typed error for an engine error event."""
    if event.kind == EngineEventKind.PERMISSION_DENIED:
        return PermissionDenied(
            "Screen recording permission denied. Enable it for your terminal in the "
            "system privacy settings, then restart the terminal."
        )
    if event.kind == EngineEventKind.ALREADY_RECORDING:
        return AlreadyRecording("Capture engine is already recording")
    if event.kind == EngineEventKind.NOT_RECORDING:
        return NotRecording("Capture engine is not recording")
    if event.kind == EngineEventKind.NO_SCREEN_DEVICE:
        return NoDeviceFound()
    if event.kind == EngineEventKind.ENGINE_FAILED:
        return SpawnFailed("ffmpeg failed to start (is it installed?)")
    return SpawnFailed(f"Capture engine failed to start ({event.text})")


class ControlMode(Enum):
    """How pause/resume/stop reach the engine."""

    SIGNAL = "signal"      # SIGSTOP / SIGCONT / SIGINT to the engine pid
    COMMAND = "command"    # One-shot `<engine> pause|resume|stop`


@dataclass
class AnchorRecord:
    """Contents of the recovery anchors."""

    pid: int
    output_path: Optional[Path]
    written_at: float


class RecoveryAnchors:
    """
    Durable pid / output-path files for a spawned engine.

    Written once at spawn, read by control operations, deleted at clean
    stop. Each file is replaced atomically, never edited in place.
    """

    PID_FILENAME = "rec.pid"
    OUT_FILENAME = "rec.outpath"

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self.pid_file = self.directory / self.PID_FILENAME
        self.out_file = self.directory / self.OUT_FILENAME

    def _write_atomic(self, path: Path, content: str):
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(self.directory))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            os.replace(tmp_name, path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise

    def write(self, pid: int, output_path: Optional[Path]):
        self.directory.mkdir(parents=True, exist_ok=True)
        # Output path first: a pid file always has its companion
        self._write_atomic(self.out_file, f"{output_path or ''}\n")
        self._write_atomic(self.pid_file, f"{pid}\n")
        logger.debug(f"Wrote recovery anchors for PID {pid} in {self.directory}")

    def read(self) -> Optional[AnchorRecord]:
        """Read the anchors, or None if there is no usable pid file."""
        try:
            pid_text = self.pid_file.read_text(encoding="utf-8").strip()
            written_at = self.pid_file.stat().st_mtime
        except OSError:
            return None

        try:
            pid = int(pid_text)
        except ValueError:
            logger.warning(f"Ignoring malformed PID file {self.pid_file}: {pid_text!r}")
            return None

        output_path = None
        try:
            out_text = self.out_file.read_text(encoding="utf-8").strip()
            if out_text:
                output_path = Path(out_text)
        except OSError:
            pass

        return AnchorRecord(pid=pid, output_path=output_path, written_at=written_at)

    def exists(self) -> bool:
        return self.pid_file.exists()

    def clear(self):
        for path in (self.pid_file, self.out_file):
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.error(f"Failed to remove anchor {path}: {e}")
        logger.debug("Cleared recovery anchors")


@dataclass
class ProcessHandle:
    """
    A spawned (or recovered) capture engine.

    ``pid`` is the process to signal. For an engine that detaches, the
    `start` process exits after launching a background encoder; the handle
    then switches ``pid`` to the encoder and sets ``detached``.
    """

    pid: int
    process: Optional[asyncio.subprocess.Process] = None
    output_path: Optional[Path] = None
    saved_path: Optional[Path] = None
    encoder_pid: Optional[int] = None
    detached: bool = False
    stop_requested: bool = False
    recovered: bool = False
    started: bool = False
    started_at: float = field(default_factory=time.time)
    events: List[EngineEvent] = field(default_factory=list)
    exited: asyncio.Event = field(default_factory=asyncio.Event)
    _settled: asyncio.Event = field(default_factory=asyncio.Event)
    _startup: Optional[asyncio.Future] = None
    _readers: List[asyncio.Task] = field(default_factory=list)
    _watcher: Optional[asyncio.Task] = None

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode if self.process else None

    @property
    def is_running(self) -> bool:
        if self.exited.is_set():
            return False
        if self.process is not None and not self.detached:
            return self.process.returncode is None
        return pid_alive(self.pid)

    @property
    def announced_path(self) -> Optional[Path]:
        """Final path from the engine, falling back to the startup announcement."""
        return self.saved_path or self.output_path

    @property
    def handed_off(self) -> bool:
        """Whether the engine announced a recording before its start process exited."""
        return any(
            e.kind in (EngineEventKind.STARTED, EngineEventKind.OUTPUT, EngineEventKind.PID)
            for e in self.events
        )

    def stderr_tail(self, lines: int = 5) -> str:
        warnings = [e.text for e in self.events if e.kind == EngineEventKind.WARNING]
        return "\n".join(warnings[-lines:])


class CaptureProcessManager:
    """
    Spawns, signals and terminates the capture engine.

    Two engine styles are supported. A foreground engine keeps its `start`
    process alive as the encoder. A detaching engine launches a background
    encoder, announces the recording and exits 0; its encoder pid is taken
    from a `PID: <n>` announcement or from the engine's own pid file.

    Engine output is read asynchronously, translated by parse_engine_line
    and forwarded to ``on_event``. ``on_exit`` fires when a started engine
    (or its encoder) exits, whoever stopped it.
    """

    # Time for a misconfigured engine to fail before we call it started
    STARTUP_WINDOW = 0.4
    STOP_TIMEOUT = 5.0
    POLL_INTERVAL = 0.1
    DRAIN_TIMEOUT = 1.0
    COMMAND_TIMEOUT = 10.0

    def __init__(
        self,
        engine_path: str,
        anchors: RecoveryAnchors,
        control: ControlMode = ControlMode.SIGNAL,
        on_event: Optional[Callable[[ProcessHandle, EngineEvent], None]] = None,
        on_exit: Optional[Callable[[ProcessHandle], None]] = None,
        pid_file: Optional[Path] = None,
    ):
        self.engine_path = engine_path
        self.anchors = anchors
        self.control = control
        self.on_event = on_event
        self.on_exit = on_exit
        self.pid_file = Path(pid_file) if pid_file else None

    def build_start_args(self, output_dir: Optional[Path] = None, rect: Optional[Rect] = None) -> List[str]:
        """`<engine> start [--output-dir DIR] [--x X --y Y --width W --height H]`"""
        args = [self.engine_path, "start"]
        if output_dir is not None:
            args.extend(["--output-dir", str(output_dir)])
        if rect is not None:
            args.extend(rect.to_args())
        return args

    async def spawn(self, args: List[str]) -> ProcessHandle:
        """
        Launch the engine and wait for it to confirm startup.

        Recovery anchors are written before returning, naming the encoder
        process when the engine detached.

        Raises:
            ExecutableNotFound, PermissionDenied, NoDeviceFound,
            AlreadyRecording, SpawnFailed
        """
        logger.info(f"Starting capture engine: {' '.join(args)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                # Own process group: survives the host and ignores its Ctrl-C
                start_new_session=True,
            )
        except (FileNotFoundError, PermissionError) as e:
            logger.error(f"Cannot execute {args[0]}: {e}")
            raise ExecutableNotFound(args[0]) from e
        except OSError as e:
            raise SpawnFailed(f"Failed to start capture engine: {e}") from e

        loop = asyncio.get_running_loop()
        handle = ProcessHandle(pid=process.pid, process=process)
        handle._startup = loop.create_future()
        handle._readers = [
            asyncio.create_task(self._read_stream(handle, process.stdout, "stdout")),
            asyncio.create_task(self._read_stream(handle, process.stderr, "stderr")),
        ]
        handle._watcher = asyncio.create_task(self._watch(handle))

        try:
            event = await asyncio.wait_for(asyncio.shield(handle._startup), self.STARTUP_WINDOW)
        except asyncio.TimeoutError:
            event = None  # Silent engine, still running

        if event is not None and event.is_error:
            await self._abort(handle)
            raise error_for_event(event)

        if process.returncode is not None:
            # Start process is gone: a detaching engine, or a failure
            await handle._settled.wait()
            for e in handle.events:
                if e.is_error:
                    raise error_for_event(e)
            if not handle.is_running:
                raise await self._startup_failure(handle)

        # Later errors reach on_event like any other output
        if not handle._startup.done():
            handle._startup.cancel()
        self.anchors.write(handle.pid, handle.output_path)
        handle.started = True
        logger.info(f"Capture engine running as PID {handle.pid}")
        return handle

    async def _startup_failure(self, handle: ProcessHandle) -> SpawnFailed:
        if handle.returncode == 0 and handle.handed_off:
            # The engine may still know its encoder even though we cannot find it
            logger.error("Capture engine detached without a usable encoder PID; asking it to stop")
            try:
                await self.run_command("stop")
            except RecError as e:
                logger.warning(f"Engine stop after failed handoff: {e}")
            return SpawnFailed(
                "Capture engine started a background encoder but did not announce its PID; "
                "set REC_ENGINE_PID_FILE to the engine's pid file"
            )
        detail = handle.stderr_tail()
        message = f"Capture engine exited during startup (code {handle.returncode})"
        return SpawnFailed(f"{message}\n{detail}" if detail else message)

    async def _read_stream(self, handle: ProcessHandle, stream: asyncio.StreamReader, name: str):
        while True:
            line = await stream.readline()
            if not line:
                break
            event = parse_engine_line(line.decode(errors="replace"), name)
            if event is not None:
                self._dispatch(handle, event)

    def _dispatch(self, handle: ProcessHandle, event: EngineEvent):
        logger.debug(f"Engine {handle.pid} {event.kind.value}: {event.text}")
        handle.events.append(event)

        if event.kind == EngineEventKind.OUTPUT:
            handle.output_path = event.path
        elif event.kind == EngineEventKind.SAVED:
            handle.saved_path = event.path
        elif event.kind == EngineEventKind.PID:
            handle.encoder_pid = event.pid

        startup = handle._startup
        if startup is not None and not startup.done():
            if event.kind == EngineEventKind.STARTED or event.is_error:
                startup.set_result(event)
            # Errors during startup are raised from spawn instead
            if event.is_error:
                return

        if self.on_event is not None:
            self.on_event(handle, event)

    async def _drain(self, handle: ProcessHandle):
        """Let readers consume what the engine printed before exiting."""
        if not handle._readers:
            return
        _, pending = await asyncio.wait(handle._readers, timeout=self.DRAIN_TIMEOUT)
        if pending:
            # An encoder inherited the pipes; keep reading in the background
            logger.debug(f"Engine {handle.pid} output still open after exit")

    async def _wait_returncode(self, process: asyncio.subprocess.Process) -> int:
        """
        Wait for a child to exit without waiting for its pipes.

        process.wait() can block until every pipe is closed, which never
        happens while a detached encoder holds them.
        """
        while process.returncode is None:
            await asyncio.sleep(self.POLL_INTERVAL)
        return process.returncode

    async def _wait_pid_gone(self, pid: int):
        while pid_alive(pid):
            await asyncio.sleep(self.POLL_INTERVAL)

    def _read_engine_pid_file(self, since: float) -> Optional[int]:
        """Encoder pid from the engine's own pid file, if written by this start."""
        if self.pid_file is None:
            return None
        try:
            if self.pid_file.stat().st_mtime < since - 1.0:
                logger.debug(f"Ignoring stale engine pid file {self.pid_file}")
                return None
            return int(self.pid_file.read_text(encoding="utf-8").strip())
        except (OSError, ValueError) as e:
            logger.debug(f"No encoder pid in {self.pid_file}: {e}")
            return None

    def _adopt_encoder(self, handle: ProcessHandle) -> bool:
        """Switch a handle whose start process exited cleanly to its encoder."""
        pid = handle.encoder_pid or self._read_engine_pid_file(handle.started_at)
        if pid is None or pid == handle.process.pid or not pid_alive(pid):
            return False
        handle.pid = pid
        handle.detached = True
        return True

    async def _watch(self, handle: ProcessHandle):
        returncode = await self._wait_returncode(handle.process)
        await self._drain(handle)
        logger.info(f"Capture engine PID {handle.process.pid} exited with code {returncode}")

        detaching = returncode == 0 and handle.handed_off and not handle.stop_requested
        if detaching and self._adopt_encoder(handle):
            logger.info(f"Capture engine detached; encoder is PID {handle.pid}")
            if handle.started:
                self.anchors.write(handle.pid, handle.output_path)
            handle._settled.set()
            if handle._startup is not None and not handle._startup.done():
                handle._startup.set_result(None)
            await self._wait_pid_gone(handle.pid)
            logger.info(f"Encoder PID {handle.pid} exited")
        elif detaching:
            logger.warning("Capture engine exited after starting and no encoder PID was found")

        handle.exited.set()
        handle._settled.set()
        if handle._startup is not None and not handle._startup.done():
            handle._startup.set_result(None)
        if handle.started and self.on_exit is not None:
            self.on_exit(handle)

    async def _abort(self, handle: ProcessHandle):
        """Stop an engine that reported a startup error but kept running."""
        handle.stop_requested = True
        if handle.is_running:
            send_signal(handle.pid, signal.SIGTERM)
        await self._wait_exit(handle, self.STOP_TIMEOUT)

    async def _wait_exit(self, handle: ProcessHandle, timeout: float) -> bool:
        """Wait without blocking the loop; True once the engine is gone."""
        if handle._watcher is not None:
            try:
                await asyncio.wait_for(handle.exited.wait(), timeout)
            except asyncio.TimeoutError:
                return False
            return True

        # Recovered handle: not our child, so poll the pid
        deadline = time.monotonic() + timeout
        while pid_alive(handle.pid):
            if time.monotonic() >= deadline:
                return False
            await asyncio.sleep(self.POLL_INTERVAL)
        return True

    async def _control(self, handle: ProcessHandle, sig: signal.Signals, subcommand: str):
        if self.control == ControlMode.COMMAND:
            try:
                events = await self.run_command(subcommand)
            except RecError as e:
                raise SignalDeliveryFailed(str(e)) from e
            for event in events:
                if event.is_error:
                    raise SignalDeliveryFailed(event.text)
            return

        if handle.process is not None and not handle.is_running:
            raise SignalDeliveryFailed(f"Capture engine PID {handle.pid} is not running")
        ok, err = send_signal(handle.pid, sig)
        if not ok:
            raise SignalDeliveryFailed(err or "kill failed")

    async def pause(self, handle: ProcessHandle):
        """
        Freeze encoding without terminating the engine.

        Raises:
            SignalDeliveryFailed: if the engine could not be reached
        """
        await self._control(handle, signal.SIGSTOP, "pause")
        logger.info(f"Paused capture engine PID {handle.pid}")

    async def resume(self, handle: ProcessHandle):
        """
        Unfreeze a paused engine.

        Raises:
            SignalDeliveryFailed: if the engine could not be reached
        """
        await self._control(handle, signal.SIGCONT, "resume")
        logger.info(f"Resumed capture engine PID {handle.pid}")

    async def terminate(self, handle: ProcessHandle) -> bool:
        """
        Ask the engine to stop gracefully so it can finalize the output file.

        In command mode `<engine> stop` is always issued: the engine tracks
        its own encoder even when we have lost sight of it.

        Returns:
            True once the engine has exited (anchors removed), False if it
            outlived the stop timeout (anchors kept for recovery)
        """
        handle.stop_requested = True
        if self.control == ControlMode.COMMAND:
            try:
                for event in await self.run_command("stop"):
                    if event.kind == EngineEventKind.SAVED:
                        handle.saved_path = event.path
                    elif event.is_error:
                        logger.warning(f"Engine stop: {event.text}")
            except RecError as e:
                logger.error(f"Engine stop command failed: {e}")
        elif handle.is_running:
            ok, err = send_signal(handle.pid, signal.SIGINT)
            if not ok:
                logger.warning(f"Stop signal not delivered: {err}")

        if not await self._wait_exit(handle, self.STOP_TIMEOUT):
            logger.error(
                f"Capture engine PID {handle.pid} still running after "
                f"{self.STOP_TIMEOUT:.0f}s; keeping recovery anchors"
            )
            return False

        self.anchors.clear()
        logger.info(f"Capture engine PID {handle.pid} stopped")
        return True

    def recover(self) -> Optional[ProcessHandle]:
        """
        Rebuild a handle from leftover anchors.

        Stale anchors (dead pid) are cleared and None is returned.
        """
        record = self.anchors.read()
        if record is None:
            return None
        if not self.is_alive(record.pid):
            logger.warning(f"Clearing stale recovery anchors for dead PID {record.pid}")
            self.anchors.clear()
            return None

        logger.info(f"Recovered orphaned capture engine PID {record.pid}")
        return ProcessHandle(
            pid=record.pid,
            output_path=record.output_path,
            recovered=True,
            started=True,
            started_at=record.written_at,
        )

    def is_alive(self, pid: int) -> bool:
        return pid_alive(pid)

    def is_running(self, handle: ProcessHandle) -> bool:
        return handle.is_running

    def force_clear(self):
        """Forget an orphan without signalling it."""
        self.anchors.clear()

    async def run_command(self, subcommand: str, *extra: str) -> List[EngineEvent]:
        """
        Run a one-shot engine subcommand and translate its output.

        Raises:
            ExecutableNotFound: if the engine cannot be executed
            SpawnFailed: on timeout
        """
        args = [self.engine_path, subcommand, *extra]
        logger.debug(f"Running {' '.join(args)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise ExecutableNotFound(args[0]) from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), self.COMMAND_TIMEOUT)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise SpawnFailed(f"`{subcommand}` timed out after {self.COMMAND_TIMEOUT:.0f}s")

        events = []
        for stream, data in (("stdout", stdout), ("stderr", stderr)):
            for line in data.decode(errors="replace").splitlines():
                event = parse_engine_line(line, stream)
                if event is not None:
                    events.append(event)
        return events

    async def status(self) -> bool:
        """Whether the engine reports an active recording."""
        for event in await self.run_command("status"):
            if event.kind == EngineEventKind.RECORDING:
                return True
            if event.kind == EngineEventKind.IDLE:
                return False
            if event.is_error:
                raise error_for_event(event)
        # Engine gave no verdict; trust the anchors
        return self.recover() is not None

    async def devices(self) -> List[str]:
        """Capture devices as listed by the engine (ffmpeg prints them on stderr)."""
        events = await self.run_command("devices")
        return [
            e.text for e in events
            if e.kind in (EngineEventKind.INFO, EngineEventKind.WARNING)
        ]
