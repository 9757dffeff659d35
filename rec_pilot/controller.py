"""Recording session controller: the single owner of the active session."""

import asyncio
import logging
import shlex
import time
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Dict, Optional

from .config import RecConfig
from .engine import (
    CaptureProcessManager,
    ControlMode,
    EngineEvent,
    EngineEventKind,
    ProcessHandle,
    RecoveryAnchors,
)
from .errors import (
    AlreadyRecording,
    GeometryUnavailable,
    MetadataWriteFailed,
    NotRecording,
    OutputFileMissing,
    RecError,
    SignalDeliveryFailed,
)
from .geometry import GeometryResolver, Rect
from .host import EditorHost
from .metadata import MetadataStore, find_latest_recording
from .overlay import OverlayRenderer, format_elapsed
from .platform import VIDEO_SUFFIXES, Platform, safe_unlink
from .selector import RegionSelector
from .session import CaptureMode, Session, SessionState
from .titles import TitleGenerator

logger = logging.getLogger(__name__)

CANCEL_PROMPT = "Cancel recording and discard file?"


class RecoveryStatus(Enum):
    """What recover() found in the anchors at startup."""

    NONE = "none"
    ORPHAN_ALIVE = "orphan_alive"
    STALE_CLEARED = "stale_cleared"


class SessionController:
    """
    Drives a recording session from start to stop.

    Commands are serialized by a lock. A start that is still resolving
    geometry or waiting for the engine counts as busy: a second start is
    rejected with AlreadyRecording, while pause/resume/stop/cancel wait for
    the pending start to resolve and then apply.

    When no session is held in memory, control commands fall back to the
    recovery anchors so an engine orphaned by a host restart can still be
    stopped.
    """

    def __init__(
        self,
        config: RecConfig,
        host: EditorHost,
        engine: CaptureProcessManager,
        store: MetadataStore,
        resolver: GeometryResolver,
        selector: RegionSelector,
        overlay: OverlayRenderer,
        titles: TitleGenerator,
        platform: Platform,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.host = host
        self.engine = engine
        self.store = store
        self.resolver = resolver
        self.selector = selector
        self.overlay = overlay
        self.titles = titles
        self.platform = platform
        self.clock = clock

        self.session: Optional[Session] = None
        self._lock = asyncio.Lock()
        self._starting = False
        self._exit_task: Optional[asyncio.Task] = None

        self.engine.on_event = self._on_engine_event
        self.engine.on_exit = self._on_engine_exit

    @classmethod
    def create(
        cls,
        config: RecConfig,
        host: EditorHost,
        platform: Optional[Platform] = None,
        clock: Callable[[], float] = time.time,
    ) -> "SessionController":
        """Wire up a controller with the default collaborators."""
        platform = platform or Platform.get_current()
        engine = CaptureProcessManager(
            config.engine_path,
            RecoveryAnchors(config.recovery_dir),
            ControlMode(config.control),
            pid_file=config.engine_pid_file,
        )
        resolver = GeometryResolver(host, config, platform)
        return cls(
            config=config,
            host=host,
            engine=engine,
            store=MetadataStore(config.output_dir),
            resolver=resolver,
            selector=RegionSelector(host, resolver),
            overlay=OverlayRenderer(host, config.hud_position, clock),
            titles=TitleGenerator(
                host.current_buffer_name,
                host.working_directory,
                config.trunk_branches,
                config.title_max_length,
            ),
            platform=platform,
            clock=clock,
        )

    @property
    def state(self) -> SessionState:
        return self.session.state if self.session else SessionState.IDLE

    # ---------- start ----------

    async def start(self) -> Optional[Session]:
        """Record the whole screen."""
        return await self._start(CaptureMode.FULLSCREEN)

    async def start_window(self, window_id: Optional[int] = None) -> Optional[Session]:
        """Record one editor window (the current one by default)."""

        async def resolve() -> Optional[Rect]:
            return await self.resolver.resolve_window_rect(window_id)

        return await self._start(CaptureMode.WINDOW, resolve)

    async def start_region(self, rect: Optional[Rect] = None) -> Optional[Session]:
        """
        Record a region of the screen.

        Without ``rect`` the user draws one with the region selector;
        cancelling the selection returns None and leaves the controller idle.
        """

        async def resolve() -> Optional[Rect]:
            if rect is not None:
                return await self.resolver.clamp_to_screen(rect)
            return await self.selector.select()

        return await self._start(CaptureMode.REGION, resolve)

    async def _start(
        self,
        mode: CaptureMode,
        resolve: Optional[Callable[[], Awaitable[Optional[Rect]]]] = None,
    ) -> Optional[Session]:
        if self.session is not None or self._starting:
            self.host.notify("Already recording", logging.WARNING)
            raise AlreadyRecording()

        self._starting = True
        try:
            async with self._lock:
                rect = None
                if resolve is not None:
                    try:
                        rect = await resolve()
                    except RecError as e:
                        self.host.notify(str(e), logging.ERROR)
                        raise
                    if rect is None:
                        self.host.notify("Window selection canceled")
                        return None
                    await self._preview(rect)

                args = self.engine.build_start_args(self.config.output_dir, rect)
                try:
                    handle = await self.engine.spawn(args)
                except RecError as e:
                    self.host.notify(str(e), logging.ERROR)
                    raise

                self.session = Session(
                    mode=mode,
                    started_at=self.clock(),
                    geometry=rect,
                    handle=handle,
                    output_path=handle.output_path,
                )
                self.overlay.start(self.session)
                where = f": {rect}" if rect else ""
                self.host.notify(f"Recording started ({mode.value}{where})")
                return self.session
        finally:
            self._starting = False

    async def _preview(self, rect: Rect):
        if self.config.preview_ms <= 0:
            return
        try:
            calibration = await self.resolver.calibration()
        except GeometryUnavailable as e:
            logger.debug(f"Skipping capture preview: {e}")
            return
        cells = calibration.to_cells(rect, row_offset=self.host.tabline_rows())
        await self.overlay.show_preview(cells, self.config.preview_ms)

    # ---------- pause / resume ----------

    def _require_session(self) -> Session:
        """
        The active session, adopting an orphaned engine if there is none.

        Raises:
            NotRecording: if there is neither a session nor a live orphan
        """
        if self.session is not None:
            return self.session

        handle = self.engine.recover()
        if handle is None:
            self.host.notify("Not recording", logging.WARNING)
            raise NotRecording()

        self.session = Session(
            mode=CaptureMode.FULLSCREEN,
            started_at=handle.started_at,
            handle=handle,
            output_path=handle.output_path,
            recovered=True,
        )
        self.host.notify(f"Recovered orphaned recording (PID {handle.pid})", logging.WARNING)
        return self.session

    async def pause(self):
        async with self._lock:
            session = self._require_session()
            if session.is_paused:
                self.host.notify("Already paused", logging.WARNING)
                return

            try:
                await self.engine.pause(session.handle)
            except SignalDeliveryFailed as e:
                self.host.notify(f"Failed to pause: {e}", logging.ERROR)
                raise

            session.pause(self.clock())
            self.overlay.refresh()
            self.host.notify("Recording paused")

    async def resume(self):
        async with self._lock:
            session = self._require_session()
            # A recovered engine may have been frozen by a previous host
            if session.is_recording and not session.recovered:
                self.host.notify("Already recording", logging.WARNING)
                return

            try:
                await self.engine.resume(session.handle)
            except SignalDeliveryFailed as e:
                self.host.notify(f"Failed to resume: {e}", logging.ERROR)
                raise

            if session.is_paused:
                session.resume(self.clock())
            self.overlay.refresh()
            self.host.notify("Recording resumed")

    # ---------- stop / cancel ----------

    async def stop(self) -> Optional[Path]:
        """
        Stop and keep the recording.

        Returns:
            Path of the saved file, or None if it could not be located
        """
        async with self._lock:
            session = self._require_session()
            return await self._finalize(session)

    async def _unfreeze(self, session: Session):
        """Resume a paused (or possibly paused) engine so it can finalize."""
        handle = session.handle
        if (session.is_paused or session.recovered) and self.engine.is_running(handle):
            try:
                await self.engine.resume(handle)
            except SignalDeliveryFailed as e:
                logger.warning(f"Resume before stop failed: {e}")
        if session.is_paused:
            session.resume(self.clock())

    async def _finalize(self, session: Session) -> Optional[Path]:
        await self._unfreeze(session)
        duration = session.duration(self.clock())
        session.begin_stopping()
        self.overlay.stop()

        try:
            handle = session.handle
            if not await self.engine.terminate(handle):
                self.host.notify(
                    f"Capture engine (PID {handle.pid}) did not exit; "
                    "run `rec-pilot recover` to inspect it",
                    logging.WARNING,
                )
            # Termination and file finalization are not synchronous
            await asyncio.sleep(self.config.finalize_grace)
            path = self._locate_output(session)
        finally:
            session.finish()
            self.session = None

        if path is None:
            self.host.notify(str(OutputFileMissing(self.config.output_dir)), logging.WARNING)
            return None

        title = await self.titles.generate(self.clock())
        try:
            recorded = self.store.add(path, session.mode.value, round(duration, 1), title)
        except MetadataWriteFailed as e:
            self.host.notify(f"Recording saved but not indexed: {e}", logging.WARNING)
            recorded = True
        if not recorded:
            self.host.notify(str(OutputFileMissing(path.parent)), logging.WARNING)
            return None

        self.host.notify(f"Recording saved: {path.name} ({format_elapsed(duration)}) \"{title}\"")
        if self.config.auto_open:
            await self._open(path)
        return path

    def _locate_output(self, session: Session) -> Optional[Path]:
        """
        Find the session's output file.

        The engine's own announcement wins, then the path recorded at
        spawn. Scanning the output directory is the last resort.
        """
        handle = session.handle
        for candidate in (handle.saved_path, handle.output_path, session.output_path):
            if candidate is not None and candidate.is_file():
                return candidate

        path = find_latest_recording(self.config.output_dir, since=session.started_at)
        if path is not None:
            logger.warning(f"No output announced; guessing newest recording {path.name}")
        return path

    async def cancel(self) -> bool:
        """
        Stop and discard the recording after a yes/no confirmation.

        Returns:
            False if the user declined
        """
        async with self._lock:
            session = self._require_session()
            if not await self.host.confirm(CANCEL_PROMPT):
                self.host.notify("Cancel aborted; still recording")
                return False

            handle = session.handle
            # Read before terminate: the announcement may be all we get
            expected = handle.announced_path or session.output_path

            await self._unfreeze(session)
            session.begin_stopping()
            self.overlay.stop()
            try:
                await self.engine.terminate(handle)
                await asyncio.sleep(self.config.cancel_grace)
                path = handle.saved_path or expected
                if path is None or not path.is_file():
                    path = find_latest_recording(self.config.output_dir, since=session.started_at)
                deleted = path is not None and safe_unlink(path, self.config.output_dir)
            finally:
                session.finish()
                self.session = None

            if deleted:
                self.host.notify(f"Recording canceled; deleted {path.name}")
            else:
                self.host.notify("Recording canceled; no file was deleted", logging.WARNING)
            return True

    # ---------- engine callbacks ----------

    def _on_engine_event(self, handle: ProcessHandle, event: EngineEvent):
        if event.kind == EngineEventKind.INFO:
            self.host.notify(event.text)
        elif event.kind == EngineEventKind.WARNING:
            self.host.notify(event.text, logging.WARNING)
        elif event.is_error:
            self.host.notify(f"Capture engine: {event.text}", logging.ERROR)
        else:
            logger.debug(f"Engine event {event.kind.value}")

    def _on_engine_exit(self, handle: ProcessHandle):
        session = self.session
        if session is None or session.handle is not handle or not session.is_active:
            return
        self._exit_task = asyncio.create_task(self._handle_engine_exit(handle))

    async def _handle_engine_exit(self, handle: ProcessHandle):
        async with self._lock:
            session = self.session
            if session is None or session.handle is not handle or not session.is_active:
                return
            self.host.notify(
                f"Capture engine exited unexpectedly (code {handle.returncode})",
                logging.WARNING,
            )
            await self._finalize(session)

    async def drain(self):
        """Wait for a finalization triggered by an engine exit."""
        if self._exit_task is not None:
            await asyncio.gather(self._exit_task, return_exceptions=True)
            self._exit_task = None

    # ---------- recovery and queries ----------

    def recover(self) -> RecoveryStatus:
        """Report anchors left behind by a previous host."""
        record = self.engine.anchors.read()
        if record is None:
            return RecoveryStatus.NONE
        if self.engine.is_alive(record.pid):
            self.host.notify(
                f"Found orphaned recording (PID {record.pid}); stop or cancel it, "
                "or force-clear the recovery state",
                logging.WARNING,
            )
            return RecoveryStatus.ORPHAN_ALIVE
        self.engine.force_clear()
        self.host.notify(f"Cleared stale recording state (PID {record.pid} is gone)")
        return RecoveryStatus.STALE_CLEARED

    def force_clear(self):
        """Forget the anchors (and any recovered session) without signalling."""
        self.engine.force_clear()
        if self.session is not None and self.session.recovered:
            self.overlay.stop()
            self.session = None
        self.host.notify("Recording state cleared")

    def status_line(self) -> str:
        if self.state == SessionState.RECORDING:
            return "🔴 REC"
        if self.state == SessionState.PAUSED:
            return "⏸ REC"
        return ""

    def debug_info(self) -> Dict[str, str]:
        output_dir = self.config.output_dir
        videos = 0
        if output_dir.is_dir():
            videos = sum(1 for p in output_dir.iterdir() if p.suffix.lower() in VIDEO_SUFFIXES)
        anchors = self.engine.anchors.read()
        return {
            "output_dir": str(output_dir),
            "metadata_file": str(self.store.path),
            "metadata_exists": str(self.store.path.exists()),
            "video_files": str(videos),
            "metadata_records": str(self.store.count()),
            "state": self.state.value,
            "engine": self.config.engine_path,
            "control": self.config.control,
            "anchor_pid": str(anchors.pid) if anchors else "none",
        }

    async def open_latest(self) -> Optional[Path]:
        record = self.store.get_latest()
        if record is None:
            self.host.notify("No recordings found", logging.WARNING)
            return None
        path = Path(record.path)
        await self._open(path)
        return path

    async def _open(self, path: Path):
        command = self.config.open_command or self.platform.open_command()
        if not command:
            self.host.notify("No viewer configured; set REC_OPEN_COMMAND", logging.WARNING)
            return
        try:
            await asyncio.create_subprocess_exec(
                *shlex.split(command),
                str(path),
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            self.host.notify(f"Failed to open {path.name}: {e}", logging.ERROR)
            return
        logger.info(f"Opened {path} with {command}")
