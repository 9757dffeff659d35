"""Main entry point for rec-pilot."""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

from .config import RecConfig
from .controller import RecoveryStatus, SessionController
from .errors import ConfigError, RecError
from .geometry import CellRect, Rect
from .host import ConsoleHost
from .session import CaptureMode

logger = logging.getLogger(__name__)


class RecPilot:
    """Runs one CLI command against a freshly built controller."""

    def __init__(self, config: RecConfig, assume_yes: bool = False):
        self.config = config
        self.host = ConsoleHost(assume_yes=assume_yes)
        self.controller = SessionController.create(config, self.host)

    async def record(
        self,
        mode: CaptureMode,
        rect: Optional[Rect] = None,
        cells: Optional[CellRect] = None,
    ) -> int:
        """Start a session and stay in the foreground until it ends."""
        self.config.ensure_directories()
        if self.controller.recover() == RecoveryStatus.ORPHAN_ALIVE:
            return 1

        if cells is not None:
            try:
                rect = await self.controller.resolver.resolve_cells(cells)
            except RecError as e:
                self.host.notify(str(e), logging.ERROR)
                return 1

        if rect is not None:
            session = await self.controller.start_region(rect)
        elif mode == CaptureMode.WINDOW:
            session = await self.controller.start_window()
        else:
            session = await self.controller.start()
        if session is None:
            return 0

        loop = asyncio.get_running_loop()
        stop_requested = asyncio.Event()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_requested.set)

        logger.info("Recording; press Ctrl-C to stop")
        try:
            waiters = {
                asyncio.create_task(stop_requested.wait()),
                asyncio.create_task(session.handle.exited.wait()),
            }
            _, pending = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()

            print()
            if stop_requested.is_set() and self.controller.session is session:
                await self.controller.stop()
            await self.controller.drain()
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
        return 0

    async def run(self, args: argparse.Namespace) -> int:
        command = args.command
        controller = self.controller

        if command == "start":
            rect = Rect(*args.rect) if args.rect else None
            cells = CellRect(*args.cells) if args.cells else None
            return await self.record(CaptureMode(args.mode), rect, cells)
        if command == "pause":
            await controller.pause()
        elif command == "resume":
            await controller.resume()
        elif command == "stop":
            path = await controller.stop()
            if path is None:
                return 1
            print(path)
        elif command == "cancel":
            return 0 if await controller.cancel() else 1
        elif command == "recover":
            if args.clear:
                controller.force_clear()
            elif controller.recover() == RecoveryStatus.NONE:
                print("No leftover recording state")
        elif command == "open":
            return 0 if await controller.open_latest() else 1
        elif command == "debug":
            for key, value in controller.debug_info().items():
                print(f"{key}: {value}")
        else:
            try:
                return await self._query(command, args)
            except RecError as e:
                self.host.notify(str(e), logging.ERROR)
                return 1
        return 0

    async def _query(self, command: str, args: argparse.Namespace) -> int:
        """Commands that do not touch the session."""
        controller = self.controller

        if command == "status":
            recording = await controller.engine.status()
            print("recording" if recording else "idle")
        elif command == "devices":
            for line in await controller.engine.devices():
                print(line)
        elif command == "list":
            records = controller.store.list()
            if not records:
                print("No recordings")
            for record in records:
                duration = f"{record.duration:.1f}s" if record.duration is not None else "-"
                print(f"{record.path}\t{record.mode}\t{duration}\t{record.title or ''}")
        elif command == "delete":
            if not controller.store.delete(args.path):
                logger.error(f"Could not delete {args.path}")
                return 1
        elif command == "calibrate":
            print(await controller.resolver.describe_calibration())
        return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rec-pilot",
        description="rec-pilot - Screen recording session controller",
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        help="Load settings from this .env file",
    )
    parser.add_argument(
        "--engine",
        type=str,
        help="Capture engine executable (default: rec-cli)",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        help="Recordings directory",
    )
    parser.add_argument(
        "--control",
        choices=["signal", "command"],
        help="How pause/resume/stop reach the engine (default: signal)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    start = sub.add_parser("start", help="Start recording in the foreground")
    start.add_argument(
        "--mode",
        choices=[m.value for m in CaptureMode],
        default=CaptureMode.FULLSCREEN.value,
        help="Capture mode (default: fullscreen)",
    )
    start.add_argument(
        "--rect",
        type=int,
        nargs=4,
        metavar=("X", "Y", "W", "H"),
        help="Record this pixel rectangle",
    )
    start.add_argument(
        "--cells",
        type=int,
        nargs=4,
        metavar=("ROW", "COL", "ROWS", "COLS"),
        help="Record this rectangle of terminal cells",
    )

    sub.add_parser("pause", help="Pause the active recording")
    sub.add_parser("resume", help="Resume a paused recording")
    sub.add_parser("stop", help="Stop and save the active recording")
    cancel = sub.add_parser("cancel", help="Stop and discard the active recording")
    cancel.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")
    sub.add_parser("status", help="Ask the engine whether it is recording")
    sub.add_parser("devices", help="List capture devices")
    sub.add_parser("list", help="List saved recordings")
    delete = sub.add_parser("delete", help="Delete a recording and its metadata")
    delete.add_argument("path", type=Path)
    sub.add_parser("calibrate", help="Show cell size and window origin calibration")
    recover = sub.add_parser("recover", help="Inspect leftover recording state")
    recover.add_argument("--clear", action="store_true", help="Forget it without signalling")
    sub.add_parser("debug", help="Show paths and counts")
    sub.add_parser("open", help="Open the latest recording")
    return parser


def check_start_args(parser: argparse.ArgumentParser, args: argparse.Namespace):
    """Reject `start` options the terminal cannot honour; exits via parser.error."""
    if args.rect and args.cells:
        parser.error("--rect and --cells are mutually exclusive")
    if args.rect:
        try:
            Rect(*args.rect)
        except ValueError as e:
            parser.error(f"--rect: {e}")
    if args.cells and min(args.cells[2:]) < 1:
        parser.error("--cells: ROWS and COLS must be at least 1")
    # Drawing a region needs editor input events, which a terminal CLI has none of
    if args.mode == CaptureMode.REGION.value and not (args.rect or args.cells):
        parser.error("--mode region needs --rect or --cells outside the editor")


def main():
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args()

    # Set up logging
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Load config from environment
    try:
        config = RecConfig.from_env(args.env_file)
    except ValueError as e:
        logger.error(f"Invalid environment setting: {e}")
        sys.exit(1)

    # Override with CLI arguments
    if args.engine is not None:
        config.engine_path = args.engine
    if args.output_dir is not None:
        config.output_dir = args.output_dir.expanduser()
    if args.control is not None:
        config.control = args.control
    config.verbose = args.verbose

    try:
        config.validate()
    except ConfigError as e:
        logger.error(str(e))
        sys.exit(1)

    if args.command == "start":
        check_start_args(parser, args)

    pilot = RecPilot(config, assume_yes=getattr(args, "yes", False))
    try:
        code = asyncio.run(pilot.run(args))
    except RecError as e:
        # Already reported through the host
        logger.debug(f"{type(e).__name__}: {e}")
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
