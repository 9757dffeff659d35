"""Boundary to the interactive editor that hosts the controller."""

import asyncio
import logging
import os
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

KeyCallback = Callable[..., None]


@dataclass(frozen=True)
class Border:
    """Border thickness in cells on each side of a window."""

    top: int = 0
    right: int = 0
    bottom: int = 0
    left: int = 0


@dataclass(frozen=True)
class WindowLayout:
    """A window's position and size on the editor grid, in cells."""

    row: int
    col: int
    height: int
    width: int
    floating: bool = False
    border: Border = field(default_factory=Border)


@dataclass(frozen=True)
class SurfaceStyle:
    """Presentation hints for an overlay surface."""

    border: str = "rounded"
    highlight: Optional[str] = None
    blend: int = 0
    focusable: bool = False
    zindex: int = 50


class EditorHost(ABC):
    """
    The editor environment the controller runs inside.

    All calls are made from the event loop thread. Implementations must not
    block; anything slow belongs behind an ``async`` method.
    """

    @abstractmethod
    def notify(self, message: str, level: int = logging.INFO):
        """Show a message to the user."""
        pass

    @abstractmethod
    async def confirm(self, prompt: str) -> bool:
        """Yes/no gate. Defaults to "no" when the user dismisses it."""
        pass

    @abstractmethod
    def current_window(self) -> int:
        pass

    @abstractmethod
    def window_layout(self, window_id: int) -> Optional[WindowLayout]:
        """Layout of a window, or None if the id is not valid."""
        pass

    @abstractmethod
    def tabline_rows(self) -> int:
        """Rows occupied by the tab bar above grid row 0."""
        pass

    @abstractmethod
    def grid_size(self) -> Tuple[int, int]:
        """Editor grid size as (rows, cols)."""
        pass

    @abstractmethod
    def cursor_cell(self) -> Tuple[int, int]:
        """Cursor position in screen cells as (row, col)."""
        pass

    @abstractmethod
    def bind_key(self, lhs: str, callback: KeyCallback):
        """Install a transient binding. Pointer callbacks receive (row, col)."""
        pass

    @abstractmethod
    def unbind_key(self, lhs: str):
        pass

    @abstractmethod
    def open_surface(
        self, row: int, col: int, height: int, width: int, style: Optional[SurfaceStyle] = None
    ) -> int:
        """Open an overlay surface anchored at a screen cell."""
        pass

    @abstractmethod
    def set_surface_lines(self, surface_id: int, lines: List[str]):
        pass

    @abstractmethod
    def close_surface(self, surface_id: int):
        pass

    @abstractmethod
    def surface_exists(self, surface_id: int) -> bool:
        pass

    @abstractmethod
    def current_buffer_name(self) -> str:
        """Path of the current buffer, or "" for an unnamed buffer."""
        pass

    def working_directory(self) -> Path:
        return Path.cwd()


@dataclass
class Surface:
    row: int
    col: int
    height: int
    width: int
    style: SurfaceStyle
    lines: List[str] = field(default_factory=list)


class HeadlessHost(EditorHost):
    """
    In-memory host with no real editor behind it.

    Windows, bindings and surfaces are plain dictionaries so the CLI and the
    tests can drive the controller and inspect what it drew.
    """

    def __init__(
        self,
        grid: Tuple[int, int] = (50, 200),
        confirm_answer: bool = False,
        buffer_name: str = "",
        cwd: Optional[Path] = None,
    ):
        self.grid = grid
        self.confirm_answer = confirm_answer
        self.buffer_name = buffer_name
        self.cwd = cwd
        self.tabline = 0
        self.cursor: Tuple[int, int] = (0, 0)
        self.windows: Dict[int, WindowLayout] = {
            1000: WindowLayout(row=0, col=0, height=grid[0] - 2, width=grid[1]),
        }
        self.active_window = 1000
        self.bindings: Dict[str, KeyCallback] = {}
        self.surfaces: Dict[int, Surface] = {}
        self.messages: List[Tuple[int, str]] = []
        self.prompts: List[str] = []
        self._next_surface = 1

    def notify(self, message: str, level: int = logging.INFO):
        self.messages.append((level, message))
        logger.log(level, message)

    async def confirm(self, prompt: str) -> bool:
        self.prompts.append(prompt)
        return self.confirm_answer

    def current_window(self) -> int:
        return self.active_window

    def window_layout(self, window_id: int) -> Optional[WindowLayout]:
        return self.windows.get(window_id)

    def tabline_rows(self) -> int:
        return self.tabline

    def grid_size(self) -> Tuple[int, int]:
        return self.grid

    def cursor_cell(self) -> Tuple[int, int]:
        return self.cursor

    def bind_key(self, lhs: str, callback: KeyCallback):
        self.bindings[lhs] = callback

    def unbind_key(self, lhs: str):
        self.bindings.pop(lhs, None)

    def press(self, lhs: str, *args):
        """Simulate an input event routed through the installed bindings."""
        callback = self.bindings.get(lhs)
        if callback is None:
            return False
        callback(*args)
        return True

    def open_surface(
        self, row: int, col: int, height: int, width: int, style: Optional[SurfaceStyle] = None
    ) -> int:
        surface_id = self._next_surface
        self._next_surface += 1
        self.surfaces[surface_id] = Surface(row, col, height, width, style or SurfaceStyle())
        return surface_id

    def set_surface_lines(self, surface_id: int, lines: List[str]):
        surface = self.surfaces.get(surface_id)
        if surface is not None:
            surface.lines = list(lines)

    def close_surface(self, surface_id: int):
        self.surfaces.pop(surface_id, None)

    def surface_exists(self, surface_id: int) -> bool:
        return surface_id in self.surfaces

    def current_buffer_name(self) -> str:
        return self.buffer_name

    def working_directory(self) -> Path:
        return self.cwd or Path.cwd()

    def messages_at(self, level: int) -> List[str]:
        return [msg for lvl, msg in self.messages if lvl == level]


class ConsoleHost(HeadlessHost):
    """
    Headless host that talks to a terminal user for the CLI.

    The terminal is the one window: its grid is the real terminal size, so a
    window capture covers the whole terminal.
    """

    def __init__(self, assume_yes: bool = False, **kwargs):
        if "grid" not in kwargs:
            size = shutil.get_terminal_size()
            kwargs["grid"] = (size.lines, size.columns)
        super().__init__(**kwargs)
        self.assume_yes = assume_yes
        rows, cols = self.grid
        self.windows = {self.active_window: WindowLayout(row=0, col=0, height=rows, width=cols)}

    async def confirm(self, prompt: str) -> bool:
        self.prompts.append(prompt)
        if self.assume_yes:
            return True
        loop = asyncio.get_running_loop()
        try:
            answer = await loop.run_in_executor(None, input, f"{prompt} [y/N] ")
        except EOFError:
            return False
        return answer.strip().lower() in ("y", "yes")

    def current_buffer_name(self) -> str:
        return os.environ.get("REC_BUFFER_NAME", self.buffer_name)

    def set_surface_lines(self, surface_id: int, lines: List[str]):
        super().set_surface_lines(surface_id, lines)
        text = " ".join(line.strip() for line in lines if line.strip())
        if text:
            print(f"\r{text}   ", end="", flush=True)
