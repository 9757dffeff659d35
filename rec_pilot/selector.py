"""Interactive capture-region selection."""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Callable, Dict, Optional, Tuple

from .errors import GeometryUnavailable, SelectionCancelled, SelectionInProgress
from .geometry import CellCalibration, CellRect, Rect
from .host import SurfaceStyle

if TYPE_CHECKING:
    from .geometry import GeometryResolver
    from .host import EditorHost

logger = logging.getLogger(__name__)

Cell = Tuple[int, int]


class SelectorState(Enum):
    """States of a selection run."""

    IDLE = "idle"              # Waiting for the first corner
    ANCHORED = "anchored"      # First corner placed
    DRAGGING = "dragging"      # Pointer moving the opposite corner
    ADJUSTING = "adjusting"    # Keyboard nudging
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class SelectorKeys:
    """Transient bindings installed for the duration of a selection."""

    move_left: str = "h"
    move_down: str = "j"
    move_up: str = "k"
    move_right: str = "l"
    grow_right: str = "L"
    shrink_right: str = "H"
    grow_down: str = "J"
    shrink_down: str = "K"
    confirm: str = "<CR>"
    cancel: str = "<Esc>"
    cancel_alt: str = "q"
    pointer_down: str = "<LeftMouse>"
    pointer_drag: str = "<LeftDrag>"
    pointer_up: str = "<LeftRelease>"


OUTLINE_STYLE = SurfaceStyle(border="double", highlight="RecPreviewBorder", blend=80, zindex=1000)


class RegionSelector:
    """
    Lets the user draw or nudge a capture rectangle on the editor grid.

    Pointer: press anchors the first corner, drag moves the opposite corner,
    release confirms. Keyboard: move and resize keys nudge the rectangle one
    cell at a time (starting from the cursor cell), confirm finalizes and
    cancel aborts. The completion callback receives a pixel Rect, or None
    when the user cancelled.

    Only one run may be active per selector. Bindings and the outline
    surface are removed on both confirm and cancel.
    """

    def __init__(
        self,
        host: "EditorHost",
        resolver: "GeometryResolver",
        keys: Optional[SelectorKeys] = None,
    ):
        self.host = host
        self.resolver = resolver
        self.keys = keys or SelectorKeys()

        self.state = SelectorState.IDLE
        self.anchor: Optional[Cell] = None
        self.corner: Optional[Cell] = None
        self.result: Optional[Rect] = None

        self._active = False
        self._on_done: Optional[Callable[[Optional[Rect]], None]] = None
        self._calibration: Optional[CellCalibration] = None
        self._screen: Optional[Tuple[int, int]] = None
        self._outline: Optional[int] = None
        self._bound: Dict[str, Callable] = {}

    @property
    def active(self) -> bool:
        return self._active

    @property
    def selection(self) -> Optional[CellRect]:
        """Current selection in cells."""
        if self.anchor is None or self.corner is None:
            return None
        return CellRect.from_corners(self.anchor, self.corner)

    async def begin(self, on_done: Callable[[Optional[Rect]], None]):
        """
        Take over input and start a selection run.

        Raises:
            SelectionInProgress: if a run is already active
            GeometryUnavailable: if calibration is unavailable
        """
        if self._active:
            raise SelectionInProgress()
        self._active = True

        try:
            self._calibration = await self.resolver.calibration()
            self._screen = await self.resolver.platform.screen_size()
        except Exception:
            self._active = False
            raise

        self.state = SelectorState.IDLE
        self.anchor = None
        self.corner = None
        self.result = None
        self._on_done = on_done
        self._install_bindings()
        self.host.notify(
            "Select region: drag with the mouse, or move with "
            f"{self.keys.move_left}{self.keys.move_down}{self.keys.move_up}{self.keys.move_right} "
            f"and resize with {self.keys.shrink_right}{self.keys.grow_down}"
            f"{self.keys.shrink_down}{self.keys.grow_right}; "
            f"{self.keys.confirm} confirms, {self.keys.cancel} cancels"
        )

    async def select(self, raise_on_cancel: bool = False) -> Optional[Rect]:
        """
        Run a selection and wait for its outcome.

        A cancelled selection returns None, or raises SelectionCancelled for
        callers that pass ``raise_on_cancel``.
        """
        loop = asyncio.get_running_loop()
        done: asyncio.Future = loop.create_future()

        def on_done(rect: Optional[Rect]):
            if not done.done():
                done.set_result(rect)

        await self.begin(on_done)
        try:
            rect = await done
        except asyncio.CancelledError:
            self.cancel()
            raise
        if rect is None and raise_on_cancel:
            raise SelectionCancelled()
        return rect

    # ---------- input handlers ----------

    def on_pointer_down(self, row: int, col: int):
        if not self._active:
            return
        self.anchor = self._clamp_cell(row, col)
        self.corner = self.anchor
        self.state = SelectorState.ANCHORED
        self._redraw()

    def on_pointer_drag(self, row: int, col: int):
        if not self._active:
            return
        if self.anchor is None:
            self.on_pointer_down(row, col)
            return
        self.corner = self._clamp_cell(row, col)
        self.state = SelectorState.DRAGGING
        self._redraw()

    def on_pointer_up(self, row: int, col: int):
        if not self._active or self.anchor is None:
            return
        self.corner = self._clamp_cell(row, col)
        self.confirm()

    def move(self, d_row: int, d_col: int):
        """Translate the whole rectangle, keeping it on the grid."""
        if not self._active:
            return
        cells = self._adjustable()
        rows, cols = self.host.grid_size()
        row = min(max(cells.row + d_row, 0), rows - cells.height)
        col = min(max(cells.col + d_col, 0), cols - cells.width)
        self._set_cells(CellRect(row, col, cells.height, cells.width))

    def resize(self, d_height: int, d_width: int):
        """Grow or shrink the bottom/right edge, never below one cell."""
        if not self._active:
            return
        cells = self._adjustable()
        rows, cols = self.host.grid_size()
        height = min(max(cells.height + d_height, 1), rows - cells.row)
        width = min(max(cells.width + d_width, 1), cols - cells.col)
        self._set_cells(CellRect(cells.row, cells.col, height, width))

    def confirm(self):
        if not self._active:
            return
        cells = self.selection
        if cells is None:
            self.host.notify("Nothing selected yet", logging.WARNING)
            return

        try:
            rect = self._calibration.to_pixels(cells)
            if self._screen is not None:
                rect = rect.clamp(self._screen[0], self._screen[1])
            else:
                rect = rect.clamp()
        except GeometryUnavailable as e:
            self.host.notify(str(e), logging.ERROR)
            self._finish(SelectorState.CANCELLED, None)
            return

        logger.debug(f"Selected cells {cells} -> {rect}")
        self._finish(SelectorState.CONFIRMED, rect)

    def cancel(self):
        if not self._active:
            return
        self._finish(SelectorState.CANCELLED, None)

    # ---------- internals ----------

    def _clamp_cell(self, row: int, col: int) -> Cell:
        rows, cols = self.host.grid_size()
        return min(max(row, 0), rows - 1), min(max(col, 0), cols - 1)

    def _adjustable(self) -> CellRect:
        """Selection to nudge; keyboard-only runs start at the cursor cell."""
        cells = self.selection
        if cells is None:
            row, col = self._clamp_cell(*self.host.cursor_cell())
            cells = CellRect(row, col, 1, 1)
        return cells

    def _set_cells(self, cells: CellRect):
        self.anchor = (cells.row, cells.col)
        self.corner = (cells.row + cells.height - 1, cells.col + cells.width - 1)
        self.state = SelectorState.ADJUSTING
        self._redraw()

    def _install_bindings(self):
        k = self.keys
        self._bound = {
            k.pointer_down: self.on_pointer_down,
            k.pointer_drag: self.on_pointer_drag,
            k.pointer_up: self.on_pointer_up,
            k.move_left: lambda: self.move(0, -1),
            k.move_down: lambda: self.move(1, 0),
            k.move_up: lambda: self.move(-1, 0),
            k.move_right: lambda: self.move(0, 1),
            k.grow_right: lambda: self.resize(0, 1),
            k.shrink_right: lambda: self.resize(0, -1),
            k.grow_down: lambda: self.resize(1, 0),
            k.shrink_down: lambda: self.resize(-1, 0),
            k.confirm: self.confirm,
            k.cancel: self.cancel,
            k.cancel_alt: self.cancel,
        }
        for lhs, callback in self._bound.items():
            self.host.bind_key(lhs, callback)

    def _redraw(self):
        self._close_outline()
        cells = self.selection
        if cells is None:
            return
        self._outline = self.host.open_surface(
            cells.row, cells.col, cells.height, cells.width, OUTLINE_STYLE
        )
        self.host.set_surface_lines(self._outline, [" " * cells.width] * cells.height)

    def _close_outline(self):
        if self._outline is not None and self.host.surface_exists(self._outline):
            self.host.close_surface(self._outline)
        self._outline = None

    def _teardown(self):
        for lhs in self._bound:
            self.host.unbind_key(lhs)
        self._bound = {}
        self._close_outline()

    def _finish(self, state: SelectorState, rect: Optional[Rect]):
        on_done = self._on_done
        self._teardown()
        self.state = state
        self.result = rect
        self._active = False
        self._on_done = None
        if on_done is not None:
            on_done(rect)
