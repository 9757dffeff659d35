"""On-screen recording status (HUD) and capture preview."""

import asyncio
import logging
import time
from typing import Callable, List, Optional, Tuple

from .geometry import CellRect
from .host import EditorHost, SurfaceStyle
from .session import Session

logger = logging.getLogger(__name__)

HUD_WIDTH = 20
HUD_HEIGHT = 4
TICK_INTERVAL = 1.0

HUD_STYLE = SurfaceStyle(border="rounded", highlight="RecHudTitle", blend=5, zindex=200)
PAUSED_STYLE = SurfaceStyle(border="rounded", highlight="RecHudPaused", blend=5, zindex=200)
PREVIEW_STYLE = SurfaceStyle(border="double", highlight="RecPreviewBorder", zindex=1000)


def format_elapsed(seconds: float) -> str:
    """`mm:ss`, growing to `h:mm:ss` past an hour."""
    total = max(0, int(seconds))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def hud_anchor(position: str, grid: Tuple[int, int]) -> Tuple[int, int]:
    """Top-left cell of the HUD for a named position."""
    rows, cols = grid
    col_right = max(cols - HUD_WIDTH - 2, 0)
    col_center = max((cols - HUD_WIDTH) // 2, 0)
    row_bottom = max(rows - HUD_HEIGHT - 3, 0)
    if position == "top-center":
        return 1, col_center
    if position == "bottom-right":
        return row_bottom, col_right
    if position == "bottom-center":
        return row_bottom, col_center
    return 1, col_right


class OverlayRenderer:
    """
    Presentational HUD driven by a one-second tick.

    The renderer only reads the session; the controller starts it when a
    session begins and stops it when the session ends.
    """

    def __init__(
        self,
        host: EditorHost,
        position: str = "top-right",
        clock: Callable[[], float] = time.time,
        tick_interval: float = TICK_INTERVAL,
    ):
        self.host = host
        self.position = position
        self.clock = clock
        self.tick_interval = tick_interval
        self._session: Optional[Session] = None
        self._surface: Optional[int] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._session is not None

    def lines(self, session: Session) -> List[str]:
        status = "⏸ PAUSED" if session.is_paused else "● REC"
        elapsed = format_elapsed(session.elapsed(self.clock()))
        return ["", f"  {status}", f"  {elapsed}", ""]

    def start(self, session: Session):
        """Open the HUD and begin ticking."""
        self.stop()
        self._session = session
        row, col = hud_anchor(self.position, self.host.grid_size())
        self._surface = self.host.open_surface(row, col, HUD_HEIGHT, HUD_WIDTH, HUD_STYLE)
        self.refresh()
        self._task = asyncio.create_task(self._tick())

    def refresh(self):
        """Redraw now (after pause/resume) instead of waiting for the tick."""
        session = self._session
        if session is None or not session.is_active:
            return
        if self._surface is None or not self.host.surface_exists(self._surface):
            return
        self.host.set_surface_lines(self._surface, self.lines(session))

    async def _tick(self):
        while self._session is not None and self._session.is_active:
            await asyncio.sleep(self.tick_interval)
            self.refresh()

    def stop(self):
        """Close the HUD and cancel the tick."""
        if self._task is not None:
            self._task.cancel()
            self._task = None
        if self._surface is not None and self.host.surface_exists(self._surface):
            self.host.close_surface(self._surface)
        self._surface = None
        self._session = None

    async def show_preview(self, cells: CellRect, duration_ms: int):
        """Outline the capture area for a moment before recording starts."""
        if duration_ms <= 0:
            return
        surface = self.host.open_surface(cells.row, cells.col, cells.height, cells.width, PREVIEW_STYLE)
        label = f"{cells.width}x{cells.height} cells"
        lines = [" " * cells.width] * cells.height
        lines[0] = label[:cells.width].ljust(cells.width)
        self.host.set_surface_lines(surface, lines)
        self.host.notify(f"Recording starts in {duration_ms / 1000:.1f}s")
        try:
            await asyncio.sleep(duration_ms / 1000)
        finally:
            if self.host.surface_exists(surface):
                self.host.close_surface(surface)
