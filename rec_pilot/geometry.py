"""Capture geometry: logical grid cells to absolute screen pixels."""

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional, Tuple

from .errors import GeometryUnavailable

if TYPE_CHECKING:
    from .config import RecConfig
    from .host import EditorHost
    from .platform import Platform

logger = logging.getLogger(__name__)

# Fallback for common terminal fonts (SF Mono / Menlo at default sizes)
DEFAULT_CELL_WIDTH = 8
DEFAULT_CELL_HEIGHT = 18


@dataclass(frozen=True)
class Rect:
    """Absolute pixel rectangle handed to the capture engine."""

    x: int
    y: int
    width: int
    height: int

    def __post_init__(self):
        for name in ("x", "y", "width", "height"):
            if not isinstance(getattr(self, name), int):
                raise TypeError(f"Rect.{name} must be an int")
        if self.width < 1 or self.height < 1:
            raise ValueError(f"Degenerate rect {self.width}x{self.height}")

    @property
    def right(self) -> int:
        return self.x + self.width

    @property
    def bottom(self) -> int:
        return self.y + self.height

    def clamp(self, screen_width: Optional[int] = None, screen_height: Optional[int] = None) -> "Rect":
        """
        Intersect with the screen.

        Without a known screen size only the top/left edges are clamped to 0.

        Raises:
            GeometryUnavailable: if nothing of the rect is on screen
        """
        left = max(self.x, 0)
        top = max(self.y, 0)
        right = self.right if screen_width is None else min(self.right, screen_width)
        bottom = self.bottom if screen_height is None else min(self.bottom, screen_height)
        if right - left < 1 or bottom - top < 1:
            raise GeometryUnavailable(f"Capture area {self} is off-screen")
        return Rect(left, top, right - left, bottom - top)

    def to_args(self) -> List[str]:
        """Crop arguments for the capture engine command line."""
        return [
            "--x", str(self.x),
            "--y", str(self.y),
            "--width", str(self.width),
            "--height", str(self.height),
        ]

    def __str__(self) -> str:
        return f"{self.width}x{self.height} at ({self.x},{self.y})"


@dataclass(frozen=True)
class CellRect:
    """Inclusive-exclusive rectangle on the editor grid, in cells."""

    row: int
    col: int
    height: int
    width: int

    @classmethod
    def from_corners(cls, a: Tuple[int, int], b: Tuple[int, int]) -> "CellRect":
        """Rectangle covering both corner cells inclusively."""
        top, bottom = sorted((a[0], b[0]))
        left, right = sorted((a[1], b[1]))
        return cls(row=top, col=left, height=bottom - top + 1, width=right - left + 1)


@dataclass(frozen=True)
class CellCalibration:
    """Cell size and host window origin used for pixel conversion."""

    cell_width: int
    cell_height: int
    origin_x: int
    origin_y: int
    cell_source: str = "default"
    origin_source: str = "override"

    def to_pixels(self, cells: CellRect, row_offset: int = 0) -> Rect:
        """Convert a cell rectangle to absolute pixels."""
        return Rect(
            x=self.origin_x + cells.col * self.cell_width,
            y=self.origin_y + (row_offset + cells.row) * self.cell_height,
            width=cells.width * self.cell_width,
            height=cells.height * self.cell_height,
        )

    def to_cells(self, rect: Rect, row_offset: int = 0) -> CellRect:
        """Smallest cell rectangle covering a pixel rect."""
        col = (rect.x - self.origin_x) // self.cell_width
        row = (rect.y - self.origin_y) // self.cell_height - row_offset
        return CellRect(
            row=max(row, 0),
            col=max(col, 0),
            height=max(-(-rect.height // self.cell_height), 1),
            width=max(-(-rect.width // self.cell_width), 1),
        )

    def describe(self) -> str:
        return (
            f"Cell size: {self.cell_width}x{self.cell_height} pixels ({self.cell_source})\n"
            f"Window origin: ({self.origin_x}, {self.origin_y}) ({self.origin_source})\n"
            f"Set manually: REC_CELL_WIDTH={self.cell_width} REC_CELL_HEIGHT={self.cell_height} "
            f"REC_WINDOW_X={self.origin_x} REC_WINDOW_Y={self.origin_y}"
        )


class GeometryResolver:
    """
    Resolves windows and cell rectangles to absolute pixel rectangles.

    Calibration is best-effort. Manual overrides from the configuration win;
    otherwise the platform is queried; otherwise cell size falls back to
    DEFAULT_CELL_WIDTH x DEFAULT_CELL_HEIGHT. A window origin that is neither
    overridden nor queryable makes geometry unavailable.
    """

    def __init__(self, host: "EditorHost", config: "RecConfig", platform: "Platform"):
        self.host = host
        self.config = config
        self.platform = platform

    def cell_size(self) -> Tuple[int, int, str]:
        """Current cell size in pixels and where it came from."""
        if self.config.cell_width is not None and self.config.cell_height is not None:
            return self.config.cell_width, self.config.cell_height, "override"

        measured = self.platform.cell_size()
        width, height = measured if measured else (DEFAULT_CELL_WIDTH, DEFAULT_CELL_HEIGHT)
        source = "measured" if measured else "default"
        # A single-axis override still applies
        if self.config.cell_width is not None:
            width, source = self.config.cell_width, "override"
        if self.config.cell_height is not None:
            height, source = self.config.cell_height, "override"
        return width, height, source

    async def window_origin(self) -> Tuple[int, int, str]:
        """
        Host window origin in absolute screen pixels.

        Raises:
            GeometryUnavailable: if no override is set and the query fails
        """
        override = self.config.window_origin_override
        if override is not None:
            return override[0], override[1], "override"

        origin = await self.platform.window_origin()
        if origin is None:
            raise GeometryUnavailable(
                "Could not determine window position; set REC_WINDOW_X and REC_WINDOW_Y"
            )
        return origin[0], origin[1], "queried"

    async def calibration(self) -> CellCalibration:
        """Current calibration (the "show calibration" query)."""
        cell_width, cell_height, cell_source = self.cell_size()
        origin_x, origin_y, origin_source = await self.window_origin()
        return CellCalibration(
            cell_width=cell_width,
            cell_height=cell_height,
            origin_x=origin_x,
            origin_y=origin_y,
            cell_source=cell_source,
            origin_source=origin_source,
        )

    async def describe_calibration(self) -> str:
        try:
            return (await self.calibration()).describe()
        except GeometryUnavailable as e:
            width, height, source = self.cell_size()
            return f"Cell size: {width}x{height} pixels ({source})\nWindow origin: unavailable ({e})"

    async def clamp_to_screen(self, rect: Rect) -> Rect:
        size = await self.platform.screen_size()
        if size is None:
            return rect.clamp()
        return rect.clamp(size[0], size[1])

    async def resolve_window_rect(self, window_id: Optional[int] = None) -> Rect:
        """
        Absolute pixel rectangle of an editor window, including its border.

        Raises:
            GeometryUnavailable: for invalid or floating windows, or missing origin
        """
        if window_id is None:
            window_id = self.host.current_window()

        layout = self.host.window_layout(window_id)
        if layout is None:
            raise GeometryUnavailable(f"Window {window_id} is not valid")
        if layout.floating:
            raise GeometryUnavailable("Cannot record floating windows")

        calibration = await self.calibration()
        border = layout.border
        cells = CellRect(
            row=layout.row,
            col=layout.col,
            height=layout.height + border.top + border.bottom,
            width=layout.width + border.left + border.right,
        )
        rect = calibration.to_pixels(cells, row_offset=self.host.tabline_rows())
        rect = await self.clamp_to_screen(rect)
        logger.debug(f"Window {window_id} resolved to {rect}")
        return rect

    async def resolve_cells(self, cells: CellRect, calibration: Optional[CellCalibration] = None) -> Rect:
        """Absolute pixel rectangle for a rectangle of screen cells."""
        if calibration is None:
            calibration = await self.calibration()
        return await self.clamp_to_screen(calibration.to_pixels(cells))
