"""
measure.py – Gap measurement between two dark components.

Pipeline:
  1. Grayscale conversion (ITU-R luminance weights, no gamma)
  2. Binarization (pixels darker than the threshold are foreground)
  3. Connected components (4-connected flood fill, explicit stack)
  4. Gap between exactly two bounding boxes
  5. Pixel → mm  (based on image DPI)

Analysis outcomes never raise: "nothing could be analysed" and "nothing was
found" both come back as an empty ProcessedResult.
"""

import logging
from typing import List, NamedTuple, Optional, Tuple

import numpy as np
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

log = logging.getLogger("gapmeter.measure")

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

# ITU-R BT.601 weights for R, G, B
LUMA_WEIGHTS = (0.299, 0.587, 0.114)

MM_PER_INCH = 25.4

# Binary buffer values: dark pixels become foreground
FOREGROUND = 0
BACKGROUND = 255

DEFAULT_BINARIZATION_THRESHOLD = 150
DEFAULT_MIN_OBJECT_SIZE = 10000  # px²
DEFAULT_MAX_GAP_WIDTH = 300  # px
DEFAULT_DPI = 300  # typical photo/scanner resolution


class ThresholdConfig(BaseModel):
    """Analysis parameters. Accepts snake_case or camelCase keys."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    binarization_threshold: int = Field(DEFAULT_BINARIZATION_THRESHOLD, ge=0, le=255)
    min_object_size: int = Field(DEFAULT_MIN_OBJECT_SIZE, ge=1)
    max_gap_width: int = Field(DEFAULT_MAX_GAP_WIDTH, ge=1)
    dpi: int = Field(DEFAULT_DPI, ge=1)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

class Rect(NamedTuple):
    x: int
    y: int
    width: int
    height: int

    @property
    def right(self) -> int:
        return self.x + self.width

    @property
    def bottom(self) -> int:
        return self.y + self.height

    def to_dict(self) -> dict:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}


class Gap(NamedTuple):
    rect: Rect
    width_px: int
    height_px: int
    width_mm: float
    height_mm: float


class ProcessedResult(NamedTuple):
    objects: Tuple[Rect, ...] = ()
    gap: Optional[Rect] = None
    gap_width: Optional[int] = None
    gap_height: Optional[int] = None
    gap_width_mm: Optional[float] = None
    gap_height_mm: Optional[float] = None

    @property
    def gap_area_mm2(self) -> Optional[float]:
        if self.gap is None:
            return None
        return self.gap_width_mm * self.gap_height_mm

    def summary(self) -> str:
        """One-line, human-readable outcome (values rounded to 0.01 mm)."""
        if self.gap is not None:
            return (
                f"Found gap between components: "
                f"{self.gap_width_mm:.2f} × {self.gap_height_mm:.2f} mm"
            )
        if len(self.objects) != 2:
            return (
                f"Expected 2 components, but found {len(self.objects)}. "
                "Try adjusting the threshold settings."
            )
        return "Found 2 components, but no gap within the accepted width range."

    def to_dict(self) -> dict:
        return {
            "objects": [r.to_dict() for r in self.objects],
            "gap": self.gap.to_dict() if self.gap is not None else None,
            "gapWidth": self.gap_width,
            "gapHeight": self.gap_height,
            "gapWidthMm": self.gap_width_mm,
            "gapHeightMm": self.gap_height_mm,
        }


class PixelBufferError(ValueError):
    pass


def pixels_from_buffer(data: bytes, width: int, height: int, channels: int = 4) -> np.ndarray:
    """
    Wrap a flat, row-major RGB(A) byte buffer (e.g. canvas ImageData) as an
    H×W×C array without copying.

    Raises:
        PixelBufferError if the channel count is unsupported or the buffer
        length does not match width × height × channels.
    """
    if channels not in (3, 4):
        raise PixelBufferError(f"Unsupported channel count {channels} (need 3=RGB or 4=RGBA).")
    if width < 0 or height < 0:
        raise PixelBufferError(f"Invalid image size {width}x{height}.")

    expected = width * height * channels
    if len(data) != expected:
        raise PixelBufferError(
            f"Pixel buffer has {len(data)} bytes, expected {expected} "
            f"({width}x{height}x{channels})."
        )
    return np.frombuffer(data, dtype=np.uint8).reshape(height, width, channels)


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------

def process_image(pixels: Optional[np.ndarray], config: Optional[ThresholdConfig] = None) -> ProcessedResult:
    """
    Find the two components in an image and measure the gap between them.

    Args:
        pixels: H×W×3 (RGB) or H×W×4 (RGBA) uint8 array, or None if the
            caller could not obtain any pixel data
        config: analysis parameters (defaults if omitted)

    Returns:
        ProcessedResult. Gap fields are None unless exactly two objects were
        found with a horizontal gap in (0, max_gap_width].
    """
    if config is None:
        config = ThresholdConfig()

    if pixels is None:
        log.warning("No pixel data available, returning empty result")
        return ProcessedResult()

    height, width = pixels.shape[:2]

    # Step 1 + 2: luminance → two-level bitmap
    gray = to_grayscale(pixels)
    binary = binarize(gray, config.binarization_threshold)

    # Step 3: objects
    objects = find_connected_components(binary, config.min_object_size)
    log.info("Image %dx%d: %d object(s) detected (threshold=%d, min_size=%d)",
             width, height, len(objects), config.binarization_threshold, config.min_object_size)

    # Step 4 + 5: gap and mm
    gap = find_gap_between_objects(objects, config.max_gap_width, config.dpi)
    if gap is None:
        return ProcessedResult(objects=tuple(objects))

    log.info("Gap: %dx%d px = %.2f x %.2f mm (dpi=%d)",
             gap.width_px, gap.height_px, gap.width_mm, gap.height_mm, config.dpi)

    return ProcessedResult(
        objects=tuple(objects),
        gap=gap.rect,
        gap_width=gap.width_px,
        gap_height=gap.height_px,
        gap_width_mm=gap.width_mm,
        gap_height_mm=gap.height_mm,
    )


# ---------------------------------------------------------------------------
# Step 1: Grayscale
# ---------------------------------------------------------------------------

def to_grayscale(pixels: np.ndarray) -> np.ndarray:
    """
    L = 0.299·R + 0.587·G + 0.114·B, stored as 8-bit (rounded to nearest).
    Alpha is ignored. Returns a new H×W uint8 array; the input is not touched.
    """
    rgb = pixels[..., :3].astype(np.float64)
    lum = rgb @ np.asarray(LUMA_WEIGHTS)
    return np.clip(np.rint(lum), 0, 255).astype(np.uint8)


# ---------------------------------------------------------------------------
# Step 2: Binarization
# ---------------------------------------------------------------------------

def binarize(gray: np.ndarray, threshold: int) -> np.ndarray:
    """Pixels with L < threshold → FOREGROUND (0), everything else → BACKGROUND (255)."""
    return np.where(gray < threshold, FOREGROUND, BACKGROUND).astype(np.uint8)


# ---------------------------------------------------------------------------
# Step 3: Connected components
# ---------------------------------------------------------------------------

def find_connected_components(binary: np.ndarray, min_size: int) -> List[Rect]:
    """
    Bounding boxes of all 4-connected foreground regions with at least
    min_size pixels, in the order a row-major scan first reaches them.
    """
    height, width = binary.shape[:2]
    mask = binary == FOREGROUND

    # Flat lookups are much faster than per-element ndarray indexing
    foreground = mask.ravel().tolist()
    visited = bytearray(width * height)
    components = []

    for start in np.flatnonzero(mask).tolist():
        if visited[start]:
            continue

        rect, area = _flood_fill(start, foreground, visited, width, height)
        if area < min_size:
            log.debug("Dropped component %s: area=%d < min_size=%d", tuple(rect), area, min_size)
            continue

        log.debug("Component %d: %s area=%d", len(components) + 1, tuple(rect), area)
        components.append(rect)

    return components


def _flood_fill(start: int, foreground: list, visited: bytearray, width: int, height: int) -> Tuple[Rect, int]:
    """
    Iterative fill from flat index `start`. Marks every popped cell visited,
    foreground or not. Returns (bounding box, foreground pixel count).
    """
    min_y, min_x = divmod(start, width)
    max_x, max_y = min_x, min_y
    count = 0
    stack = [start]

    while stack:
        pos = stack.pop()
        if visited[pos]:
            continue
        visited[pos] = 1
        if not foreground[pos]:
            continue

        count += 1
        y, x = divmod(pos, width)
        if x < min_x:
            min_x = x
        elif x > max_x:
            max_x = x
        if y < min_y:
            min_y = y
        elif y > max_y:
            max_y = y

        # 4-neighbourhood, never off-canvas
        if x > 0:
            stack.append(pos - 1)
        if x < width - 1:
            stack.append(pos + 1)
        if y > 0:
            stack.append(pos - width)
        if y < height - 1:
            stack.append(pos + width)

    return Rect(min_x, min_y, max_x - min_x + 1, max_y - min_y + 1), count


# ---------------------------------------------------------------------------
# Step 4: Gap between two objects
# ---------------------------------------------------------------------------

def find_gap_between_objects(objects: List[Rect], max_gap_width: int, dpi: int) -> Optional[Gap]:
    """
    Horizontal gap between exactly two bounding boxes.

    The gap spans from the right edge of the left box to the left edge of
    the right box. Vertically it covers the union of both boxes' y-ranges,
    not just their overlap.

    Returns None for any object count other than two, and for gaps that are
    not in (0, max_gap_width] (touching/overlapping or implausibly wide).
    """
    if len(objects) != 2:
        log.debug("Gap needs exactly 2 objects, got %d", len(objects))
        return None

    left, right = sorted(objects, key=lambda r: r.x)

    gap_width = right.x - left.right
    if gap_width <= 0 or gap_width > max_gap_width:
        log.debug("Gap rejected: width=%d px (accepted 1..%d)", gap_width, max_gap_width)
        return None

    gap_top = min(left.y, right.y)
    gap_bottom = max(left.bottom, right.bottom)
    gap_height = gap_bottom - gap_top

    return Gap(
        rect=Rect(left.right, gap_top, gap_width, gap_height),
        width_px=gap_width,
        height_px=gap_height,
        width_mm=pixels_to_mm(gap_width, dpi),
        height_mm=pixels_to_mm(gap_height, dpi),
    )


# ---------------------------------------------------------------------------
# Step 5: Units
# ---------------------------------------------------------------------------

def pixels_to_mm(pixels: float, dpi: int) -> float:
    return pixels / dpi * MM_PER_INCH
