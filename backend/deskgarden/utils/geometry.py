"""Hotspot geometry: unit-square normalization and overlap relaxation.

All helpers are total: malformed input (missing keys, NaN, strings that
are not numbers, wrong shapes) resolves to the image centre instead of
raising, so the geometry layer can never fail a consultation.

Points are plain `{"x": float, "y": float}` dicts and boxes are
`{"x", "y", "w", "h"}` dicts in [0, 1]; callers convert to contract
models once layout is final.
"""

from __future__ import annotations

import math
from typing import Any

Point = dict[str, float]
Box = dict[str, float]

DEFAULT_SPREAD_PADDING = 0.04
DEFAULT_SPREAD_DISTANCE = 0.12
MAX_SPREAD_ITERATIONS = 32
# How far a point may sit from its box before it is re-centred instead of clamped
BOX_SNAP_TOLERANCE = 0.001
_ZERO_DISTANCE_NUDGE = 1e-3

_DIAGONAL = math.sqrt(0.5)
FALLBACK_DIRECTIONS: tuple[tuple[float, float], ...] = (
    (1.0, 0.0),
    (-1.0, 0.0),
    (0.0, 1.0),
    (0.0, -1.0),
    (_DIAGONAL, _DIAGONAL),
    (-_DIAGONAL, _DIAGONAL),
    (_DIAGONAL, -_DIAGONAL),
    (-_DIAGONAL, -_DIAGONAL),
)

CENTER: Point = {"x": 0.5, "y": 0.5}


def clamp01(n: float) -> float:
    """Clamp to [0, 1]; non-finite values map to the centre (0.5)."""
    if not isinstance(n, (int, float)) or isinstance(n, bool) or not math.isfinite(n):
        return 0.5
    if n <= 0:
        return 0.0
    if n >= 1:
        return 1.0
    return float(n)


def clamp_point(point: Point) -> Point:
    return {"x": clamp01(point["x"]), "y": clamp01(point["y"])}


def clamp_with_padding(value: float, padding: float) -> float:
    """Clamp into [padding, 1 - padding]; degenerate padding collapses to 0.5."""
    pad = clamp01(padding)
    low, high = pad, 1 - pad
    if high <= low:
        return 0.5
    return min(high, max(low, clamp01(value)))


def _to_number(value: Any) -> float | None:
    """Accept finite numbers and numeric strings."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str):
        text = value.strip()
        try:
            number = float(text)
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    return None


def _first_present(mapping: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if mapping.get(key) is not None:
            return mapping[key]
    return None


def sanitize_point(point: Any) -> Point:
    """Mapping with finite x/y clamped into the unit square, else centre."""
    if not isinstance(point, dict):
        return dict(CENTER)
    x, y = _to_number(point.get("x")), _to_number(point.get("y"))
    if x is None or y is None:
        return dict(CENTER)
    return {"x": clamp01(x), "y": clamp01(y)}


def sanitize_box(raw: Any) -> Box | None:
    """Normalize a box mapping; returns None for missing or zero-area boxes.

    Boxes overflowing the right/bottom edge are shifted back inside.
    """
    if not isinstance(raw, dict):
        return None
    x = clamp01(_to_number(_first_present(raw, "x", "left")) or 0.0)
    y = clamp01(_to_number(_first_present(raw, "y", "top")) or 0.0)
    w = clamp01(_to_number(_first_present(raw, "w", "width")) or 0.0)
    h = clamp01(_to_number(_first_present(raw, "h", "height")) or 0.0)
    if w <= 0 or h <= 0:
        return None
    if x + w > 1:
        x = clamp01(1 - w)
    if y + h > 1:
        y = clamp01(1 - h)
    return {"x": x, "y": y, "w": w, "h": h}


def snap_to_box_center_or_inside(point: Point, box: Box | None) -> Point:
    """Lock a point to its box.

    Per axis: a coordinate already inside (or within tolerance of) the box
    keeps its clamped value; one that lies outside jumps to the box centre.
    """
    if box is None:
        return clamp_point(point)
    center_x = clamp01(box["x"] + box["w"] / 2)
    center_y = clamp01(box["y"] + box["h"] / 2)
    inside_x = clamp01(max(box["x"], min(point["x"], box["x"] + box["w"])))
    inside_y = clamp01(max(box["y"], min(point["y"], box["y"] + box["h"])))
    return clamp_point(
        {
            "x": inside_x if abs(point["x"] - inside_x) < BOX_SNAP_TOLERANCE else center_x,
            "y": inside_y if abs(point["y"] - inside_y) < BOX_SNAP_TOLERANCE else center_y,
        }
    )


def _spread_points(
    points: list[Point],
    locked: set[int],
    min_distance: float,
    padding: float,
    max_iterations: int,
) -> None:
    """Push close pairs apart in place until separated or the pass cap is hit.

    Locked points never move; a pair of two locked points is left as is.
    Coincident points separate along a direction picked from
    FALLBACK_DIRECTIONS by (i + j + iteration), which keeps the result
    reproducible.
    """
    min_dist = max(0.0, min(0.5, min_distance))
    if min_dist <= 0:
        return

    for iteration in range(max_iterations):
        moved = False
        for i in range(len(points)):
            for j in range(i + 1, len(points)):
                can_move_i = i not in locked
                can_move_j = j not in locked
                if not can_move_i and not can_move_j:
                    continue

                p1, p2 = points[i], points[j]
                dx = p2["x"] - p1["x"]
                dy = p2["y"] - p1["y"]
                if dx == 0 and dy == 0:
                    dir_x, dir_y = FALLBACK_DIRECTIONS[(i + j + iteration) % len(FALLBACK_DIRECTIONS)]
                    dx = dir_x * _ZERO_DISTANCE_NUDGE
                    dy = dir_y * _ZERO_DISTANCE_NUDGE
                dist = math.hypot(dx, dy)
                if dist >= min_dist:
                    continue

                ux, uy = dx / dist, dy / dist
                required = min_dist - dist
                if can_move_i and can_move_j:
                    half = required / 2
                    p1["x"] = clamp_with_padding(p1["x"] - ux * half, padding)
                    p1["y"] = clamp_with_padding(p1["y"] - uy * half, padding)
                    p2["x"] = clamp_with_padding(p2["x"] + ux * half, padding)
                    p2["y"] = clamp_with_padding(p2["y"] + uy * half, padding)
                elif can_move_i:
                    p1["x"] = clamp_with_padding(p1["x"] - ux * required, padding)
                    p1["y"] = clamp_with_padding(p1["y"] - uy * required, padding)
                else:
                    p2["x"] = clamp_with_padding(p2["x"] + ux * required, padding)
                    p2["y"] = clamp_with_padding(p2["y"] + uy * required, padding)
                moved = True
        if not moved:
            break


def normalize_hotspot_layout(
    inputs: list[dict[str, Any]],
    padding: float = DEFAULT_SPREAD_PADDING,
    min_distance: float = DEFAULT_SPREAD_DISTANCE,
    max_iterations: int = MAX_SPREAD_ITERATIONS,
) -> tuple[list[Point], list[Box | None]]:
    """Normalize `{point?, box?}` descriptors into separated unit-square points.

    Returns one point per input and a parallel list of sanitized boxes
    (None where the input carried no usable box). Boxed points are snapped
    to their box once, up front, and are then exempt from spreading; free
    points are kept `padding` away from the edges and pushed apart to at
    least `min_distance`.
    """
    boxes = [sanitize_box(entry.get("box") if isinstance(entry, dict) else None) for entry in inputs]
    locked: set[int] = set()
    points: list[Point] = []
    for idx, entry in enumerate(inputs):
        base = sanitize_point(entry.get("point") if isinstance(entry, dict) else None)
        box = boxes[idx]
        if box is not None:
            locked.add(idx)
            points.append(snap_to_box_center_or_inside(base, box))
        else:
            points.append(
                {
                    "x": clamp_with_padding(base["x"], padding),
                    "y": clamp_with_padding(base["y"], padding),
                }
            )

    _spread_points(points, locked, min_distance, padding, max_iterations)
    return [clamp_point(p) for p in points], boxes
