"""Drawing helpers for 2D laser scans."""

from __future__ import annotations

import math
from typing import Optional

import numpy as np

from slam2d.frame import SE2, Scan2d

_EDGE_CUT = 30 * math.pi / 180.0


def _draw_ring(image: np.ndarray, cx: float, cy: float, radius: float, thickness: int, color) -> None:
    rows, cols = image.shape[:2]
    reach = int(radius + thickness) + 1
    half = thickness / 2.0
    for yy in range(int(cy) - reach, int(cy) + reach + 1):
        if not 0 <= yy < rows:
            continue
        for xx in range(int(cx) - reach, int(cx) + reach + 1):
            if 0 <= xx < cols and abs(math.hypot(xx - cx, yy - cy) - radius) <= half:
                image[yy, xx] = color


def visualize_2d_scan(
    scan: Scan2d,
    pose: SE2,
    image: Optional[np.ndarray] = None,
    color=(255, 0, 0),
    image_size: int = 800,
    resolution: float = 20.0,
    pose_submap: Optional[SE2] = None,
) -> np.ndarray:
    """Draw the scan's endpoints and the pose into an RGB image and return it."""
    if image is None:
        image = np.full((image_size, image_size, 3), 255, dtype=np.uint8)
    if pose_submap is None:
        pose_submap = SE2()
    submap_inv = pose_submap.inverse()
    rows, cols = image.shape[:2]
    center = image_size // 2
    color = tuple(int(c) for c in color)

    for _, r, angle in scan.valid_points():
        if angle < scan.angle_min + _EDGE_CUT or angle > scan.angle_max - _EDGE_CUT:
            continue
        p = submap_inv * (pose * (r * math.cos(angle), r * math.sin(angle)))
        ix = int(p[0] * resolution + center)
        iy = int(p[1] * resolution + center)
        if 0 <= ix < cols and 0 <= iy < rows:
            image[iy, ix] = color

    pc = submap_inv * pose.translation * float(resolution) + center
    _draw_ring(image, pc[0], pc[1], 5.0, 2, color)
    return image