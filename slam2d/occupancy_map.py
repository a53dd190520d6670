"""Occupancy grid built from 2D laser frames."""

from __future__ import annotations

import math
from enum import Enum
from functools import lru_cache
from typing import Iterator

import numpy as np

from slam2d.frame import SE2, Frame, Scan2d

_JUMP_TH = 0.3


class GridMethod(Enum):
    """How free space between the sensor and the endpoints is filled."""

    MODEL_POINTS = "model_points"
    BRESENHAM = "bresenham"


@lru_cache(maxsize=None)
def _model(model_size: int, inv_resolution: float):
    """Template offsets around the sensor with their range (m) and bearing (rad)."""
    span = np.arange(-model_size, model_size + 1, dtype=np.int64)
    dx, dy = np.meshgrid(span, span, indexing="ij")
    dx = dx.ravel()
    dy = dy.ravel()
    ranges = (np.sqrt((dx * dx + dy * dy).astype(np.float64)) * inv_resolution).astype(np.float32)
    angles = np.arctan2(dy.astype(np.float64), dx.astype(np.float64))
    for arr in (dx, dy, ranges, angles):
        arr.setflags(write=False)
    return dx, dy, ranges, angles


def _bresenham(p1: tuple[int, int], p2: tuple[int, int]) -> Iterator[tuple[int, int]]:
    """Cells on the line from p1 towards p2, excluding p1 and p2."""
    dx = p2[0] - p1[0]
    dy = p2[1] - p1[1]
    ux = 1 if dx > 0 else -1
    uy = 1 if dy > 0 else -1
    dx, dy = abs(dx), abs(dy)
    x, y = p1
    if dx > dy:
        e = -dx
        for _ in range(dx):
            x += ux
            e += 2 * dy
            if e >= 0:
                y += uy
                e -= 2 * dx
            if (x, y) != p2:
                yield x, y
    else:
        e = -dy
        for _ in range(dy):
            y += uy
            e += 2 * dx
            if e >= 0:
                x += ux
                e -= 2 * dy
            if (x, y) != p2:
                yield x, y


class OccupancyMap:
    """An 8-bit occupancy grid centred on a submap pose."""

    CLOSEST_TH = 0.2
    ENDPOINT_CLOSE_TH = 0.1
    RESOLUTION = 20.0
    INV_RESOLUTION = float(np.float32(0.05))
    IMAGE_SIZE = 1000
    MODEL_SIZE = 400
    UNKNOWN = 127
    OCCUPIED_LIMIT = 117
    FREE_LIMIT = 137

    def __init__(self):
        self.pose = SE2()
        self.has_outside_pts = False
        self.occupancy_grid = np.full((self.IMAGE_SIZE, self.IMAGE_SIZE), self.UNKNOWN, dtype=np.uint8)
        self._center = float(self.IMAGE_SIZE // 2)

    def set_pose(self, pose: SE2) -> None:
        self.pose = pose

    def _world_to_image(self, pt) -> tuple[int, int]:
        p = self.pose.inverse() * pt
        return int(p[0] * self.RESOLUTION + self._center), int(p[1] * self.RESOLUTION + self._center)

    def set_point(self, pt, occupy: bool) -> None:
        """Move one cell one step towards occupied or free, within limits."""
        x, y = int(pt[0]), int(pt[1])
        rows, cols = self.occupancy_grid.shape
        if x < 0 or y < 0 or x >= cols or y >= rows:
            if occupy:
                self.has_outside_pts = True
            return
        value = int(self.occupancy_grid[y, x])
        if occupy:
            if value > self.OCCUPIED_LIMIT:
                self.occupancy_grid[y, x] = value - 1
        elif value < self.FREE_LIMIT:
            self.occupancy_grid[y, x] = value + 1

    def _mark_free(self, xs: np.ndarray, ys: np.ndarray) -> None:
        """Apply one free step per occurrence of every in-bounds cell."""
        rows, cols = self.occupancy_grid.shape
        xs = np.asarray(xs, dtype=np.int64)
        ys = np.asarray(ys, dtype=np.int64)
        inside = (xs >= 0) & (ys >= 0) & (xs < cols) & (ys < rows)
        if not inside.any():
            return
        flat = ys[inside] * cols + xs[inside]
        counts = np.bincount(flat, minlength=rows * cols).reshape(rows, cols)
        grid = self.occupancy_grid.astype(np.int64)
        mask = (counts > 0) & (grid < self.FREE_LIMIT)
        grid[mask] = np.minimum(grid[mask] + counts[mask], self.FREE_LIMIT)
        self.occupancy_grid[...] = grid.astype(np.uint8)

    @staticmethod
    def _ranges_in_angles(angles: np.ndarray, scan: Scan2d) -> np.ndarray:
        """Interpolated scan range at each bearing, 0 where there is none."""
        angles = np.asarray(angles, dtype=np.float64)
        out = np.zeros(angles.shape, dtype=np.float64)
        ranges = np.asarray(scan.ranges, dtype=np.float64)
        n = len(ranges)
        if n == 0 or scan.angle_increment == 0:
            return out
        with np.errstate(all="ignore"):
            a = np.mod(angles + math.pi, 2.0 * math.pi) - math.pi
            pos = (a - scan.angle_min) / scan.angle_increment
            ok = (a >= scan.angle_min) & (a <= scan.angle_max) & np.isfinite(pos)
            idx = np.zeros(angles.shape, dtype=np.int64)
            idx[ok] = np.trunc(pos[ok]).astype(np.int64)
            ok &= (idx >= 0) & (idx < n)
            if not ok.any():
                return out
            i = idx[ok]
            ip = i + 1
            last = ip >= n
            r1 = ranges[i]
            r2 = ranges[np.minimum(ip, n - 1)]
            s = pos[ok] - i
            bad1 = (r1 < scan.range_min) | (r1 > scan.range_max)
            bad2 = (r2 < scan.range_min) | (r2 > scan.range_max)
            jump = np.abs(r1 - r2) > _JUMP_TH
            blended = r1 * (1 - s) + r2 * s
            nearest = np.where(s > 0.5, r2, r1)
            value = np.where(
                last,
                r1,
                np.where(bad2, r1, np.where(bad1, r2, np.where(jump, nearest, blended))),
            )
        out[ok] = value
        return out

    def find_range_in_angle(self, angle: float, scan: Scan2d) -> float:
        """Range the scan measures at a bearing, interpolated; 0 if none."""
        return float(self._ranges_in_angles(np.array([angle]), scan)[0])

    def add_lidar_frame(self, frame: Frame, method: GridMethod = GridMethod.BRESENHAM) -> None:
        """Fold one frame's scan into the grid."""
        scan = frame.scan
        pose_in_submap = self.pose.inverse() * frame.pose
        theta = float(np.float32(pose_in_submap.theta))
        self.has_outside_pts = False

        endpoints = {
            self._world_to_image(frame.pose * (r * math.cos(a), r * math.sin(a)))
            for _, r, a in scan.valid_points()
        }
        start = self._world_to_image(frame.pose.translation)

        if method is GridMethod.MODEL_POINTS:
            self._fill_with_model(start, theta, scan, endpoints)
        else:
            cells = [cell for end in endpoints for cell in _bresenham(start, end)]
            if cells:
                arr = np.array(cells, dtype=np.int64)
                self._mark_free(arr[:, 0], arr[:, 1])

        for pt in endpoints:
            self.set_point(pt, True)

    def _fill_with_model(self, start, theta: float, scan: Scan2d, endpoints: set) -> None:
        dx, dy, model_range, model_angle = _model(self.MODEL_SIZE, self.INV_RESOLUTION)
        px = start[0] + dx
        py = start[1] + dy

        close = model_range < self.CLOSEST_TH
        measured = self._ranges_in_angles(model_angle - theta, scan)
        invalid = (measured < scan.range_min) | (measured > scan.range_max)
        near_end = invalid & (model_range < self.ENDPOINT_CLOSE_TH)
        beyond = ~invalid & (measured > model_range)
        if endpoints:
            ends = np.array(sorted(endpoints), dtype=np.int64)
            end_keys = ends[:, 0] * (1 << 32) + ends[:, 1]
            beyond &= ~np.isin(px * (1 << 32) + py, end_keys)
        free = close | (~close & (near_end | beyond))
        self._mark_free(px[free], py[free])

    def get_occupancy_grid_black_white(self) -> np.ndarray:
        """RGB view: black occupied, white free, grey unknown."""
        grid = self.occupancy_grid
        image = np.full(grid.shape + (3,), self.UNKNOWN, dtype=np.uint8)
        image[grid < self.UNKNOWN] = 0
        image[grid > self.UNKNOWN] = 255
        return image