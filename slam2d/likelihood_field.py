"""Likelihood-field scan matching against a single 2D field image."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Iterator, Optional

import numpy as np

from slam2d.frame import SE2, Scan2d
from slam2d.graph import EdgeSE2LikelihoodField, HuberKernel, LevenbergMarquardt, VertexSE2

log = logging.getLogger(__name__)

FIELD_INIT = 30.0
_EDGE_CUT = 30 * math.pi / 180.0
_STAMP_CHUNK = 256


@dataclass(frozen=True)
class ModelPoint:
    """One template offset and the field value it contributes."""

    dx: int
    dy: int
    residual: float


def build_model(pixel_range: int = 20) -> list[ModelPoint]:
    """Square template of offsets within `pixel_range` pixels and their distances."""
    return [
        ModelPoint(x, y, math.sqrt(x * x + y * y))
        for x in range(-pixel_range, pixel_range + 1)
        for y in range(-pixel_range, pixel_range + 1)
    ]


def _model_arrays(model: list[ModelPoint]) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    dx = np.array([p.dx for p in model], dtype=np.int64)
    dy = np.array([p.dy for p in model], dtype=np.int64)
    res = np.array([p.residual for p in model], dtype=np.float32)
    return dx, dy, res


def _stamp_field(field: np.ndarray, xs, ys, model_arrays) -> None:
    """Lower the field around every (x, y) to the template distance values."""
    dx, dy, res = model_arrays
    rows, cols = field.shape
    xs = np.asarray(xs, dtype=float)
    ys = np.asarray(ys, dtype=float)
    for start in range(0, len(xs), _STAMP_CHUNK):
        xx = np.trunc(xs[start:start + _STAMP_CHUNK, None] + dx[None, :]).astype(np.int64)
        yy = np.trunc(ys[start:start + _STAMP_CHUNK, None] + dy[None, :]).astype(np.int64)
        mask = (xx >= 0) & (xx < cols) & (yy >= 0) & (yy < rows)
        values = np.broadcast_to(res, xx.shape)[mask]
        np.minimum.at(field, (yy[mask], xx[mask]), values)


def _occupied_cells(occu_map, border: int) -> tuple[np.ndarray, np.ndarray]:
    """Image coordinates of cells darker than 127, away from the border."""
    occu = np.asarray(occu_map)
    if occu.ndim == 3:
        occu = occu[..., 0]
    rows, cols = occu.shape
    if rows <= 2 * border or cols <= 2 * border:
        return np.zeros(0, dtype=np.int64), np.zeros(0, dtype=np.int64)
    inner = occu[border:rows - border, border:cols - border]
    ys, xs = np.nonzero(inner < 127)
    return xs + border, ys + border


def _matchable_points(scan: Scan2d, range_th: Optional[float] = None) -> Iterator[tuple[float, float]]:
    """Yield (range, angle) of valid beams away from the scan's angular limits."""
    for _, r, angle in scan.valid_points():
        if range_th is not None and r > range_th:
            continue
        if angle < scan.angle_min + _EDGE_CUT or angle > scan.angle_max - _EDGE_CUT:
            continue
        yield r, angle


def _field_to_image(field: np.ndarray) -> np.ndarray:
    gray = np.clip(field.astype(np.float64) * 255.0 / FIELD_INIT, 0, 255).astype(np.uint8)
    return np.repeat(gray[:, :, None], 3, axis=2)


class LikelihoodField:
    """Distance field built from a target scan or an occupancy map."""

    RESOLUTION = 20.0
    FIELD_SIZE = 1000
    OCCU_BORDER = 25

    def __init__(self):
        self.pose = SE2()
        self.target: Optional[Scan2d] = None
        self.source: Optional[Scan2d] = None
        self.model = build_model()
        self._model_arrays = _model_arrays(self.model)
        self._field = np.zeros((0, 0), dtype=np.float32)
        self.has_outside_pts = False

    def _fresh_field(self) -> np.ndarray:
        return np.full((self.FIELD_SIZE, self.FIELD_SIZE), FIELD_INIT, dtype=np.float32)

    def set_target_scan(self, scan: Scan2d) -> None:
        """Build the field around the target scan's endpoints."""
        self.target = scan
        self._field = self._fresh_field()
        center = self.FIELD_SIZE // 2
        pts = [
            (r * math.cos(a) * self.RESOLUTION + center, r * math.sin(a) * self.RESOLUTION + center)
            for _, r, a in scan.valid_points()
        ]
        if pts:
            arr = np.array(pts, dtype=float)
            _stamp_field(self._field, arr[:, 0], arr[:, 1], self._model_arrays)

    def set_source_scan(self, scan: Scan2d) -> None:
        self.source = scan

    def set_pose(self, pose: SE2) -> None:
        self.pose = pose

    def set_field_image_from_occu_map(self, occu_map) -> None:
        """Build the field around the occupied cells of an occupancy grid."""
        self._field = self._fresh_field()
        xs, ys = _occupied_cells(occu_map, self.OCCU_BORDER)
        if len(xs):
            _stamp_field(self._field, xs, ys, self._model_arrays)

    def _require_source(self) -> Scan2d:
        if self.source is None:
            raise ValueError("source scan is not set")
        return self.source

    def align_gauss_newton(self, init_pose: SE2) -> Optional[SE2]:
        """Gauss-Newton alignment; the estimated pose, or None on failure."""
        source = self._require_source()
        field = self._field
        rows, cols = field.shape
        res = self.RESOLUTION
        center = self.FIELD_SIZE // 2
        border = 20
        pose = init_pose
        last_cost = 0.0
        self.has_outside_pts = False

        for it in range(10):
            h = np.zeros((3, 3))
            b = np.zeros(3)
            cost = 0.0
            effective = 0
            theta = pose.theta
            for r, angle in _matchable_points(source):
                pw = pose * (r * math.cos(angle), r * math.sin(angle))
                px = int(pw[0] * res + center)
                py = int(pw[1] * res + center)
                if not (border <= px < cols - border and border <= py < rows - border):
                    self.has_outside_pts = True
                    continue
                effective += 1
                gx = 0.5 * (float(field[py, px + 1]) - float(field[py, px - 1]))
                gy = 0.5 * (float(field[py + 1, px]) - float(field[py - 1, px]))
                jac = np.array([
                    res * gx,
                    res * gy,
                    -res * gx * r * math.sin(angle + theta) + res * gy * r * math.cos(angle + theta),
                ])
                h += np.outer(jac, jac)
                e = float(field[py, px])
                b += -jac * e
                cost += e * e

            if effective < 20:
                return None
            try:
                dx = np.linalg.solve(h, b)
            except np.linalg.LinAlgError:
                break
            if math.isnan(dx[0]):
                break
            cost /= effective
            if it > 0 and cost >= last_cost:
                break
            log.info("iter %d cost = %g, effect num: %d", it, cost, effective)
            pose = SE2(pose.x + dx[0], pose.y + dx[1], pose.theta + dx[2])
            last_cost = cost
        return pose

    def align_g2o(self, init_pose: SE2) -> SE2:
        """Graph-based alignment with robust likelihood-field edges."""
        source = self._require_source()
        optimizer = LevenbergMarquardt()
        vertex = VertexSE2(0, init_pose)
        optimizer.add_vertex(vertex)
        self.has_outside_pts = False

        for r, angle in _matchable_points(source, range_th=15.0):
            edge = EdgeSE2LikelihoodField(vertex, self._field, r, angle, self.RESOLUTION)
            if edge.is_outside():
                self.has_outside_pts = True
                continue
            edge.kernel = HuberKernel(0.8)
            optimizer.add_edge(edge)

        optimizer.optimize(10)
        return vertex.estimate

    def get_field_image(self) -> np.ndarray:
        """The field as an RGB image, dark near obstacles."""
        return _field_to_image(self._field)