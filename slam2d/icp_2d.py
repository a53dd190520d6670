"""Point-to-point and point-to-line ICP between two 2D scans."""

from __future__ import annotations

import logging
import math
from typing import Optional

import numpy as np
from scipy.spatial import cKDTree

from slam2d.frame import SE2, Scan2d

log = logging.getLogger(__name__)

_ITERATIONS = 10
_MIN_EFFECTIVE = 20


def fit_line_2d(points) -> Optional[np.ndarray]:
    """Fit a*x + b*y + c = 0 to the points; None when fewer than two."""
    pts = np.asarray(points, dtype=float)
    if len(pts) < 2:
        return None
    a = np.column_stack([pts, np.ones(len(pts))])
    _, _, vt = np.linalg.svd(a, full_matrices=False)
    return vt[-1]


class Icp2d:
    """Scan-to-scan ICP. Set the target, then the source, then align."""

    def __init__(self):
        self._target_scan: Optional[Scan2d] = None
        self._source_scan: Optional[Scan2d] = None
        self._target_points = np.zeros((0, 2))
        self._tree: Optional[cKDTree] = None

    def set_target(self, target: Scan2d) -> None:
        self._target_scan = target
        pts = [(r * math.cos(a), r * math.sin(a)) for _, r, a in target.valid_points()]
        self._target_points = np.array(pts, dtype=float).reshape(-1, 2)
        self._tree = cKDTree(self._target_points) if len(pts) else None

    def set_source(self, source: Scan2d) -> None:
        self._source_scan = source

    def _query(self, pt, k):
        if self._tree is None:
            return [], []
        k = min(k, len(self._target_points))
        dist, idx = self._tree.query(pt, k=k)
        dist = np.atleast_1d(dist)
        idx = np.atleast_1d(idx)
        return list(idx), list(dist * dist)

    def _run(self, init_pose: SE2, residuals) -> Optional[SE2]:
        if self._source_scan is None:
            raise ValueError("source scan is not set")
        if self._tree is None:
            raise ValueError("target scan is not set or has no valid points")
        pose = init_pose
        last_cost = 0.0
        for it in range(_ITERATIONS):
            h = np.zeros((3, 3))
            b = np.zeros(3)
            cost = 0.0
            effective = 0
            theta = pose.theta
            for _, r, angle in self._source_scan.valid_points():
                pw = pose * (r * math.cos(angle), r * math.sin(angle))
                term = residuals(pw, r, angle, theta)
                if term is None:
                    continue
                jac, err = term
                effective += 1
                h += jac.T @ jac
                b += -jac.T @ err
                cost += float(err @ err)
            if effective < _MIN_EFFECTIVE:
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
        log.info("estimated pose: %g %g, theta: %g", pose.x, pose.y, pose.theta)
        return pose

    def align_gauss_newton(self, init_pose: SE2) -> Optional[SE2]:
        """Point-to-point alignment; the estimated pose, or None on failure."""
        max_dis2 = 0.01

        def residual(pw, r, angle, theta):
            idx, dis = self._query(pw, 1)
            if not idx or dis[0] >= max_dis2:
                return None
            jac = np.array([
                [1.0, 0.0, -r * math.sin(angle + theta)],
                [0.0, 1.0, r * math.cos(angle + theta)],
            ])
            return jac, pw - self._target_points[idx[0]]

        return self._run(init_pose, residual)

    def align_gauss_newton_point2plane(self, init_pose: SE2) -> Optional[SE2]:
        """Point-to-line alignment; the estimated pose, or None on failure."""
        max_dis = 0.3

        def residual(pw, r, angle, theta):
            idx, dis = self._query(pw, 5)
            near = [self._target_points[i] for i, d in zip(idx, dis) if d < max_dis]
            if len(near) < 3:
                return None
            coeffs = fit_line_2d(near)
            if coeffs is None:
                return None
            a, b_, c = coeffs
            jac = np.array([[a, b_, -a * r * math.sin(angle + theta) + b_ * r * math.cos(angle + theta)]])
            err = np.array([a * pw[0] + b_ * pw[1] + c])
            return jac, err

        return self._run(init_pose, residual)