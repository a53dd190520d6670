"""Coarse-to-fine likelihood-field matching over an image pyramid."""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np

from slam2d.frame import SE2, Scan2d
from slam2d.graph import EdgeSE2LikelihoodField, HuberKernel, LevenbergMarquardt, VertexSE2
from slam2d.likelihood_field import (
    FIELD_INIT,
    _field_to_image,
    _matchable_points,
    _model_arrays,
    _occupied_cells,
    _stamp_field,
    build_model,
)

log = logging.getLogger(__name__)


class MRLikelihoodField:
    """Likelihood fields at several resolutions, matched from coarse to fine."""

    LEVELS = 4
    RESOLUTIONS = (2.5, 5.0, 10.0, 20.0)
    RATIOS = (0.125, 0.25, 0.5, 1.0)
    SIZES = (125, 250, 500, 1000)
    RK_DELTA = (0.2, 0.3, 0.6, 0.8)
    OCCU_BORDER = 25
    RANGE_TH = 15.0
    INLIER_RATIO_TH = 0.4
    MIN_INLIERS = 100

    def __init__(self):
        self.pose = SE2()
        self.source: Optional[Scan2d] = None
        self.model = build_model()
        self._model_arrays = _model_arrays(self.model)
        self._fields = [np.full((s, s), FIELD_INIT, dtype=np.float32) for s in self.SIZES]
        self.num_inliers: list[int] = []
        self.inlier_ratio: list[float] = []

    @property
    def levels(self) -> int:
        return self.LEVELS

    def resolution(self, level: int = 0) -> float:
        """Pixels per metre at the given level."""
        return self.RESOLUTIONS[level]

    def set_pose(self, pose: SE2) -> None:
        self.pose = pose

    def set_source_scan(self, scan: Scan2d) -> None:
        self.source = scan

    def set_field_image_from_occu_map(self, occu_map) -> None:
        """Stamp the occupied cells of an occupancy grid into every level."""
        xs, ys = _occupied_cells(occu_map, self.OCCU_BORDER)
        if not len(xs):
            return
        for field, ratio in zip(self._fields, self.RATIOS):
            _stamp_field(field, xs * ratio, ys * ratio, self._model_arrays)

    def align_g2o(self, init_pose: SE2) -> Optional[SE2]:
        """Align through all levels; the estimated pose, or None if any level fails."""
        if self.source is None:
            raise ValueError("source scan is not set")
        self.num_inliers = []
        self.inlier_ratio = []
        pose = init_pose
        for level in range(self.LEVELS):
            result = self._align_in_level(level, pose)
            if result is None:
                return None
            pose = result
        for level, (num, ratio) in enumerate(zip(self.num_inliers, self.inlier_ratio)):
            log.info("level %d inliers: %d, ratio: %g", level, num, ratio)
        return pose

    def _align_in_level(self, level: int, init_pose: SE2) -> Optional[SE2]:
        optimizer = LevenbergMarquardt()
        vertex = VertexSE2(0, init_pose)
        optimizer.add_vertex(vertex)
        field = self._fields[level]
        delta = self.RK_DELTA[level]

        edges = []
        for r, angle in _matchable_points(self.source, range_th=self.RANGE_TH):
            edge = EdgeSE2LikelihoodField(vertex, field, r, angle, self.RESOLUTIONS[level])
            if edge.is_outside():
                continue
            edge.kernel = HuberKernel(delta)
            optimizer.add_edge(edge)
            edges.append(edge)

        if not edges:
            return None

        optimizer.optimize(10)

        num_inliers = sum(1 for e in edges if e.level == 0 and e.chi2() < delta)
        ratio = num_inliers / len(edges)
        self.num_inliers.append(num_inliers)
        self.inlier_ratio.append(ratio)

        if num_inliers > self.MIN_INLIERS and ratio > self.INLIER_RATIO_TH:
            return vertex.estimate
        return None

    def get_field_image(self) -> list[np.ndarray]:
        """Every level's field as an RGB image."""
        return [_field_to_image(field) for field in self._fields]