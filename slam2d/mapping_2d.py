"""2D laser mapping: scan matching into submaps, keyframes and a global map view."""

from __future__ import annotations

import logging
import math
from typing import Optional

import numpy as np

from slam2d.frame import SE2, Frame, Scan2d
from slam2d.lidar_2d_utils import _draw_ring
from slam2d.loop_closing import LoopClosing
from slam2d.submap import Submap

log = logging.getLogger(__name__)


def _draw_line(image: np.ndarray, p0, p1, color, thickness: int = 2) -> None:
    rows, cols = image.shape[:2]
    x0, y0 = float(p0[0]), float(p0[1])
    x1, y1 = float(p1[0]), float(p1[1])
    steps = int(max(abs(x1 - x0), abs(y1 - y0))) + 1
    half = thickness // 2
    for t in np.linspace(0.0, 1.0, steps + 1):
        cx = int(round(x0 + (x1 - x0) * t))
        cy = int(round(y0 + (y1 - y0) * t))
        ya, yb = max(cy - half, 0), min(cy + half, rows - 1)
        xa, xb = max(cx - half, 0), min(cx + half, cols - 1)
        if ya <= yb and xa <= xb:
            image[ya:yb + 1, xa:xb + 1] = color


class Mapping2D:
    """Builds submaps from a stream of 2D scans, optionally with loop closing."""

    KEYFRAME_POS_TH = 0.3
    KEYFRAME_ANG_TH = 15 * math.pi / 180
    MAX_FRAMES_PER_SUBMAP = 50
    SUBMAP_RESOLUTION = 20.0
    SUBMAP_SIZE = 50.0
    SUBMAP_IMAGE_SIZE = 1000

    def __init__(self, with_loop_closing: bool = True):
        self.frame_id = 0
        self.keyframe_id = 0
        self.submap_id = 0
        self.first_scan = True
        self.current_frame: Optional[Frame] = None
        self.last_frame: Optional[Frame] = None
        self.last_keyframe: Optional[Frame] = None
        self.motion_guess = SE2()
        self.current_submap = Submap(SE2())
        self.submaps: list[Submap] = [self.current_submap]
        self.loop_closing: Optional[LoopClosing] = None
        if with_loop_closing:
            self.loop_closing = LoopClosing()
            self.loop_closing.add_new_submap(self.current_submap)

    def process_scan(self, scan: Scan2d) -> bool:
        """Match a scan into the current submap and update the map."""
        frame = Frame(scan=scan, id=self.frame_id)
        self.frame_id += 1
        self.current_frame = frame

        if self.last_frame is not None:
            frame.pose = self.last_frame.pose * self.motion_guess
            frame.pose_submap = self.last_frame.pose_submap

        if not self.first_scan:
            self.current_submap.match_scan(frame)
        self.first_scan = False

        if self._is_key_frame():
            self._add_key_frame()
            self.current_submap.add_scan_in_occupancy_map(frame)
            if self.loop_closing is not None:
                self.loop_closing.add_new_frame(frame)
            if (
                self.current_submap.has_outside_points()
                or self.current_submap.num_frames > self.MAX_FRAMES_PER_SUBMAP
            ):
                self._expand_submap()

        if self.last_frame is not None:
            self.motion_guess = self.last_frame.pose.inverse() * frame.pose
        self.last_frame = frame
        return True

    def _is_key_frame(self) -> bool:
        if self.last_keyframe is None:
            return True
        delta = self.last_keyframe.pose.inverse() * self.current_frame.pose
        return (
            float(np.linalg.norm(delta.translation)) > self.KEYFRAME_POS_TH
            or abs(delta.theta) > self.KEYFRAME_ANG_TH
        )

    def _add_key_frame(self) -> None:
        log.info("add keyframe %d", self.keyframe_id)
        self.current_frame.keyframe_id = self.keyframe_id
        self.keyframe_id += 1
        self.current_submap.add_key_frame(self.current_frame)
        self.last_keyframe = self.current_frame

    def _expand_submap(self) -> None:
        if self.loop_closing is not None:
            self.loop_closing.add_finished_submap(self.current_submap)

        last_submap = self.current_submap
        frame = self.current_frame
        self.current_submap = Submap(frame.pose)
        frame.pose_submap = SE2()

        self.submap_id += 1
        self.current_submap.id = self.submap_id
        self.current_submap.add_key_frame(frame)
        self.current_submap.set_occu_from_other_submap(last_submap)
        self.current_submap.add_scan_in_occupancy_map(frame)
        self.submaps.append(self.current_submap)

        if self.loop_closing is not None:
            self.loop_closing.add_new_submap(self.current_submap)

        p = self.current_submap.pose
        log.info("create submap %d with pose: %g %g, %g", self.current_submap.id, p.x, p.y, p.theta)

    def show_global_map(self, max_size: int = 500) -> np.ndarray:
        """Render all submaps, trajectories and loops into one RGB image."""
        if not self.submaps:
            return np.zeros((0, 0, 3), dtype=np.uint8)

        half = self.SUBMAP_SIZE / 2
        centers = np.array([m.pose.translation for m in self.submaps])
        top_left = centers.min(axis=0) - half
        bottom_right = centers.max(axis=0) + half

        global_center = (top_left + bottom_right) / 2.0
        phy_width, phy_height = bottom_right - top_left
        res = max_size / phy_width if phy_width > phy_height else max_size / phy_height

        c = global_center.copy()
        global_center = np.array([int(c[0] * res) / res, int(c[1] * res) / res])

        width = int(phy_width * res + 0.5)
        height = int(phy_height * res + 0.5)
        center_image = np.array([width // 2, height // 2], dtype=float)
        image = np.full((height, width, 3), 127, dtype=np.uint8)

        ys, xs = np.mgrid[0:height, 0:width]
        xs = xs.ravel()
        ys = ys.ravel()
        wx = (xs - center_image[0]) / res + c[0]
        wy = (ys - center_image[1]) / res + c[1]
        pending = np.ones(xs.shape, dtype=bool)
        size = self.SUBMAP_IMAGE_SIZE
        offset = size // 2

        for m in self.submaps:
            inv = m.pose.inverse()
            rot, trans = inv.rotation, inv.translation
            sx = rot[0, 0] * wx + rot[0, 1] * wy + trans[0]
            sy = rot[1, 0] * wx + rot[1, 1] * wy + trans[1]
            ix = np.trunc(sx * self.SUBMAP_RESOLUTION + offset).astype(np.int64)
            iy = np.trunc(sy * self.SUBMAP_RESOLUTION + offset).astype(np.int64)
            inside = pending & (ix >= 0) & (ix < size) & (iy >= 0) & (iy < size)
            sel = np.nonzero(inside)[0]
            if not len(sel):
                continue
            values = m.occu_map.occupancy_grid[iy[sel], ix[sel]]
            is_current = m is self.current_submap
            free = sel[values > 127]
            occupied = sel[values < 127]
            image[ys[free], xs[free]] = (235, 250, 230) if is_current else (255, 255, 255)
            image[ys[occupied], xs[occupied]] = (230, 20, 30) if is_current else (0, 0, 0)
            pending[free] = False
            pending[occupied] = False

        def to_map(p) -> np.ndarray:
            return (np.asarray(p, dtype=float) - global_center) * res + center_image

        for m in self.submaps:
            center_map = to_map(m.pose.translation)
            x_map = to_map(m.pose * (1.0, 0.0))
            y_map = to_map(m.pose * (0.0, 1.0))
            _draw_line(image, center_map, x_map, (0, 0, 255), 2)
            _draw_line(image, center_map, y_map, (0, 255, 0), 2)
            for frame in m.frames:
                p_map = to_map(frame.pose.translation)
                _draw_ring(image, p_map[0], p_map[1], 1.0, 1, (0, 0, 255))

        if self.loop_closing is not None:
            for first_id, second_id in self.loop_closing.get_loops():
                c1 = to_map(self.submaps[first_id].pose.translation)
                c2 = to_map(self.submaps[second_id].pose.translation)
                _draw_line(image, c1, c2, (255, 0, 0), 2)

        return image