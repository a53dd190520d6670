"""Planar rigid transforms, 2D laser scans and frames."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, Optional

import numpy as np

_SMALL = 1e-10


def normalize_angle(angle: float) -> float:
    """Wrap an angle into [-pi, pi)."""
    wrapped = math.fmod(angle + math.pi, 2.0 * math.pi)
    if wrapped < 0:
        wrapped += 2.0 * math.pi
    return wrapped - math.pi


@dataclass(frozen=True)
class SE2:
    """A rigid transform in the plane: translation (x, y) and rotation theta."""

    x: float = 0.0
    y: float = 0.0
    theta: float = 0.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "x", float(self.x))
        object.__setattr__(self, "y", float(self.y))
        object.__setattr__(self, "theta", normalize_angle(float(self.theta)))

    @property
    def translation(self) -> np.ndarray:
        return np.array([self.x, self.y])

    @property
    def rotation(self) -> np.ndarray:
        c, s = math.cos(self.theta), math.sin(self.theta)
        return np.array([[c, -s], [s, c]])

    def inverse(self) -> "SE2":
        c, s = math.cos(self.theta), math.sin(self.theta)
        return SE2(-(c * self.x + s * self.y), -(-s * self.x + c * self.y), -self.theta)

    def transform(self, point) -> np.ndarray:
        """Apply the transform to a 2D point."""
        px, py = float(point[0]), float(point[1])
        c, s = math.cos(self.theta), math.sin(self.theta)
        return np.array([c * px - s * py + self.x, s * px + c * py + self.y])

    def __mul__(self, other):
        if isinstance(other, SE2):
            t = self.transform((other.x, other.y))
            return SE2(t[0], t[1], self.theta + other.theta)
        return self.transform(other)

    def log(self) -> np.ndarray:
        """Tangent vector (upsilon_x, upsilon_y, theta)."""
        theta = self.theta
        half = 0.5 * theta
        if abs(theta) < _SMALL:
            h = 1.0 - theta * theta / 12.0
        else:
            h = half * math.sin(theta) / (1.0 - math.cos(theta))
        v_inv = np.array([[h, half], [-half, h]])
        upsilon = v_inv @ self.translation
        return np.array([upsilon[0], upsilon[1], theta])

    @staticmethod
    def exp(xi) -> "SE2":
        """Transform from a tangent vector (upsilon_x, upsilon_y, theta)."""
        ux, uy, theta = float(xi[0]), float(xi[1]), float(xi[2])
        if abs(theta) < _SMALL:
            sin_by = 1.0 - theta * theta / 6.0
            cos_by = 0.5 * theta
        else:
            sin_by = math.sin(theta) / theta
            cos_by = (1.0 - math.cos(theta)) / theta
        v = np.array([[sin_by, -cos_by], [cos_by, sin_by]])
        t = v @ np.array([ux, uy])
        return SE2(t[0], t[1], theta)


@dataclass
class Scan2d:
    """A single-echo planar laser scan."""

    angle_min: float = 0.0
    angle_max: float = 0.0
    angle_increment: float = 0.0
    range_min: float = 0.0
    range_max: float = 0.0
    ranges: list = field(default_factory=list)

    def valid_points(self) -> Iterator[tuple[int, float, float]]:
        """Yield (index, range, angle) for every range inside the valid limits."""
        for i, r in enumerate(self.ranges):
            if r < self.range_min or r > self.range_max:
                continue
            yield i, float(r), self.angle_min + i * self.angle_increment


@dataclass
class Frame:
    """One laser scan together with its ids and poses."""

    scan: Optional[Scan2d] = None
    id: int = 0
    keyframe_id: int = 0
    timestamp: float = 0.0
    pose: SE2 = field(default_factory=SE2)
    pose_submap: SE2 = field(default_factory=SE2)

    def dump(self, filename) -> None:
        """Write the frame to a text file."""
        scan = self.scan
        lines = [
            f"{self.id} {self.keyframe_id} {self.timestamp!r}",
            f"{self.pose.x!r} {self.pose.y!r} {self.pose.theta!r}",
            f"{scan.angle_min!r} {scan.angle_max!r} {scan.angle_increment!r} "
            f"{scan.range_min!r} {scan.range_max!r} {len(scan.ranges)}",
            "".join(f"{float(r)!r} " for r in scan.ranges),
        ]
        Path(filename).write_text("\n".join(lines))

    @classmethod
    def load(cls, filename) -> "Frame":
        """Read a frame written by dump."""
        tokens = iter(Path(filename).read_text().split())
        frame_id = int(next(tokens))
        keyframe_id = int(next(tokens))
        timestamp = float(next(tokens))
        x, y, theta = (float(next(tokens)) for _ in range(3))
        angle_min, angle_max, angle_inc, range_min, range_max = (
            float(next(tokens)) for _ in range(5)
        )
        count = int(next(tokens))
        ranges = [float(next(tokens)) for _ in range(count)]
        scan = Scan2d(angle_min, angle_max, angle_inc, range_min, range_max, ranges)
        return cls(
            scan=scan,
            id=frame_id,
            keyframe_id=keyframe_id,
            timestamp=timestamp,
            pose=SE2(x, y, theta),
        )