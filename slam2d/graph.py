"""A small pose-graph optimizer with SE2 vertices and likelihood-field edges."""

from __future__ import annotations

import math
from typing import Optional

import numpy as np

from slam2d.frame import SE2


def get_pixel_value(image: np.ndarray, x: float, y: float) -> float:
    """Bilinearly interpolated value of a single-channel image at (x, y)."""
    rows, cols = image.shape[:2]
    x = min(max(x, 0.0), cols - 1)
    y = min(max(y, 0.0), rows - 1)
    x0, y0 = int(x), int(y)
    x1, y1 = min(x0 + 1, cols - 1), min(y0 + 1, rows - 1)
    xx, yy = x - math.floor(x), y - math.floor(y)
    return float(
        (1 - xx) * (1 - yy) * image[y0, x0]
        + xx * (1 - yy) * image[y0, x1]
        + (1 - xx) * yy * image[y1, x0]
        + xx * yy * image[y1, x1]
    )


class HuberKernel:
    """Huber robust kernel."""

    def __init__(self, delta: float = 1.0):
        self.delta = delta

    def robustify(self, chi2: float) -> tuple[float, float]:
        """Return (rho, rho') for a squared error."""
        dsqr = self.delta * self.delta
        if chi2 <= dsqr:
            return chi2, 1.0
        sqrte = math.sqrt(chi2)
        return 2.0 * sqrte * self.delta - dsqr, self.delta / sqrte


class CauchyKernel:
    """Cauchy robust kernel."""

    def __init__(self, delta: float = 1.0):
        self.delta = delta

    def robustify(self, chi2: float) -> tuple[float, float]:
        """Return (rho, rho') for a squared error."""
        dsqr = self.delta * self.delta
        aux = chi2 / dsqr + 1.0
        return dsqr * math.log(aux), 1.0 / aux


class VertexSE2:
    """An SE2 pose being estimated."""

    def __init__(self, id: int = 0, estimate: Optional[SE2] = None, fixed: bool = False):
        self.id = id
        self.estimate = estimate if estimate is not None else SE2()
        self.fixed = fixed

    def oplus(self, update) -> None:
        e = self.estimate
        self.estimate = SE2(e.x + update[0], e.y + update[1], e.theta + update[2])


class EdgeSE2LikelihoodField:
    """Unary edge: likelihood-field value at a laser endpoint."""

    BORDER = 10

    def __init__(self, vertex, field_image, range_, angle, resolution=10.0):
        self.vertices = [vertex]
        self.field_image = field_image
        self.range = float(range_)
        self.angle = float(angle)
        self.resolution = float(resolution)
        self.information = np.eye(1)
        self.kernel = None
        self.level = 0
        self.error = np.zeros(1)

    def _world_point(self) -> np.ndarray:
        pose = self.vertices[0].estimate
        return pose * (self.range * math.cos(self.angle), self.range * math.sin(self.angle))

    def _offset(self) -> np.ndarray:
        rows, cols = self.field_image.shape[:2]
        return np.array([rows // 2, cols // 2], dtype=float)

    def _inside(self, px, py) -> bool:
        rows, cols = self.field_image.shape[:2]
        b = self.BORDER
        return b <= px < cols - b and b <= py < rows - b

    def is_outside(self) -> bool:
        pf = self._world_point() * self.resolution + self._offset()
        return not self._inside(int(pf[0]), int(pf[1]))

    def _image_point(self) -> np.ndarray:
        return self._world_point() * self.resolution + self._offset() - 0.5

    def compute_error(self) -> np.ndarray:
        pf = self._image_point()
        if self._inside(pf[0], pf[1]):
            self.error = np.array([get_pixel_value(self.field_image, pf[0], pf[1])])
        else:
            self.error = np.zeros(1)
            self.level = 1
        return self.error

    def linearize(self) -> list:
        theta = self.vertices[0].estimate.theta
        pf = self._image_point()
        if not self._inside(pf[0], pf[1]):
            self.level = 1
            return [np.zeros((1, 3))]
        img = self.field_image
        dx = 0.5 * (get_pixel_value(img, pf[0] + 1, pf[1]) - get_pixel_value(img, pf[0] - 1, pf[1]))
        dy = 0.5 * (get_pixel_value(img, pf[0], pf[1] + 1) - get_pixel_value(img, pf[0], pf[1] - 1))
        res, r, a = self.resolution, self.range, self.angle
        jac = np.array([[
            res * dx,
            res * dy,
            -res * dx * r * math.sin(a + theta) + res * dy * r * math.cos(a + theta),
        ]])
        return [jac]

    def chi2(self) -> float:
        """Squared error weighted by the information matrix."""
        e = self.compute_error()
        return float(e @ self.information @ e)


class EdgeSE2:
    """Binary edge: error = log(v1^-1 * v2 * measurement^-1)."""

    _STEP = 1e-9

    def __init__(self, v1, v2, measurement, information=None):
        self.vertices = [v1, v2]
        self.measurement = measurement
        self.information = np.eye(3) if information is None else np.asarray(information, dtype=float)
        self.kernel = None
        self.level = 0
        self.error = np.zeros(3)

    def _error_of(self, p1: SE2, p2: SE2) -> np.ndarray:
        return (p1.inverse() * p2 * self.measurement.inverse()).log()

    def compute_error(self) -> np.ndarray:
        self.error = self._error_of(self.vertices[0].estimate, self.vertices[1].estimate)
        return self.error

    def linearize(self) -> list:
        jacobians = []
        for which, vertex in enumerate(self.vertices):
            base = vertex.estimate
            jac = np.zeros((3, 3))
            for k in range(3):
                step = np.zeros(3)
                step[k] = self._STEP
                plus = SE2(base.x + step[0], base.y + step[1], base.theta + step[2])
                minus = SE2(base.x - step[0], base.y - step[1], base.theta - step[2])
                poses = [self.vertices[0].estimate, self.vertices[1].estimate]
                poses[which] = plus
                e_plus = self._error_of(*poses)
                poses[which] = minus
                e_minus = self._error_of(*poses)
                diff = e_plus - e_minus
                diff[2] = math.remainder(diff[2], 2 * math.pi)
                jac[:, k] = diff / (2 * self._STEP)
            jacobians.append(jac)
        return jacobians

    def chi2(self) -> float:
        """Squared error weighted by the information matrix."""
        e = self.compute_error()
        return float(e @ self.information @ e)


class LevenbergMarquardt:
    """Levenberg-Marquardt optimizer over SE2 vertices."""

    def __init__(self):
        self.vertices: list[VertexSE2] = []
        self.edges: list = []

    def add_vertex(self, vertex) -> None:
        self.vertices.append(vertex)

    def add_edge(self, edge) -> None:
        self.edges.append(edge)

    def vertex(self, vertex_id):
        return next((v for v in self.vertices if v.id == vertex_id), None)

    def _cost(self) -> float:
        total = 0.0
        for edge in self.edges:
            if edge.level != 0:
                continue
            e = edge.compute_error()
            if edge.level != 0:
                continue
            chi2 = float(e @ edge.information @ e)
            total += edge.kernel.robustify(chi2)[0] if edge.kernel else chi2
        return total

    def _system(self, index, n):
        h = np.zeros((n, n))
        b = np.zeros(n)
        for edge in self.edges:
            if edge.level != 0:
                continue
            e = edge.compute_error()
            if edge.level != 0:
                continue
            jacs = edge.linearize()
            omega = edge.information
            if edge.kernel:
                omega = omega * edge.kernel.robustify(float(e @ edge.information @ e))[1]
            for vi, ji in zip(edge.vertices, jacs):
                if id(vi) not in index:
                    continue
                a = index[id(vi)]
                b[a:a + 3] += ji.T @ omega @ e
                for vj, jj in zip(edge.vertices, jacs):
                    if id(vj) not in index:
                        continue
                    c = index[id(vj)]
                    h[a:a + 3, c:c + 3] += ji.T @ omega @ jj
        return h, b

    def optimize(self, iterations) -> float:
        """Run up to `iterations` steps; return the final robust cost."""
        free = [v for v in self.vertices if not v.fixed]
        index = {id(v): 3 * i for i, v in enumerate(free)}
        n = 3 * len(free)
        cost = self._cost()
        if n == 0:
            return cost
        lam = None
        for _ in range(iterations):
            h, b = self._system(index, n)
            if lam is None:
                lam = 1e-5 * max(float(h.diagonal().max()), 1e-12)
            backup = [v.estimate for v in free]
            improved = False
            for _ in range(10):
                try:
                    dx = np.linalg.solve(h + lam * np.eye(n), -b)
                except np.linalg.LinAlgError:
                    lam *= 2
                    continue
                if not np.all(np.isfinite(dx)):
                    lam *= 2
                    continue
                for v in free:
                    a = index[id(v)]
                    v.oplus(dx[a:a + 3])
                new_cost = self._cost()
                if new_cost < cost:
                    cost = new_cost
                    lam = max(lam / 3.0, 1e-12)
                    improved = True
                    break
                for v, est in zip(free, backup):
                    v.estimate = est
                lam *= 2
            if not improved:
                break
        return cost