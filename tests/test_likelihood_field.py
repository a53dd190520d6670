import math

import numpy as np
import pytest

from slam2d.frame import SE2, Scan2d, normalize_angle
from slam2d.likelihood_field import LikelihoodField, ModelPoint, build_model

X_MIN, X_MAX = -4.13, 4.37
Y_MIN, Y_MAX = -3.21, 3.58


def room_scan(pose: SE2, n: int = 720) -> Scan2d:
    inc = 2 * math.pi / n
    ranges = []
    for i in range(n):
        d = pose.theta - math.pi + i * inc
        c, s = math.cos(d), math.sin(d)
        ts = []
        if c > 1e-12:
            ts.append((X_MAX - pose.x) / c)
        elif c < -1e-12:
            ts.append((X_MIN - pose.x) / c)
        if s > 1e-12:
            ts.append((Y_MAX - pose.y) / s)
        elif s < -1e-12:
            ts.append((Y_MIN - pose.y) / s)
        ranges.append(min(ts))
    return Scan2d(-math.pi, math.pi - inc, inc, 0.1, 30.0, ranges)


def pose_error(a: SE2, b: SE2) -> tuple[float, float]:
    return math.hypot(a.x - b.x, a.y - b.y), abs(normalize_angle(a.theta - b.theta))


def test_build_model_covers_square_template():
    model = build_model()
    assert len(model) == 41 * 41
    assert ModelPoint(0, 0, 0.0) in model
    assert max(p.residual for p in model) == pytest.approx(math.sqrt(800))
    assert model[0].dx == -20 and model[0].dy == -20


def test_field_from_occupancy_map_values():
    occu = np.full((1000, 1000), 127, dtype=np.uint8)
    occu[300, 400] = 0
    occu[10, 10] = 0  # inside the ignored border
    lf = LikelihoodField()
    lf.set_field_image_from_occu_map(occu)
    img = lf.get_field_image()
    assert img.shape == (1000, 1000, 3)
    assert img.dtype == np.uint8
    assert tuple(img[300, 400]) == (0, 0, 0)
    assert img[300, 403, 0] == 25
    assert img[320, 420, 0] == 240
    assert img[300, 421, 0] == 255
    assert img[10, 10, 0] == 255


def test_target_scan_endpoints_are_zero_in_field():
    scan = room_scan(SE2())
    lf = LikelihoodField()
    lf.set_target_scan(scan)
    img = lf.get_field_image()
    _, r, a = next(iter(scan.valid_points()))
    px = int(r * math.cos(a) * 20.0 + 500)
    py = int(r * math.sin(a) * 20.0 + 500)
    assert img[py, px, 0] == 0
    assert img[0, 0, 0] == 255


def test_align_gauss_newton_recovers_offset():
    truth = SE2(0.1, -0.05, 0.02)
    lf = LikelihoodField()
    lf.set_target_scan(room_scan(SE2()))
    lf.set_source_scan(room_scan(truth))
    result = lf.align_gauss_newton(SE2())
    assert result is not None
    dt, dth = pose_error(result, truth)
    assert dt < 0.06
    assert dth < 0.015
    assert lf.has_outside_pts is False


def test_align_g2o_recovers_offset():
    truth = SE2(0.1, 0.05, -0.02)
    lf = LikelihoodField()
    lf.set_target_scan(room_scan(SE2()))
    lf.set_source_scan(room_scan(truth))
    result = lf.align_g2o(SE2())
    dt, dth = pose_error(result, truth)
    assert dt < pose_error(SE2(), truth)[0]
    assert dt < 0.06
    assert dth < 0.015


def test_align_fails_when_points_leave_field():
    lf = LikelihoodField()
    lf.set_target_scan(room_scan(SE2()))
    lf.set_source_scan(room_scan(SE2()))
    assert lf.align_gauss_newton(SE2(40.0, 0.0, 0.0)) is None
    assert lf.has_outside_pts is True


def test_align_without_source_raises():
    lf = LikelihoodField()
    lf.set_target_scan(room_scan(SE2()))
    with pytest.raises(ValueError):
        lf.align_gauss_newton(SE2())
    with pytest.raises(ValueError):
        lf.align_g2o(SE2())