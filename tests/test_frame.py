import math

import numpy as np
import pytest

from slam2d.frame import SE2, Frame, Scan2d, normalize_angle


def test_inverse_composes_to_identity():
    pose = SE2(1.5, -2.0, 0.7)
    ident = pose * pose.inverse()
    assert ident.x == pytest.approx(0.0, abs=1e-12)
    assert ident.y == pytest.approx(0.0, abs=1e-12)
    assert ident.theta == pytest.approx(0.0, abs=1e-12)


def test_transform_then_inverse_returns_point():
    pose = SE2(0.3, 0.4, -1.2)
    p = np.array([2.0, -1.0])
    back = pose.inverse() * (pose * p)
    assert np.allclose(back, p)


def test_rotation_by_quarter_turn():
    pose = SE2(0.0, 0.0, math.pi / 2)
    assert np.allclose(pose.transform((1.0, 0.0)), [0.0, 1.0])


@pytest.mark.parametrize("xi", [(0.1, 0.2, 0.3), (1.0, -2.0, 0.0), (-0.5, 0.5, 2.5)])
def test_exp_log_round_trip(xi):
    assert np.allclose(SE2.exp(xi).log(), xi)


def test_normalize_angle_wraps():
    assert normalize_angle(3 * math.pi / 2) == pytest.approx(-math.pi / 2)
    assert normalize_angle(0.25) == pytest.approx(0.25)


def test_valid_points_filters_out_of_range():
    scan = Scan2d(0.0, 1.0, 0.5, 0.1, 10.0, [1.0, 20.0, 0.05])
    pts = list(scan.valid_points())
    assert [p[0] for p in pts] == [0]
    assert pts[0][1] == 1.0


def test_dump_load_round_trip(tmp_path):
    scan = Scan2d(-1.0, 1.0, 0.5, 0.1, 30.0, [1.0, 2.5, 3.25, 0.0, 7.5])
    frame = Frame(scan=scan, id=7, keyframe_id=3, timestamp=12.5, pose=SE2(1.0, 2.0, 0.3))
    path = tmp_path / "frame.txt"
    frame.dump(path)
    loaded = Frame.load(path)
    assert loaded.id == 7
    assert loaded.keyframe_id == 3
    assert loaded.timestamp == 12.5
    assert loaded.pose.x == pytest.approx(1.0)
    assert loaded.pose.theta == pytest.approx(0.3)
    assert loaded.scan == scan


def test_load_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        Frame.load(tmp_path / "missing.txt")