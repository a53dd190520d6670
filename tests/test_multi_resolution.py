import math

import numpy as np
import pytest

from slam2d.frame import SE2, Frame, Scan2d, normalize_angle
from slam2d.multi_resolution import MRLikelihoodField

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


def occupancy_from_scan(scan: Scan2d) -> np.ndarray:
    occu = np.full((1000, 1000), 127, dtype=np.uint8)
    for _, r, a in scan.valid_points():
        x = int(r * math.cos(a) * 20.0 + 500)
        y = int(r * math.sin(a) * 20.0 + 500)
        if 0 <= x < 1000 and 0 <= y < 1000:
            occu[y, x] = 0
    return occu


def test_resolutions_and_levels():
    mr = MRLikelihoodField()
    assert mr.levels == 4
    assert [mr.resolution(i) for i in range(4)] == [2.5, 5.0, 10.0, 20.0]
    assert mr.resolution() == 2.5


def test_field_images_per_level():
    occu = np.full((1000, 1000), 127, dtype=np.uint8)
    occu[400, 600] = 0
    mr = MRLikelihoodField()
    mr.set_field_image_from_occu_map(occu)
    images = mr.get_field_image()
    assert [img.shape for img in images] == [
        (125, 125, 3),
        (250, 250, 3),
        (500, 500, 3),
        (1000, 1000, 3),
    ]
    assert images[3][400, 600, 0] == 0
    assert images[1][100, 150, 0] == 0
    assert images[1][100, 153, 0] == 25
    assert images[0][50, 75, 0] == 0
    assert images[0][0, 0, 0] == 255


def test_match_loaded_frame_against_submap(tmp_path):
    pose_submap = SE2(1.0, 0.5, 0.1)
    truth = pose_submap * SE2(0.1, 0.05, 0.01)

    mr = MRLikelihoodField()
    mr.set_pose(pose_submap)
    relative_target = room_scan(pose_submap)
    mr.set_field_image_from_occu_map(occupancy_from_scan(relative_target))

    path = tmp_path / "frame_3.txt"
    Frame(scan=room_scan(truth), id=3, pose=pose_submap).dump(path)
    frame = Frame.load(path)
    assert frame.id == 3
    mr.set_source_scan(frame.scan)

    result = mr.align_g2o(pose_submap.inverse() * frame.pose)
    assert result is not None
    frame.pose = pose_submap * result
    assert math.hypot(frame.pose.x - truth.x, frame.pose.y - truth.y) < 0.1
    assert abs(normalize_angle(frame.pose.theta - truth.theta)) < 0.03
    assert len(mr.num_inliers) == 4
    assert all(n > 100 for n in mr.num_inliers)
    assert all(r > 0.4 for r in mr.inlier_ratio)


def test_too_few_points_is_rejected():
    mr = MRLikelihoodField()
    mr.set_field_image_from_occu_map(occupancy_from_scan(room_scan(SE2())))
    mr.set_source_scan(room_scan(SE2(), n=60))
    assert mr.align_g2o(SE2()) is None
    assert len(mr.num_inliers) == 1
    assert mr.num_inliers[0] <= 60


def test_all_points_outside_is_rejected():
    mr = MRLikelihoodField()
    mr.set_field_image_from_occu_map(occupancy_from_scan(room_scan(SE2())))
    mr.set_source_scan(room_scan(SE2()))
    assert mr.align_g2o(SE2(60.0, 0.0, 0.0)) is None
    assert mr.num_inliers == []


def test_align_without_source_raises():
    mr = MRLikelihoodField()
    with pytest.raises(ValueError):
        mr.align_g2o(SE2())