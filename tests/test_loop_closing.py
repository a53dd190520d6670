import math

import pytest

from slam2d.frame import SE2, Frame, Scan2d
from slam2d.loop_closing import LoopClosing, LoopConstraint
from slam2d.submap import Submap


def room_scan(ox=0.0, oy=0.0, half_x=5.0, half_y=4.0, beams=360):
    inc = 2 * math.pi / beams
    ranges = []
    for i in range(beams):
        a = -math.pi + i * inc
        c, s = math.cos(a), math.sin(a)
        ts = []
        if c > 1e-9:
            ts.append((half_x - ox) / c)
        elif c < -1e-9:
            ts.append((-half_x - ox) / c)
        if s > 1e-9:
            ts.append((half_y - oy) / s)
        elif s < -1e-9:
            ts.append((-half_y - oy) / s)
        ranges.append(min(ts))
    return Scan2d(-math.pi, -math.pi + (beams - 1) * inc, inc, 0.1, 30.0, ranges)


def make_submaps(loop, poses, finished=True):
    submaps = []
    for sid, pose in enumerate(poses):
        submap = Submap(pose)
        submap.id = sid
        submap.occu_map.add_lidar_frame(Frame(scan=room_scan()))
        loop.add_new_submap(submap)
        submaps.append(submap)
    if finished:
        for submap in submaps[:-1]:
            loop.add_finished_submap(submap)
    return submaps


def test_single_submap_finds_no_loops():
    loop = LoopClosing()
    submap = Submap(SE2())
    loop.add_new_submap(submap)
    loop.add_new_frame(Frame(scan=room_scan()))
    assert loop.get_loops() == {}
    assert loop.has_new_loops is False


def test_far_frame_is_not_a_candidate():
    loop = LoopClosing()
    make_submaps(loop, [SE2(), SE2(), SE2()], finished=False)
    frame = Frame(scan=room_scan(), pose=SE2(100.0, 0.0, 0.0))
    loop.add_new_frame(frame)
    assert loop.get_loops() == {}
    assert loop.has_new_loops is False


def test_candidate_without_finished_field_raises():
    loop = LoopClosing()
    make_submaps(loop, [SE2(), SE2(), SE2()], finished=False)
    with pytest.raises(KeyError):
        loop.add_new_frame(Frame(scan=room_scan()))


def test_candidate_match_is_logged(tmp_path):
    debug = tmp_path / "loops.txt"
    loop = LoopClosing(debug_path=debug)
    pose0 = SE2(0.2, -0.1, 0.05)
    make_submaps(loop, [pose0, SE2(), SE2()])
    frame = Frame(scan=room_scan(), id=7)
    loop.add_new_frame(frame)

    lines = debug.read_text().splitlines()
    assert len(lines) == 1
    tokens = lines[0].split()
    assert tokens[:2] == ["7", "0"]
    assert float(tokens[2]) == pytest.approx(pose0.x)
    assert float(tokens[3]) == pytest.approx(pose0.y)
    assert float(tokens[4]) == pytest.approx(pose0.theta)
    assert all(key[1] == 2 and c.valid for key, c in loop.get_loops().items())


def test_get_loops_returns_a_copy():
    loop = LoopClosing()
    loops = loop.get_loops()
    loops[(0, 2)] = LoopConstraint(0, 2, SE2())
    assert loop.get_loops() == {}