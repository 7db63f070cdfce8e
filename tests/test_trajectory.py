import math

import numpy as np
import pytest

from visualslam.settings import Sensor
from visualslam.trajectory import (
    FrameRecord,
    KeyFrameRecord,
    invert_pose,
    resolve_reference,
    rotation_to_quaternion,
    save_keyframe_trajectory_tum,
    save_trajectory_kitti,
    save_trajectory_tum,
)


def _pose(rotation=None, translation=(0.0, 0.0, 0.0)):
    p = np.eye(4)
    if rotation is not None:
        p[:3, :3] = rotation
    p[:3, 3] = translation
    return p


def _rot_z(angle):
    c, s = math.cos(angle), math.sin(angle)
    return np.array([[c, -s, 0.0], [s, c, 0.0], [0.0, 0.0, 1.0]])


def _read(path):
    return [[float(v) for v in line.split()] for line in path.read_text().splitlines()]


def test_quaternion_of_identity():
    assert np.allclose(rotation_to_quaternion(np.eye(3)), [0.0, 0.0, 0.0, 1.0])


def test_quaternion_of_half_turn_about_x():
    q = rotation_to_quaternion(np.diag([1.0, -1.0, -1.0]))
    assert np.allclose(q, [1.0, 0.0, 0.0, 0.0])


def test_quaternion_about_z_has_expected_components():
    angle = 0.7
    q = rotation_to_quaternion(_rot_z(angle))
    assert np.allclose(q, [0.0, 0.0, math.sin(angle / 2), math.cos(angle / 2)])
    assert np.linalg.norm(q) == pytest.approx(1.0)


def test_invert_pose_round_trip():
    pose = _pose(_rot_z(0.3), (1.0, -2.0, 0.5))
    assert np.allclose(invert_pose(pose) @ pose, np.eye(4))


def test_resolve_reference_walks_to_good_parent():
    parent = KeyFrameRecord(0, 0.0, _pose())
    tcp = _pose(_rot_z(0.2), (0.1, 0.0, 0.0))
    child = KeyFrameRecord(1, 1.0, _pose(), bad=True, parent=parent, relative_to_parent=tcp)
    found, transform = resolve_reference(child)
    assert found is parent
    assert np.allclose(transform, tcp)


def test_resolve_reference_without_parent_raises():
    orphan = KeyFrameRecord(3, 0.0, _pose(), bad=True)
    with pytest.raises(ValueError):
        resolve_reference(orphan)


def test_tum_trajectory_rejects_monocular(tmp_path):
    kf = KeyFrameRecord(0, 0.0, _pose())
    with pytest.raises(ValueError):
        save_trajectory_tum(tmp_path / "t.txt", [kf], [], Sensor.MONOCULAR)


def test_tum_trajectory_skips_lost_frames(tmp_path):
    kf = KeyFrameRecord(0, 0.0, _pose())
    frames = [
        FrameRecord(_pose(), kf, 1.0),
        FrameRecord(_pose(), kf, 2.0, lost=True),
        FrameRecord(_pose(translation=(0.0, 0.0, -1.0)), kf, 3.0),
    ]
    path = tmp_path / "traj.txt"
    assert save_trajectory_tum(path, [kf], frames, Sensor.STEREO) == 2
    rows = _read(path)
    assert [row[0] for row in rows] == [1.0, 3.0]
    assert rows[0][1:] == [0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 1.0]
    # Camera moved forward by one unit in world coordinates.
    assert np.allclose(rows[1][1:4], [0.0, 0.0, 1.0])


def test_tum_trajectory_is_relative_to_first_keyframe(tmp_path):
    first = KeyFrameRecord(5, 0.0, _pose(_rot_z(0.4), (1.0, 2.0, 3.0)))
    later = KeyFrameRecord(9, 1.0, _pose())
    frames = [FrameRecord(_pose(), first, 0.5)]
    path = tmp_path / "traj.txt"
    save_trajectory_tum(path, [later, first], frames, Sensor.RGBD)
    row = _read(path)[0]
    assert np.allclose(row[1:], [0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 1.0], atol=1e-9)


def test_tum_line_format(tmp_path):
    kf = KeyFrameRecord(0, 0.0, _pose())
    path = tmp_path / "traj.txt"
    save_trajectory_tum(path, [kf], [FrameRecord(_pose(), kf, 1.5)], Sensor.STEREO)
    line = path.read_text().splitlines()[0]
    fields = line.split(" ")
    assert fields[0] == "1.500000"
    assert len(fields) == 8
    assert all(len(f.split(".")[1]) == 9 for f in fields[1:])


def test_keyframe_trajectory_writes_centers_and_skips_bad(tmp_path):
    kf0 = KeyFrameRecord(0, 0.0, _pose(translation=(1.0, 2.0, 3.0)))
    kf1 = KeyFrameRecord(1, 1.0, _pose(), bad=True, parent=kf0, relative_to_parent=_pose())
    kf2 = KeyFrameRecord(2, 2.0, _pose(_rot_z(0.3)))
    path = tmp_path / "kf.txt"
    assert save_keyframe_trajectory_tum(path, [kf2, kf1, kf0]) == 2
    rows = _read(path)
    assert [row[0] for row in rows] == [0.0, 2.0]
    assert np.allclose(rows[0][1:4], [-1.0, -2.0, -3.0])
    assert np.linalg.norm(rows[1][4:]) == pytest.approx(1.0, abs=1e-6)


def test_kitti_trajectory_writes_all_frames(tmp_path):
    kf = KeyFrameRecord(0, 0.0, _pose())
    frames = [FrameRecord(_pose(), kf, 0.0), FrameRecord(_pose(), kf, 1.0, lost=True)]
    path = tmp_path / "kitti.txt"
    assert save_trajectory_kitti(path, [kf], frames) == 2
    rows = _read(path)
    assert all(len(row) == 12 for row in rows)
    assert np.allclose(np.array(rows[0]).reshape(3, 4), np.eye(4)[:3])


def test_kitti_trajectory_follows_culled_reference(tmp_path):
    root = KeyFrameRecord(0, 0.0, _pose())
    tcp = _pose(translation=(0.0, 0.0, -2.0))
    culled = KeyFrameRecord(1, 1.0, _pose(), bad=True, parent=root, relative_to_parent=tcp)
    path = tmp_path / "kitti.txt"
    save_trajectory_kitti(path, [root, culled], [FrameRecord(_pose(), culled, 1.0)])
    matrix = np.array(_read(path)[0]).reshape(3, 4)
    assert np.allclose(matrix, invert_pose(tcp)[:3])


def test_kitti_trajectory_without_keyframes_raises(tmp_path):
    with pytest.raises(ValueError):
        save_trajectory_kitti(tmp_path / "kitti.txt", [], [])