"""Tests for global path smoothing."""

import math

import numpy as np
import pytest

from trajectory_control.nav_types import Pose2D, TaskGoal
from trajectory_control.path import GlobalPlan
from trajectory_control.path_smoother import SmootherMode, smooth_points, smooth_poses

SMOOTHING_MODES = [mode for mode in SmootherMode if mode is not SmootherMode.NONE]


def zigzag(n=12, amplitude=0.2):
    return np.array([[0.5 * i, amplitude * (-1) ** i] for i in range(n)])


def test_no_smoother_is_identity():
    path = zigzag()
    assert np.array_equal(smooth_points(path, SmootherMode.NONE), path)


@pytest.mark.parametrize("mode", SMOOTHING_MODES)
def test_zigzag_is_flattened(mode):
    path = zigzag()

    smoothed = smooth_points(path, mode)

    assert smoothed.shape == path.shape
    assert smoothed[0].tolist() == path[0].tolist()
    assert smoothed[-1].tolist() == path[-1].tolist()
    assert np.max(np.abs(smoothed[1:-1, 1])) < 0.2
    assert np.sum(np.abs(np.diff(smoothed[:, 1]))) < np.sum(np.abs(np.diff(path[:, 1])))
    # Symmetric kernels keep the evenly spaced progress along x
    assert smoothed[:, 0].tolist() == pytest.approx(path[:, 0].tolist())


def test_interior_values_of_each_filter():
    path = zigzag()
    i = 5  # y = -0.2, far from both ends

    assert smooth_points(path, "ma3")[i, 1] == pytest.approx(0.2 / 3)
    assert smooth_points(path, "ma5")[i, 1] == pytest.approx(-0.2 / 5)
    assert smooth_points(path, "sg5")[i, 1] == pytest.approx(0.2 * 13 / 35)
    assert smooth_points(path, "sg7")[i, 1] == pytest.approx(-0.2 * 5 / 21)


def test_in_place_average_uses_smoothed_predecessor():
    path = zigzag()

    in_place = smooth_points(path, SmootherMode.MOVING_AVERAGE_3_IN_PLACE)
    plain = smooth_points(path, SmootherMode.MOVING_AVERAGE_3)

    assert in_place[1, 1] == pytest.approx(plain[1, 1])
    assert in_place[2, 1] == pytest.approx((in_place[1, 1] + path[2, 1] + path[3, 1]) / 3)
    assert not np.allclose(in_place, plain)
    assert path[1, 1] == pytest.approx(-0.2)


def test_savitzky_golay_keeps_parabola():
    xs = np.linspace(0.0, 3.0, 10)
    parabola = np.column_stack([xs, 0.5 * xs ** 2])

    for mode in (SmootherMode.SAVITZKY_GOLAY_5, SmootherMode.SAVITZKY_GOLAY_7):
        smoothed = smooth_points(parabola, mode)
        assert smoothed[2:-2, 1].tolist() == pytest.approx(parabola[2:-2, 1].tolist())
    assert smooth_points(parabola, "ma3")[4, 1] > parabola[4, 1]


def test_short_and_invalid_input():
    assert smooth_points([[0.0, 0.0], [1.0, 1.0]], "sg7").tolist() == [[0.0, 0.0], [1.0, 1.0]]
    assert smooth_points([], "ma3").shape == (0, 2)
    with pytest.raises(ValueError):
        smooth_points(zigzag(), "gaussian")
    with pytest.raises(ValueError):
        smooth_points([[0.0, 0.0, 0.0]] * 4, "ma3")


def test_smoothed_poses_head_along_new_path():
    goal = TaskGoal.from_points([list(p) + [0.0] for p in zigzag(n=6)[:-1]] + [[2.5, 0.2, 1.0]], "map")

    poses = smooth_poses(goal.poses, SmootherMode.SAVITZKY_GOLAY_5)

    assert poses[-1] == goal.poses[-1]
    for a, b in zip(poses[:-1], poses[1:]):
        assert a.yaw == pytest.approx(math.atan2(b.y - a.y, b.x - a.x))
        assert a.frame_id == "map"


def test_plan_built_with_smoother():
    goal = TaskGoal.from_points(zigzag().tolist(), "odom")

    raw = GlobalPlan.from_goal(goal)
    smoothed = GlobalPlan.from_goal(goal, "ma5")

    assert raw.xy.tolist() == zigzag().tolist()
    assert abs(smoothed[5].y) < abs(raw[5].y)
    assert smoothed.goal == raw.goal
    assert smoothed.frame_id == "odom"


def test_single_pose_goal_unchanged():
    goal = TaskGoal.from_destination(Pose2D(1.0, 2.0, 0.5, "map"))
    assert smooth_poses(goal.poses, "sg7") == list(goal.poses)
