"""Tests for goals and the global plan container."""

import math

import pytest

from trajectory_control.nav_types import Pose2D, TaskGoal, average_angles, normalize_angle
from trajectory_control.path import GlobalPlan


def test_from_points_fills_missing_headings():
    goal = TaskGoal.from_points([[0, 0], [1, 1], [1, 2]], "map")

    assert goal.poses[0].yaw == pytest.approx(math.pi / 4)
    assert goal.poses[1].yaw == pytest.approx(math.pi / 2)
    # The last point repeats the previous heading
    assert goal.poses[2].yaw == pytest.approx(math.pi / 2)
    assert all(p.frame_id == "map" for p in goal.poses)


def test_from_destination_single_pose():
    goal = TaskGoal.from_destination(Pose2D(2.0, 3.0, 1.0, "map"))

    assert len(goal.poses) == 1
    assert goal.frame_id == "map"


def test_plan_lengths():
    plan = GlobalPlan.from_goal(TaskGoal.from_points([[0, 0], [3, 0], [3, 4]], "map"))

    assert plan.arc_length() == pytest.approx(7.0)
    assert plan.arc_length(1) == pytest.approx(4.0)
    assert plan.remaining_distance(0.0, -1.0) == pytest.approx(8.0)


def test_prune_prefix_keeps_last_waypoint():
    plan = GlobalPlan.from_goal(TaskGoal.from_points([[i, 0] for i in range(4)], "map"))

    assert plan.prune_prefix(10) == 3
    assert len(plan) == 1
    assert plan.goal.x == 3.0
    assert plan.xy.shape == (1, 2)
    assert plan.prune_prefix(0) == 0


def test_plan_validity():
    assert not GlobalPlan([], "map").is_valid()
    assert not GlobalPlan([Pose2D(math.nan, 0.0)], "map").is_valid()
    assert GlobalPlan([Pose2D(1.0, 0.0)], "map").is_valid()


def test_angle_helpers():
    assert normalize_angle(3 * math.pi / 2) == pytest.approx(-math.pi / 2)
    assert abs(average_angles([math.pi - 0.1, -math.pi + 0.1])) == pytest.approx(math.pi)
    assert average_angles([]) == 0.0


def test_pose_compose_and_inverse_cancel():
    pose = Pose2D(1.0, -2.0, 0.7, "odom")

    identity = pose.inverse("odom").compose(pose)

    assert identity.x == pytest.approx(0.0, abs=1e-9)
    assert identity.y == pytest.approx(0.0, abs=1e-9)
    assert identity.yaw == pytest.approx(0.0, abs=1e-9)
