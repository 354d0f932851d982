"""Tests for via-point derivation and overrides."""

import math

import pytest

from trajectory_control.nav_types import Pose2D
from trajectory_control.via_points import ViaPointManager, derive_via_points


def line(xs):
    return [Pose2D(x, 0.0, 0.0, "odom") for x in xs]


def test_via_points_respect_min_separation():
    window = line([0.0, 0.1, 0.3, 0.55, 0.6, 1.2, 1.25, 1.3])

    points = derive_via_points(window, 0.5)

    # Consecutive via-points (except the appended endpoint) are spaced by the threshold
    for a, b in zip(points[:-2], points[1:-1]):
        assert math.hypot(b[0] - a[0], b[1] - a[1]) >= 0.5
    assert points[0] == (0.55, 0.0)
    assert points[1] == (1.2, 0.0)


def test_final_pose_always_emitted():
    window = line([0.0, 1.0, 1.1])

    points = derive_via_points(window, 0.5)

    assert points == [(1.0, 0.0), (1.1, 0.0)]


def test_short_window_still_keeps_goal():
    assert derive_via_points(line([0.0, 0.1]), 0.5) == [(0.1, 0.0)]


def test_empty_window_gives_no_via_points():
    assert derive_via_points([], 0.5) == []
    assert derive_via_points(line([0.0, 1.0]), 0.0) == []


def test_override_used_verbatim():
    manager = ViaPointManager(0.5)
    manager.set_override([[3.0, 1.0], [0.0, 0.0]])

    points = manager.derive_from_window(line([0.0, 1.0, 2.0]))

    assert manager.override_active
    assert points == ((3.0, 1.0), (0.0, 0.0))
    assert manager.points == points


def test_clearing_override_restores_derivation():
    manager = ViaPointManager(0.5)
    manager.set_override([[3.0, 1.0]])
    manager.clear_override()

    points = manager.derive_from_window(line([0.0, 1.0, 2.0]))

    assert not manager.override_active
    assert points == ((1.0, 0.0), (2.0, 0.0))


def test_non_finite_override_rejected():
    manager = ViaPointManager(0.5)
    with pytest.raises(ValueError):
        manager.set_override([[0.0, math.inf]])
    assert not manager.override_active
