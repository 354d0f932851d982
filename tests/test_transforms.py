"""Tests for the transform buffer and the controller transform gateway."""

import math

import pytest

from conftest import ManualClock, StaticTransformSource
from trajectory_control.nav_types import Pose2D
from trajectory_control.transforms import TransformBuffer, TransformError, TransformGateway


@pytest.fixture
def buffer():
    tf = TransformBuffer()
    tf.set_transform("map", "odom", Pose2D(1.0, 0.0, 0.0), stamp=0.0, static=True)
    tf.set_transform("odom", "base_link", Pose2D(1.0, 0.0, math.pi / 2), stamp=10.0)
    return tf


def test_chained_lookup(buffer):
    pose = buffer.lookup("map", "base_link", at_time=10.0, tolerance=0.1)

    assert pose.frame_id == "map"
    assert pose.x == pytest.approx(2.0)
    assert pose.y == pytest.approx(0.0)
    assert pose.yaw == pytest.approx(math.pi / 2)


def test_inverse_lookup(buffer):
    pose = buffer.lookup("base_link", "map", at_time=10.0, tolerance=0.1)

    assert pose.x == pytest.approx(0.0, abs=1e-9)
    assert pose.y == pytest.approx(2.0)
    assert pose.yaw == pytest.approx(-math.pi / 2)


def test_newest_sample_used_without_time(buffer):
    buffer.set_transform("odom", "base_link", Pose2D(3.0, 0.0, 0.0), stamp=11.0)

    assert buffer.lookup("odom", "base_link").x == pytest.approx(3.0)
    assert buffer.lookup("odom", "base_link", at_time=10.02, tolerance=0.1).x == pytest.approx(1.0)


def test_stale_sample_raises(buffer):
    with pytest.raises(TransformError):
        buffer.lookup("map", "base_link", at_time=20.0, tolerance=0.1)


def test_disconnected_frames_raise(buffer):
    buffer.set_transform("world", "camera", Pose2D(), stamp=10.0)

    with pytest.raises(TransformError):
        buffer.lookup("map", "camera", at_time=10.0, tolerance=0.1)


def test_reparenting_rejected(buffer):
    with pytest.raises(ValueError):
        buffer.set_transform("map", "base_link", Pose2D(), stamp=10.0)
    with pytest.raises(ValueError):
        buffer.set_transform("odom", "laser", Pose2D(math.nan, 0.0, 0.0), stamp=10.0)


def test_identity_for_same_frame(buffer):
    assert buffer.lookup("odom", "odom") == Pose2D(frame_id="odom")


def test_gateway_retries_once():
    source = StaticTransformSource(Pose2D(1.0, 2.0, 0.0))
    sleeps = []
    real_lookup = source.lookup

    def flaky(*args):
        if source.calls == 0:
            source.calls += 1
            raise TransformError("not yet")
        return real_lookup(*args)

    source.lookup = flaky
    gateway = TransformGateway(source, "odom", "base_link", timeout=0.05, clock=ManualClock(), sleep=sleeps.append)

    pose = gateway.robot_pose()

    assert pose == Pose2D(1.0, 2.0, 0.0, "odom")
    assert sleeps == [0.05]


def test_gateway_returns_none_after_second_failure():
    source = StaticTransformSource(Pose2D())
    source.available = False
    sleeps = []
    gateway = TransformGateway(source, "odom", "base_link", timeout=0.05, clock=ManualClock(), sleep=sleeps.append)

    assert gateway.robot_pose() is None
    assert source.calls == 2
    assert len(sleeps) == 1


def test_gateway_identity_skips_source():
    source = StaticTransformSource(Pose2D(1.0, 0.0, 0.0))
    gateway = TransformGateway(source, "odom", "base_link", timeout=0.0)

    assert gateway.lookup("odom", "odom") == Pose2D(frame_id="odom")
    assert source.calls == 0


def test_gateway_over_buffer(buffer):
    gateway = TransformGateway(buffer, "map", "base_link", tolerance=0.1, timeout=0.0, clock=lambda: 10.0)

    pose = gateway.robot_pose()

    assert pose.x == pytest.approx(2.0)
