"""Tests for the task state machine and the control cycle."""

import math
import queue
import time

import pytest

from trajectory_control.config import ControllerConfig
from trajectory_control.nav_types import (
    Obstacle,
    ObstacleSource,
    OutcomeCode,
    Pose2D,
    TaskGoal,
    TaskState,
    Twist2D,
)
from trajectory_control.orchestrator import QueueTaskFront
from trajectory_control.recovery import BackupMode

FORWARD = Twist2D(0.2, 0.0, 0.0)


def straight_goal(start=1.0, end=5.0, step=0.5):
    n = int(round((end - start) / step)) + 1
    return TaskGoal.from_points([[start + i * step, 0.0] for i in range(n)], "odom")


def drain(task):
    records = []
    while True:
        try:
            records.append(task.feedback.get_nowait())
        except queue.Empty:
            return records


def test_feasible_tick_emits_saturated_command(make_harness):
    h = make_harness([Twist2D(1.0, 0.0, 0.0)])
    task = h.orchestrator.submit(straight_goal())

    h.tick()

    assert task.state is TaskState.ACTIVE
    assert len(h.commands) == 1
    assert h.commands[0].twist.vx == pytest.approx(h.config.max_vel_x)
    assert h.optimizer.goal is not None
    assert drain(task)[-1].consecutive_failures == 0


def test_patience_exceeded_after_consecutive_failures(make_harness):
    """5 infeasible cycles with patience 5: feedback reads 5, then FAILED"""
    h = make_harness([None], cfg=ControllerConfig(patience=5))
    task = h.orchestrator.submit(straight_goal())

    h.tick(4)
    assert task.state is TaskState.ACTIVE
    h.tick()

    counters = [f.consecutive_failures for f in drain(task)]
    assert counters == [1, 2, 3, 4, 5]
    assert task.state is TaskState.FAILED
    assert task.result.outcome is OutcomeCode.PATIENCE_EXCEEDED
    assert h.results[-1] == task.result
    assert h.orchestrator.is_idle
    # Infeasible cycles command a stop
    assert all(c.twist == Twist2D() for c in h.commands)


def test_cancel_before_tick_emits_nothing(make_harness):
    h = make_harness([FORWARD])
    task = h.orchestrator.submit(straight_goal())
    h.tick()
    assert len(h.commands) == 1

    assert task.cancel()
    h.tick()

    assert len(h.commands) == 1
    assert task.state is TaskState.CANCELED
    assert task.result.outcome is OutcomeCode.CANCELED
    assert task.wait(0) == task.result


def test_cancel_during_optimization_suppresses_command(make_harness):
    holder = {}

    def cancel_then_answer():
        holder["task"].cancel()
        return FORWARD

    h = make_harness([cancel_then_answer])
    holder["task"] = h.orchestrator.submit(straight_goal())

    h.tick()

    assert h.commands == []
    assert holder["task"].state is TaskState.CANCELED


def test_cancel_on_patience_tick_wins_over_failure(make_harness):
    """Cancel during the fifth infeasible call with patience 5: CANCELED, not FAILED"""
    holder = {}

    def cancel_then_fail():
        holder["task"].cancel()
        return None

    h = make_harness([None, None, None, None, cancel_then_fail], cfg=ControllerConfig(patience=5))
    task = holder["task"] = h.orchestrator.submit(straight_goal())

    h.tick(5)

    assert h.optimizer.calls == 5
    assert task.state is TaskState.CANCELED
    assert task.result.outcome is OutcomeCode.CANCELED
    assert h.results == [task.result]
    assert len(h.commands) == 4


def test_cancel_during_transform_outage_is_canceled(make_harness):
    h = make_harness([FORWARD], cfg=ControllerConfig(patience=2))
    h.source.available = False
    task = h.orchestrator.submit(straight_goal())
    h.tick()

    real_lookup = h.source.lookup

    def cancel_then_fail(*args):
        task.cancel()
        return real_lookup(*args)

    h.source.lookup = cancel_then_fail
    h.tick()

    assert task.state is TaskState.CANCELED
    assert task.result.outcome is OutcomeCode.CANCELED


def test_cancel_with_unknown_id_is_ignored(make_harness):
    h = make_harness([FORWARD])
    task = h.orchestrator.submit(straight_goal())

    assert not h.orchestrator.cancel(task.id + 1)
    assert not task.cancel_requested


def test_new_task_preempts_active_one(make_harness):
    h = make_harness([FORWARD])
    first = h.orchestrator.submit(straight_goal())
    h.tick()

    second = h.orchestrator.submit(straight_goal(end=4.0))

    assert first.state is TaskState.CANCELED
    assert "Preempted" in first.result.message
    assert second.state is TaskState.ACTIVE
    assert h.orchestrator.active_task is second

    h.tick()
    assert h.orchestrator.state.task_id == second.id


def test_invalid_path_rejected_without_preemption(make_harness):
    h = make_harness([FORWARD])
    active = h.orchestrator.submit(straight_goal())

    rejected = h.orchestrator.submit(TaskGoal(poses=(), frame_id="odom"))
    nan_path = h.orchestrator.submit(TaskGoal.from_points([[math.nan, 0.0]], "odom"))

    assert rejected.result.outcome is OutcomeCode.INVALID_PATH
    assert nan_path.state is TaskState.FAILED
    assert active.state is TaskState.ACTIVE


def test_accepted_path_is_smoothed(make_harness):
    zigzag = [[0.5 * i, 0.2 * (-1) ** i] for i in range(12)]
    h = make_harness([FORWARD], cfg=ControllerConfig(path_smoother="ma3"))

    task = h.orchestrator.submit(TaskGoal.from_points(zigzag, "odom"))

    assert task.plan[5].y == pytest.approx(0.2 / 3)
    assert task.plan.goal == task.goal.poses[-1]
    assert task.goal.poses[5].y == pytest.approx(-0.2)


def test_goal_reached_succeeds_and_stops(make_harness):
    h = make_harness([FORWARD], robot_pose=Pose2D(5.0, 0.05, 0.02, "odom"))
    task = h.orchestrator.submit(straight_goal())

    h.tick()

    assert task.state is TaskState.SUCCEEDED
    assert task.result.outcome is OutcomeCode.SUCCESS
    assert h.commands[-1].twist == Twist2D()
    assert h.optimizer.calls == 0


def test_goal_orientation_mismatch_fails(make_harness):
    cfg = ControllerConfig(orientation_patience=3)
    h = make_harness([Twist2D(0.0, 0.0, 0.3)], robot_pose=Pose2D(5.0, 0.0, math.pi / 2, "odom"), cfg=cfg)
    task = h.orchestrator.submit(straight_goal())

    h.tick(3)
    assert task.state is TaskState.ACTIVE
    h.tick()

    assert task.state is TaskState.FAILED
    assert task.result.outcome is OutcomeCode.GOAL_ORIENTATION_MISMATCH


def test_transform_failures_end_task(make_harness):
    h = make_harness([FORWARD], cfg=ControllerConfig(patience=3))
    h.source.available = False
    task = h.orchestrator.submit(straight_goal())

    h.tick(3)

    assert task.result.outcome is OutcomeCode.TRANSFORM_UNAVAILABLE
    assert h.commands == []
    assert h.optimizer.calls == 0


def test_successful_tick_resets_failure_counter(make_harness):
    h = make_harness([FORWARD], cfg=ControllerConfig(patience=5))
    task = h.orchestrator.submit(straight_goal())
    h.source.available = False
    h.tick(2)
    h.source.available = True

    h.tick()

    counters = [f.consecutive_failures for f in drain(task)]
    assert counters == [1, 2, 0]
    assert drain(task) == []
    assert h.orchestrator.state.consecutive_failures == 0


def test_feedback_reports_distance_remaining(make_harness):
    h = make_harness([FORWARD])
    task = h.orchestrator.submit(straight_goal())

    h.tick()

    feedback = drain(task)[-1]
    assert feedback.distance_remaining == pytest.approx(5.0)
    assert feedback.current_pose.x == pytest.approx(0.0)


def test_simple_rotation_replaces_optimizer(make_harness):
    cfg = ControllerConfig(backup_trigger_count=2, patience=10)
    h = make_harness([None], robot_pose=Pose2D(0.0, 0.0, math.pi / 2, "odom"), cfg=cfg)
    task = h.orchestrator.submit(straight_goal())

    h.tick(3)

    assert h.optimizer.calls == 2
    assert h.tuning.mode is BackupMode.SIMPLE_ROTATION
    assert h.commands[-1].twist.vx == 0.0
    assert h.commands[-1].twist.omega == pytest.approx(-cfg.rotation_speed)
    assert h.orchestrator.state.consecutive_failures == 2
    assert task.state is TaskState.ACTIVE


def test_shrunk_window_goal_gets_estimated_heading(make_harness):
    zigzag = [[1.0 + 0.5 * i, 0.3 * (i % 2)] for i in range(9)]
    h = make_harness([None, FORWARD])
    task = h.orchestrator.submit(TaskGoal.from_points(zigzag, "odom"))

    h.tick(2)

    assert h.tuning.mode is BackupMode.SHRINK_HORIZON
    assert len(h.optimizer.window) == 4
    goal = h.optimizer.goal
    assert (goal.x, goal.y) == pytest.approx((2.5, 0.3))
    expected = h.orchestrator.tracker.estimate_goal_orientation(task.plan, goal, 3, Pose2D(frame_id="odom"))
    assert goal.yaw == pytest.approx(expected)
    assert goal.yaw != pytest.approx(task.plan[3].yaw)
    assert h.optimizer.window[-1] == goal


def test_sustained_oscillation_fails_task_and_stops(make_harness):
    cfg = ControllerConfig(oscillation_filter_duration=1.0, control_rate=10.0, oscillation_timeout=0.25)
    h = make_harness([Twist2D(0.0, 0.0, 0.3), Twist2D(0.0, 0.0, -0.3)] * 10, cfg=cfg)
    task = h.orchestrator.submit(straight_goal())

    # Detection on the fifth tick switches to in-place rotation, which
    # completes at once and clears the detector
    h.tick(7)
    assert task.state is TaskState.ACTIVE
    assert h.orchestrator.recovery.oscillation_duration(h.clock()) > 0.0

    h.tick()

    assert task.state is TaskState.FAILED
    assert task.result.outcome is OutcomeCode.OSCILLATION_DETECTED
    assert h.commands[-1].twist == Twist2D()
    assert h.orchestrator.is_idle


def test_obstacles_and_via_points_reach_optimizer(make_harness):
    h = make_harness([FORWARD])
    h.registry.refresh_from_primary_source([Obstacle(((3.0, 2.0),), ObstacleSource.OCCUPANCY, 0.0)])
    h.orchestrator.submit(straight_goal())

    h.tick()

    assert len(h.optimizer.obstacles) == 1
    # The local goal ends the via-point sequence
    assert h.optimizer.via_points[-1] == pytest.approx((4.0, 0.0))


def test_queue_front_sequences_paths(make_harness):
    h = make_harness([FORWARD])
    ready = []
    front = QueueTaskFront(h.orchestrator, lambda: ready.append(True))

    front.start()
    assert len(ready) == 1

    task = front.on_path(straight_goal())
    assert task.state is TaskState.ACTIVE
    assert front.on_path(straight_goal()) is None

    assert front.on_feedback("completed")
    assert task.state is TaskState.SUCCEEDED
    assert front.current_task is None
    assert len(ready) == 2

    second = front.on_path(straight_goal())
    assert front.on_feedback("aborted")
    assert second.state is TaskState.CANCELED
    assert len(ready) == 3

    assert not front.on_feedback("completed")


def test_queue_front_ready_after_rejected_path(make_harness):
    h = make_harness([FORWARD])
    ready = []
    front = QueueTaskFront(h.orchestrator, lambda: ready.append(True))

    task = front.on_path(TaskGoal(poses=(), frame_id="odom"))

    assert task.state is TaskState.FAILED
    assert front.current_task is None
    assert len(ready) == 1


def test_control_loop_thread_runs_and_stops(make_harness):
    h = make_harness([FORWARD])
    task = h.orchestrator.submit(straight_goal())

    h.orchestrator.start()
    try:
        deadline = time.monotonic() + 2.0
        while not h.commands and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        h.orchestrator.stop()

    assert h.commands
    assert task.state is TaskState.CANCELED
    assert task.result.message == "Controller stopped"
    assert h.commands[-1].twist == Twist2D()


def test_control_loop_maps_exceptions_to_internal_error(make_harness):
    def explode():
        raise RuntimeError("optimizer crashed")

    h = make_harness([explode])
    task = h.orchestrator.submit(straight_goal())

    h.orchestrator.start()
    try:
        result = task.wait(2.0)
    finally:
        h.orchestrator.stop()

    assert result is not None
    assert result.outcome is OutcomeCode.INTERNAL_ERROR
    assert "optimizer crashed" in result.message
