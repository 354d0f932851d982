"""Tests for WebSocket message routing and serialization."""

import asyncio
import json
import math

import pytest

from trajectory_control.client import (
    TrajectoryControlClient,
    command_to_message,
    feedback_to_message,
    result_to_message,
)
from trajectory_control.nav_types import (
    CommandOutput,
    ObstacleSource,
    OutcomeCode,
    Pose2D,
    TaskFeedback,
    TaskResult,
    TaskState,
    Twist2D,
)


@pytest.fixture
def client():
    return TrajectoryControlClient("ws://localhost:8765", record=False)


def route(client, **message):
    client.parse_and_route_message(json.dumps(message))


def test_invalid_uri_rejected():
    with pytest.raises(ValueError):
        TrajectoryControlClient("http://localhost:8765", record=False)


def test_odometry_feeds_transforms_and_velocity(client):
    route(client, message_type="odometry", pose=[1.0, 2.0, 0.5], velocity=[0.3, 0.0, 0.1])

    pose = client.gateway.robot_pose(at_time=None)

    assert pose is not None
    assert pose.x == pytest.approx(1.0)
    assert pose.yaw == pytest.approx(0.5)
    assert client.orchestrator._odom_velocity == Twist2D(0.3, 0.0, 0.1)


def test_static_transform_message(client):
    route(client, message_type="transform", parent="map", child="odom", pose=[1.0, 0.0, 0.0], static=True)
    route(client, message_type="odometry", pose=[1.0, 0.0, 0.0])

    pose = client.transforms.lookup("map", "base_link")

    assert pose.x == pytest.approx(2.0)


def test_path_message_submits_task(client):
    route(client, message_type="path", poses=[[1.0, 0.0], [2.0, 0.0]])

    task = client.orchestrator.active_task
    assert task is not None
    assert len(task.plan) == 2
    assert task.plan.frame_id == client.config.global_frame


def test_destination_message_builds_single_pose_goal(client):
    route(client, message_type="path", pose=[3.0, 1.0, 1.57], frame_id="map")

    task = client.orchestrator.active_task
    assert len(task.plan) == 1
    assert task.plan.goal.yaw == pytest.approx(1.57)


def test_queued_path_ignored_while_busy(client):
    route(client, message_type="path", poses=[[1.0, 0.0]], queued=True)
    first = client.queue_front.current_task

    route(client, message_type="path", poses=[[5.0, 0.0]], queued=True)

    assert client.queue_front.current_task is first
    assert client.orchestrator.active_task is first


def test_queue_feedback_completes_task(client):
    route(client, message_type="path", poses=[[1.0, 0.0]], queued=True)
    task = client.queue_front.current_task

    route(client, message_type="queue_feedback", status="completed")

    assert task.state is TaskState.SUCCEEDED
    assert client.orchestrator.is_idle


def test_cancel_message_flags_task(client):
    route(client, message_type="path", poses=[[1.0, 0.0]])
    task = client.orchestrator.active_task

    route(client, message_type="cancel", task_id=task.id + 5)
    assert not task.cancel_requested

    route(client, message_type="cancel", task_id=task.id)
    assert task.cancel_requested


def test_obstacle_messages_reach_registry(client):
    route(client, message_type="obstacles", obstacles=[{"points": [[1.0, 1.0]]}, {"points": []}])
    route(client, message_type="polygons", polygons=[[[0.0, 0.0], [1.0, 0.0]]])

    sources = sorted(o.source.value for o in client.registry.snapshot())
    assert sources == [ObstacleSource.CONVERTER.value, ObstacleSource.CUSTOM.value]

    route(client, message_type="occupancy", grid=[[100, 0], [0, 100]], resolution=1.0)

    snapshot = client.registry.snapshot()
    assert len([o for o in snapshot if o.source is ObstacleSource.OCCUPANCY]) == 2
    assert len([o for o in snapshot if o.source is ObstacleSource.CONVERTER]) == 0


def test_via_points_message_sets_and_clears_override(client):
    route(client, message_type="via_points", points=[[1.0, 2.0]])
    assert client.via_points.override_active

    route(client, message_type="via_points", points=[])
    assert not client.via_points.override_active


def test_malformed_messages_are_harmless(client):
    client.parse_and_route_message("{not json")
    route(client, message_type="odometry")
    route(client, message_type="via_points", points=[[0.0, math.inf]])
    route(client, message_type="unknown")
    client.parse_and_route_message(json.dumps({"message_type": "path", "poses": []}).encode())

    assert client.orchestrator.active_task is None
    assert not client.via_points.override_active


def test_publish_is_dropped_without_loop(client):
    client.publish({"message_type": "queue_ready"})
    assert client._outbox is None


def test_publish_crosses_into_event_loop(client):
    async def scenario():
        client._loop = asyncio.get_running_loop()
        client._outbox = asyncio.Queue()
        client.publish({"message_type": "queue_ready"})
        return await asyncio.wait_for(client._outbox.get(), timeout=1.0)

    assert asyncio.run(scenario()) == {"message_type": "queue_ready"}


class RecordingSocket:
    def __init__(self):
        self.sent = []

    async def send(self, data):
        self.sent.append(json.loads(data))


def test_streaming_messages_not_replayed_after_outage(client):
    """50 commands published while disconnected never reach the next connection"""
    command = command_to_message(CommandOutput(1.0, Twist2D(0.2, 0.0, 0.0)))
    result = result_to_message(TaskResult(1, TaskState.CANCELED, OutcomeCode.CANCELED))
    socket = RecordingSocket()

    async def scenario():
        client._loop = asyncio.get_running_loop()
        client._outbox = asyncio.Queue()
        for _ in range(50):
            client.publish(command)
        client.publish(result)
        # Left over from the previous connection
        client._outbox.put_nowait(command)
        await asyncio.sleep(0.01)

        sender = asyncio.create_task(client._send_outbound(socket))
        await asyncio.sleep(0.01)
        client._connected = True
        client.publish(command)
        await asyncio.sleep(0.01)
        sender.cancel()
        try:
            await sender
        except asyncio.CancelledError:
            pass

    asyncio.run(scenario())

    assert [m["message_type"] for m in socket.sent] == ["result", "cmd_vel"]


def test_serializers():
    command = command_to_message(CommandOutput(1.0, Twist2D(0.2, 0.0, 0.1), track_speeds=(0.1, 0.3)))
    assert command["message_type"] == "cmd_vel"
    assert command["v_left"] == 0.1
    assert "steering_angle" not in command

    feedback = feedback_to_message(
        TaskFeedback(3, 1.0, Pose2D(1.0, 2.0, 0.0), 4.5, 2, OutcomeCode.NO_FEASIBLE_COMMAND)
    )
    assert feedback["pose"] == [1.0, 2.0, 0.0]
    assert feedback["last_error"] == "NO_FEASIBLE_COMMAND"

    result = result_to_message(TaskResult(3, TaskState.FAILED, OutcomeCode.PATIENCE_EXCEEDED, "x"))
    assert result == {
        "message_type": "result",
        "task_id": 3,
        "state": "failed",
        "outcome": "PATIENCE_EXCEEDED",
        "code": 103,
        "message": "x",
    }
    json.dumps([command, feedback, result])
