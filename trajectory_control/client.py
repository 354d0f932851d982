#!/usr/bin/env python3
"""
WebSocket Client for the Trajectory Controller

This module connects the controller to a robot bridge over WebSocket. Inbound
JSON messages feed odometry, transforms, obstacles, via-points and navigation
tasks into the controller; the control loop runs on its own thread and its
commands, feedback and results are handed back to the asyncio loop for
sending.
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
import time
from typing import Any, Dict, List, Optional, Union

import websockets

from .command_modes import OutputMode, parse_output_flags
from .config import (
    OCCUPANCY_THRESHOLD,
    PATH_SMOOTHER,
    TERM_BLUE,
    TERM_RESET,
    WS_MAX_RETRY_DELAY_SECONDS,
    WS_RETRY_DELAY_SECONDS,
    WS_TIMEOUT_SECONDS,
    WS_URI,
    ControllerConfig,
)
from .data_collector import DataCollector
from .footprint import footprint_from_points, inscribed_radius, validate_footprints
from .model import VelocityPostProcessor
from .nav_types import CommandOutput, Pose2D, TaskFeedback, TaskGoal, TaskResult, Twist2D
from .obstacles import (
    ObstacleRegistry,
    obstacles_from_occupancy,
    obstacles_from_polygons,
    parse_custom_obstacles,
)
from .optimizer import PurePursuitOptimizer
from .path_smoother import SmootherMode
from .orchestrator import QueueTaskFront, TaskOrchestrator
from .plan_tracker import PlanTracker
from .recovery import FailureRecoveryController, TuningParameters
from .transforms import TransformBuffer, TransformGateway
from .via_points import ViaPointManager

# Superseded by the next message of the same kind; never sent late
STREAMING_MESSAGE_TYPES = ("cmd_vel", "feedback")


class CustomFormatter(logging.Formatter):
    """Custom logging formatter that removes timestamps from INFO messages.

    This formatter provides clean console output by showing INFO messages without
    timestamps while preserving full context for WARNING, ERROR, and DEBUG messages.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record based on its level.

        Args:
            record: The log record to format.

        Returns:
            Formatted log message string.
        """
        if record.levelno == logging.INFO:
            return record.getMessage()
        else:
            return f"{self.formatTime(record, self.datefmt)} - {record.levelname} - {record.getMessage()}"


def setup_logging(verbose: bool = False) -> None:
    """Configure logging based on verbosity level.

    Args:
        verbose: If True, show all levels with timestamps. If False, show INFO
                 without timestamps and WARNING/ERROR with timestamps.
    """
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s - %(levelname)s - %(threadName)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    else:
        handler = logging.StreamHandler()
        formatter = CustomFormatter(datefmt="%Y-%m-%d %H:%M:%S")
        handler.setFormatter(formatter)
        logger = logging.getLogger()
        logger.setLevel(logging.INFO)
        logger.addHandler(handler)


def command_to_message(command: CommandOutput) -> Dict[str, Any]:
    """Serialize a velocity command for the robot bridge."""
    message: Dict[str, Any] = {
        "message_type": "cmd_vel",
        "stamp": command.stamp,
        "vx": command.twist.vx,
        "vy": command.twist.vy,
        "omega": command.twist.omega,
    }
    if command.track_speeds is not None:
        message["v_left"], message["v_right"] = command.track_speeds
    if command.steering_angle is not None:
        message["steering_angle"] = command.steering_angle
    return message


def feedback_to_message(feedback: TaskFeedback) -> Dict[str, Any]:
    pose = feedback.current_pose
    return {
        "message_type": "feedback",
        "task_id": feedback.task_id,
        "stamp": feedback.stamp,
        "pose": [pose.x, pose.y, pose.yaw] if pose is not None else None,
        "distance_remaining": feedback.distance_remaining,
        "consecutive_failures": feedback.consecutive_failures,
        "last_error": feedback.last_error.name if feedback.last_error is not None else None,
    }


def result_to_message(result: TaskResult) -> Dict[str, Any]:
    return {
        "message_type": "result",
        "task_id": result.task_id,
        "state": result.state.value,
        "outcome": result.outcome.name,
        "code": result.outcome.value,
        "message": result.message,
    }


def _pose_from_list(values: List[float], frame_id: str) -> Pose2D:
    yaw = float(values[2]) if len(values) > 2 else 0.0
    return Pose2D(float(values[0]), float(values[1]), yaw, frame_id)


class TrajectoryControlClient:
    """Trajectory controller with WebSocket communication and data logging.

    This class wires the complete controller:
    - Transform buffer fed by odometry and static transform messages
    - Obstacle registry and via-point manager fed by ingestion messages
    - Plan tracker, recovery, optimizer and post-processor behind the
      task orchestrator's control loop thread
    - Direct and queued task front ends
    - Data logging to CSV files

    Attributes:
        uri: WebSocket URI to connect to.
        config: Controller configuration.
        orchestrator: Task state machine and control loop.
        queue_front: Queue protocol front end.
        data_collector: Handles CSV file logging (None if disabled).
        should_stop: Flag indicating whether to stop the client.
    """

    def __init__(
        self,
        uri: str,
        output_dir: str = ".",
        output_mode: Optional[OutputMode] = None,
        config: Optional[ControllerConfig] = None,
        record: bool = True,
    ) -> None:
        """Initialize the client and the controller components.

        Args:
            uri: WebSocket URI to connect to (must start with ws:// or wss://).
            output_dir: Base directory for output files (default: current directory).
            output_mode: Saturation mode and actuator outputs.
            config: Controller configuration (defaults from ``config.py``).
            record: If False, no CSV files are written.

        Raises:
            ValueError: If the URI format is invalid, the footprint is malformed
                or the footprint configuration guarantees collisions.
        """
        if not uri or not uri.startswith(("ws://", "wss://")):
            raise ValueError(f"Invalid WebSocket URI: {uri}. Must start with 'ws://' or 'wss://'")

        self.uri: str = uri
        self.should_stop: bool = False

        self.config = config if config is not None else ControllerConfig()
        self.config.validate()
        footprint = footprint_from_points(self.config.footprint)
        validate_footprints(
            inscribed_radius(footprint), self.config.costmap_inscribed_radius, self.config.min_obstacle_dist
        )

        if output_mode is None:
            output_mode = OutputMode()
        self.output_mode = output_mode
        logging.info(f"{TERM_BLUE}Command output: {output_mode}{TERM_RESET}")

        self.data_collector: Optional[DataCollector] = DataCollector(output_dir=output_dir) if record else None

        cfg = self.config
        self.transforms = TransformBuffer()
        self.gateway = TransformGateway(
            self.transforms,
            cfg.global_frame,
            cfg.robot_base_frame,
            tolerance=cfg.transform_tolerance,
            timeout=cfg.transform_timeout,
        )
        self.tuning = TuningParameters()
        self.registry = ObstacleRegistry()
        self.via_points = ViaPointManager(cfg.via_points_separation)
        self.orchestrator = TaskOrchestrator(
            config=cfg,
            gateway=self.gateway,
            registry=self.registry,
            via_points=self.via_points,
            tracker=PlanTracker(self.gateway, cfg, self.tuning),
            recovery=FailureRecoveryController(cfg, self.tuning),
            optimizer=PurePursuitOptimizer(cfg, self.tuning),
            post_processor=VelocityPostProcessor(cfg, output_mode),
            command_callback=lambda command: self.publish(command_to_message(command)),
            feedback_callback=lambda feedback: self.publish(feedback_to_message(feedback)),
            result_callback=lambda result: self.publish(result_to_message(result)),
            recorder=self.data_collector,
        )
        self.queue_front = QueueTaskFront(
            self.orchestrator, lambda: self.publish({"message_type": "queue_ready"})
        )

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._outbox: Optional["asyncio.Queue[Dict[str, Any]]"] = None
        self._connected: bool = False

    def publish(self, message: Dict[str, Any]) -> None:
        """Hand an outbound message to the asyncio loop (safe from any thread).

        Messages produced before the loop runs are dropped, and so are
        streaming messages (commands, feedback) while no connection is up.
        """
        if self._loop is None or self._outbox is None:
            logging.debug(f"Dropping {message.get('message_type')} message: client not running")
            return
        if not self._connected and message.get("message_type") in STREAMING_MESSAGE_TYPES:
            return
        self._loop.call_soon_threadsafe(self._outbox.put_nowait, message)

    def process_odometry_message(self, data: Dict[str, Any]) -> None:
        """Odometry: robot pose in the odometry frame plus body velocity."""
        frame_id = data.get("frame_id", self.config.global_frame)
        child_frame_id = data.get("child_frame_id", self.config.robot_base_frame)
        pose = _pose_from_list(data["pose"], frame_id)
        self.transforms.set_transform(frame_id, child_frame_id, pose, stamp=time.time())

        velocity = data.get("velocity")
        if velocity is not None:
            self.orchestrator.update_velocity(Twist2D(float(velocity[0]), float(velocity[1]), float(velocity[2])))

    def process_transform_message(self, data: Dict[str, Any]) -> None:
        parent = data["parent"]
        pose = _pose_from_list(data["pose"], parent)
        self.transforms.set_transform(
            parent, data["child"], pose, stamp=time.time(), static=bool(data.get("static", False))
        )

    def process_path_message(self, data: Dict[str, Any]) -> None:
        """Navigation request: a path, or a single destination pose."""
        frame_id = data.get("frame_id", self.config.global_frame)
        if "pose" in data:
            goal = TaskGoal.from_destination(_pose_from_list(data["pose"], frame_id))
        else:
            goal = TaskGoal.from_points(data.get("poses", []), frame_id)

        queued = bool(data.get("queued", False))
        if queued:
            task = self.queue_front.on_path(goal)
        else:
            task = self.orchestrator.submit(goal)
        if task is not None:
            self.publish({"message_type": "accepted", "task_id": task.id, "queued": queued})

    def process_obstacle_message(self, data: Dict[str, Any], message_type: str) -> None:
        now = time.time()
        if message_type == "obstacles":
            obstacles = parse_custom_obstacles(data.get("obstacles", []), now)
            self.registry.merge_custom(obstacles, now)
        elif message_type == "polygons":
            self.registry.refresh_from_primary_source(obstacles_from_polygons(data.get("polygons", []), now))
        else:
            grid_obstacles = obstacles_from_occupancy(
                data["grid"],
                float(data["resolution"]),
                data.get("origin", [0.0, 0.0]),
                float(data.get("threshold", OCCUPANCY_THRESHOLD)),
                now,
            )
            self.registry.refresh_from_primary_source(grid_obstacles)

    def process_via_points_message(self, data: Dict[str, Any]) -> None:
        points = data.get("points", [])
        if points:
            self.via_points.set_override(points)
        else:
            self.via_points.clear_override()

    def parse_and_route_message(self, message: Union[str, bytes]) -> None:
        """Parse incoming message and route to appropriate handler.

        Args:
            message: Raw JSON message string or bytes from WebSocket.
        """
        try:
            if isinstance(message, bytes):
                message = message.decode("utf-8")
            data = json.loads(message)

            message_type = data.get("message_type")

            if message_type == "odometry":
                self.process_odometry_message(data)
            elif message_type == "transform":
                self.process_transform_message(data)
            elif message_type == "path":
                self.process_path_message(data)
            elif message_type == "cancel":
                self.orchestrator.cancel(data.get("task_id"))
            elif message_type == "queue_feedback":
                self.queue_front.on_feedback(str(data.get("status", "")))
            elif message_type in ("obstacles", "polygons", "occupancy"):
                self.process_obstacle_message(data, message_type)
            elif message_type == "via_points":
                self.process_via_points_message(data)
            else:
                logging.debug(f"\nReceived unknown message: {json.dumps(data, indent=2)}\n")

        except json.JSONDecodeError as e:
            logging.error(f"Error parsing JSON: {e}")
        except (KeyError, TypeError, ValueError, IndexError) as e:
            logging.error(f"Error processing message data: {e}")
        except Exception as e:
            logging.error(f"Unexpected error processing message: {e}", exc_info=True)

    def _discard_stale_outbound(self) -> int:
        """Drop streaming messages queued before the current connection.

        Results and queue signals are kept in order.

        Returns:
            Number of messages dropped.
        """
        assert self._outbox is not None
        kept = []
        dropped = 0
        while not self._outbox.empty():
            message = self._outbox.get_nowait()
            if message.get("message_type") in STREAMING_MESSAGE_TYPES:
                dropped += 1
            else:
                kept.append(message)
        for message in kept:
            self._outbox.put_nowait(message)
        if dropped:
            logging.info(f"Discarded {dropped} stale outbound message(s)")
        return dropped

    async def _send_outbound(self, websocket: Any) -> None:
        """Forward queued outbound messages until the connection closes.

        Streaming messages left over from a previous connection are discarded first.
        """
        assert self._outbox is not None
        self._discard_stale_outbound()
        while True:
            message = await self._outbox.get()
            try:
                await websocket.send(json.dumps(message))
            except websockets.exceptions.ConnectionClosed:
                return

    async def run(self) -> None:
        """Start the control loop and serve the WebSocket connection.

        Maintains a connection to the WebSocket server with automatic retry logic
        and exponential backoff. Continues running until ``stop`` is called.
        """
        self._loop = asyncio.get_running_loop()
        self._outbox = asyncio.Queue()
        self.orchestrator.start()
        self.queue_front.start()

        retry_delay = WS_RETRY_DELAY_SECONDS
        max_retry_delay = WS_MAX_RETRY_DELAY_SECONDS

        try:
            while not self.should_stop:
                try:
                    async with websockets.connect(self.uri) as websocket:
                        logging.info(f"{TERM_BLUE}✓ Connected to server{TERM_RESET}")
                        retry_delay = WS_RETRY_DELAY_SECONDS
                        self._connected = True
                        sender = asyncio.create_task(self._send_outbound(websocket))
                        try:
                            while not self.should_stop:
                                try:
                                    message = await asyncio.wait_for(websocket.recv(), timeout=WS_TIMEOUT_SECONDS)
                                except asyncio.TimeoutError:
                                    continue
                                except websockets.exceptions.ConnectionClosed:
                                    logging.warning("Connection closed by server")
                                    break
                                self.parse_and_route_message(message)
                        finally:
                            self._connected = False
                            sender.cancel()

                except Exception as e:
                    if self.should_stop:
                        break
                    logging.error(f"Connection error: {e}")
                    logging.info(f"Retrying in {retry_delay} seconds...")
                    await asyncio.sleep(retry_delay)
                    retry_delay = min(retry_delay * 2, max_retry_delay)
        finally:
            self.orchestrator.stop()
            self._connected = False
            self._loop = None

    def stop(self) -> None:
        """Signal the client to stop."""
        self.should_stop = True

    def __enter__(self) -> "TrajectoryControlClient":
        """Context manager entry point.

        Returns:
            Self reference for use in with statement.
        """
        if self.data_collector is not None:
            self.data_collector.setup()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Context manager exit point - stops the control loop and closes the CSV files."""
        self.orchestrator.stop()
        if self.data_collector is not None:
            self.data_collector.cleanup()


async def main(
    output_mode: Optional[OutputMode] = None, uri: str = WS_URI, config: Optional[ControllerConfig] = None
) -> None:
    """Main entry point for the WebSocket client.

    Creates a TrajectoryControlClient, sets up signal handlers for graceful
    shutdown, and serves until stopped.

    Args:
        output_mode: Saturation mode and actuator outputs.
        uri: WebSocket URI of the robot bridge.
        config: Controller configuration (defaults from ``config.py``).
    """
    with TrajectoryControlClient(uri, output_mode=output_mode, config=config) as client:
        loop = asyncio.get_running_loop()

        def signal_handler() -> None:
            """Handle shutdown signals (SIGINT, SIGTERM)."""
            logging.info("\nShutdown signal received...")
            client.stop()

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler)

        await client.run()


def cli(argv: Optional[List[str]] = None) -> None:
    """Command-line entry point."""
    output_mode, remaining_args = parse_output_flags(argv)

    parser = argparse.ArgumentParser(description="WebSocket front end of the trajectory controller")
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable verbose logging with timestamps"
    )
    parser.add_argument("--uri", default=WS_URI, help=f"Robot bridge WebSocket URI (default: {WS_URI})")
    parser.add_argument(
        "--smoother",
        default=PATH_SMOOTHER,
        choices=[mode.value for mode in SmootherMode],
        help=f"Filter applied to incoming paths (default: {PATH_SMOOTHER})",
    )
    args = parser.parse_args(remaining_args)

    setup_logging(args.verbose)
    config = ControllerConfig(path_smoother=args.smoother)

    try:
        asyncio.run(main(output_mode=output_mode, uri=args.uri, config=config))
    except KeyboardInterrupt:
        logging.info("\nExiting...")
        sys.exit(0)


if __name__ == "__main__":
    cli()
