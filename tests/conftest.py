"""Shared fakes for the controller tests."""

from typing import Callable, List, Optional, Sequence, Union

import pytest

from trajectory_control.config import ControllerConfig
from trajectory_control.model import VelocityPostProcessor
from trajectory_control.nav_types import CommandOutput, Pose2D, Twist2D
from trajectory_control.obstacles import ObstacleRegistry
from trajectory_control.orchestrator import TaskOrchestrator
from trajectory_control.plan_tracker import PlanTracker
from trajectory_control.recovery import FailureRecoveryController, TuningParameters
from trajectory_control.transforms import TransformError, TransformGateway
from trajectory_control.via_points import ViaPointManager


class ManualClock:
    """Clock advanced explicitly by the test."""

    def __init__(self, start: float = 100.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, dt: float) -> None:
        self.now += dt


class StaticTransformSource:
    """Transform source returning fixed transforms, or failing on demand.

    Lookups listed in ``extra`` (keyed by (target, source)) return that pose;
    any other lookup returns ``robot_pose``.
    """

    def __init__(self, robot_pose: Pose2D, extra: Optional[dict] = None) -> None:
        self.robot_pose = robot_pose
        self.extra = dict(extra or {})
        self.available = True
        self.calls = 0

    def lookup(self, target_frame, source_frame, at_time, tolerance):
        self.calls += 1
        if not self.available:
            raise TransformError("transform unavailable")
        pose = self.extra.get((target_frame, source_frame), self.robot_pose)
        return Pose2D(pose.x, pose.y, pose.yaw, target_frame)


class ScriptedOptimizer:
    """Optimizer returning scripted results (the last one repeats)."""

    def __init__(self, results: Sequence[Union[Optional[Twist2D], Callable[[], Optional[Twist2D]]]]) -> None:
        self.results = list(results)
        self.calls = 0
        self.obstacles = ()
        self.via_points = ()
        self.window = ()
        self.goal = None

    def set_obstacles(self, obstacles):
        self.obstacles = tuple(obstacles)

    def set_via_points(self, via_points):
        self.via_points = tuple(via_points)

    def set_plan(self, window, goal):
        self.window = tuple(window)
        self.goal = goal

    def compute_command(self, pose, velocity):
        result = self.results[min(self.calls, len(self.results) - 1)]
        self.calls += 1
        if callable(result):
            return result()
        return result


class Harness:
    """Orchestrator wired to fakes, with captured outputs."""

    def __init__(self, config: ControllerConfig, robot_pose: Pose2D, optimizer: ScriptedOptimizer) -> None:
        self.config = config
        self.clock = ManualClock()
        self.source = StaticTransformSource(robot_pose)
        self.gateway = TransformGateway(
            self.source, config.global_frame, config.robot_base_frame, timeout=0.0, clock=self.clock
        )
        self.tuning = TuningParameters()
        self.registry = ObstacleRegistry()
        self.optimizer = optimizer
        self.commands: List[CommandOutput] = []
        self.feedback = []
        self.results = []
        self.orchestrator = TaskOrchestrator(
            config=config,
            gateway=self.gateway,
            registry=self.registry,
            via_points=ViaPointManager(config.via_points_separation),
            tracker=PlanTracker(self.gateway, config, self.tuning),
            recovery=FailureRecoveryController(config, self.tuning),
            optimizer=optimizer,
            post_processor=VelocityPostProcessor(config),
            command_callback=self.commands.append,
            feedback_callback=self.feedback.append,
            result_callback=self.results.append,
            clock=self.clock,
        )

    def tick(self, n: int = 1) -> None:
        for _ in range(n):
            self.orchestrator.tick()
            self.clock.advance(self.config.control_period)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def config() -> ControllerConfig:
    return ControllerConfig()


@pytest.fixture
def make_harness(config):
    """Factory: ``make_harness(results, robot_pose=Pose2D(frame_id="odom"))``."""

    def factory(results, robot_pose: Optional[Pose2D] = None, cfg: Optional[ControllerConfig] = None) -> Harness:
        pose = robot_pose if robot_pose is not None else Pose2D(0.0, 0.0, 0.0, "odom")
        return Harness(cfg if cfg is not None else config, pose, ScriptedOptimizer(results))

    return factory
