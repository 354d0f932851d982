"""Trajectory optimizer collaborator.

The controller treats the optimizer as a black box that receives the
obstacle set, via-points and the local plan once per cycle and returns a
velocity command or ``None`` when no feasible command exists.

``PurePursuitOptimizer`` is a lightweight reference implementation so the
controller can run end to end:
- Adaptive lookahead point on the local window
- Curvature command towards the lookahead point
- In-place heading correction at the final goal
- Infeasible when an obstacle blocks the corridor to the lookahead point
"""

import math
from typing import Optional, Protocol, Sequence, Tuple

import numpy as np

from .config import (
    OPTIMIZER_HEADING_GAIN,
    OPTIMIZER_LOOKAHEAD_OFFSET,
    OPTIMIZER_LOOKAHEAD_TIME,
    OPTIMIZER_MAX_LOOKAHEAD,
    OPTIMIZER_MIN_LOOKAHEAD,
    OPTIMIZER_SLOWDOWN_RADIUS,
    ControllerConfig,
)
from .nav_types import Obstacle, Point2D, Pose2D, RotationDirection, Twist2D, normalize_angle
from .recovery import TuningParameters


class TrajectoryOptimizer(Protocol):
    """Interface of the external local trajectory optimizer.

    Each method may be called once per control cycle with fully replaced data.
    """

    def set_obstacles(self, obstacles: Sequence[Obstacle]) -> None: ...

    def set_via_points(self, via_points: Sequence[Point2D]) -> None: ...

    def set_plan(self, window: Sequence[Pose2D], goal: Pose2D) -> None: ...

    def compute_command(self, pose: Pose2D, velocity: Twist2D) -> Optional[Twist2D]:
        """Return a velocity command, or None if no feasible command exists."""
        ...


def segment_distance(px: np.ndarray, py: np.ndarray, a: Point2D, b: Point2D) -> np.ndarray:
    """Distance from points (px, py) to the segment a-b."""
    ax, ay = a
    bx, by = b
    dx = bx - ax
    dy = by - ay
    length_sq = dx * dx + dy * dy
    if length_sq == 0.0:
        return np.hypot(px - ax, py - ay)
    t = np.clip(((px - ax) * dx + (py - ay) * dy) / length_sq, 0.0, 1.0)
    return np.hypot(px - (ax + t * dx), py - (ay + t * dy))


class PurePursuitOptimizer:
    """Pure pursuit over the local window with an obstacle corridor check.

    Attributes:
        config: Controller configuration (limits, tolerances, clearance).
        tuning: Shared tuning parameters (preferred rotation).
        lookahead_distance: Lookahead used in the last cycle (meters).
    """

    def __init__(
        self,
        config: ControllerConfig,
        tuning: Optional[TuningParameters] = None,
        lookahead_time: float = OPTIMIZER_LOOKAHEAD_TIME,
        lookahead_offset: float = OPTIMIZER_LOOKAHEAD_OFFSET,
        min_lookahead: float = OPTIMIZER_MIN_LOOKAHEAD,
        max_lookahead: float = OPTIMIZER_MAX_LOOKAHEAD,
        slowdown_radius: float = OPTIMIZER_SLOWDOWN_RADIUS,
        heading_gain: float = OPTIMIZER_HEADING_GAIN,
    ):
        """Initialize the optimizer.

        Args:
            config: Controller configuration.
            tuning: Shared tuning parameters; a private instance if None.
            lookahead_time: Time-based lookahead gain (seconds).
                Lookahead = lookahead_time * |v| + lookahead_offset
            lookahead_offset: Minimum base lookahead (meters).
            min_lookahead: Minimum lookahead distance (meters).
            max_lookahead: Maximum lookahead distance (meters).
            slowdown_radius: Distance to the local goal where speed ramps down (meters).
            heading_gain: Proportional gain of the final heading correction.
        """
        self.config = config
        self.tuning = tuning if tuning is not None else TuningParameters()
        self.lookahead_time = lookahead_time
        self.lookahead_offset = lookahead_offset
        self.min_lookahead = min_lookahead
        self.max_lookahead = max_lookahead
        self.slowdown_radius = slowdown_radius
        self.heading_gain = heading_gain
        self.lookahead_distance = min_lookahead

        self._obstacle_xy = np.zeros((0, 2))
        self._via_points: Tuple[Point2D, ...] = ()
        self._window: Tuple[Pose2D, ...] = ()
        self._goal: Optional[Pose2D] = None

    def set_obstacles(self, obstacles: Sequence[Obstacle]) -> None:
        vertices = [p for o in obstacles for p in o.points]
        self._obstacle_xy = np.array(vertices, dtype=float) if vertices else np.zeros((0, 2))

    def set_via_points(self, via_points: Sequence[Point2D]) -> None:
        self._via_points = tuple(via_points)

    def set_plan(self, window: Sequence[Pose2D], goal: Pose2D) -> None:
        self._window = tuple(window)
        self._goal = goal

    def compute_adaptive_lookahead(self, velocity: float) -> float:
        """Velocity-proportional lookahead clamped to [min, max] (meters)."""
        lookahead = self.lookahead_time * abs(velocity) + self.lookahead_offset
        return max(self.min_lookahead, min(self.max_lookahead, lookahead))

    def find_lookahead_point(self, pose: Pose2D) -> Point2D:
        """First target (via-point or window pose) at least one lookahead away.

        Via-points take precedence when present, since they already sparsify
        the window. Falls back to the local goal.
        """
        targets = list(self._via_points) or [(p.x, p.y) for p in self._window[1:]]
        for x, y in targets:
            if math.hypot(x - pose.x, y - pose.y) >= self.lookahead_distance:
                return x, y
        assert self._goal is not None
        return self._goal.x, self._goal.y

    def corridor_blocked(self, pose: Pose2D, target: Point2D) -> bool:
        """True if an obstacle vertex lies within the clearance of the path to ``target``."""
        if len(self._obstacle_xy) == 0:
            return False
        distances = segment_distance(
            self._obstacle_xy[:, 0], self._obstacle_xy[:, 1], (pose.x, pose.y), target
        )
        return bool(np.any(distances < self.config.min_obstacle_dist))

    def compute_command(self, pose: Pose2D, velocity: Twist2D) -> Optional[Twist2D]:
        """Compute a velocity command towards the local goal.

        Returns:
            The command, or None if the plan is missing or the corridor to the
            lookahead point is blocked.
        """
        if self._goal is None or not self._window:
            return None

        cfg = self.config
        goal = self._goal
        distance_to_goal = math.hypot(goal.x - pose.x, goal.y - pose.y)

        # At the goal position: rotate in place to the goal heading
        if distance_to_goal < cfg.xy_goal_tolerance:
            heading_error = normalize_angle(goal.yaw - pose.yaw)
            return Twist2D(0.0, 0.0, self.heading_gain * heading_error)

        self.lookahead_distance = self.compute_adaptive_lookahead(velocity.vx)
        target = self.find_lookahead_point(pose)
        if self.corridor_blocked(pose, target):
            return None

        angle_to_target = math.atan2(target[1] - pose.y, target[0] - pose.x)
        alpha = normalize_angle(angle_to_target - pose.yaw)

        # Target behind the robot: turn in place, honouring the preferred direction
        if abs(alpha) > math.pi / 2.0:
            direction = self.tuning.preferred_rotation
            sign = direction.value if direction is not RotationDirection.NONE else math.copysign(1.0, alpha)
            return Twist2D(0.0, 0.0, sign * cfg.max_vel_theta)

        speed = cfg.max_vel_x * min(1.0, distance_to_goal / self.slowdown_radius)
        actual_distance = math.hypot(target[0] - pose.x, target[1] - pose.y)
        if actual_distance > 0.01:
            curvature = 2.0 * math.sin(alpha) / actual_distance
            omega = speed * curvature
        else:
            omega = 0.0

        return Twist2D(speed, 0.0, omega)
