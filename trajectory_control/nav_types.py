"""Shared types for the trajectory controller.

Poses, velocities, obstacles and task records exchanged between the plan
tracker, the recovery logic, the optimizer and the task orchestrator. Poses
are immutable snapshots: every consumer keeps its own copy.
"""

import enum
import math
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence, Tuple

Point2D = Tuple[float, float]


def normalize_angle(angle: float) -> float:
    """Normalize an angle to [-pi, pi]."""
    return math.atan2(math.sin(angle), math.cos(angle))


def average_angles(angles: Sequence[float]) -> float:
    """Circular mean of a sequence of angles (radians).

    Returns 0.0 for an empty sequence.
    """
    if not angles:
        return 0.0
    sin_sum = sum(math.sin(a) for a in angles)
    cos_sum = sum(math.cos(a) for a in angles)
    return math.atan2(sin_sum, cos_sum)


@dataclass(frozen=True)
class Pose2D:
    """Planar pose (x, y, yaw) in a named reference frame.

    A pose whose ``frame_id`` is A also describes the transform that maps
    coordinates of the frame located at that pose into frame A, which is how
    transform lookups are returned.
    """

    x: float = 0.0
    y: float = 0.0
    yaw: float = 0.0
    frame_id: str = ""

    def compose(self, other: "Pose2D") -> "Pose2D":
        """Express ``other`` (given relative to this pose) in this pose's frame."""
        c = math.cos(self.yaw)
        s = math.sin(self.yaw)
        return Pose2D(
            x=self.x + c * other.x - s * other.y,
            y=self.y + s * other.x + c * other.y,
            yaw=normalize_angle(self.yaw + other.yaw),
            frame_id=self.frame_id,
        )

    def inverse(self, frame_id: str = "") -> "Pose2D":
        """Inverse transform; ``frame_id`` names the frame the result lives in."""
        c = math.cos(self.yaw)
        s = math.sin(self.yaw)
        return Pose2D(
            x=-(c * self.x + s * self.y),
            y=-(-s * self.x + c * self.y),
            yaw=normalize_angle(-self.yaw),
            frame_id=frame_id,
        )

    def transform_point(self, x: float, y: float) -> Point2D:
        """Map a point given relative to this pose into this pose's frame."""
        c = math.cos(self.yaw)
        s = math.sin(self.yaw)
        return self.x + c * x - s * y, self.y + s * x + c * y

    def distance_to(self, other: "Pose2D") -> float:
        """Euclidean distance between the positions of two poses."""
        return math.hypot(other.x - self.x, other.y - self.y)

    def with_yaw(self, yaw: float) -> "Pose2D":
        return Pose2D(self.x, self.y, normalize_angle(yaw), self.frame_id)

    def is_finite(self) -> bool:
        return all(math.isfinite(v) for v in (self.x, self.y, self.yaw))


@dataclass(frozen=True)
class Twist2D:
    """Body-frame velocity command (vx, vy in m/s, omega in rad/s)."""

    vx: float = 0.0
    vy: float = 0.0
    omega: float = 0.0

    def is_finite(self) -> bool:
        return all(math.isfinite(v) for v in (self.vx, self.vy, self.omega))


class ObstacleSource(enum.Enum):
    """Origin of an obstacle observation."""

    OCCUPANCY = "occupancy"
    CONVERTER = "converter"
    CUSTOM = "custom"

    @property
    def is_primary(self) -> bool:
        """Occupancy and converter obstacles are replaced wholesale on refresh."""
        return self is not ObstacleSource.CUSTOM


class MalformedObstacleError(ValueError):
    """Raised when obstacle geometry cannot be used by the optimizer."""


@dataclass(frozen=True)
class Obstacle:
    """Point, line or polygon obstacle with an optional constant velocity.

    Attributes:
        points: Vertices in the planning frame (1 = point, 2 = line, >= 3 = polygon).
        source: Which ingestion path produced the obstacle.
        stamp: Arrival time (seconds).
        velocity: Estimated (vx, vy) in the planning frame, if known.
    """

    points: Tuple[Point2D, ...]
    source: ObstacleSource
    stamp: float
    velocity: Optional[Point2D] = None

    @classmethod
    def from_points(
        cls,
        points: Iterable[Sequence[float]],
        source: ObstacleSource,
        stamp: float,
        velocity: Optional[Sequence[float]] = None,
        kind: Optional[str] = None,
    ) -> "Obstacle":
        """Build a validated obstacle.

        Args:
            points: Iterable of (x, y) vertices.
            source: Ingestion source tag.
            stamp: Arrival timestamp (seconds).
            velocity: Optional (vx, vy).
            kind: Declared shape ("point", "line", "polygon"); inferred if None.

        Raises:
            MalformedObstacleError: On missing, non-finite or inconsistent geometry.
        """
        try:
            vertices = tuple((float(p[0]), float(p[1])) for p in points)
        except (TypeError, IndexError, ValueError) as e:
            raise MalformedObstacleError(f"Invalid obstacle vertex: {e}") from e

        if not vertices:
            raise MalformedObstacleError("Obstacle has no vertices")
        if kind == "polygon" and len(vertices) < 3:
            raise MalformedObstacleError(f"Polygon needs at least 3 vertices, got {len(vertices)}")
        if kind == "line" and len(vertices) != 2:
            raise MalformedObstacleError(f"Line needs exactly 2 vertices, got {len(vertices)}")
        if kind == "point" and len(vertices) != 1:
            raise MalformedObstacleError(f"Point needs exactly 1 vertex, got {len(vertices)}")
        if not all(math.isfinite(c) for vertex in vertices for c in vertex):
            raise MalformedObstacleError("Obstacle has non-finite coordinates")

        vel: Optional[Point2D] = None
        if velocity is not None:
            try:
                vel = (float(velocity[0]), float(velocity[1]))
            except (TypeError, IndexError, ValueError) as e:
                raise MalformedObstacleError(f"Invalid obstacle velocity: {e}") from e
            if not all(math.isfinite(v) for v in vel):
                raise MalformedObstacleError("Obstacle has non-finite velocity")

        return cls(points=vertices, source=source, stamp=float(stamp), velocity=vel)

    @property
    def kind(self) -> str:
        if len(self.points) == 1:
            return "point"
        if len(self.points) == 2:
            return "line"
        return "polygon"

    def age(self, now: float) -> float:
        return now - self.stamp


@dataclass(frozen=True)
class LocalWindow:
    """Transformed, truncated slice of the global plan for one control cycle.

    Attributes:
        poses: Waypoints in the planning frame (first one is the robot pose).
        start_idx: Global plan index of the first waypoint.
        goal_idx: Global plan index of the last included waypoint.
        transform: Plan frame origin expressed in the planning frame.
        goal: Local goal pose handed to the optimizer (orientation estimated).
        global_goal: Final plan pose in the planning frame.
    """

    poses: Tuple[Pose2D, ...]
    start_idx: int
    goal_idx: int
    transform: Pose2D
    goal: Pose2D
    global_goal: Pose2D

    def __len__(self) -> int:
        return len(self.poses)


class RotationDirection(enum.Enum):
    """Preferred turning direction used to break oscillations."""

    NONE = 0
    LEFT = 1
    RIGHT = -1


class TaskState(enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskState.SUCCEEDED, TaskState.FAILED, TaskState.CANCELED)


class OutcomeCode(enum.Enum):
    """Why a task ended, or why a single tick failed."""

    SUCCESS = 0
    CANCELED = 101
    NO_FEASIBLE_COMMAND = 102
    PATIENCE_EXCEEDED = 103
    OSCILLATION_DETECTED = 105
    GOAL_ORIENTATION_MISMATCH = 107
    INVALID_PATH = 110
    TRANSFORM_UNAVAILABLE = 111
    INTERNAL_ERROR = 114
    MALFORMED_OBSTACLE_INPUT = 121
    INVALID_CONFIGURATION = 122


@dataclass(frozen=True)
class TaskGoal:
    """Navigation request: a path to follow in ``frame_id``."""

    poses: Tuple[Pose2D, ...]
    frame_id: str

    @classmethod
    def from_destination(cls, pose: Pose2D) -> "TaskGoal":
        """Single-pose goal: drive straight to ``pose``."""
        return cls(poses=(pose,), frame_id=pose.frame_id)

    @classmethod
    def from_points(cls, points: Iterable[Sequence[float]], frame_id: str) -> "TaskGoal":
        """Build a goal from [x, y] or [x, y, yaw] rows.

        Missing yaw values are filled with the heading towards the next point
        (the last point repeats the previous heading).
        """
        rows = [list(p) for p in points]
        poses: List[Pose2D] = []
        for i, row in enumerate(rows):
            x, y = float(row[0]), float(row[1])
            if len(row) >= 3:
                yaw = float(row[2])
            elif i + 1 < len(rows):
                yaw = math.atan2(float(rows[i + 1][1]) - y, float(rows[i + 1][0]) - x)
            elif poses:
                yaw = poses[-1].yaw
            else:
                yaw = 0.0
            poses.append(Pose2D(x, y, normalize_angle(yaw), frame_id))
        return cls(poses=tuple(poses), frame_id=frame_id)


@dataclass(frozen=True)
class TaskFeedback:
    """Progress record streamed to the client that issued a task."""

    task_id: int
    stamp: float
    current_pose: Optional[Pose2D]
    distance_remaining: float
    consecutive_failures: int
    last_error: Optional[OutcomeCode] = None


@dataclass(frozen=True)
class TaskResult:
    """Terminal outcome of a task. Single source of truth for why it ended."""

    task_id: int
    state: TaskState
    outcome: OutcomeCode
    message: str = ""


@dataclass(frozen=True)
class CommandOutput:
    """Velocity command for one cycle plus optional platform representations."""

    stamp: float
    twist: Twist2D
    track_speeds: Optional[Tuple[float, float]] = None
    steering_angle: Optional[float] = None


@dataclass
class ControllerState:
    """Per-task controller aggregate, mutated only by the control loop.

    Read by the orchestrator to build feedback and outcome records.
    """

    task_id: Optional[int] = None
    robot_pose: Optional[Pose2D] = None
    robot_vel: Twist2D = field(default_factory=Twist2D)
    goal_pose: Optional[Pose2D] = None
    goal_reached: bool = False
    last_cmd: Twist2D = field(default_factory=Twist2D)
    consecutive_failures: int = 0
    last_failure: Optional[OutcomeCode] = None
    orientation_mismatch_ticks: int = 0
