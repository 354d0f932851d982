"""Configuration parameters for the trajectory control system.

This module centralizes all configuration parameters including:
- Kinematic limits of the robot base
- Goal tolerances and task patience
- Plan tracking (pruning, local window, orientation smoothing)
- Obstacle and via-point handling
- Failure and oscillation recovery
- Transform lookups
- WebSocket connection parameters

All parameters are documented with their purpose, valid ranges, and tuning rationale.
Components receive their values through ``ControllerConfig``, whose defaults are
the constants below.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import List, Tuple

from .path_smoother import SmootherMode

# ============================================================================
# Robot Kinematic Limits
# ============================================================================

MAX_VEL_X = 0.4
"""Maximum forward translational velocity (m/s)."""

MAX_VEL_X_BACKWARDS = 0.2
"""Maximum backward translational velocity (m/s, magnitude).

Must be positive: it is interpreted as a cap on |vx| for negative vx.
A non-positive value disables backward capping (a warning is logged once).
"""

MAX_VEL_Y = 0.0
"""Maximum strafing velocity (m/s). Zero for non-holonomic bases."""

MAX_VEL_TRANS = 0.4
"""Maximum translational speed hypot(vx, vy) (m/s).

Non-positive disables the cap. For differential bases this matches MAX_VEL_X.
"""

MAX_VEL_THETA = 0.3
"""Maximum absolute angular velocity (rad/s)."""

WHEELBASE = 1.0
"""Distance between front and rear axle for car-like bases (meters).
May be negative for back-wheeled robots. Only used for steering output."""

MIN_TURNING_RADIUS = 0.0
"""Lower bound on the turning radius for steering conversion (meters)."""

TRACKS_DISTANCE = 0.5
"""Distance between left and right tracks (meters).
Only used for differential track speed output."""

MAX_TRACK_SPEED = 2.0
"""Maximum absolute speed of a single track (m/s). Hardware limit."""


# ============================================================================
# Goal Tolerances
# ============================================================================

XY_GOAL_TOLERANCE = 0.2
"""Allowed final euclidean distance to the goal position (meters)."""

YAW_GOAL_TOLERANCE = 0.1
"""Allowed final heading error at the goal (radians)."""

ORIENTATION_PATIENCE = 50
"""Ticks tolerated at the goal position with a heading error beyond tolerance.

After this many consecutive ticks the task fails with GOAL_ORIENTATION_MISMATCH.

Tuning rationale:
- At 10 Hz this gives the base 5 seconds to rotate in place
- Rotating 180 degrees at MAX_VEL_THETA (0.3 rad/s) takes ~10.5 s, so
  plans ending with a reversed heading should raise this value
"""


# ============================================================================
# Plan Tracking
# ============================================================================

DIST_BEHIND_ROBOT = 1.0
"""Pruning threshold (meters).

The plan is cut up to the waypoint closest to the robot among those within
this distance. Do not choose it smaller than the plan resolution, otherwise
nothing will ever be pruned.
"""

MAX_PLAN_LENGTH = 3.0
"""Maximum cumulative arc length of the local window (meters).
Non-positive disables the length bound (the spatial extent still applies)."""

LOCAL_WINDOW_RADIUS = 5.0
"""Radius of the locally relevant area around the robot (meters).

Only 85% of it is used, so that obstacles on the border of the local map are
still taken into account by the optimizer.
"""

MOVING_AVERAGE_LENGTH = 3
"""Number of future waypoints averaged when estimating the local goal heading.

Tuning rationale:
- 1 reduces to a single finite difference and follows planner jitter
- 3 suppresses grid-planner staircase headings without lagging on curves
"""

OVERWRITE_GOAL_ORIENTATION = True
"""If True, replace the local goal orientation with the smoothed plan heading.
Helpful when the global planner does not consider orientations."""

PATH_SMOOTHER = "none"
"""Filter applied to the waypoint positions of every accepted path.

One of "none", "ma3", "ma5", "ma3_in_place", "sg5", "sg7" (moving average over
3 or 5 waypoints, in-place moving average over 3, Savitzky-Golay over 5 or 7).
The end points never move. Useful for staircase paths from grid planners.
"""


# ============================================================================
# Via-Points
# ============================================================================

VIA_POINTS_SEPARATION = 0.5
"""Minimum separation between consecutive derived via-points (meters).
Non-positive disables via-point derivation from the local window."""


# ============================================================================
# Obstacles
# ============================================================================

MAX_OBSTACLE_AGE = 2.0
"""Age after which custom obstacles are evicted (seconds)."""

OCCUPANCY_THRESHOLD = 65
"""Occupancy value at or above which a grid cell becomes a point obstacle.
Grid values follow the 0..100 convention (-1 = unknown is never occupied)."""

MIN_OBSTACLE_DIST = 0.3
"""Desired minimum clearance between the footprint and obstacles (meters)."""

MAX_TIME_FOR_EVANESCENT_OBSTACLES = 1.0
"""Age beyond which an obstacle observation is considered evanescent (seconds).

Evanescent obstacles are likely stale or transient; when they block the plan
the recovery extends the lookahead instead of rotating in place.
"""

LOOKAHEAD_EXTENSION_FACTOR = 1.5
"""Factor applied to MAX_PLAN_LENGTH while the EXTEND_LOOKAHEAD backup is active."""


# ============================================================================
# Failure and Oscillation Recovery
# ============================================================================

SHRINK_HORIZON_BACKUP = True
"""Shrink the local window while infeasible plans are recent."""

SHRINK_HORIZON_MIN_DURATION = 10.0
"""Minimum duration of the shrink-horizon backup after an infeasible plan (seconds)."""

BACKUP_TRIGGER_COUNT = 5
"""Consecutive infeasible plans that trigger EXTEND_LOOKAHEAD / SIMPLE_ROTATION."""

OSCILLATION_RECOVERY = True
"""Enable oscillation detection and the preferred turning direction bias."""

OSCILLATION_V_EPS = 0.1
"""Threshold on the normalized mean linear velocity (range: [0, 1])."""

OSCILLATION_OMEGA_EPS = 0.1
"""Threshold on the normalized mean angular velocity (range: [0, 1])."""

OSCILLATION_FILTER_DURATION = 10.0
"""Length of the command history used for oscillation detection (seconds)."""

OSCILLATION_RECOVERY_MIN_DURATION = 10.0
"""Time the preferred turning direction is kept after an oscillation (seconds)."""

OSCILLATION_TIMEOUT = 30.0
"""Continuous oscillation after which the task fails (seconds). Non-positive disables."""

ROTATION_SPEED = 0.2
"""Angular velocity used by the in-place rotation backup (rad/s, magnitude)."""


# ============================================================================
# Task Orchestration
# ============================================================================

CONTROL_RATE = 10.0
"""Control loop frequency (Hz)."""

PATIENCE = 10
"""Consecutive failed ticks (no transform or no feasible command) before FAILED."""


# ============================================================================
# Frames and Transforms
# ============================================================================

GLOBAL_FRAME = "odom"
"""Frame in which the controller plans and the optimizer runs."""

ROBOT_BASE_FRAME = "base_link"
"""Body frame of the robot."""

TRANSFORM_TOLERANCE = 0.2
"""Maximum age of a transform sample relative to the requested time (seconds)."""

TRANSFORM_TIMEOUT = 0.05
"""Bounded wait before the single lookup retry (seconds).
Must stay well below the control period (1 / CONTROL_RATE)."""


# ============================================================================
# Footprint
# ============================================================================

ROBOT_FOOTPRINT: List[Tuple[float, float]] = [
    (0.35, 0.25),
    (0.35, -0.25),
    (-0.35, -0.25),
    (-0.35, 0.25),
]
"""Robot contour polygon in the body frame (meters)."""

COSTMAP_INSCRIBED_RADIUS = 0.25
"""Inscribed radius of the footprint used by the obstacle map (meters)."""


# ============================================================================
# Reference Optimizer (Pure Pursuit)
# ============================================================================

OPTIMIZER_LOOKAHEAD_TIME = 0.8
"""Time-based lookahead gain (seconds). Lookahead = time * |v| + offset."""

OPTIMIZER_LOOKAHEAD_OFFSET = 0.3
"""Minimum base lookahead offset (meters)."""

OPTIMIZER_MIN_LOOKAHEAD = 0.5
"""Minimum adaptive lookahead distance (meters)."""

OPTIMIZER_MAX_LOOKAHEAD = 2.0
"""Maximum adaptive lookahead distance (meters)."""

OPTIMIZER_SLOWDOWN_RADIUS = 1.0
"""Distance to the local goal below which the cruise speed is reduced (meters)."""

OPTIMIZER_HEADING_GAIN = 1.0
"""Proportional gain of the in-place heading correction at the goal."""


# ============================================================================
# Terminal Colors
# ============================================================================

TERM_ORANGE = "\033[38;2;247;72;35m"
"""Terminal color code for warnings worth noticing (RGB: 247, 72, 35)."""

TERM_BLUE = "\033[38;2;35;116;247m"
"""Terminal color code for lifecycle events (RGB: 35, 116, 247)."""

TERM_RESET = "\033[0m"
"""Terminal color reset code."""


# ============================================================================
# WebSocket Configuration
# ============================================================================

WS_URI = "ws://localhost:8765"
"""WebSocket server URI of the robot bridge."""

WS_RETRY_DELAY_SECONDS = 1
"""Initial retry delay for failed WebSocket connections (seconds)."""

WS_MAX_RETRY_DELAY_SECONDS = 60
"""Maximum retry delay with exponential backoff (seconds)."""

WS_TIMEOUT_SECONDS = 5.0
"""Timeout for WebSocket message reception (seconds)."""


@dataclass
class ControllerConfig:
    """Runtime configuration shared by the controller components.

    Defaults come from the module-level constants so that a bare
    ``ControllerConfig()`` reproduces the documented tuning.
    """

    # Kinematics
    max_vel_x: float = MAX_VEL_X
    max_vel_x_backwards: float = MAX_VEL_X_BACKWARDS
    max_vel_y: float = MAX_VEL_Y
    max_vel_trans: float = MAX_VEL_TRANS
    max_vel_theta: float = MAX_VEL_THETA
    wheelbase: float = WHEELBASE
    min_turning_radius: float = MIN_TURNING_RADIUS
    tracks_distance: float = TRACKS_DISTANCE
    max_track_speed: float = MAX_TRACK_SPEED

    # Goal
    xy_goal_tolerance: float = XY_GOAL_TOLERANCE
    yaw_goal_tolerance: float = YAW_GOAL_TOLERANCE
    orientation_patience: int = ORIENTATION_PATIENCE

    # Plan tracking
    dist_behind_robot: float = DIST_BEHIND_ROBOT
    max_plan_length: float = MAX_PLAN_LENGTH
    local_window_radius: float = LOCAL_WINDOW_RADIUS
    moving_average_length: int = MOVING_AVERAGE_LENGTH
    overwrite_goal_orientation: bool = OVERWRITE_GOAL_ORIENTATION
    path_smoother: str = PATH_SMOOTHER

    # Via-points and obstacles
    via_points_separation: float = VIA_POINTS_SEPARATION
    max_obstacle_age: float = MAX_OBSTACLE_AGE
    min_obstacle_dist: float = MIN_OBSTACLE_DIST
    max_time_for_evanescent_obstacles: float = MAX_TIME_FOR_EVANESCENT_OBSTACLES
    lookahead_extension_factor: float = LOOKAHEAD_EXTENSION_FACTOR

    # Recovery
    shrink_horizon_backup: bool = SHRINK_HORIZON_BACKUP
    shrink_horizon_min_duration: float = SHRINK_HORIZON_MIN_DURATION
    backup_trigger_count: int = BACKUP_TRIGGER_COUNT
    oscillation_recovery: bool = OSCILLATION_RECOVERY
    oscillation_v_eps: float = OSCILLATION_V_EPS
    oscillation_omega_eps: float = OSCILLATION_OMEGA_EPS
    oscillation_filter_duration: float = OSCILLATION_FILTER_DURATION
    oscillation_recovery_min_duration: float = OSCILLATION_RECOVERY_MIN_DURATION
    oscillation_timeout: float = OSCILLATION_TIMEOUT
    rotation_speed: float = ROTATION_SPEED

    # Orchestration
    control_rate: float = CONTROL_RATE
    patience: int = PATIENCE

    # Frames
    global_frame: str = GLOBAL_FRAME
    robot_base_frame: str = ROBOT_BASE_FRAME
    transform_tolerance: float = TRANSFORM_TOLERANCE
    transform_timeout: float = TRANSFORM_TIMEOUT

    # Footprint
    footprint: List[Tuple[float, float]] = field(default_factory=lambda: list(ROBOT_FOOTPRINT))
    costmap_inscribed_radius: float = COSTMAP_INSCRIBED_RADIUS

    @property
    def control_period(self) -> float:
        """Duration of one control cycle (seconds)."""
        return 1.0 / self.control_rate

    @property
    def oscillation_buffer_length(self) -> int:
        """Number of commands kept by the oscillation detector."""
        return max(0, int(round(self.oscillation_filter_duration * self.control_rate)))

    def validate(self) -> List[str]:
        """Check parameter consistency.

        Problems are logged as warnings and returned; they never raise, so a
        questionable configuration still lets the process start.

        Returns:
            List of human-readable warning messages (empty if consistent).
        """
        warnings: List[str] = []

        if self.control_rate <= 0:
            warnings.append(f"control_rate must be positive (got {self.control_rate}); using 10 Hz")
            self.control_rate = CONTROL_RATE
        if self.max_vel_x_backwards <= 0:
            warnings.append(
                "max_vel_x_backwards <= 0: backward velocity is not capped. "
                "Penalize backward driving in the optimizer instead."
            )
        if self.patience < 1:
            warnings.append(f"patience must be >= 1 (got {self.patience}); failures never end a task")
        if self.transform_timeout >= self.control_period:
            warnings.append(
                f"transform_timeout ({self.transform_timeout:.3f}s) exceeds the control period "
                f"({self.control_period:.3f}s); ticks may overrun"
            )
        if self.moving_average_length < 1:
            warnings.append("moving_average_length < 1; using 1")
            self.moving_average_length = 1
        if self.dist_behind_robot <= 0:
            warnings.append("dist_behind_robot <= 0: the global plan will never be pruned")
        try:
            SmootherMode(self.path_smoother)
        except ValueError:
            warnings.append(f"unknown path_smoother '{self.path_smoother}'; paths are not smoothed")
            self.path_smoother = SmootherMode.NONE.value
        for name in ("max_vel_x", "max_vel_theta", "xy_goal_tolerance", "yaw_goal_tolerance"):
            value = getattr(self, name)
            if not math.isfinite(value) or value <= 0:
                warnings.append(f"{name} must be positive and finite (got {value})")

        for message in warnings:
            logging.warning(f"INVALID_CONFIGURATION: {message}")
        return warnings
