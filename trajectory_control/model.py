"""
Kinematic model and velocity command post-processing.

This module limits raw optimizer commands to the robot's kinematic limits and
converts them into platform-specific actuator representations:
- Saturation (independent per axis, or proportional to preserve direction)
- Car-like steering angle from the turning-radius relation
- Left/right track speeds for differential (tracked) bases
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional, Tuple

from .command_modes import OutputMode
from .config import ControllerConfig
from .nav_types import CommandOutput, Twist2D

OMEGA_EPSILON = 1e-9
"""Angular velocities below this magnitude count as straight-line motion (rad/s)."""


@dataclass(frozen=True)
class VelocityLimits:
    """Kinematic limits for saturation.

    Attributes:
        max_vel_x: Forward limit (m/s).
        max_vel_x_backwards: Backward limit as a positive magnitude (m/s).
        max_vel_y: Strafing limit (m/s).
        max_vel_trans: Limit on hypot(vx, vy) (m/s); non-positive disables it.
        max_vel_theta: Angular limit (rad/s).
    """

    max_vel_x: float
    max_vel_x_backwards: float
    max_vel_y: float
    max_vel_trans: float
    max_vel_theta: float

    @classmethod
    def from_config(cls, config: ControllerConfig) -> "VelocityLimits":
        return cls(
            max_vel_x=config.max_vel_x,
            max_vel_x_backwards=config.max_vel_x_backwards,
            max_vel_y=config.max_vel_y,
            max_vel_trans=config.max_vel_trans,
            max_vel_theta=config.max_vel_theta,
        )


_warned_backwards = False


def saturate(
    vx: float, vy: float, omega: float, limits: VelocityLimits, proportional: bool = False
) -> Tuple[float, float, float]:
    """Clamp a velocity command to the kinematic limits.

    Per-axis ratios are computed for forward/backward vx, vy, omega and the
    translational magnitude. In independent mode each axis is scaled by its
    own ratio (the translational cap then scales vx and vy together). In
    proportional mode all three components are scaled by the smallest ratio,
    so the commanded direction is preserved.

    Args:
        vx: Forward velocity (m/s).
        vy: Strafing velocity (m/s).
        omega: Angular velocity (rad/s).
        limits: Kinematic limits.
        proportional: Scale all axes by one common factor.

    Returns:
        Tuple of saturated (vx, vy, omega).
    """
    global _warned_backwards

    ratio_x = 1.0
    ratio_y = 1.0
    ratio_omega = 1.0
    ratio_trans = 1.0

    # A non-positive forward limit disables the cap rather than reversing vx
    if limits.max_vel_x > 0 and vx > limits.max_vel_x:
        ratio_x = limits.max_vel_x / vx

    if limits.max_vel_x_backwards <= 0:
        if not _warned_backwards:
            logging.warning(
                "max_vel_x_backwards <= 0: backward velocity is not limited. "
                "Penalize backward driving in the optimizer instead."
            )
            _warned_backwards = True
    elif vx < -limits.max_vel_x_backwards:
        ratio_x = -limits.max_vel_x_backwards / vx

    if abs(vy) > limits.max_vel_y:
        ratio_y = abs(limits.max_vel_y / vy)

    if abs(omega) > limits.max_vel_theta:
        ratio_omega = abs(limits.max_vel_theta / omega)

    if proportional:
        if limits.max_vel_trans > 0:
            speed = math.hypot(vx, vy)
            if speed > limits.max_vel_trans:
                ratio_trans = limits.max_vel_trans / speed
        ratio = min(ratio_x, ratio_y, ratio_omega, ratio_trans)
        return vx * ratio, vy * ratio, omega * ratio

    vx *= ratio_x
    vy *= ratio_y
    omega *= ratio_omega

    if limits.max_vel_trans > 0:
        speed = math.hypot(vx, vy)
        if speed > limits.max_vel_trans:
            ratio_trans = limits.max_vel_trans / speed
            vx *= ratio_trans
            vy *= ratio_trans

    return vx, vy, omega


def to_steering_angle(
    v: float, omega: float, wheelbase: float, min_turning_radius: float = 0.0
) -> float:
    """Convert translational and angular velocity to a car-like steering angle.

    The turning radius is R = v / omega, and for a car with axle distance L
    the steering angle phi satisfies tan(phi) = L / R. Distances may be passed
    instead of velocities since only their ratio matters.

    Args:
        v: Translational velocity (m/s).
        omega: Angular velocity (rad/s).
        wheelbase: Distance between the axles (m); negative for back-wheeled robots.
        min_turning_radius: Lower bound on |R| (m).

    Returns:
        Steering angle (radians) in [-pi/2, pi/2]; 0 for straight-line motion
        or when standing still.
    """
    if abs(omega) < OMEGA_EPSILON or v == 0.0:
        return 0.0

    radius = v / omega
    if abs(radius) < min_turning_radius:
        radius = math.copysign(min_turning_radius, radius)

    angle = math.atan(wheelbase / radius)
    return max(-math.pi / 2.0, min(math.pi / 2.0, angle))


def to_differential_track_speeds(
    vx: float, omega: float, track_distance: float, max_track_speed: Optional[float] = None
) -> Tuple[float, float]:
    """
    Compute left/right track speeds from a body-frame command.

    For a differential drive base:
        v_left = vx - (d/2) * omega
        v_right = vx + (d/2) * omega

    where d is the distance between the tracks.

    Args:
        vx: Forward velocity of the robot center (m/s)
        omega: Angular velocity (rad/s), positive counter-clockwise
        track_distance: Distance between left and right tracks (m)
        max_track_speed: Optional hardware limit applied to each track (m/s)

    Returns:
        tuple[float, float]: (v_left, v_right) in m/s

    Example:
        >>> v_left, v_right = to_differential_track_speeds(1.0, 0.5, 0.5)
        >>> # Robot moves forward at 1 m/s while turning left
    """
    v_left = vx - (track_distance / 2.0) * omega
    v_right = vx + (track_distance / 2.0) * omega

    if max_track_speed is not None and max_track_speed > 0:
        v_left = max(-max_track_speed, min(max_track_speed, v_left))
        v_right = max(-max_track_speed, min(max_track_speed, v_right))

    return v_left, v_right


class VelocityPostProcessor:
    """Saturates optimizer output and adds the platform representation.

    Attributes:
        limits: Kinematic limits.
        mode: Which saturation mode and actuator outputs are enabled.
        config: Geometry used by the conversions (wheelbase, track distance).
    """

    def __init__(self, config: ControllerConfig, mode: Optional[OutputMode] = None) -> None:
        self.config = config
        self.limits = VelocityLimits.from_config(config)
        self.mode = mode if mode is not None else OutputMode()

    def saturate(self, vx: float, vy: float, omega: float) -> Tuple[float, float, float]:
        return saturate(vx, vy, omega, self.limits, self.mode.proportional_saturation)

    def process(self, twist: Twist2D, stamp: float) -> CommandOutput:
        """Saturate ``twist`` and attach the enabled actuator representations."""
        vx, vy, omega = self.saturate(twist.vx, twist.vy, twist.omega)

        track_speeds = None
        if self.mode.track_commands:
            track_speeds = to_differential_track_speeds(
                vx, omega, self.config.tracks_distance, self.config.max_track_speed
            )

        steering_angle = None
        if self.mode.steering_commands:
            steering_angle = to_steering_angle(
                vx, omega, self.config.wheelbase, self.config.min_turning_radius
            )

        return CommandOutput(
            stamp=stamp,
            twist=Twist2D(vx, vy, omega),
            track_speeds=track_speeds,
            steering_angle=steering_angle,
        )
