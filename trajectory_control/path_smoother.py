"""Smoothing of incoming global paths.

Grid-based global planners produce staircase paths. Before a path is tracked
it can be smoothed with one of these filters on the waypoint positions:
- Moving average over 3 or 5 waypoints
- Moving average over 3 waypoints computed in place, so each average already
  uses the smoothed predecessor (stronger smoothing in one pass)
- Savitzky-Golay (quadratic fit) over 5 or 7 waypoints, which keeps curve
  apexes better than a plain average

The first and last waypoints never move. Near the ends the window shrinks
symmetrically to the largest one that fits (a Savitzky-Golay window too
narrow for a quadratic fit becomes a 3-point average). Headings are
recomputed along the smoothed path; the final waypoint keeps its own
orientation, which is the orientation the robot must reach.
"""

import enum
import math
from typing import Dict, List, Sequence, Union

import numpy as np
import numpy.typing as npt

from .nav_types import Pose2D, normalize_angle


class SmootherMode(enum.Enum):
    NONE = "none"
    MOVING_AVERAGE_3 = "ma3"
    MOVING_AVERAGE_5 = "ma5"
    MOVING_AVERAGE_3_IN_PLACE = "ma3_in_place"
    SAVITZKY_GOLAY_5 = "sg5"
    SAVITZKY_GOLAY_7 = "sg7"


# Quadratic Savitzky-Golay smoothing coefficients, keyed by half-width
SAVITZKY_GOLAY_KERNELS: Dict[int, npt.NDArray[np.float64]] = {
    2: np.array([-3.0, 12.0, 17.0, 12.0, -3.0]) / 35.0,
    3: np.array([-2.0, 3.0, 6.0, 7.0, 6.0, 3.0, -2.0]) / 21.0,
}

_HALF_WIDTHS = {
    SmootherMode.MOVING_AVERAGE_3: 1,
    SmootherMode.MOVING_AVERAGE_5: 2,
    SmootherMode.MOVING_AVERAGE_3_IN_PLACE: 1,
    SmootherMode.SAVITZKY_GOLAY_5: 2,
    SmootherMode.SAVITZKY_GOLAY_7: 3,
}


def _kernel(mode: SmootherMode, half_width: int) -> npt.NDArray[np.float64]:
    # Three points fit a parabola exactly, so the narrowest window averages instead
    if half_width in SAVITZKY_GOLAY_KERNELS and mode in (
        SmootherMode.SAVITZKY_GOLAY_5,
        SmootherMode.SAVITZKY_GOLAY_7,
    ):
        return SAVITZKY_GOLAY_KERNELS[half_width]
    width = 2 * half_width + 1
    return np.full(width, 1.0 / width)


def smooth_points(
    xy: npt.ArrayLike, mode: Union[SmootherMode, str] = SmootherMode.NONE
) -> npt.NDArray[np.float64]:
    """Smooth an (N, 2) array of waypoint positions.

    Args:
        xy: Waypoint positions.
        mode: Filter to apply (a ``SmootherMode`` or its value).

    Returns:
        A new (N, 2) array; the input is not modified.

    Raises:
        ValueError: If the mode is unknown or ``xy`` is not (N, 2).
    """
    mode = SmootherMode(mode)
    points = np.array(xy, dtype=float)
    if points.size == 0:
        return np.zeros((0, 2))
    if points.ndim != 2 or points.shape[1] != 2:
        raise ValueError(f"Expected an (N, 2) array of positions, got shape {points.shape}")
    n = len(points)
    if mode is SmootherMode.NONE or n < 3:
        return points

    half_width = _HALF_WIDTHS[mode]
    if mode is SmootherMode.MOVING_AVERAGE_3_IN_PLACE:
        for i in range(1, n - 1):
            points[i] = (points[i - 1] + points[i] + points[i + 1]) / 3.0
        return points

    smoothed = points.copy()
    for i in range(1, n - 1):
        h = min(half_width, i, n - 1 - i)
        smoothed[i] = _kernel(mode, h) @ points[i - h:i + h + 1]
    return smoothed


def smooth_poses(poses: Sequence[Pose2D], mode: Union[SmootherMode, str] = SmootherMode.NONE) -> List[Pose2D]:
    """Smooth waypoint positions and recompute the headings along the result.

    Each waypoint heads towards its successor; the final waypoint keeps its
    orientation.
    """
    mode = SmootherMode(mode)
    if mode is SmootherMode.NONE or len(poses) < 3:
        return list(poses)

    xy = smooth_points([[p.x, p.y] for p in poses], mode)
    smoothed = []
    for i, pose in enumerate(poses[:-1]):
        dx, dy = xy[i + 1] - xy[i]
        yaw = math.atan2(dy, dx) if (dx or dy) else pose.yaw
        smoothed.append(Pose2D(float(xy[i][0]), float(xy[i][1]), normalize_angle(yaw), pose.frame_id))
    smoothed.append(poses[-1])
    return smoothed
