"""Via-point handling.

Via-points bias the optimizer towards the reference path without acting as
hard constraints. They are either derived from the local window every cycle
or supplied externally as an override that is used verbatim.
"""

import math
import threading
from typing import Iterable, List, Optional, Sequence, Tuple

from .nav_types import Point2D, Pose2D


def derive_via_points(window: Sequence[Pose2D], min_separation: float) -> List[Point2D]:
    """Sparse via-point sequence from a local window.

    The first window pose is the robot position and only serves as the
    initial reference. A pose is emitted when it is at least
    ``min_separation`` away from the previously emitted one. The final pose
    is always emitted, even if it is closer than the threshold, so that the
    goal endpoint survives.

    Args:
        window: Local window poses in the planning frame.
        min_separation: Minimum spacing (meters); non-positive disables derivation.

    Returns:
        List of (x, y) via-points (empty for an empty window).
    """
    if not window or min_separation <= 0:
        return []

    points: List[Point2D] = []
    last = window[0]
    last_idx = 0
    for i in range(1, len(window)):
        pose = window[i]
        if math.hypot(pose.x - last.x, pose.y - last.y) < min_separation:
            continue
        points.append((pose.x, pose.y))
        last = pose
        last_idx = i

    final_idx = len(window) - 1
    if last_idx != final_idx or not points:
        points.append((window[final_idx].x, window[final_idx].y))
    return points


class ViaPointManager:
    """Holds the current via-point sequence and the external override.

    Attributes:
        min_separation: Spacing used when deriving from the local window (meters).
    """

    def __init__(self, min_separation: float) -> None:
        self.min_separation = min_separation
        self._lock = threading.Lock()
        self._override: Optional[Tuple[Point2D, ...]] = None
        self._points: Tuple[Point2D, ...] = ()

    def derive_from_window(
        self, window: Sequence[Pose2D], min_separation: Optional[float] = None
    ) -> Tuple[Point2D, ...]:
        """Refresh the via-points from ``window`` unless an override is active.

        Returns:
            The via-point sequence in effect for this cycle.
        """
        with self._lock:
            override = self._override
        if override is not None:
            points = override
        else:
            sep = self.min_separation if min_separation is None else min_separation
            points = tuple(derive_via_points(window, sep))
        with self._lock:
            self._points = points
        return points

    def set_override(self, points: Iterable[Sequence[float]]) -> None:
        """Use ``points`` verbatim instead of deriving from the window.

        Raises:
            ValueError: If a point is not a finite (x, y) pair.
        """
        parsed = []
        for p in points:
            x, y = float(p[0]), float(p[1])
            if not (math.isfinite(x) and math.isfinite(y)):
                raise ValueError(f"Non-finite via-point ({x}, {y})")
            parsed.append((x, y))
        with self._lock:
            self._override = tuple(parsed)

    def clear_override(self) -> None:
        with self._lock:
            self._override = None

    @property
    def override_active(self) -> bool:
        with self._lock:
            return self._override is not None

    @property
    def points(self) -> Tuple[Point2D, ...]:
        with self._lock:
            return self._points
