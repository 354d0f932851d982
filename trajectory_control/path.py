"""Global plan representation.

The global plan is the waypoint sequence produced upstream (global planner or
task queue) in a map-level frame. It is only ever mutated by pruning a prefix
or replaced entirely when a new task is accepted.
"""

import math
from typing import Iterator, List, Sequence, Union

import numpy as np
import numpy.typing as npt

from .nav_types import Pose2D, TaskGoal
from .path_smoother import SmootherMode, smooth_poses


class GlobalPlan:
    """Ordered waypoints in ``frame_id`` with cached coordinate arrays.

    Attributes:
        frame_id: Frame the waypoints are expressed in.
        pruned_count: Number of waypoints removed from the front so far.
    """

    def __init__(self, poses: Sequence[Pose2D], frame_id: str) -> None:
        self.frame_id = frame_id
        self._poses: List[Pose2D] = list(poses)
        self.pruned_count: int = 0
        self._xy: npt.NDArray[np.float64] = self._compute_xy()

    @classmethod
    def from_goal(cls, goal: TaskGoal, smoother: Union[SmootherMode, str] = SmootherMode.NONE) -> "GlobalPlan":
        """Build the plan of a task goal, smoothing its waypoints with ``smoother``."""
        return cls(smooth_poses(goal.poses, smoother), goal.frame_id)

    def _compute_xy(self) -> npt.NDArray[np.float64]:
        if not self._poses:
            return np.zeros((0, 2))
        return np.array([[p.x, p.y] for p in self._poses], dtype=float)

    @property
    def xy(self) -> npt.NDArray[np.float64]:
        """Waypoint positions as an (N, 2) array."""
        return self._xy

    @property
    def poses(self) -> List[Pose2D]:
        return list(self._poses)

    @property
    def goal(self) -> Pose2D:
        """Final waypoint.

        Raises:
            IndexError: If the plan is empty.
        """
        return self._poses[-1]

    def __len__(self) -> int:
        return len(self._poses)

    def __getitem__(self, idx: int) -> Pose2D:
        return self._poses[idx]

    def __iter__(self) -> Iterator[Pose2D]:
        return iter(self._poses)

    def is_valid(self) -> bool:
        """Non-empty and every waypoint finite."""
        return bool(self._poses) and all(p.is_finite() for p in self._poses)

    def prune_prefix(self, index: int) -> int:
        """Drop every waypoint before ``index``.

        Returns:
            Number of waypoints removed.
        """
        index = max(0, min(index, len(self._poses) - 1))
        if index == 0:
            return 0
        del self._poses[:index]
        self._xy = self._xy[index:]
        self.pruned_count += index
        return index

    def distances_to(self, x: float, y: float) -> npt.NDArray[np.float64]:
        """Euclidean distance from (x, y) to every waypoint."""
        return np.hypot(self._xy[:, 0] - x, self._xy[:, 1] - y)

    def arc_length(self, start: int = 0, end: int = -1) -> float:
        """Cumulative length of the polyline between two waypoint indices (inclusive)."""
        if len(self._poses) < 2:
            return 0.0
        if end < 0:
            end = len(self._poses) + end
        segment = self._xy[start : end + 1]
        if len(segment) < 2:
            return 0.0
        return float(np.sum(np.hypot(np.diff(segment[:, 0]), np.diff(segment[:, 1]))))

    def remaining_distance(self, x: float, y: float) -> float:
        """Distance from (x, y) to the first waypoint plus the remaining arc length."""
        if not self._poses:
            return 0.0
        first = self._poses[0]
        return math.hypot(first.x - x, first.y - y) + self.arc_length()
