"""Frame transforms for the trajectory controller.

This module provides:
- ``TransformBuffer``: an in-process store of time-stamped 2D transforms
  forming a frame tree (e.g. map -> odom -> base_link), fed by odometry or
  static transform messages
- ``TransformGateway``: the controller-facing lookup with bounded staleness,
  a single retry within the timeout, and failure reported as ``None``

The gateway never fabricates a pose: callers skip the tick on ``None``.
"""

import bisect
import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from .nav_types import Pose2D


class TransformError(Exception):
    """Raised when a transform is unavailable or too old."""


class TransformSource(Protocol):
    """Collaborator resolving frame-to-frame transforms."""

    def lookup(
        self, target_frame: str, source_frame: str, at_time: Optional[float], tolerance: float
    ) -> Pose2D:
        """Return the ``source_frame`` origin expressed in ``target_frame``.

        Raises:
            TransformError: If the transform is unavailable or stale.
        """
        ...


class TransformBuffer:
    """Thread-safe tree of time-stamped planar transforms.

    Each child frame has exactly one parent. Samples are kept for
    ``cache_duration`` seconds; static transforms never expire.

    Attributes:
        cache_duration: History kept per edge (seconds).
    """

    def __init__(self, cache_duration: float = 10.0) -> None:
        self.cache_duration = cache_duration
        self._lock = threading.Lock()
        self._parents: Dict[str, str] = {}
        # child -> (stamps, poses), sorted by stamp
        self._samples: Dict[str, Tuple[List[float], List[Pose2D]]] = {}
        self._static: Dict[str, Pose2D] = {}

    def set_transform(
        self, parent: str, child: str, pose: Pose2D, stamp: float, static: bool = False
    ) -> None:
        """Store the pose of ``child`` in ``parent``.

        Args:
            parent: Parent frame id.
            child: Child frame id.
            pose: Child origin expressed in the parent frame.
            stamp: Sample time (seconds).
            static: If True, the sample is valid at any time.

        Raises:
            ValueError: If the pose is not finite or the edge would re-parent ``child``.
        """
        if not pose.is_finite():
            raise ValueError(f"Non-finite transform {parent} -> {child}")
        if parent == child:
            raise ValueError(f"Frame {child} cannot be its own parent")

        edge = Pose2D(pose.x, pose.y, pose.yaw, parent)
        with self._lock:
            known_parent = self._parents.get(child)
            if known_parent is not None and known_parent != parent:
                raise ValueError(f"Frame {child} already has parent {known_parent}, not {parent}")
            self._parents[child] = parent

            if static:
                self._static[child] = edge
                return

            stamps, poses = self._samples.setdefault(child, ([], []))
            idx = bisect.bisect_right(stamps, stamp)
            stamps.insert(idx, stamp)
            poses.insert(idx, edge)

            # Drop history older than the cache window
            horizon = stamps[-1] - self.cache_duration
            cut = bisect.bisect_left(stamps, horizon)
            if cut > 0:
                del stamps[:cut]
                del poses[:cut]

    def _edge(self, child: str, at_time: Optional[float], tolerance: float) -> Pose2D:
        """Sample of the ``parent -> child`` edge closest to ``at_time``."""
        if child in self._static:
            return self._static[child]

        stamps, poses = self._samples.get(child, ([], []))
        if not stamps:
            raise TransformError(f"No transform available for frame {child}")
        if at_time is None:
            return poses[-1]

        idx = bisect.bisect_left(stamps, at_time)
        candidates = [i for i in (idx - 1, idx) if 0 <= i < len(stamps)]
        best = min(candidates, key=lambda i: abs(stamps[i] - at_time))
        if abs(stamps[best] - at_time) > tolerance:
            raise TransformError(
                f"Transform for frame {child} is stale: sample at {stamps[best]:.3f}, "
                f"requested {at_time:.3f} (tolerance {tolerance:.3f}s)"
            )
        return poses[best]

    def _chain(self, frame: str, at_time: Optional[float], tolerance: float) -> Dict[str, Pose2D]:
        """Pose of ``frame`` expressed in each of its ancestors (itself included)."""
        chain = {frame: Pose2D(frame_id=frame)}
        current = frame
        accumulated = Pose2D(frame_id=frame)
        visited = {frame}
        while current in self._parents:
            edge = self._edge(current, at_time, tolerance)
            accumulated = edge.compose(accumulated)
            current = self._parents[current]
            if current in visited:
                raise TransformError(f"Transform loop detected at frame {current}")
            visited.add(current)
            chain[current] = accumulated
        return chain

    def lookup(
        self,
        target_frame: str,
        source_frame: str,
        at_time: Optional[float] = None,
        tolerance: float = 0.0,
    ) -> Pose2D:
        """Return the ``source_frame`` origin expressed in ``target_frame``.

        Args:
            target_frame: Frame the result is expressed in.
            source_frame: Frame whose origin is resolved.
            at_time: Requested time (seconds); None uses the newest samples.
            tolerance: Maximum distance between sample and requested time (seconds).

        Raises:
            TransformError: If the frames are not connected or a sample is stale.
        """
        if target_frame == source_frame:
            return Pose2D(frame_id=target_frame)

        with self._lock:
            source_chain = self._chain(source_frame, at_time, tolerance)
            target_chain = self._chain(target_frame, at_time, tolerance)

        common = next((f for f in source_chain if f in target_chain), None)
        if common is None:
            raise TransformError(f"Frames {target_frame} and {source_frame} are not connected")

        target_in_common = target_chain[common]
        source_in_common = source_chain[common]
        result = target_in_common.inverse(frame_id=target_frame).compose(source_in_common)
        return Pose2D(result.x, result.y, result.yaw, target_frame)


class TransformGateway:
    """Controller-facing transform resolution with bounded waiting.

    Attributes:
        global_frame: Planning frame of the controller.
        robot_base_frame: Body frame of the robot.
        tolerance: Maximum staleness of a transform sample (seconds).
        timeout: Bounded wait before the single retry (seconds).
    """

    def __init__(
        self,
        source: TransformSource,
        global_frame: str,
        robot_base_frame: str,
        tolerance: float = 0.2,
        timeout: float = 0.05,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._source = source
        self.global_frame = global_frame
        self.robot_base_frame = robot_base_frame
        self.tolerance = tolerance
        self.timeout = timeout
        self._clock = clock
        self._sleep = sleep

    def lookup(
        self, target_frame: str, source_frame: str, at_time: Optional[float] = None
    ) -> Optional[Pose2D]:
        """Resolve ``source_frame`` in ``target_frame`` at ``at_time`` (default: now).

        The lookup is attempted once, then retried once after waiting at most
        ``timeout`` seconds.

        Returns:
            The transform as a pose in ``target_frame``, or None on failure.
        """
        if target_frame == source_frame:
            return Pose2D(frame_id=target_frame)

        if at_time is None:
            at_time = self._clock()

        last_error: Optional[TransformError] = None
        for attempt in range(2):
            try:
                return self._source.lookup(target_frame, source_frame, at_time, self.tolerance)
            except TransformError as e:
                last_error = e
            if attempt == 0 and self.timeout > 0:
                self._sleep(self.timeout)

        logging.warning(f"Transform {source_frame} -> {target_frame} unavailable: {last_error}")
        return None

    def robot_pose(self, at_time: Optional[float] = None) -> Optional[Pose2D]:
        """Current robot pose in the global planning frame, or None."""
        return self.lookup(self.global_frame, self.robot_base_frame, at_time)
