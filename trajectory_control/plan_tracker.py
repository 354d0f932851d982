"""Global plan tracking for the control loop.

Each cycle the tracker:
- Prunes the already-passed prefix of the global plan
- Projects the retained plan into the planning frame with a single transform
  lookup and cuts a bounded local window from it
- Estimates the local goal orientation with a moving average over the
  upcoming waypoints, suppressing planner-induced heading jitter

A failed transform lookup aborts the cycle: no window is produced.
"""

import logging
from dataclasses import replace
from typing import List, Optional

import numpy as np

from .config import ControllerConfig
from .nav_types import LocalWindow, Pose2D, average_angles, normalize_angle
from .path import GlobalPlan
from .recovery import TuningParameters
from .transforms import TransformGateway

# Only this share of the local extent is used, so obstacles on the border
# of the local map are still seen by the optimizer.
LOCAL_EXTENT_SHARE = 0.85


class PlanTracker:
    """Prunes, transforms and orients the global plan for the optimizer.

    Attributes:
        gateway: Transform resolution (borrowed, not owned).
        config: Controller configuration.
        tuning: Shared tuning parameters (lookahead factor from recovery).
    """

    def __init__(
        self,
        gateway: TransformGateway,
        config: ControllerConfig,
        tuning: Optional[TuningParameters] = None,
    ) -> None:
        self.gateway = gateway
        self.config = config
        self.tuning = tuning if tuning is not None else TuningParameters()

    def prune(self, plan: GlobalPlan, robot_pose: Pose2D, dist_behind_robot: Optional[float] = None) -> bool:
        """Cut off waypoints the robot has already passed.

        Finds the waypoint closest to the robot among those within
        ``dist_behind_robot`` and drops everything before it.

        Args:
            plan: Global plan, pruned in place.
            robot_pose: Robot pose (any frame connected to the plan frame).
            dist_behind_robot: Threshold (meters); defaults to the configured value.

        Returns:
            True if a waypoint within the threshold was found (the plan may be
            unchanged if it is the first one), False if the transform failed or
            no waypoint lies within the threshold.
        """
        if len(plan) == 0:
            return False
        if dist_behind_robot is None:
            dist_behind_robot = self.config.dist_behind_robot

        robot = self._robot_in_plan_frame(plan, robot_pose)
        if robot is None:
            return False

        distances = plan.distances_to(robot.x, robot.y)
        within = distances <= dist_behind_robot
        if not np.any(within):
            return False

        candidates = np.where(within, distances, np.inf)
        nearest = int(np.argmin(candidates))
        removed = plan.prune_prefix(nearest)
        if removed:
            logging.debug(f"Pruned {removed} waypoints from the global plan")
        return True

    def _robot_in_plan_frame(self, plan: GlobalPlan, robot_pose: Pose2D) -> Optional[Pose2D]:
        if robot_pose.frame_id == plan.frame_id or not robot_pose.frame_id:
            return robot_pose
        tf = self.gateway.lookup(plan.frame_id, robot_pose.frame_id)
        if tf is None:
            return None
        return tf.compose(robot_pose)

    def transform(self, plan: GlobalPlan, robot_pose: Pose2D) -> Optional[LocalWindow]:
        """Project the plan into the planning frame and cut the local window.

        A single lookup maps the plan frame into the planning frame. The window
        starts at the waypoint closest to the robot inside the local extent and
        stops once it leaves the extent or exceeds the (possibly extended)
        ``max_plan_length``. If nothing qualifies, the global goal is injected.

        Args:
            plan: Global plan (already pruned).
            robot_pose: Robot pose in the planning frame.

        Returns:
            The local window, or None if the plan is empty or the lookup failed.
        """
        if len(plan) == 0:
            return None
        tf_plan_to_global = self._plan_to_planning_frame(plan, robot_pose)
        if tf_plan_to_global is None:
            return None
        return self._cut_window(plan, robot_pose, tf_plan_to_global)

    def _plan_to_planning_frame(self, plan: GlobalPlan, robot_pose: Pose2D) -> Optional[Pose2D]:
        planning_frame = robot_pose.frame_id or self.config.global_frame
        return self.gateway.lookup(planning_frame, plan.frame_id)

    def _cut_window(
        self, plan: GlobalPlan, robot_pose: Pose2D, tf_plan_to_global: Pose2D
    ) -> LocalWindow:
        robot_in_plan = tf_plan_to_global.inverse(frame_id=plan.frame_id).compose(robot_pose)
        distances = plan.distances_to(robot_in_plan.x, robot_in_plan.y)

        dist_threshold = self.config.local_window_radius * LOCAL_EXTENT_SHARE
        max_plan_length = self.config.max_plan_length * self.tuning.lookahead_factor

        # Closest waypoint before the plan leaves the local extent
        start = 0
        best = np.inf
        for j, d in enumerate(distances):
            if d > dist_threshold:
                break
            if d < best:
                best = d
                start = j

        poses: List[Pose2D] = []
        plan_length = 0.0
        i = start
        while (
            i < len(plan)
            and distances[i] <= dist_threshold
            and (self.config.max_plan_length <= 0 or plan_length <= max_plan_length)
        ):
            poses.append(tf_plan_to_global.compose(plan[i]))
            if i > start and self.config.max_plan_length > 0:
                plan_length += float(np.hypot(*(plan.xy[i] - plan.xy[i - 1])))
            i += 1

        global_goal = tf_plan_to_global.compose(plan.goal)
        if not poses:
            # Near the goal but not yet there (e.g. large heading error)
            poses.append(global_goal)
            start = len(plan) - 1
            goal_idx = len(plan) - 1
        else:
            goal_idx = i - 1

        return LocalWindow(
            poses=tuple(poses),
            start_idx=start,
            goal_idx=goal_idx,
            transform=tf_plan_to_global,
            goal=poses[-1],
            global_goal=global_goal,
        )

    def estimate_goal_orientation(
        self,
        plan: GlobalPlan,
        local_goal: Pose2D,
        goal_idx: int,
        tf_plan_to_global: Pose2D,
        moving_average_length: Optional[int] = None,
    ) -> float:
        """Estimate the heading of the local goal in the planning frame.

        Away from the end of the plan, the heading is the circular mean of the
        segment directions over the next ``moving_average_length`` waypoints.
        At the final waypoint the plan's own orientation is used unmodified;
        shortly before it, the final orientation is used.

        Returns:
            Yaw angle (radians) in the planning frame.
        """
        if moving_average_length is None:
            moving_average_length = self.config.moving_average_length
        n = len(plan)

        if goal_idx > n - moving_average_length - 2:
            if goal_idx >= n - 1:
                return local_goal.yaw
            return tf_plan_to_global.compose(plan.goal).yaw

        moving_average_length = min(moving_average_length, n - goal_idx - 1)
        candidates = []
        pose_k = local_goal
        for i in range(goal_idx, goal_idx + moving_average_length):
            pose_kp1 = tf_plan_to_global.compose(plan[i + 1])
            candidates.append(np.arctan2(pose_kp1.y - pose_k.y, pose_kp1.x - pose_k.x))
            pose_k = pose_kp1
        return normalize_angle(average_angles([float(c) for c in candidates]))

    def orient_goal(self, plan: GlobalPlan, window: LocalWindow) -> LocalWindow:
        """Give the local goal its estimated heading.

        Applied to every final window, including one shortened by a backup
        mode. A no-op unless ``overwrite_goal_orientation`` is set.
        """
        if not self.config.overwrite_goal_orientation:
            return window
        yaw = self.estimate_goal_orientation(plan, window.goal, window.goal_idx, window.transform)
        goal = window.goal.with_yaw(yaw)
        return replace(window, poses=tuple(window.poses[:-1]) + (goal,), goal=goal)

    def update(self, plan: GlobalPlan, robot_pose: Pose2D) -> Optional[LocalWindow]:
        """Full per-cycle processing: prune, transform, orient.

        The first window pose is replaced by the robot pose so that the window
        starts at the robot, and the local goal receives the estimated heading
        when ``overwrite_goal_orientation`` is set.

        Returns:
            The local window, or None if the plan is empty or the transform
            lookup failed.
        """
        if len(plan) == 0:
            return None
        # One lookup serves both pruning and the window projection
        tf_plan_to_global = self._plan_to_planning_frame(plan, robot_pose)
        if tf_plan_to_global is None:
            return None

        robot_in_plan = tf_plan_to_global.inverse(frame_id=plan.frame_id).compose(robot_pose)
        self.prune(plan, robot_in_plan)
        window = self._cut_window(plan, robot_pose, tf_plan_to_global)

        if len(window.poses) > 1:
            window = replace(window, poses=(robot_pose,) + tuple(window.poses[1:]))
        return self.orient_goal(plan, window)
