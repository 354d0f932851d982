"""Navigation task orchestration.

This module implements the task state machine and the fixed-rate control loop:
- ``TaskOrchestrator``: accepts tasks (preempting the active one), runs one
  control cycle per tick and reports feedback and terminal outcomes
- ``Task``: handle returned to direct requesters (feedback queue, wait, cancel)
- ``QueueTaskFront``: queue protocol driven by inbound path and feedback
  messages, publishing a "ready" signal whenever the controller is idle

Lifecycle: IDLE -> ACTIVE -> {SUCCEEDED, FAILED, CANCELED} -> IDLE.

One control cycle:
1. Observe cancellation, copy the odometry velocity
2. Resolve the robot pose and the local window (skip the tick on failure)
3. Check the goal tolerances
4. Age out obstacles, update oscillation state, select a backup mode
5. Derive via-points and call the optimizer (or rotate in place)
6. Post-process and emit the command unless canceled meanwhile
"""

import logging
import math
import queue
import threading
import time
from typing import Callable, List, Optional, Protocol

from .config import TERM_BLUE, TERM_ORANGE, TERM_RESET, ControllerConfig
from .model import VelocityPostProcessor
from .nav_types import (
    CommandOutput,
    ControllerState,
    LocalWindow,
    OutcomeCode,
    Pose2D,
    TaskFeedback,
    TaskGoal,
    TaskResult,
    TaskState,
    Twist2D,
    normalize_angle,
)
from .obstacles import ObstacleRegistry
from .optimizer import TrajectoryOptimizer
from .path import GlobalPlan
from .plan_tracker import PlanTracker
from .recovery import FailureRecoveryController
from .transforms import TransformGateway
from .via_points import ViaPointManager


class TaskRecorder(Protocol):
    """Sink for per-tick records (see ``DataCollector``)."""

    def log_command(self, task_id: int, command: CommandOutput) -> None: ...

    def log_feedback(self, feedback: TaskFeedback) -> None: ...

    def log_result(self, result: TaskResult) -> None: ...


class Task:
    """A navigation task and the requester's handle to it.

    Attributes:
        id: Unique task id (increasing).
        goal: The accepted goal description.
        plan: Global plan, pruned by the control loop as the robot advances.
        origin: Which front end submitted the task ("direct" or "queue").
        state: Current lifecycle state.
        result: Terminal record, set once the task ends.
        feedback: Thread-safe queue of ``TaskFeedback`` records.
    """

    def __init__(self, task_id: int, goal: TaskGoal, origin: str, orchestrator: "TaskOrchestrator") -> None:
        self.id = task_id
        self.goal = goal
        self.plan = GlobalPlan.from_goal(goal, orchestrator.config.path_smoother)
        self.origin = origin
        self.state = TaskState.PENDING
        self.result: Optional[TaskResult] = None
        self.feedback: "queue.Queue[TaskFeedback]" = queue.Queue()
        self._orchestrator = orchestrator
        self._cancel_requested = threading.Event()
        self._done = threading.Event()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested.is_set()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def cancel(self) -> bool:
        """Request cancellation; the control loop honours it within one cycle."""
        return self._orchestrator.cancel(self.id)

    def wait(self, timeout: Optional[float] = None) -> Optional[TaskResult]:
        """Block until the task ends.

        Returns:
            The terminal result, or None if ``timeout`` expired first.
        """
        if not self._done.wait(timeout):
            return None
        return self.result


class TaskOrchestrator:
    """Single task state machine shared by the direct and queue front ends.

    Shared aggregates each have their own lock: the active task descriptor
    (``_task_lock``) and the odometry velocity (``_velocity_lock``). Obstacles
    and via-points are guarded inside their registries. No lock is held while
    the optimizer runs.

    Attributes:
        config: Controller configuration.
        state: Per-task controller state, owned by the control loop.
    """

    def __init__(
        self,
        config: ControllerConfig,
        gateway: TransformGateway,
        registry: ObstacleRegistry,
        via_points: ViaPointManager,
        tracker: PlanTracker,
        recovery: FailureRecoveryController,
        optimizer: TrajectoryOptimizer,
        post_processor: VelocityPostProcessor,
        command_callback: Optional[Callable[[CommandOutput], None]] = None,
        feedback_callback: Optional[Callable[[TaskFeedback], None]] = None,
        result_callback: Optional[Callable[[TaskResult], None]] = None,
        recorder: Optional[TaskRecorder] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.gateway = gateway
        self.registry = registry
        self.via_points = via_points
        self.tracker = tracker
        self.recovery = recovery
        self.optimizer = optimizer
        self.post_processor = post_processor
        self.command_callback = command_callback
        self.feedback_callback = feedback_callback
        self.result_callback = result_callback
        self.recorder = recorder
        self._clock = clock

        self.state = ControllerState()
        self._distance_remaining: float = 0.0

        self._task_lock = threading.Lock()
        self._active: Optional[Task] = None
        self._next_id = 1
        self._listeners: List[Callable[[TaskResult], None]] = []

        self._velocity_lock = threading.Lock()
        self._odom_velocity = Twist2D()

        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    # ------------------------------------------------------------------
    # Task lifecycle (called from any thread)
    # ------------------------------------------------------------------

    @property
    def is_idle(self) -> bool:
        with self._task_lock:
            return self._active is None

    @property
    def active_task(self) -> Optional[Task]:
        with self._task_lock:
            return self._active

    def add_terminal_listener(self, listener: Callable[[TaskResult], None]) -> None:
        """Register a callback invoked after every task reaches a terminal state."""
        self._listeners.append(listener)

    def submit(self, goal: TaskGoal, origin: str = "direct") -> Task:
        """Accept a new task, preempting the active one.

        An empty or non-finite plan is rejected immediately with INVALID_PATH
        and leaves the active task untouched.

        Args:
            goal: Path or destination to follow.
            origin: Submitting front end, for logging.

        Returns:
            The task handle.
        """
        with self._task_lock:
            task = Task(self._next_id, goal, origin, self)
            self._next_id += 1

        if not task.plan.is_valid():
            logging.warning(f"Task {task.id} rejected: empty or non-finite path")
            self._finish(task, TaskState.FAILED, OutcomeCode.INVALID_PATH, "Empty or non-finite path")
            return task

        with self._task_lock:
            previous = self._active
            self._active = task
            task.state = TaskState.ACTIVE

        if previous is not None:
            self._finish(previous, TaskState.CANCELED, OutcomeCode.CANCELED, f"Preempted by task {task.id}")

        logging.info(
            f"{TERM_BLUE}✓ Task {task.id} accepted ({origin}): {len(task.plan)} waypoints "
            f"in frame '{task.plan.frame_id}'{TERM_RESET}"
        )
        return task

    def cancel(self, task_id: Optional[int] = None) -> bool:
        """Flag the active task (or the one with ``task_id``) for cancellation.

        Returns:
            True if a matching active task was flagged.
        """
        with self._task_lock:
            task = self._active
            if task is None or (task_id is not None and task.id != task_id):
                return False
            task._cancel_requested.set()
        logging.info(f"Cancellation requested for task {task.id}")
        return True

    def abort(self) -> bool:
        """External goal abort: cancel whichever task is active."""
        return self.cancel()

    def complete_externally(self, task_id: int, succeeded: bool) -> bool:
        """End the active task on behalf of an external sequencer.

        Args:
            task_id: Task the sequencer refers to.
            succeeded: True for "completed" (SUCCEEDED), False for "aborted" (CANCELED).

        Returns:
            True if the task was still active and has been ended.
        """
        with self._task_lock:
            task = self._active
        if task is None or task.id != task_id:
            return False
        if succeeded:
            return self._finish(task, TaskState.SUCCEEDED, OutcomeCode.SUCCESS, "Completed by task queue")
        return self._finish(task, TaskState.CANCELED, OutcomeCode.CANCELED, "Aborted by task queue")

    def update_velocity(self, twist: Twist2D) -> None:
        """Store the latest odometry velocity (called from ingestion callbacks)."""
        with self._velocity_lock:
            self._odom_velocity = twist

    def _finish(self, task: Task, state: TaskState, outcome: OutcomeCode, message: str = "") -> bool:
        """Move ``task`` to a terminal state exactly once and publish the result."""
        with self._task_lock:
            if task.state.is_terminal:
                return False
            result = TaskResult(task.id, state, outcome, message)
            task.state = state
            task.result = result
            if self._active is task:
                self._active = None

        color = TERM_BLUE if state is TaskState.SUCCEEDED else TERM_ORANGE
        logging.info(f"{color}Task {task.id} {state.value}: {outcome.name} {message}{TERM_RESET}")

        task._done.set()
        if self.recorder is not None:
            self.recorder.log_result(result)
        if self.result_callback is not None:
            self.result_callback(result)
        for listener in list(self._listeners):
            listener(result)
        return True

    # ------------------------------------------------------------------
    # Control loop
    # ------------------------------------------------------------------

    def _begin(self, task: Task) -> None:
        """Reset per-task state the first time the loop sees ``task``."""
        self.state = ControllerState(task_id=task.id)
        self.recovery.reset()
        self._distance_remaining = task.plan.arc_length()

    def tick(self) -> Optional[CommandOutput]:
        """Run one control cycle.

        Returns:
            The emitted command, or None if the tick emitted nothing (idle,
            skipped or finished).
        """
        now = self._clock()
        with self._task_lock:
            task = self._active
        if task is None:
            return None
        if task.id != self.state.task_id:
            self._begin(task)

        if task.cancel_requested:
            self._finish(task, TaskState.CANCELED, OutcomeCode.CANCELED, "Canceled by request")
            return None

        with self._velocity_lock:
            self.state.robot_vel = self._odom_velocity

        pose = self.gateway.robot_pose(now)
        if pose is None:
            return self._tick_failed(task, now, OutcomeCode.TRANSFORM_UNAVAILABLE)
        self.state.robot_pose = pose

        window = self.tracker.update(task.plan, pose)
        if window is None:
            return self._tick_failed(task, now, OutcomeCode.TRANSFORM_UNAVAILABLE)
        self.state.goal_pose = window.global_goal
        self._update_distance_remaining(task, pose, window)

        if self._check_goal(task, pose, window.global_goal, now):
            return None

        cfg = self.config
        self.registry.evict_stale(now, cfg.max_obstacle_age)
        obstacles = self.registry.snapshot()

        self.recovery.update_oscillation(self.state.last_cmd, now)
        if cfg.oscillation_timeout > 0 and self.recovery.oscillation_duration(now) > cfg.oscillation_timeout:
            self._finish(
                task,
                TaskState.FAILED,
                OutcomeCode.OSCILLATION_DETECTED,
                f"Oscillating for more than {cfg.oscillation_timeout:.1f}s",
            )
            self._send_stop(task, now)
            return None

        shaped = self.recovery.configure_backup_modes(window, now, self.registry.custom_ages(now))
        if shaped is not window:
            # The shortened window ends at another waypoint
            shaped = self.tracker.orient_goal(task.plan, shaped)
        window = shaped
        via_points = self.via_points.derive_from_window(window.poses)

        if self.recovery.tuning.simple_rotation:
            rotation = self._rotation_command(pose, window)
            if rotation is not None:
                return self._emit(task, rotation, now)
            logging.info("In-place rotation completed, resuming optimization")
            self.recovery.complete_rotation()

        self.optimizer.set_obstacles(obstacles)
        self.optimizer.set_via_points(via_points)
        self.optimizer.set_plan(window.poses, window.goal)
        raw = self.optimizer.compute_command(pose, self.state.robot_vel)
        if task.cancel_requested:
            self._finish(task, TaskState.CANCELED, OutcomeCode.CANCELED, "Canceled by request")
            return None

        if raw is not None and not raw.is_finite():
            logging.warning(f"Optimizer returned a non-finite command {raw}; treating as infeasible")
            raw = None
        self.recovery.record_outcome(raw is not None, now)
        if raw is None:
            self._send_stop(task, now)
            return self._tick_failed(task, now, OutcomeCode.NO_FEASIBLE_COMMAND)

        self.state.consecutive_failures = 0
        self.state.last_failure = None
        output = self._emit(task, raw, now)
        if output is not None:
            self._publish_feedback(task, now)
        return output

    def _emit(self, task: Task, twist: Twist2D, now: float) -> Optional[CommandOutput]:
        """Post-process and send ``twist`` unless the task ended meanwhile."""
        if task.cancel_requested:
            self._finish(task, TaskState.CANCELED, OutcomeCode.CANCELED, "Canceled by request")
            return None
        if task.state.is_terminal:
            return None

        output = self.post_processor.process(twist, now)
        self.state.last_cmd = output.twist
        if self.command_callback is not None:
            self.command_callback(output)
        if self.recorder is not None:
            self.recorder.log_command(task.id, output)
        return output

    def _send_stop(self, task: Task, now: float) -> None:
        """Command zero velocity (never after a cancellation)."""
        if task.cancel_requested:
            return
        output = self.post_processor.process(Twist2D(), now)
        self.state.last_cmd = output.twist
        if self.command_callback is not None:
            self.command_callback(output)
        if self.recorder is not None:
            self.recorder.log_command(task.id, output)

    def _tick_failed(self, task: Task, now: float, code: OutcomeCode) -> None:
        """Count a failed tick; end the task once patience is exhausted.

        A pending cancellation takes precedence over the failure.
        """
        if task.cancel_requested:
            self._finish(task, TaskState.CANCELED, OutcomeCode.CANCELED, "Canceled by request")
            return None
        self.state.consecutive_failures += 1
        self.state.last_failure = code
        logging.warning(
            f"Tick failed ({code.name}), {self.state.consecutive_failures} consecutive failure(s)"
        )
        self._publish_feedback(task, now)

        patience = self.config.patience
        if patience > 0 and self.state.consecutive_failures >= patience:
            if code is OutcomeCode.TRANSFORM_UNAVAILABLE:
                outcome = OutcomeCode.TRANSFORM_UNAVAILABLE
            else:
                outcome = OutcomeCode.PATIENCE_EXCEEDED
            self._finish(
                task,
                TaskState.FAILED,
                outcome,
                f"{self.state.consecutive_failures} consecutive failed cycles (last: {code.name})",
            )
        return None

    def _check_goal(self, task: Task, pose: Pose2D, goal: Pose2D, now: float) -> bool:
        """Apply the goal tolerances; returns True if the task ended."""
        cfg = self.config
        distance = pose.distance_to(goal)
        if distance >= cfg.xy_goal_tolerance:
            self.state.orientation_mismatch_ticks = 0
            return False

        heading_error = abs(normalize_angle(goal.yaw - pose.yaw))
        if heading_error < cfg.yaw_goal_tolerance:
            self.state.goal_reached = True
            self._send_stop(task, now)
            self._finish(task, TaskState.SUCCEEDED, OutcomeCode.SUCCESS, "Goal reached")
            return True

        self.state.orientation_mismatch_ticks += 1
        if self.state.orientation_mismatch_ticks > cfg.orientation_patience:
            self._send_stop(task, now)
            self._finish(
                task,
                TaskState.FAILED,
                OutcomeCode.GOAL_ORIENTATION_MISMATCH,
                f"At goal position but heading off by {heading_error:.3f} rad",
            )
            return True
        return False

    def _rotation_command(self, pose: Pose2D, window: LocalWindow) -> Optional[Twist2D]:
        """In-place rotation towards the local goal; None once aligned."""
        goal = window.goal
        if pose.distance_to(goal) > self.config.xy_goal_tolerance:
            target = math.atan2(goal.y - pose.y, goal.x - pose.x)
        else:
            target = goal.yaw
        error = normalize_angle(target - pose.yaw)
        if abs(error) < self.config.yaw_goal_tolerance:
            return None

        direction = self.recovery.preferred_rotation.value or math.copysign(1.0, error)
        return Twist2D(0.0, 0.0, direction * self.config.rotation_speed)

    def _update_distance_remaining(self, task: Task, pose: Pose2D, window: LocalWindow) -> None:
        robot_in_plan = window.transform.inverse(frame_id=task.plan.frame_id).compose(pose)
        self._distance_remaining = task.plan.remaining_distance(robot_in_plan.x, robot_in_plan.y)

    def _publish_feedback(self, task: Task, now: float) -> None:
        feedback = TaskFeedback(
            task_id=task.id,
            stamp=now,
            current_pose=self.state.robot_pose,
            distance_remaining=self._distance_remaining,
            consecutive_failures=self.state.consecutive_failures,
            last_error=self.state.last_failure,
        )
        task.feedback.put(feedback)
        if self.feedback_callback is not None:
            self.feedback_callback(feedback)
        if self.recorder is not None:
            self.recorder.log_feedback(feedback)

    # ------------------------------------------------------------------
    # Thread management
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the fixed-rate control loop thread."""
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="control-loop", daemon=True)
        self._thread.start()
        logging.info(f"{TERM_BLUE}✓ Control loop running at {self.config.control_rate:.1f} Hz{TERM_RESET}")

    def stop(self, timeout: float = 1.0) -> None:
        """Stop the loop thread and cancel the active task.

        A zero command is sent first so the base does not keep the last twist.
        """
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        task = self.active_task
        if task is not None:
            self._send_stop(task, self._clock())
            self._finish(task, TaskState.CANCELED, OutcomeCode.CANCELED, "Controller stopped")

    def _run(self) -> None:
        period = self.config.control_period
        next_tick = time.monotonic()
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception as e:
                logging.error(f"Unexpected error in control loop: {e}", exc_info=True)
                task = self.active_task
                if task is not None:
                    self._finish(task, TaskState.FAILED, OutcomeCode.INTERNAL_ERROR, str(e))

            next_tick += period
            delay = next_tick - time.monotonic()
            if delay < 0:
                logging.warning(
                    f"Control loop missed its desired rate of {self.config.control_rate:.1f} Hz "
                    f"by {-delay:.3f}s"
                )
                next_tick = time.monotonic()
                delay = 0.0
            self._stop_event.wait(delay)


class QueueTaskFront:
    """Queue protocol over ``TaskOrchestrator``.

    An external sequencer sends one path at a time and waits for "ready"
    before sending the next. It may also end the running path itself with a
    feedback message ("completed" or "aborted").
    """

    def __init__(self, orchestrator: TaskOrchestrator, publish_ready: Callable[[], None]) -> None:
        self.orchestrator = orchestrator
        self.publish_ready = publish_ready
        self._lock = threading.Lock()
        self._current: Optional[Task] = None
        orchestrator.add_terminal_listener(self._on_terminal)

    @property
    def current_task(self) -> Optional[Task]:
        with self._lock:
            return self._current

    def start(self) -> None:
        """Announce readiness for the first path."""
        self.publish_ready()

    def on_path(self, goal: TaskGoal) -> Optional[Task]:
        """Inbound path message: start it if the controller is idle.

        Returns:
            The task, or None if the path was dropped because a task is running.
        """
        if not self.orchestrator.is_idle:
            logging.warning("Queued path received while a task is running, dropped")
            return None
        task = self.orchestrator.submit(goal, origin="queue")
        with self._lock:
            if not task.done:
                self._current = task
        return task

    def on_feedback(self, status: str) -> bool:
        """Inbound feedback message ending the current queued task.

        Args:
            status: "completed" or "aborted".

        Returns:
            True if a running queued task was ended.
        """
        with self._lock:
            task = self._current
        if task is None:
            logging.warning(f"Queue feedback '{status}' without a running queued task, ignored")
            return False
        if status == "completed":
            return self.orchestrator.complete_externally(task.id, succeeded=True)
        if status == "aborted":
            return self.orchestrator.complete_externally(task.id, succeeded=False)
        logging.warning(f"Unknown queue feedback status '{status}', ignored")
        return False

    def _on_terminal(self, result: TaskResult) -> None:
        with self._lock:
            if self._current is not None and self._current.id == result.task_id:
                self._current = None
        if self.orchestrator.is_idle:
            self.publish_ready()
