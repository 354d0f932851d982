"""Failure and oscillation recovery.

This module tracks consecutive infeasible plans and oscillatory motion and
selects a backup behaviour for the next control cycle:
- SHRINK_HORIZON: cut the local window while infeasible plans are recent
- EXTEND_LOOKAHEAD: look further along the plan past evanescent obstacles
- SIMPLE_ROTATION: rotate in place instead of calling the optimizer

The selection is a finite policy: the same counters, oscillation state and
obstacle ages always yield the same mode. The chosen mode is applied by
mutating ``TuningParameters``, which the plan tracker, the optimizer and the
control loop read on the next cycle.
"""

import enum
import logging
from collections import deque
from dataclasses import dataclass, replace
from typing import Deque, Optional, Sequence, Tuple

import numpy as np

from .config import ControllerConfig
from .nav_types import LocalWindow, RotationDirection, Twist2D


class BackupMode(enum.Enum):
    NONE = "none"
    SHRINK_HORIZON = "shrink_horizon"
    EXTEND_LOOKAHEAD = "extend_lookahead"
    SIMPLE_ROTATION = "simple_rotation"


@dataclass
class TuningParameters:
    """Tuning shared between recovery and its consumers.

    Only the control loop thread reads and writes it.

    Attributes:
        lookahead_factor: Multiplier on the maximum local plan length.
        simple_rotation: If True, rotate in place instead of optimizing.
        preferred_rotation: Turning direction the optimizer should favour.
        mode: Backup mode currently applied.
    """

    lookahead_factor: float = 1.0
    simple_rotation: bool = False
    preferred_rotation: RotationDirection = RotationDirection.NONE
    mode: BackupMode = BackupMode.NONE


class OscillationDetector:
    """Detects oscillation from the history of issued commands.

    Velocities are normalized by their limits. The robot is considered
    oscillating when the mean normalized linear and angular velocities are
    both small (little net progress) while omega changed sign more than once
    (repeated direction reversals). Detection starts once the buffer is at
    least half full.
    """

    def __init__(self, buffer_length: int) -> None:
        self._buffer: Deque[Tuple[float, float]] = deque(maxlen=max(0, buffer_length))
        self.oscillating: bool = False

    @property
    def capacity(self) -> int:
        return self._buffer.maxlen or 0

    def update(
        self,
        twist: Twist2D,
        v_max: float,
        v_backwards_max: float,
        omega_max: float,
        v_eps: float,
        omega_eps: float,
    ) -> bool:
        """Add a command to the history and re-evaluate.

        Returns:
            True if oscillating.
        """
        if self.capacity == 0:
            return False

        v = twist.vx
        omega = twist.omega
        if v > 0 and v_max > 0:
            v /= v_max
        elif v < 0 and v_backwards_max > 0:
            v /= v_backwards_max
        if omega_max > 0:
            omega /= omega_max
        self._buffer.append((v, omega))

        return self._detect(v_eps, omega_eps)

    def _detect(self, v_eps: float, omega_eps: float) -> bool:
        self.oscillating = False
        if len(self._buffer) < self.capacity / 2:
            return False

        samples = np.array(self._buffer, dtype=float)
        v_mean = float(np.mean(samples[:, 0]))
        omega_mean = float(np.mean(samples[:, 1]))
        signs = np.sign(samples[:, 1])
        zero_crossings = int(np.count_nonzero(signs[1:] != signs[:-1]))

        self.oscillating = abs(v_mean) < v_eps and abs(omega_mean) < omega_eps and zero_crossings > 1
        return self.oscillating

    def clear(self) -> None:
        self._buffer.clear()
        self.oscillating = False


class FailureRecoveryController:
    """Tracks planning failures and oscillations and applies backup modes.

    Attributes:
        infeasible_count: Consecutive infeasible optimizer results.
        time_last_infeasible: Time of the last infeasible result.
        time_last_oscillation: Time the current oscillation episode was detected.
        oscillation_since: Start of the current oscillation episode, if any.
        tuning: Shared tuning parameters mutated by ``configure_backup_modes``.
    """

    def __init__(self, config: ControllerConfig, tuning: Optional[TuningParameters] = None) -> None:
        self.config = config
        self.tuning = tuning if tuning is not None else TuningParameters()
        self.detector = OscillationDetector(config.oscillation_buffer_length)
        self.infeasible_count: int = 0
        self.time_last_infeasible: Optional[float] = None
        self.time_last_oscillation: Optional[float] = None
        self.oscillation_since: Optional[float] = None

    @property
    def preferred_rotation(self) -> RotationDirection:
        return self.tuning.preferred_rotation

    def reset(self) -> None:
        """Forget all history (new task)."""
        self.detector.clear()
        self.infeasible_count = 0
        self.time_last_infeasible = None
        self.time_last_oscillation = None
        self.oscillation_since = None
        self.tuning.lookahead_factor = 1.0
        self.tuning.simple_rotation = False
        self.tuning.preferred_rotation = RotationDirection.NONE
        self.tuning.mode = BackupMode.NONE

    def record_outcome(self, feasible: bool, now: float) -> None:
        """Account for the optimizer result of one cycle."""
        if feasible:
            self.infeasible_count = 0
            return
        self.infeasible_count += 1
        self.time_last_infeasible = now

    def _recently_oscillated(self, now: float) -> bool:
        return (
            self.time_last_oscillation is not None
            and now - self.time_last_oscillation < self.config.oscillation_recovery_min_duration
        )

    def update_oscillation(self, last_cmd: Twist2D, now: float) -> bool:
        """Feed the last issued command to the oscillation detector.

        On a fresh oscillation, the turning direction of the last command
        becomes the preferred rotation and an oscillation episode starts. The
        episode survives short gaps in detection (such as the detector reset
        after an in-place rotation) and ends, together with the preference,
        once no oscillation was seen for ``oscillation_recovery_min_duration``.

        Returns:
            True if currently oscillating.
        """
        if not self.config.oscillation_recovery:
            return False

        cfg = self.config
        oscillating = self.detector.update(
            last_cmd,
            cfg.max_vel_x,
            cfg.max_vel_x_backwards,
            cfg.max_vel_theta,
            cfg.oscillation_v_eps,
            cfg.oscillation_omega_eps,
        )
        recently = self._recently_oscillated(now)

        if oscillating:
            if self.oscillation_since is None:
                self.oscillation_since = now
            if not recently:
                self.time_last_oscillation = now
                self.tuning.preferred_rotation = (
                    RotationDirection.RIGHT if last_cmd.omega < 0 else RotationDirection.LEFT
                )
                logging.warning(
                    "Possible oscillation of the robot or its local plan detected. "
                    f"Preferring turning direction {self.tuning.preferred_rotation.name}."
                )
        elif not recently:
            self.oscillation_since = None
            if self.tuning.preferred_rotation is not RotationDirection.NONE:
                self.tuning.preferred_rotation = RotationDirection.NONE
                logging.info("Resetting oscillation recovery")

        return oscillating

    def oscillation_duration(self, now: float) -> float:
        """Seconds since the current oscillation episode started (0 outside one)."""
        if self.oscillation_since is None:
            return 0.0
        return now - self.oscillation_since

    def select_mode(self, now: float, obstacle_ages: Sequence[float]) -> BackupMode:
        """Deterministic backup policy.

        Args:
            now: Current time (seconds).
            obstacle_ages: Ages of the obstacles that may block the plan (seconds).

        Returns:
            The backup mode for the next cycle.
        """
        cfg = self.config
        triggered = self.infeasible_count >= cfg.backup_trigger_count or self.detector.oscillating
        if triggered:
            evanescent = any(age > cfg.max_time_for_evanescent_obstacles for age in obstacle_ages)
            if evanescent:
                return BackupMode.EXTEND_LOOKAHEAD
            return BackupMode.SIMPLE_ROTATION

        recent_infeasible = self.infeasible_count > 0 or (
            self.time_last_infeasible is not None
            and now - self.time_last_infeasible < cfg.shrink_horizon_min_duration
        )
        if cfg.shrink_horizon_backup and recent_infeasible:
            return BackupMode.SHRINK_HORIZON
        return BackupMode.NONE

    def configure_backup_modes(
        self, window: LocalWindow, now: float, obstacle_ages: Sequence[float] = ()
    ) -> LocalWindow:
        """Select and apply the backup mode for this cycle.

        Args:
            window: Local window produced by the plan tracker.
            now: Current time (seconds).
            obstacle_ages: Ages of the custom obstacles (seconds).

        Returns:
            The window to optimize over (shortened in SHRINK_HORIZON mode).
        """
        mode = self.select_mode(now, obstacle_ages)
        if mode is not self.tuning.mode:
            logging.info(f"Recovery mode: {self.tuning.mode.value} -> {mode.value}")
        self.tuning.mode = mode

        self.tuning.simple_rotation = mode is BackupMode.SIMPLE_ROTATION
        if mode is BackupMode.EXTEND_LOOKAHEAD:
            self.tuning.lookahead_factor = self.config.lookahead_extension_factor
        else:
            self.tuning.lookahead_factor = 1.0

        if mode is BackupMode.SHRINK_HORIZON:
            return self._shrink_horizon(window)
        return window

    def _shrink_horizon(self, window: LocalWindow) -> LocalWindow:
        """Cut the window by half of its goal index (a quarter after ten failures)."""
        local_goal = len(window.poses) - 1
        reduction = local_goal // 2
        if self.infeasible_count > 9:
            if self.infeasible_count == 10:
                logging.info("Infeasible trajectory detected 10 times in a row: further reducing horizon")
            reduction //= 2

        new_goal = local_goal - reduction
        if reduction == 0 or new_goal <= 0:
            return window

        poses = window.poses[: new_goal + 1]
        return replace(
            window,
            poses=poses,
            goal_idx=window.goal_idx - reduction,
            goal=poses[-1],
        )

    def complete_rotation(self) -> None:
        """The in-place rotation finished: give the optimizer a fresh start."""
        self.infeasible_count = 0
        self.detector.clear()
        self.tuning.simple_rotation = False
