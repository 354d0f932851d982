"""Data collection and CSV logging for controller runs.

This module provides CSV data logging for:
- Velocity commands (saturated twist, track speeds, steering angle)
- Task feedback (pose, distance remaining, consecutive failures)
- Task results (terminal state, outcome code, message)
"""

import csv
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, TextIO

from .config import TERM_BLUE, TERM_RESET
from .nav_types import CommandOutput, TaskFeedback, TaskResult


def _blank(value: Optional[float]) -> Any:
    return value if value is not None else ""


class DataCollector:
    """Manages CSV file creation and logging for controller runs.

    This class handles all data logging responsibilities:
    - Creates timestamped output directories
    - Initializes CSV files with headers
    - Writes commands, feedback and task outcomes
    - Ensures proper cleanup on shutdown

    Writes may come from the control loop and from request threads (task
    rejections and preemptions), so every write holds ``_lock``.

    Attributes:
        run_dir: Directory path for this run's output files.
        command_csv_file: File handle for the command CSV.
        feedback_csv_file: File handle for the feedback CSV.
        task_csv_file: File handle for the task outcome CSV.
    """

    def __init__(self, output_dir: str = ".", run_dir: Optional[str] = None) -> None:
        """Initialize the data collector.

        Args:
            output_dir: Base directory for output files (default: current directory).
            run_dir: Optional specific run directory. If None, creates timestamped
                directory. Can also be set via RUN_DIR environment variable.

        Raises:
            ValueError: If output_dir is not a valid directory.
        """
        output_path = Path(output_dir)
        if output_path.exists() and not output_path.is_dir():
            raise ValueError(f"Output path exists but is not a directory: {output_dir}")

        self._lock = threading.Lock()

        # CSV file handles
        self.command_csv_file: Optional[TextIO] = None
        self.command_csv_writer: Any = None
        self.feedback_csv_file: Optional[TextIO] = None
        self.feedback_csv_writer: Any = None
        self.task_csv_file: Optional[TextIO] = None
        self.task_csv_writer: Any = None

        if run_dir:
            self.run_dir: Path = Path(run_dir)
        elif env_run_dir := os.environ.get("RUN_DIR"):
            self.run_dir = Path(env_run_dir)
        else:
            # Create timestamped directory: results/run_YYYYMMDD_HHMMSS/
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            self.run_dir = output_path / "results" / f"run_{timestamp}"

        self.run_dir.mkdir(parents=True, exist_ok=True)

        self.command_output_path: Path = self.run_dir / "commands.csv"
        self.feedback_output_path: Path = self.run_dir / "feedback.csv"
        self.task_output_path: Path = self.run_dir / "tasks.csv"

    def setup(self) -> None:
        """Initialize CSV files with headers.

        Must be called before writing data.
        """
        self.command_csv_file = open(self.command_output_path, "w", newline="")
        self.command_csv_writer = csv.writer(self.command_csv_file)
        self.command_csv_writer.writerow(
            ["timestamp", "task_id", "vx", "vy", "omega", "v_left", "v_right", "steering_angle"]
        )
        self.command_csv_file.flush()

        self.feedback_csv_file = open(self.feedback_output_path, "w", newline="")
        self.feedback_csv_writer = csv.writer(self.feedback_csv_file)
        self.feedback_csv_writer.writerow(
            [
                "timestamp",
                "task_id",
                "x",
                "y",
                "yaw",
                "distance_remaining",
                "consecutive_failures",
                "last_error",
            ]
        )
        self.feedback_csv_file.flush()

        self.task_csv_file = open(self.task_output_path, "w", newline="")
        self.task_csv_writer = csv.writer(self.task_csv_file)
        self.task_csv_writer.writerow(["task_id", "state", "outcome", "code", "message"])
        self.task_csv_file.flush()

        print(f"{TERM_BLUE}✓ Initialized data collection to {self.run_dir}/{TERM_RESET}")

    def log_command(self, task_id: int, command: CommandOutput) -> None:
        """Log an emitted velocity command to CSV.

        Args:
            task_id: Task the command was issued for.
            command: Post-processed command.
        """
        v_left, v_right = command.track_speeds if command.track_speeds is not None else (None, None)
        with self._lock:
            if self.command_csv_writer is None:
                return
            self.command_csv_writer.writerow(
                [
                    command.stamp,
                    task_id,
                    command.twist.vx,
                    command.twist.vy,
                    command.twist.omega,
                    _blank(v_left),
                    _blank(v_right),
                    _blank(command.steering_angle),
                ]
            )
            if self.command_csv_file:
                self.command_csv_file.flush()

    def log_feedback(self, feedback: TaskFeedback) -> None:
        """Log a task feedback record to CSV."""
        pose = feedback.current_pose
        with self._lock:
            if self.feedback_csv_writer is None:
                return
            self.feedback_csv_writer.writerow(
                [
                    feedback.stamp,
                    feedback.task_id,
                    _blank(pose.x if pose else None),
                    _blank(pose.y if pose else None),
                    _blank(pose.yaw if pose else None),
                    feedback.distance_remaining,
                    feedback.consecutive_failures,
                    feedback.last_error.name if feedback.last_error else "",
                ]
            )
            if self.feedback_csv_file:
                self.feedback_csv_file.flush()

    def log_result(self, result: TaskResult) -> None:
        """Log a terminal task outcome to CSV."""
        with self._lock:
            if self.task_csv_writer is None:
                return
            self.task_csv_writer.writerow(
                [result.task_id, result.state.value, result.outcome.name, result.outcome.value, result.message]
            )
            if self.task_csv_file:
                self.task_csv_file.flush()

    def cleanup(self) -> None:
        """Close all CSV files and log final output location."""
        with self._lock:
            for handle in (self.command_csv_file, self.feedback_csv_file, self.task_csv_file):
                if handle:
                    handle.close()
            self.command_csv_writer = None
            self.feedback_csv_writer = None
            self.task_csv_writer = None

        print(f"{TERM_BLUE}✓ Saved run data to {self.run_dir}/{TERM_RESET}")

    def __enter__(self) -> "DataCollector":
        """Context manager entry point.

        Returns:
            Self reference for use in with statement.
        """
        self.setup()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Context manager exit point - ensures cleanup is called."""
        self.cleanup()
