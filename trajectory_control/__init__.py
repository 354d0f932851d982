"""Trajectory Control - Local Trajectory Execution for Mobile Robots

A control-loop and orchestration layer around a local trajectory optimizer.
It consumes a coarse path from a global planner or a task queue, keeps a live
model of nearby obstacles and via-points, asks the optimizer for a locally
feasible velocity command every cycle and manages the lifecycle of
navigation tasks.

## Architecture Overview

### Shared State (obstacles.py, via_points.py, transforms.py)
Aggregated from asynchronous sources, each guarded by its own lock.
- Obstacles: occupancy cells and converter polygons (replaced on refresh),
  custom obstacles (batched, aged out)
- Via-points: derived from the local window, or an external override
- Transforms: time-stamped frame tree with bounded-staleness lookups

### Plan Tracking (plan_tracker.py, path.py)
- Prunes the already-passed prefix of the global plan
- Projects the plan into the planning frame with one lookup and cuts the
  local window (spatial extent and arc-length bound)
- Smooths the local goal heading over the upcoming waypoints

### Recovery (recovery.py)
- Counts infeasible cycles and detects oscillation from the command history
- Selects a backup mode: shrink horizon, extend lookahead, rotate in place

### Command Output (model.py, command_modes.py)
- Independent or proportional saturation
- Differential track speeds and car-like steering angle

### Orchestration (orchestrator.py)
- One state machine: IDLE -> ACTIVE -> SUCCEEDED / FAILED / CANCELED
- Fixed-rate control loop thread, patience and goal tolerance checks
- Direct request handles and the queue protocol front end

## Modules

- `config.py` - Centralized configuration parameters with documentation
- `nav_types.py` - Poses, twists, obstacles, task records, outcome codes
- `optimizer.py` - Optimizer interface and a pure pursuit reference optimizer
- `footprint.py` - Footprint radii and startup validation
- `client.py` - WebSocket front end
- `data_collector.py` - CSV logging of commands, feedback and outcomes

## Quick Start

```bash
python -m trajectory_control --tracks -v
```
"""

__version__ = "0.1.0"

from .config import ControllerConfig
from .data_collector import DataCollector
from .nav_types import OutcomeCode, Pose2D, TaskGoal, TaskState, Twist2D
from .orchestrator import QueueTaskFront, Task, TaskOrchestrator

__all__ = [
    "ControllerConfig",
    "DataCollector",
    "OutcomeCode",
    "Pose2D",
    "QueueTaskFront",
    "Task",
    "TaskGoal",
    "TaskOrchestrator",
    "TaskState",
    "Twist2D",
]
