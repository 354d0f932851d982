"""Obstacle aggregation for the trajectory optimizer.

Obstacles arrive from three asynchronous sources:
- Occupancy cells of the local map (every occupied cell is a point obstacle)
- Polygon converter output (points, lines and polygons)
- Explicit custom obstacle messages

Occupancy/converter obstacles form the primary set and are replaced wholesale
on every refresh. Custom obstacles are a separate batch with a shared arrival
timestamp that survives primary refreshes and is aged out by ``evict_stale``.
"""

import logging
import threading
from typing import Any, Dict, Iterable, List, Sequence, Tuple

import numpy as np

from .nav_types import MalformedObstacleError, Obstacle, ObstacleSource


class ObstacleRegistry:
    """Thread-safe obstacle set shared between ingestion callbacks and the control loop.

    Each logical source (primary, custom) is guarded by its own lock. Batches
    are stored as tuples and swapped atomically, so ``snapshot`` never sees a
    half-applied update. Dropped inputs are counted per source under the same
    lock as the batch they were part of.
    """

    def __init__(self) -> None:
        self._primary_lock = threading.Lock()
        self._custom_lock = threading.Lock()
        self._primary: Tuple[Obstacle, ...] = ()
        self._custom: Tuple[Obstacle, ...] = ()
        self._primary_dropped = 0
        self._custom_dropped = 0

    @property
    def dropped_count(self) -> int:
        """Number of malformed obstacles dropped since creation."""
        with self._primary_lock:
            primary = self._primary_dropped
        with self._custom_lock:
            custom = self._custom_dropped
        return primary + custom

    def _filter(self, obstacles: Iterable[Obstacle], primary: bool) -> Tuple[List[Obstacle], int]:
        """Drop obstacles with unusable geometry or a foreign source tag.

        Returns:
            The accepted obstacles and the number dropped.
        """
        accepted = []
        dropped = 0
        for obstacle in obstacles:
            if primary and not obstacle.source.is_primary:
                logging.warning(
                    f"MALFORMED_OBSTACLE_INPUT: {obstacle.source.value} obstacle in primary refresh, dropped"
                )
                dropped += 1
                continue
            try:
                # Re-validate: callers may construct Obstacle directly
                Obstacle.from_points(obstacle.points, obstacle.source, obstacle.stamp, obstacle.velocity)
            except MalformedObstacleError as e:
                logging.warning(f"MALFORMED_OBSTACLE_INPUT: {e}, dropped")
                dropped += 1
                continue
            accepted.append(obstacle)
        return accepted, dropped

    def refresh_from_primary_source(self, obstacles: Iterable[Obstacle]) -> int:
        """Replace all occupancy/converter obstacles with ``obstacles``.

        Returns:
            Number of obstacles accepted.
        """
        accepted, dropped = self._filter(obstacles, primary=True)
        batch = tuple(accepted)
        with self._primary_lock:
            self._primary = batch
            self._primary_dropped += dropped
        return len(batch)

    def merge_custom(self, obstacles: Iterable[Obstacle], timestamp: float) -> int:
        """Replace the custom subset with a new batch sharing ``timestamp``.

        Returns:
            Number of obstacles accepted.
        """
        accepted, dropped = self._filter(obstacles, primary=False)
        batch = tuple(Obstacle(o.points, ObstacleSource.CUSTOM, float(timestamp), o.velocity) for o in accepted)
        with self._custom_lock:
            self._custom = batch
            self._custom_dropped += dropped
        return len(batch)

    def evict_stale(self, now: float, max_age: float) -> int:
        """Remove custom obstacles older than ``max_age``.

        Primary obstacles are never aged out; they are refreshed by their source.

        Returns:
            Number of obstacles removed.
        """
        with self._custom_lock:
            kept = tuple(o for o in self._custom if now - o.stamp <= max_age)
            removed = len(self._custom) - len(kept)
            self._custom = kept
        if removed:
            logging.debug(f"Evicted {removed} stale custom obstacles")
        return removed

    def snapshot(self) -> Tuple[Obstacle, ...]:
        """Immutable copy of the full obstacle set (primary first, then custom)."""
        with self._primary_lock:
            primary = self._primary
        with self._custom_lock:
            custom = self._custom
        return primary + custom

    def custom_ages(self, now: float) -> List[float]:
        """Ages (seconds) of the custom obstacles currently held."""
        with self._custom_lock:
            return [o.age(now) for o in self._custom]

    def clear(self) -> None:
        with self._primary_lock:
            self._primary = ()
        with self._custom_lock:
            self._custom = ()

    def __len__(self) -> int:
        return len(self.snapshot())


def obstacles_from_occupancy(
    grid: Any,
    resolution: float,
    origin: Sequence[float],
    threshold: float,
    stamp: float,
) -> List[Obstacle]:
    """Convert occupied grid cells to point obstacles at the cell centres.

    Args:
        grid: 2D array-like of occupancy values, indexed [row (y), column (x)].
        resolution: Cell size (meters).
        origin: (x, y) of the lower-left corner of cell [0, 0] in the planning frame.
        threshold: Minimum value of an occupied cell.
        stamp: Arrival timestamp (seconds).

    Returns:
        List of point obstacles tagged OCCUPANCY.

    Raises:
        ValueError: If the grid is not two-dimensional or resolution is not positive.
    """
    cells = np.asarray(grid, dtype=float)
    if cells.ndim != 2:
        raise ValueError(f"Occupancy grid must be 2D, got shape {cells.shape}")
    if resolution <= 0:
        raise ValueError(f"Grid resolution must be positive, got {resolution}")

    rows, cols = np.nonzero(cells >= threshold)
    xs = origin[0] + (cols + 0.5) * resolution
    ys = origin[1] + (rows + 0.5) * resolution
    return [
        Obstacle(((float(x), float(y)),), ObstacleSource.OCCUPANCY, float(stamp))
        for x, y in zip(xs, ys)
    ]


def obstacles_from_polygons(
    polygons: Iterable[Iterable[Sequence[float]]], stamp: float
) -> List[Obstacle]:
    """Convert polygon converter output to obstacles, dropping malformed shapes.

    Shapes with one vertex become points, two vertices lines, three or more polygons.
    """
    obstacles = []
    for polygon in polygons:
        try:
            obstacles.append(Obstacle.from_points(polygon, ObstacleSource.CONVERTER, stamp))
        except MalformedObstacleError as e:
            logging.warning(f"MALFORMED_OBSTACLE_INPUT: converter shape dropped ({e})")
    return obstacles


def parse_custom_obstacles(entries: Iterable[Dict[str, Any]], stamp: float) -> List[Obstacle]:
    """Parse custom obstacle message entries.

    Each entry is a dictionary with ``points`` (list of [x, y]), an optional
    ``velocity`` ([vx, vy]) and an optional ``type`` ("point", "line", "polygon").
    Malformed entries are dropped and logged; the rest of the batch is kept.
    """
    obstacles = []
    for entry in entries:
        try:
            if not isinstance(entry, dict):
                raise MalformedObstacleError(f"expected object, got {type(entry).__name__}")
            obstacles.append(
                Obstacle.from_points(
                    entry.get("points", []),
                    ObstacleSource.CUSTOM,
                    stamp,
                    velocity=entry.get("velocity"),
                    kind=entry.get("type"),
                )
            )
        except MalformedObstacleError as e:
            logging.warning(f"MALFORMED_OBSTACLE_INPUT: custom obstacle dropped ({e})")
    return obstacles

