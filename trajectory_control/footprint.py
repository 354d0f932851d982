"""Robot footprint geometry and startup validation."""

import logging
import math
from typing import Iterable, List, Sequence, Tuple

import numpy as np

Footprint = List[Tuple[float, float]]


def footprint_from_points(points: Iterable[Sequence[float]]) -> Footprint:
    """Validate a footprint polygon given in the robot body frame.

    Raises:
        ValueError: If there are fewer than 3 vertices or a coordinate is not finite.
    """
    footprint: Footprint = []
    for p in points:
        if len(p) != 2:
            raise ValueError(f"Footprint vertex must have 2 coordinates, got {len(p)}")
        x, y = float(p[0]), float(p[1])
        if not (math.isfinite(x) and math.isfinite(y)):
            raise ValueError(f"Non-finite footprint vertex ({x}, {y})")
        footprint.append((x, y))
    if len(footprint) < 3:
        raise ValueError(f"Footprint needs at least 3 vertices, got {len(footprint)}")
    return footprint


def inscribed_radius(footprint: Sequence[Tuple[float, float]]) -> float:
    """Distance from the robot origin to the closest footprint edge."""
    vertices = np.asarray(footprint, dtype=float)
    a = vertices
    b = np.roll(vertices, -1, axis=0)
    edge = b - a
    length_sq = np.sum(edge * edge, axis=1)
    # Projection of the origin onto each edge, clamped to the segment
    # (degenerate edges have edge == 0, so t is irrelevant for them)
    safe_length_sq = np.where(length_sq > 0, length_sq, 1.0)
    t = np.clip(-np.sum(a * edge, axis=1) / safe_length_sq, 0.0, 1.0)
    closest = a + t[:, None] * edge
    return float(np.min(np.hypot(closest[:, 0], closest[:, 1])))


def circumscribed_radius(footprint: Sequence[Tuple[float, float]]) -> float:
    """Distance from the robot origin to the farthest footprint vertex."""
    vertices = np.asarray(footprint, dtype=float)
    return float(np.max(np.hypot(vertices[:, 0], vertices[:, 1])))


def validate_footprints(
    opt_inscribed_radius: float, costmap_inscribed_radius: float, min_obst_dist: float
) -> List[str]:
    """Compare the optimization footprint against the obstacle map footprint.

    Only the inscribed radii are compared. The optimization footprint plus the
    minimum obstacle distance should cover the map's inscribed radius,
    otherwise the optimizer may plan through cells the map already marks as
    lethal.

    Args:
        opt_inscribed_radius: Inscribed radius of the footprint used for optimization (m).
        costmap_inscribed_radius: Inscribed radius used by the obstacle map (m).
        min_obst_dist: Desired minimum clearance to obstacles (m).

    Returns:
        List of warning messages (empty if consistent).

    Raises:
        ValueError: If the effective clearance is non-positive, so collisions
            are guaranteed.
    """
    clearance = opt_inscribed_radius + min_obst_dist
    if clearance <= 0:
        raise ValueError(
            f"INVALID_CONFIGURATION: inscribed radius ({opt_inscribed_radius}) plus min obstacle "
            f"distance ({min_obst_dist}) is non-positive"
        )

    warnings: List[str] = []
    if clearance < costmap_inscribed_radius:
        warnings.append(
            f"The inscribed radius of the footprint used for optimization ({opt_inscribed_radius:.3f}) "
            f"plus min_obstacle_dist ({min_obst_dist:.3f}) is smaller than the inscribed radius of the "
            f"obstacle map footprint ({costmap_inscribed_radius:.3f}). Infeasible optimization results "
            "might occur frequently."
        )
    for message in warnings:
        logging.warning(f"INVALID_CONFIGURATION: {message}")
    return warnings
