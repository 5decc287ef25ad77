"""Elevation-adjusted pacing.

Turns a target finish duration into expected pass times at each checkpoint.
Race time is shared out over course segments in proportion to effort cost:
climbs cost more than their distance, descents less, and the total always
adds up to exactly the target duration.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Protocol, Sequence

if TYPE_CHECKING:
    from raceweather.cache.models import Checkpoint, Race

logger = logging.getLogger(__name__)

# Cost multiplier per unit gradient (m/m) on climbs: a 5% grade costs 1.6x
K_UP = 12.0
# Cost reduction per unit gradient on descents: a 5% descent costs 0.8x
K_DOWN = 4.0
# Floor on the cost factor. Steep descents are never free.
MIN_COST_FACTOR = 0.5


class Coursepoint(Protocol):
    distance_km: float
    elevation_m: float


@dataclass(frozen=True)
class PacingCoefficients:
    """Tuning constants for segment cost (see module constants)."""

    k_up: float = K_UP
    k_down: float = K_DOWN
    min_cost_factor: float = MIN_COST_FACTOR

    def cost_factor(self, gradient: float) -> float:
        """Effort per km relative to flat ground for a gradient in m/m."""
        if gradient >= 0:
            return max(1.0 + self.k_up * gradient, self.min_cost_factor)
        return max(1.0 - self.k_down * abs(gradient), self.min_cost_factor)


DEFAULT_COEFFICIENTS = PacingCoefficients()


def is_flat(points: Sequence[Coursepoint]) -> bool:
    """True when every point sits at the same elevation."""
    return len({p.elevation_m for p in points}) <= 1


def even_fractions(points: Sequence[Coursepoint]) -> list[float]:
    """Pass-time fractions proportional to distance from the first point."""
    n = len(points)
    if n == 0:
        return []
    if n == 1:
        return [0.0]

    start = points[0].distance_km
    total = points[-1].distance_km - start
    if total <= 0:
        return [i / (n - 1) for i in range(n)]

    fractions = [(p.distance_km - start) / total for p in points]
    fractions[0] = 0.0
    fractions[-1] = 1.0
    return fractions


def pass_time_fractions(
    points: Sequence[Coursepoint],
    coefficients: PacingCoefficients = DEFAULT_COEFFICIENTS,
) -> list[float]:
    """Cumulative share of race time spent when reaching each point.

    Args:
        points: Checkpoints in course order
        coefficients: Segment cost tuning

    Returns:
        One fraction per point, non-decreasing, first exactly 0.0 and last
        exactly 1.0 (when there are at least two points)
    """
    n = len(points)
    if n < 2 or is_flat(points):
        return even_fractions(points)

    costs = []
    for prev, cur in zip(points, points[1:]):
        dist_delta = cur.distance_km - prev.distance_km
        if dist_delta <= 0:
            costs.append(0.0)
            continue
        gradient = (cur.elevation_m - prev.elevation_m) / (dist_delta * 1000.0)
        costs.append(coefficients.cost_factor(gradient) * dist_delta)

    total_cost = sum(costs)
    if total_cost <= 0:
        logger.debug("Zero total segment cost, falling back to even pacing")
        return even_fractions(points)

    fractions = [0.0]
    cumulative = 0.0
    for cost in costs:
        cumulative += cost
        fractions.append(cumulative / total_cost)

    # Guard against floating-point drift at the finish
    fractions[-1] = 1.0
    return fractions


def arrival_time(start_time: datetime, fraction: float, target_duration_hours: float) -> datetime:
    """Start time plus ``fraction`` of the target duration, rounded to the second."""
    return start_time + timedelta(seconds=round(target_duration_hours * 3600 * fraction))


def expected_arrivals(
    start_time: datetime,
    points: Sequence[Coursepoint],
    target_duration_hours: float,
    coefficients: PacingCoefficients = DEFAULT_COEFFICIENTS,
) -> list[datetime]:
    """Expected pass time at every point, in the order given."""
    fractions = pass_time_fractions(points, coefficients)
    return [arrival_time(start_time, f, target_duration_hours) for f in fractions]


def expected_arrival(
    race: "Race",
    checkpoint: "Checkpoint",
    target_duration_hours: float,
    course: Sequence["Checkpoint"],
    coefficients: PacingCoefficients = DEFAULT_COEFFICIENTS,
) -> datetime:
    """Expected pass time at one checkpoint of a race.

    Args:
        race: Race supplying the start time
        checkpoint: Checkpoint to time
        target_duration_hours: Target finish duration
        course: All checkpoints of the race in course order. Each segment's
            cost shifts every later pass time, so the full course is needed.
        coefficients: Segment cost tuning

    Raises:
        ValueError: If the checkpoint is not part of the course
    """
    for index, point in enumerate(course):
        if point.id == checkpoint.id:
            break
    else:
        raise ValueError(f"Checkpoint {checkpoint.id} is not on the course of race {race.id}")

    fractions = pass_time_fractions(course, coefficients)
    return arrival_time(race.start_time, fractions[index], target_duration_hours)
