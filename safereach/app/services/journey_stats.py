"""
Breadcrumb aggregation for display.

Derives distance traveled, average speed and elapsed time from the
ordered location history. Nothing here is written back to the store.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Protocol

from safereach.app.core.clock import as_utc
from safereach.app.services.geo import Coordinates, haversine_distance


class Breadcrumb(Protocol):
    latitude: float
    longitude: float
    timestamp: datetime


@dataclass(frozen=True)
class BreadcrumbStats:
    total_distance_meters: float
    average_speed_mps: float
    elapsed_seconds: float
    point_count: int


def summarize_breadcrumbs(points: Iterable[Breadcrumb]) -> BreadcrumbStats:
    """
    Aggregate an ordered breadcrumb sequence.

    Total distance is the sum of haversine legs between consecutive points.
    Average speed is distance over the time between the first and last
    point, and 0 when there are fewer than two points or no elapsed time.
    """
    points = list(points)
    if len(points) < 2:
        return BreadcrumbStats(0.0, 0.0, 0.0, len(points))

    total = 0.0
    for previous, current in zip(points, points[1:]):
        total += haversine_distance(
            previous.latitude, previous.longitude,
            current.latitude, current.longitude
        )

    elapsed = (as_utc(points[-1].timestamp) - as_utc(points[0].timestamp)).total_seconds()
    speed = total / elapsed if elapsed > 0 else 0.0

    return BreadcrumbStats(
        total_distance_meters=total,
        average_speed_mps=speed,
        elapsed_seconds=max(elapsed, 0.0),
        point_count=len(points),
    )


def remaining_distance_meters(current: Optional[Coordinates], destination: Optional[Coordinates]) -> Optional[float]:
    """Straight-line distance left to the destination, if both ends are known."""
    if current is None or destination is None:
        return None
    return haversine_distance(current.lat, current.lng, destination.lat, destination.lng)


def format_distance(meters: float) -> str:
    if meters < 1000:
        return f"{round(meters)} m"
    return f"{meters / 1000:.1f} km"


def format_speed(mps: float) -> str:
    return f"{mps * 3.6:.1f} km/h"
