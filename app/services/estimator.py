"""Distance/ETA estimation between two coordinates.

Uses the OpenRouteService directions API when a key is configured and falls
back to a straight-line (haversine) estimate at a fixed average speed when the
provider is unavailable. Estimates are display-only: nothing in the dispatch
lifecycle waits on them.
"""

import asyncio
import logging
import math

import httpx

from app.config import (
    ESTIMATOR_FALLBACK_ENABLED,
    ESTIMATOR_FALLBACK_SPEED_KMH,
    ESTIMATOR_TIMEOUT_SECONDS,
    ORS_API_KEY,
    ORS_BASE_URL,
    ORS_PROFILE,
)
from app.models.ems import Coordinate, Priority, RouteEstimate
from app.services.errors import EstimatorUnavailable

logger = logging.getLogger(__name__)

EARTH_RADIUS_M = 6371000.0

# Maximum straight-line distance a paramedic should be from the incident
MAX_RESPONSE_DISTANCE_M = {
    Priority.CRITICAL: 5000.0,
    Priority.HIGH: 10000.0,
    Priority.MEDIUM: 15000.0,
    Priority.LOW: 20000.0,
}

BATCH_SIZE = 3
BATCH_DELAY_SECONDS = 0.3


def haversine_distance(origin: Coordinate, destination: Coordinate) -> float:
    """Great-circle distance in metres."""
    lat1, lat2 = math.radians(origin.lat), math.radians(destination.lat)
    d_lat = lat2 - lat1
    d_lng = math.radians(destination.lng - origin.lng)
    a = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lng / 2) ** 2
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def format_distance(meters: float) -> str:
    if meters < 1000:
        return f"{round(meters)}m"
    return f"{meters / 1000:.1f}km"


def format_duration(seconds: float) -> str:
    minutes = round(seconds / 60)
    if minutes < 60:
        return f"{minutes}min"
    hours, remaining = divmod(minutes, 60)
    return f"{hours}h {remaining}min" if remaining else f"{hours}h"


def is_within_response_range(distance_m: float, priority: Priority) -> bool:
    return distance_m <= MAX_RESPONSE_DISTANCE_M[Priority(priority)]


def straight_line_estimate(origin: Coordinate, destination: Coordinate) -> RouteEstimate:
    distance = haversine_distance(origin, destination)
    duration = (distance / 1000) / ESTIMATOR_FALLBACK_SPEED_KMH * 3600
    return RouteEstimate(
        distance_m=distance,
        duration_s=duration,
        distance_text=f"~{format_distance(distance)}",
        duration_text=f"~{format_duration(duration)}",
        source="straight_line",
        approximate=True,
    )


async def route_estimate(
    origin: Coordinate,
    destination: Coordinate,
    client: httpx.AsyncClient | None = None,
) -> RouteEstimate:
    """Ask OpenRouteService for a driving route. Raises EstimatorUnavailable."""
    if not ORS_API_KEY:
        raise EstimatorUnavailable("OpenRouteService API key not configured")

    url = f"{ORS_BASE_URL}/v2/directions/{ORS_PROFILE}/geojson"
    body = {
        # ORS expects [lng, lat]
        "coordinates": [[origin.lng, origin.lat], [destination.lng, destination.lat]],
        "instructions": False,
        "elevation": False,
    }
    headers = {
        "Authorization": ORS_API_KEY,
        "Content-Type": "application/json",
        "Accept": "application/json, application/geo+json",
    }

    try:
        if client is None:
            async with httpx.AsyncClient(timeout=ESTIMATOR_TIMEOUT_SECONDS) as own_client:
                resp = await own_client.post(url, headers=headers, json=body)
        else:
            resp = await client.post(url, headers=headers, json=body, timeout=ESTIMATOR_TIMEOUT_SECONDS)
        resp.raise_for_status()
        data = resp.json()
    except httpx.TimeoutException as exc:
        raise EstimatorUnavailable("Routing provider timed out") from exc
    except httpx.HTTPStatusError as exc:
        raise EstimatorUnavailable(f"Routing provider error {exc.response.status_code}") from exc
    except (httpx.HTTPError, ValueError) as exc:
        raise EstimatorUnavailable(f"Routing provider request failed: {exc}") from exc

    features = data.get("features") or []
    if not features:
        raise EstimatorUnavailable("No route found")
    summary = features[0].get("properties", {}).get("summary", {})
    distance = float(summary.get("distance", 0.0))
    duration = float(summary.get("duration", 0.0))
    return RouteEstimate(
        distance_m=distance,
        duration_s=duration,
        distance_text=format_distance(distance),
        duration_text=format_duration(duration),
        source="openrouteservice",
    )


async def estimate(
    origin: Coordinate,
    destination: Coordinate,
    client: httpx.AsyncClient | None = None,
) -> RouteEstimate:
    """Distance and travel time from ``origin`` to ``destination``.

    Falls back to a straight-line estimate when routing is unavailable, unless
    the fallback is disabled, in which case EstimatorUnavailable propagates.
    """
    try:
        return await route_estimate(origin, destination, client=client)
    except EstimatorUnavailable as exc:
        if not ESTIMATOR_FALLBACK_ENABLED:
            raise
        logger.info("Falling back to straight-line estimate: %s", exc.message)
        return straight_line_estimate(origin, destination)


async def estimate_many(
    origin: Coordinate,
    destinations: dict[str, Coordinate],
    client: httpx.AsyncClient | None = None,
) -> dict[str, RouteEstimate]:
    """Estimate to several destinations in small batches to respect rate limits."""
    results: dict[str, RouteEstimate] = {}
    items = list(destinations.items())
    for start in range(0, len(items), BATCH_SIZE):
        batch = items[start:start + BATCH_SIZE]
        estimates = await asyncio.gather(
            *(estimate(origin, dest, client=client) for _, dest in batch),
            return_exceptions=True,
        )
        for (key, dest), result in zip(batch, estimates):
            if isinstance(result, Exception):
                logger.warning("Estimate for %s failed: %s", key, result)
                results[key] = straight_line_estimate(origin, dest)
            else:
                results[key] = result
        if start + BATCH_SIZE < len(items) and ORS_API_KEY:
            await asyncio.sleep(BATCH_DELAY_SECONDS)
    return results
