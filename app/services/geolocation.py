"""Geolocation Source: where an actor is right now, as far as we know.

Devices push timestamped samples through the location tracker; this module
only answers "last known position" lookups. Lookups are bounded by a timeout
and a slow or failing source degrades to "no fresher location available".
"""

import asyncio
import logging

from app.config import GEOLOCATION_TIMEOUT_SECONDS
from app.models.ems import LocationSample
from app.services import request_store

logger = logging.getLogger(__name__)


class GeolocationSource:
    async def current_position(self, actor_ref: str) -> LocationSample | None:  # pragma: no cover - interface
        raise NotImplementedError


class LastKnownLocationSource(GeolocationSource):
    """Answers with the newest sample the actor reported on any request."""

    async def current_position(self, actor_ref: str) -> LocationSample | None:
        return await request_store.last_known_sample(actor_ref)


_source: GeolocationSource = LastKnownLocationSource()


def get_source() -> GeolocationSource:
    return _source


def set_source(source: GeolocationSource) -> None:
    global _source
    _source = source


async def fetch_position(
    actor_ref: str,
    timeout: float | None = None,
    source: GeolocationSource | None = None,
) -> LocationSample | None:
    source = source or _source
    timeout = GEOLOCATION_TIMEOUT_SECONDS if timeout is None else timeout
    try:
        return await asyncio.wait_for(source.current_position(actor_ref), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("Geolocation lookup for %s timed out after %.1fs", actor_ref, timeout)
    except Exception as exc:
        logger.warning("Geolocation lookup for %s failed: %s", actor_ref, exc)
    return None
