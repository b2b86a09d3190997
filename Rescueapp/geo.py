"""Great-circle distance and proximity ranking for workshop discovery."""

import math
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Optional

from django.conf import settings

from .exceptions import InvalidArgument

EARTH_RADIUS_KM = 6371.0
KM_PER_DEGREE_LATITUDE = math.pi * EARTH_RADIUS_KM / 180
# Stored coordinates carry 8 decimals; widen the prefilter past that rounding.
BAND_PADDING_DEGREES = 1e-6

SORT_NEAREST = "nearest"
SORT_MOST_RATED = "mostRated"
SORT_NEWEST = "newest"
SORT_OLDEST = "oldest"
SEARCH_SORT_CHOICES = (SORT_NEAREST, SORT_MOST_RATED, SORT_NEWEST, SORT_OLDEST)
FALLBACK_SORT = SORT_NEWEST


@dataclass(frozen=True)
class Coordinates:
    latitude: float
    longitude: float


@dataclass
class WorkshopMatch:
    workshop: Any
    distance_km: Optional[float] = None


def get_default_radius_km():
    try:
        configured = float(getattr(settings, "WORKSHOP_SEARCH_DEFAULT_RADIUS_KM", 50))
    except (TypeError, ValueError):
        configured = 50.0
    if not math.isfinite(configured) or configured <= 0:
        return 50.0
    return configured


def _to_float(value, field_name):
    if isinstance(value, bool):
        raise InvalidArgument(f"{field_name} must be a number.", errors={field_name: ["Must be a number."]})
    try:
        number = float(Decimal(str(value).strip()))
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidArgument(f"{field_name} must be a number.", errors={field_name: ["Must be a number."]})
    if not math.isfinite(number):
        raise InvalidArgument(f"{field_name} must be finite.", errors={field_name: ["Must be finite."]})
    return number


def make_coordinates(latitude, longitude):
    """Validate a latitude/longitude pair (degrees) and return ``Coordinates``."""
    lat = _to_float(latitude, "latitude")
    lon = _to_float(longitude, "longitude")
    errors = {}
    if not -90.0 <= lat <= 90.0:
        errors["latitude"] = ["Latitude must be between -90 and 90."]
    if not -180.0 <= lon <= 180.0:
        errors["longitude"] = ["Longitude must be between -180 and 180."]
    if errors:
        raise InvalidArgument("Coordinates out of range.", errors=errors)
    return Coordinates(lat, lon)


def resolve_radius_km(radius_km=None):
    if radius_km is None:
        return get_default_radius_km()
    radius = _to_float(radius_km, "radius")
    if radius <= 0:
        raise InvalidArgument("radius must be a positive number.", errors={"radius": ["Must be greater than 0."]})
    return radius


def distance_km(a: Coordinates, b: Coordinates) -> float:
    """Haversine distance between two points, in kilometres."""
    lat1 = math.radians(a.latitude)
    lat2 = math.radians(b.latitude)
    d_lat = lat2 - lat1
    d_lon = math.radians(b.longitude - a.longitude)
    h = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lon / 2) ** 2
    # Rounding can push h a hair above 1 for antipodal points.
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(min(1.0, h)))


def latitude_band(center: Coordinates, radius_km: float):
    """Latitude bounds that contain every point within ``radius_km`` of ``center``."""
    delta = radius_km / KM_PER_DEGREE_LATITUDE + BAND_PADDING_DEGREES
    return max(-90.0, center.latitude - delta), min(90.0, center.latitude + delta)


def candidate_location(candidate):
    return Coordinates(float(candidate.latitude), float(candidate.longitude))


def _rating(candidate):
    return float(candidate.rating or 0)


def _created_ts(candidate):
    created_at = getattr(candidate, "created_at", None)
    return created_at.timestamp() if created_at is not None else 0.0


def order_without_center(candidates: Iterable, sort=FALLBACK_SORT):
    items = list(candidates)
    if sort == SORT_MOST_RATED:
        return sorted(items, key=lambda item: (-_rating(item), -_created_ts(item), item.id))
    if sort == SORT_OLDEST:
        return sorted(items, key=lambda item: (_created_ts(item), item.id))
    return sorted(items, key=lambda item: (-_created_ts(item), -item.id))


def search_near(center: Optional[Coordinates], radius_km, candidates: Iterable, sort=SORT_NEAREST):
    """Filter ``candidates`` to those within ``radius_km`` of ``center`` and rank them.

    Nearest-first ties break on higher rating, then older creation time. Without a
    center no distance is computed and ``sort`` picks one of the fallback orders.
    """
    if sort not in SEARCH_SORT_CHOICES:
        sort = SORT_NEAREST if center is not None else FALLBACK_SORT

    if center is None:
        fallback = FALLBACK_SORT if sort == SORT_NEAREST else sort
        return [WorkshopMatch(item) for item in order_without_center(candidates, fallback)]

    radius = resolve_radius_km(radius_km)
    matches = []
    for candidate in candidates:
        km = distance_km(center, candidate_location(candidate))
        if km <= radius:
            matches.append(WorkshopMatch(candidate, km))

    if sort == SORT_NEAREST:
        matches.sort(
            key=lambda match: (
                match.distance_km,
                -_rating(match.workshop),
                _created_ts(match.workshop),
                match.workshop.id,
            )
        )
        return matches

    by_id = {match.workshop.id: match for match in matches}
    ordered = order_without_center([match.workshop for match in matches], sort)
    return [by_id[item.id] for item in ordered]
