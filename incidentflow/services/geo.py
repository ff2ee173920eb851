from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, field
from typing import Any, Literal

logger = logging.getLogger(__name__)

FixAction = Literal["nullify", "swap", "use_centroid"]

ADMIN_ONLY_CONFIDENCE = 0.5
COUNTRY_BOUNDS_BUFFER_DEGREES = 2.0
SEVERE_MISMATCH_DEGREES = 30.0
MIN_CONFIDENCE = 0.1
SWAP_PENALTY = 0.3
COUNTRY_MISMATCH_PENALTY = 0.4
OCEAN_PENALTY = 0.5
EXACT_PRECISION_PENALTY = 0.7

MARINE_EVENT_TYPES = {"coral_bleaching", "oil_spill", "pollution"}
MARINE_KEYWORDS = ("ocean", "sea", "reef", "marine", "coast", "island", "bay", "gulf")

# Approximate [min_lng, min_lat, max_lng, max_lat] per country.
COUNTRY_BOUNDS: dict[str, tuple[float, float, float, float]] = {
    "united states": (-125, 24, -66, 49),
    "usa": (-125, 24, -66, 49),
    "canada": (-141, 41, -52, 84),
    "brazil": (-74, -34, -32, 6),
    "australia": (112, -44, 154, -10),
    "china": (73, 18, 135, 54),
    "india": (68, 6, 97, 36),
    "russia": (19, 41, 180, 82),
    "united kingdom": (-8, 49, 2, 61),
    "france": (-5, 41, 10, 51),
    "germany": (5, 47, 16, 55),
    "japan": (123, 24, 146, 46),
    "indonesia": (95, -11, 141, 6),
    "mexico": (-118, 14, -86, 33),
    "south africa": (16, -35, 33, -22),
    "kenya": (33, -5, 42, 5),
    "tanzania": (29, -12, 41, -1),
    "peru": (-82, -18, -68, 0),
    "colombia": (-79, -4, -67, 14),
    "democratic republic of congo": (12, -14, 32, 6),
    "madagascar": (43, -26, 51, -12),
    "new zealand": (166, -47, 179, -34),
    "norway": (4, 57, 32, 71),
    "sweden": (11, 55, 24, 69),
    "finland": (20, 59, 32, 70),
    "italy": (6, 36, 19, 47),
    "spain": (-10, 35, 5, 44),
    "portugal": (-10, 36, -6, 42),
    "philippines": (116, 5, 127, 21),
    "vietnam": (102, 8, 110, 24),
    "thailand": (97, 5, 106, 21),
    "malaysia": (99, 0, 120, 8),
    "singapore": (103, 1, 104, 2),
    "costa rica": (-86, 8, -82, 11),
    "panama": (-83, 7, -77, 10),
    "ecuador": (-81, -5, -75, 2),
    "chile": (-76, -56, -66, -17),
    "argentina": (-74, -55, -53, -21),
    "egypt": (24, 22, 37, 32),
    "morocco": (-13, 27, -1, 36),
    "nigeria": (2, 4, 15, 14),
    "ethiopia": (33, 3, 48, 15),
    "botswana": (20, -27, 30, -17),
    "namibia": (11, -29, 25, -17),
    "iceland": (-24, 63, -13, 67),
    "greenland": (-73, 59, -11, 84),
}

# [lng, lat]
COUNTRY_CENTROIDS: dict[str, tuple[float, float]] = {
    "united states": (-98.5795, 39.8283),
    "usa": (-98.5795, 39.8283),
    "canada": (-106.3468, 56.1304),
    "brazil": (-51.9253, -14.2350),
    "australia": (133.7751, -25.2744),
    "china": (104.1954, 35.8617),
    "india": (78.9629, 20.5937),
    "russia": (105.3188, 61.5240),
    "united kingdom": (-3.4360, 55.3781),
    "france": (2.2137, 46.2276),
    "germany": (10.4515, 51.1657),
    "japan": (138.2529, 36.2048),
    "indonesia": (113.9213, -0.7893),
    "mexico": (-102.5528, 23.6345),
}


@dataclass(slots=True)
class SuggestedFix:
    action: FixAction
    reason: str
    # [lng, lat] to fall back to when action is use_centroid and the country is known.
    coordinates: tuple[float, float] | None = None


@dataclass(slots=True)
class GeoValidationResult:
    valid: bool
    issues: list[str] = field(default_factory=list)
    adjusted_confidence: float = 1.0
    should_nullify_coords: bool = False
    suggested_fix: SuggestedFix | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class CountryMatch:
    matches: bool
    reason: str = ""
    severe_mismatch: bool = False
    offset_degrees: float = 0.0


def validate_geolocation(extraction: dict[str, Any]) -> GeoValidationResult:
    """Check extracted coordinates against ranges, the claimed country and open ocean.

    ``extraction`` is the structured payload; coordinates use GeoJSON
    ``[lng, lat]`` order. Penalties multiply, so confidence never increases as
    more issues are found. Rejected coordinates end with confidence 0.
    """
    location = extraction.get("location") or {}
    geometry = location.get("geometry") or {}
    coordinates = geometry.get("coordinates")

    if not coordinates or len(coordinates) < 2 or coordinates[0] is None or coordinates[1] is None:
        return GeoValidationResult(valid=True, adjusted_confidence=ADMIN_ONLY_CONFIDENCE)

    lng, lat = float(coordinates[0]), float(coordinates[1])
    admin = location.get("admin") or {}
    issues: list[str] = []
    confidence = 1.0
    nullify = False
    suggested_fix: SuggestedFix | None = None

    if lat < -90 or lat > 90:
        issues.append(f"invalid latitude: {lat} (must be -90 to 90)")
        nullify = True
        suggested_fix = SuggestedFix(action="nullify", reason="latitude out of range")

    if lng < -180 or lng > 180:
        issues.append(f"invalid longitude: {lng} (must be -180 to 180)")
        nullify = True
        suggested_fix = SuggestedFix(action="nullify", reason="longitude out of range")

    if abs(lat) > 90 and abs(lng) <= 90:
        issues.append(f"coordinates may be swapped (lat={lat}, lng={lng})")
        confidence *= SWAP_PENALTY
        suggested_fix = SuggestedFix(action="swap", reason="lat/lng appear to be swapped")

    country = admin.get("country")
    if not nullify and country:
        match = check_country_coordinate_match(country, lng, lat)
        if not match.matches:
            issues.append(match.reason)
            confidence *= COUNTRY_MISMATCH_PENALTY
            if match.severe_mismatch:
                suggested_fix = SuggestedFix(
                    action="use_centroid",
                    reason=f"coordinates don't match country ({country})",
                    coordinates=country_centroid(country),
                )

    if not nullify and is_likely_ocean(lng, lat) and not is_marine_event_expected(extraction):
        issues.append("coordinates appear to be in the ocean")
        confidence *= OCEAN_PENALTY

    if geometry.get("precision") == "exact" and issues:
        issues.append("precision marked as 'exact' but validation found issues")
        confidence *= EXACT_PRECISION_PENALTY

    confidence = 0.0 if nullify else max(MIN_CONFIDENCE, confidence)

    result = GeoValidationResult(
        valid=not issues,
        issues=issues,
        adjusted_confidence=confidence,
        should_nullify_coords=nullify,
        suggested_fix=suggested_fix,
    )
    if issues:
        logger.debug("geo validation issues found issues=%s confidence=%.2f", issues, confidence)
    return result


def check_country_coordinate_match(country: str, lng: float, lat: float) -> CountryMatch:
    bounds = COUNTRY_BOUNDS.get(country.strip().lower())
    if bounds is None:
        return CountryMatch(matches=True)

    min_lng, min_lat, max_lng, max_lat = bounds
    buffer = COUNTRY_BOUNDS_BUFFER_DEGREES
    in_bounds = (
        min_lng - buffer <= lng <= max_lng + buffer
        and min_lat - buffer <= lat <= max_lat + buffer
    )
    if in_bounds:
        return CountryMatch(matches=True)

    lng_offset = _axis_offset(lng, min_lng, max_lng)
    lat_offset = _axis_offset(lat, min_lat, max_lat)
    offset = math.hypot(lng_offset, lat_offset)
    return CountryMatch(
        matches=False,
        reason=f"coordinates ({lng}, {lat}) are ~{offset:.0f} degrees outside {country} bounds",
        severe_mismatch=offset > SEVERE_MISMATCH_DEGREES,
        offset_degrees=offset,
    )


def is_likely_ocean(lng: float, lat: float) -> bool:
    """Rough open-ocean heuristic; only flags areas that are clearly water."""
    if -40 < lng < -20 and -30 < lat < 40:
        return True
    if lat < -60:
        return True
    return lat > 80


def is_marine_event_expected(extraction: dict[str, Any]) -> bool:
    event_type = (extraction.get("event_type") or {}).get("primary")
    if event_type in MARINE_EVENT_TYPES:
        return True

    location = extraction.get("location") or {}
    admin = location.get("admin") or {}
    location_text = " ".join(
        part for part in (admin.get("locality"), location.get("description")) if isinstance(part, str)
    ).lower()
    return any(keyword in location_text for keyword in MARINE_KEYWORDS)


def country_centroid(country: str) -> tuple[float, float] | None:
    return COUNTRY_CENTROIDS.get(country.strip().lower())


def _axis_offset(value: float, low: float, high: float) -> float:
    if value < low:
        return low - value
    if value > high:
        return value - high
    return 0.0
