import math

from .core.exceptions import ValidationError

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1, lon1, lat2, lon2):
    """Great-circle distance in kilometers between two points given in degrees"""
    R = EARTH_RADIUS_KM
    phi1 = math.radians(lat1); phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1); dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi/2)**2 + math.cos(phi1)*math.cos(phi2)*math.sin(dlambda/2)**2
    c = 2*math.atan2(math.sqrt(a), math.sqrt(1-a))
    return R * c


def validate_coordinates(lat, lng, label: str = "location"):
    """Reject missing, non-numeric, non-finite or out-of-range coordinates.

    Returns the pair as floats so callers can pass it straight to haversine_km.
    """
    if lat is None or lng is None:
        raise ValidationError(f"{label} coordinates are required")
    if isinstance(lat, bool) or isinstance(lng, bool):
        raise ValidationError(f"{label} coordinates must be numbers")
    try:
        lat = float(lat); lng = float(lng)
    except (TypeError, ValueError):
        raise ValidationError(f"{label} coordinates must be numbers")
    if not (math.isfinite(lat) and math.isfinite(lng)):
        raise ValidationError(f"{label} coordinates must be finite")
    if not (-90.0 <= lat <= 90.0) or not (-180.0 <= lng <= 180.0):
        raise ValidationError(f"{label} coordinates out of range")
    return lat, lng


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero for non-negative input"""
    return int(math.floor(value + 0.5))
