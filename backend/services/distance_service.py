"""
Estimation distance / durée entre deux points.

Google Distance Matrix si une clé est configurée, sinon (ou en cas d'erreur)
haversine + vitesse supposée FALLBACK_SPEED_MPS. Ne lève jamais.
"""
import logging
import math
from typing import Optional

import httpx

from config import settings

logger = logging.getLogger(__name__)

GOOGLE_DISTANCE_MATRIX_URL = "https://maps.googleapis.com/maps/api/distancematrix/json"
EARTH_RADIUS_M = 6_371_000.0


def _coords(point) -> Optional[tuple[float, float]]:
    """Accepte un dict {"lat","lng"} ou un modèle pydantic ; None si incomplet."""
    if point is None:
        return None
    if not isinstance(point, dict):
        point = point.model_dump()
    lat, lng = point.get("lat"), point.get("lng")
    if lat is None or lng is None:
        return None
    return float(lat), float(lng)


def haversine_m(origin, destination) -> float:
    """Distance orthodromique en mètres ; +inf si une coordonnée manque."""
    a, b = _coords(origin), _coords(destination)
    if a is None or b is None:
        return math.inf
    lat1, lng1 = a
    lat2, lng2 = b
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)
    h = math.sin(dlat / 2) ** 2 + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(dlng / 2) ** 2
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def fallback_estimate(origin, destination) -> dict:
    distance = haversine_m(origin, destination)
    return {"distance_m": distance, "duration_s": distance / settings.FALLBACK_SPEED_MPS}


async def _distance_matrix(origin: tuple, destination: tuple, client: httpx.AsyncClient) -> Optional[dict]:
    params = {
        "origins":        f"{origin[0]},{origin[1]}",
        "destinations":   f"{destination[0]},{destination[1]}",
        "departure_time": "now",
        "key":            settings.GOOGLE_MAPS_API_KEY,
    }
    response = await client.get(GOOGLE_DISTANCE_MATRIX_URL, params=params)
    response.raise_for_status()
    data = response.json()

    if data.get("status") != "OK":
        logger.warning(f"Distance Matrix status: {data.get('status')} - {data.get('error_message')}")
        return None
    element = data["rows"][0]["elements"][0]
    if element.get("status") != "OK":
        logger.warning(f"Distance Matrix element status: {element.get('status')}")
        return None
    return {
        "distance_m": float(element["distance"]["value"]),
        "duration_s": float(element["duration"]["value"]),
    }


async def estimate(origin, destination, client: Optional[httpx.AsyncClient] = None) -> dict:
    """
    Retourne {"distance_m", "duration_s"}.
    `client` permet d'injecter un httpx.AsyncClient (réutilisation, tests).
    """
    a, b = _coords(origin), _coords(destination)
    if a is None or b is None:
        return {"distance_m": math.inf, "duration_s": math.inf}

    if settings.GOOGLE_MAPS_API_KEY:
        try:
            if client is not None:
                result = await _distance_matrix(a, b, client)
            else:
                async with httpx.AsyncClient(timeout=settings.ROUTING_TIMEOUT_S) as own_client:
                    result = await _distance_matrix(a, b, own_client)
            if result:
                return result
        except (httpx.HTTPError, KeyError, IndexError, ValueError) as e:
            logger.warning(f"Distance Matrix indisponible, repli haversine : {e}")

    return fallback_estimate(origin, destination)
