"""
Places API client (text search + place details).

Retries 429/5xx responses and connection errors with exponential backoff
and jitter. Anything still failing afterwards is raised as
TransientProviderError for the caller to record against the cell or place.
"""

import logging
import random
import time
from typing import Optional

import requests

from leadforge import config
from leadforge.errors import ConfigurationError, ProviderError, TransientProviderError
from leadforge.models import Place

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {429, 500, 502, 503, 504}


def ensure_configured() -> None:
    if not config.GOOGLE_MAPS_API_KEY:
        raise ConfigurationError("GOOGLE_MAPS_API_KEY is not configured")


def _headers(field_mask: str) -> dict:
    return {
        "Content-Type": "application/json",
        "X-Goog-Api-Key": config.GOOGLE_MAPS_API_KEY,
        "X-Goog-FieldMask": field_mask,
    }


def _backoff(attempt: int) -> float:
    return config.PROVIDER_RETRY_BASE_DELAY * (2 ** attempt) + random.uniform(0, 0.5)


def _request(method: str, url: str, field_mask: str, json_body: Optional[dict] = None) -> dict:
    """Perform one provider call with retry logic. Returns the decoded JSON."""
    ensure_configured()
    retries = max(1, config.PROVIDER_MAX_RETRIES)
    last_error = ""

    for attempt in range(retries):
        try:
            logger.debug("%s %s (attempt %d)", method, url, attempt + 1)
            resp = requests.request(
                method,
                url,
                headers=_headers(field_mask),
                json=json_body,
                timeout=config.REQUEST_TIMEOUT,
            )
        except requests.RequestException as exc:
            last_error = str(exc)
            if attempt < retries - 1:
                wait = _backoff(attempt)
                logger.warning("Places request failed (%s), retrying in %.1fs", exc, wait)
                time.sleep(wait)
            continue

        if resp.status_code in RETRYABLE_STATUS:
            last_error = f"HTTP {resp.status_code}"
            if attempt < retries - 1:
                wait = _backoff(attempt)
                logger.warning(
                    "Places returned %d, attempt %d/%d, retrying in %.1fs",
                    resp.status_code, attempt + 1, retries, wait,
                )
                time.sleep(wait)
            continue

        if resp.status_code >= 400:
            raise ProviderError(
                f"Places API error {resp.status_code}: {resp.text[:200]}",
                status_code=resp.status_code,
            )

        try:
            return resp.json()
        except ValueError as exc:
            raise ProviderError(f"Places API returned invalid JSON: {exc}") from exc

    logger.error("Places request failed after %d attempts: %s", retries, last_error)
    raise TransientProviderError(f"Places request failed after {retries} attempts: {last_error}")


def text_search(
    query: str,
    lat: float,
    lng: float,
    radius_km: float,
    max_results: int = 20,
) -> list[Place]:
    """Search one circular cell. The provider caps a page at 20 results."""
    body = {
        "textQuery": query,
        "maxResultCount": max(1, min(max_results, config.MAX_RESULTS_PER_PAGE)),
        "languageCode": config.PLACES_LANGUAGE,
        "locationBias": {
            "circle": {
                "center": {"latitude": lat, "longitude": lng},
                "radius": min(radius_km * 1000, 50000.0),
            }
        },
    }
    data = _request(
        "POST",
        f"{config.PLACES_BASE_URL}/places:searchText",
        config.SEARCH_FIELD_MASK,
        json_body=body,
    )

    places = []
    for item in data.get("places", []):
        if item.get("id"):
            places.append(Place.from_api(item))
    return places


def place_details(place_id: str) -> Place:
    data = _request(
        "GET",
        f"{config.PLACES_BASE_URL}/places/{place_id}",
        config.DETAIL_FIELD_MASK,
    )
    return Place.from_api(data)
