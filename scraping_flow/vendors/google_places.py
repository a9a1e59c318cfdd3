"""Client utilities for the Google Places API (New) text search."""

import logging
import time
from typing import Any, Dict, Iterator, List, Optional

import requests

from scraping_flow.core.errors import ExternalServiceError
from scraping_flow.etl.transform import parse_places
from scraping_flow.models import RESULTS_PER_PAGE, PlaceResult, SearchPage

logger = logging.getLogger(__name__)
_SESSION = requests.Session()
_BASE_URL = "https://places.googleapis.com/v1"
_FIELD_MASK = "places.displayName,places.formattedAddress,places.nationalPhoneNumber,places.id,nextPageToken"

REQUEST_TIMEOUT = 15
RETRYABLE_STATUSES = {429, 500, 503}
RETRY_LIMIT = 2
RETRY_DELAY_SECONDS = 1.5


def _error_message(status: Optional[int], payload: Optional[Dict[str, Any]], exc: Optional[Exception]) -> str:
    if status == 403:
        return "Google Places API: invalid or disabled API key. Check GOOGLE_PLACES_API_KEY."
    if status in {500, 503}:
        return "Google Places is temporarily unavailable. Try again in a few moments."
    error = (payload or {}).get("error")
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    if exc is not None:
        return f"Google Places request failed: {exc}"
    return f"Google Places request failed with HTTP {status}"


def _safe_json(response: requests.Response) -> Optional[Dict[str, Any]]:
    try:
        payload = response.json()
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None


def search_text(
    query_text: str,
    language_code: str,
    api_key: str,
    page_token: Optional[str] = None,
    base_url: str = _BASE_URL,
) -> SearchPage:
    """Fetch one page of results, retrying 429/500/503 with linear backoff."""
    body: Dict[str, Any] = {
        "textQuery": query_text,
        "languageCode": language_code,
        "pageSize": RESULTS_PER_PAGE,
    }
    if page_token:
        body["pageToken"] = page_token
    headers = {
        "Content-Type": "application/json",
        "X-Goog-Api-Key": api_key,
        "X-Goog-FieldMask": _FIELD_MASK,
    }
    url = f"{base_url}/places:searchText"

    attempt = 0
    while True:
        attempt += 1
        status: Optional[int] = None
        payload: Optional[Dict[str, Any]] = None
        error: Optional[Exception] = None
        try:
            response = _SESSION.post(url, json=body, headers=headers, timeout=REQUEST_TIMEOUT)
        except requests.RequestException as exc:
            error = exc
            retryable = False
        else:
            status = response.status_code
            payload = _safe_json(response)
            if status < 400:
                if payload is None:
                    raise ExternalServiceError("Google Places returned a malformed payload.", upstream_status=status)
                return SearchPage(places=parse_places(payload), next_page_token=payload.get("nextPageToken") or None)
            retryable = status in RETRYABLE_STATUSES

        if retryable and attempt <= RETRY_LIMIT:
            delay = attempt * RETRY_DELAY_SECONDS
            logger.warning(
                "searchText failed (attempt %s/%s, status=%s, error=%s); retrying in %.1fs",
                attempt,
                RETRY_LIMIT + 1,
                status,
                error,
                delay,
            )
            time.sleep(delay)
            continue

        logger.error("searchText failed: status=%s, payload=%s, error=%s", status, payload, error)
        raise ExternalServiceError(_error_message(status, payload, error), upstream_status=status)


def iter_places(
    query_text: str,
    language_code: str,
    max_results: int,
    api_key: str,
    base_url: str = _BASE_URL,
) -> Iterator[PlaceResult]:
    """Yield at most ``max_results`` places, following continuation tokens."""
    yielded = 0
    page_token: Optional[str] = None
    page_number = 0
    while yielded < max_results:
        page = search_text(query_text, language_code, api_key, page_token=page_token, base_url=base_url)
        page_number += 1
        logger.info("Fetched %d places on page %d", len(page.places), page_number)
        for place in page.places:
            if yielded >= max_results:
                return
            yield place
            yielded += 1
        page_token = page.next_page_token
        if not page_token:
            return


def fetch_up_to(
    query_text: str,
    language_code: str,
    max_results: int,
    api_key: str,
    base_url: str = _BASE_URL,
) -> List[PlaceResult]:
    return list(iter_places(query_text, language_code, max_results, api_key, base_url=base_url))


class PlacesClient:
    """Binds credentials to the module-level helpers for injection into services."""

    def __init__(self, api_key: str, base_url: str = _BASE_URL) -> None:
        self.api_key = api_key
        self.base_url = base_url

    def fetch_up_to(self, query_text: str, language_code: str, max_results: int) -> List[PlaceResult]:
        if not self.api_key:
            raise ExternalServiceError("GOOGLE_PLACES_API_KEY is not configured.")
        return fetch_up_to(query_text, language_code, max_results, self.api_key, base_url=self.base_url)
