"""Utilities for transforming Google Places responses into database rows."""

import logging
from typing import Any, Dict, Iterable, List, Optional

from scraping_flow.models import ExportRow, PlaceResult, ResultRow

logger = logging.getLogger(__name__)


def _strip_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    value_str = str(value).strip()
    return value_str or None


def _display_name(place: Dict[str, Any]) -> Optional[str]:
    display_name = place.get("displayName")
    if isinstance(display_name, dict):
        return _strip_or_none(display_name.get("text"))
    return _strip_or_none(display_name)


def to_place_result(place: Dict[str, Any]) -> PlaceResult:
    return PlaceResult(
        external_place_id=_strip_or_none(place.get("id")),
        name=_display_name(place),
        phone=_strip_or_none(place.get("nationalPhoneNumber")),
        address=_strip_or_none(place.get("formattedAddress")),
    )


def parse_places(payload: Dict[str, Any]) -> List[PlaceResult]:
    places = payload.get("places") or []
    if not isinstance(places, list):
        logger.warning("searchText response has non-list places: %s", type(places).__name__)
        return []
    return [to_place_result(place) for place in places if isinstance(place, dict)]


def to_result_rows(places: Iterable[PlaceResult], owner_id: str, search_id: Optional[str] = None) -> List[ResultRow]:
    return [
        ResultRow(
            search_id=search_id,
            owner_id=owner_id,
            external_place_id=place.external_place_id,
            name=place.name,
            phone=place.phone,
            address=place.address,
        )
        for place in places
    ]


def to_export_rows(rows: Iterable[ResultRow]) -> List[ExportRow]:
    return [ExportRow(name=row.name, phone=row.phone, address=row.address) for row in rows]
