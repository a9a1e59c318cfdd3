"""Core data models shared by the search, credit and export flows."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

MIN_RESULTS = 1
MAX_RESULTS = 60
RESULTS_PER_PAGE = 20
DEFAULT_LANGUAGE_CODE = "pt-BR"


@dataclass(slots=True)
class SearchRequest:
    """Caller-supplied search parameters after normalisation."""

    owner_id: str
    query_text: str
    language_code: str
    requested_count: int


@dataclass(slots=True)
class PlaceResult:
    """Single place returned by the provider; every field may be missing."""

    external_place_id: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None


@dataclass(slots=True)
class SearchPage:
    places: List[PlaceResult] = field(default_factory=list)
    next_page_token: Optional[str] = None


@dataclass(slots=True)
class SearchRecord:
    """Persisted search header, one per successful fetch."""

    id: str
    owner_id: str
    query_text: str
    language_code: str
    requested_count: int
    result_count: int
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "SearchRecord":
        return cls(
            id=str(row["id"]),
            owner_id=row["user_id"],
            query_text=row["text_query"],
            language_code=row["language_code"],
            requested_count=int(row["package_size"]),
            result_count=int(row["total_results"]),
            created_at=row.get("created_at"),
        )

    def to_public_dict(self) -> Dict[str, Any]:
        created_at = self.created_at.isoformat() if isinstance(self.created_at, datetime) else self.created_at
        return {
            "id": self.id,
            "text_query": self.query_text,
            "language_code": self.language_code,
            "package_size": self.requested_count,
            "total_results": self.result_count,
            "created_at": created_at,
        }


@dataclass(slots=True)
class ResultRow:
    """Persisted result row bound to exactly one :class:`SearchRecord`."""

    search_id: Optional[str]
    owner_id: str
    external_place_id: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass(slots=True)
class PendingNotification:
    owner_id: str
    balance: int


@dataclass(slots=True)
class ExportRow:
    """Caller-facing projection of a result row; owner and place ids stay internal."""

    name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
