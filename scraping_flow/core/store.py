"""Persistence of search headers and their result rows."""

import logging
import uuid
from typing import List, Optional, Sequence

import psycopg2
from psycopg2 import errorcodes, errors, extras

from scraping_flow.core.db import Database
from scraping_flow.core.errors import PersistenceError, SchemaNotReadyError
from scraping_flow.models import ResultRow, SearchRecord, SearchRequest

logger = logging.getLogger(__name__)

_SEARCH_COLUMNS = "id, user_id, text_query, language_code, package_size, total_results, created_at"

_INSERT_SEARCH = f"""
INSERT INTO scraping_searches (
    user_id,
    text_query,
    language_code,
    package_size,
    total_results
) VALUES (
    %(user_id)s,
    %(text_query)s,
    %(language_code)s,
    %(package_size)s,
    %(total_results)s
)
RETURNING {_SEARCH_COLUMNS};
"""

_INSERT_RESULT = """
INSERT INTO scraping_results (
    search_id,
    user_id,
    place_id,
    name,
    phone,
    address
) VALUES (
    %(search_id)s,
    %(user_id)s,
    %(place_id)s,
    %(name)s,
    %(phone)s,
    %(address)s
);
"""

_DELETE_RESULTS = "DELETE FROM scraping_results WHERE search_id = %(search_id)s"
_DELETE_SEARCH = "DELETE FROM scraping_searches WHERE id = %(search_id)s"

_LIST_BY_OWNER = f"""
SELECT {_SEARCH_COLUMNS}
FROM scraping_searches
WHERE user_id = %(user_id)s
ORDER BY created_at DESC, id
"""

_GET_BY_ID = f"""
SELECT {_SEARCH_COLUMNS}
FROM scraping_searches
WHERE id = %(search_id)s AND user_id = %(user_id)s
"""

_EXPORT_ROWS = """
SELECT r.search_id, r.user_id, r.place_id, r.name, r.phone, r.address, r.created_at
FROM scraping_results r
JOIN scraping_searches s ON s.id = r.search_id
WHERE s.id = %(search_id)s AND s.user_id = %(user_id)s
ORDER BY r.created_at, r.id
"""


def _is_missing_table(exc: psycopg2.Error) -> bool:
    return isinstance(exc, errors.UndefinedTable) or getattr(exc, "pgcode", None) == errorcodes.UNDEFINED_TABLE


def _as_uuid(search_id: str) -> Optional[str]:
    try:
        return str(uuid.UUID(str(search_id)))
    except (TypeError, ValueError, AttributeError):
        return None


def _prepare_result_params(search_id: str, row: ResultRow) -> dict:
    return {
        "search_id": search_id,
        "user_id": row.owner_id,
        "place_id": row.external_place_id,
        "name": row.name,
        "phone": row.phone,
        "address": row.address,
    }


class ResultStore:
    def __init__(self, database: Database) -> None:
        self.database = database

    def _raise_for(self, exc: Exception, action: str) -> None:
        if isinstance(exc, psycopg2.Error) and _is_missing_table(exc):
            logger.error("Search tables are missing while trying to %s", action)
            raise SchemaNotReadyError() from exc
        logger.error("Failed to %s: %s", action, exc)
        raise PersistenceError(f"Failed to {action}.") from exc

    def persist(self, request: SearchRequest, rows: Sequence[ResultRow]) -> SearchRecord:
        """Insert the header and every row in one transaction."""
        header = {
            "user_id": request.owner_id,
            "text_query": request.query_text,
            "language_code": request.language_code,
            "package_size": request.requested_count,
            "total_results": len(rows),
        }
        try:
            with self.database.get_connection() as conn:
                try:
                    with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                        cur.execute(_INSERT_SEARCH, header)
                        record = SearchRecord.from_row(cur.fetchone())
                        for row in rows:
                            cur.execute(_INSERT_RESULT, _prepare_result_params(record.id, row))
                    conn.commit()
                except Exception:
                    conn.rollback()
                    raise
        except (psycopg2.Error, RuntimeError) as exc:
            self._raise_for(exc, "save search")

        logger.info("Persisted search %s with %d results for %s", record.id, len(rows), request.owner_id)
        return record

    def compensate(self, search_id: str) -> None:
        """Delete a search and its rows; a missing search is a no-op."""
        search_uuid = _as_uuid(search_id)
        if search_uuid is None:
            return
        params = {"search_id": search_uuid}
        try:
            with self.database.get_connection() as conn:
                try:
                    with conn.cursor() as cur:
                        cur.execute(_DELETE_RESULTS, params)
                        cur.execute(_DELETE_SEARCH, params)
                    conn.commit()
                except Exception:
                    conn.rollback()
                    raise
        except (psycopg2.Error, RuntimeError) as exc:
            self._raise_for(exc, f"delete search {search_uuid}")
        logger.info("Compensated search %s", search_uuid)

    def _fetch(self, sql: str, params: dict, action: str) -> List[dict]:
        try:
            with self.database.get_connection() as conn:
                try:
                    with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                        cur.execute(sql, params)
                        return list(cur.fetchall())
                finally:
                    conn.rollback()
        except (psycopg2.Error, RuntimeError) as exc:
            self._raise_for(exc, action)
        return []

    def list_by_owner(self, owner_id: str) -> List[SearchRecord]:
        rows = self._fetch(_LIST_BY_OWNER, {"user_id": owner_id}, "list searches")
        return [SearchRecord.from_row(row) for row in rows]

    def get_by_id(self, search_id: str, owner_id: str) -> Optional[SearchRecord]:
        search_uuid = _as_uuid(search_id)
        if search_uuid is None:
            return None
        rows = self._fetch(_GET_BY_ID, {"search_id": search_uuid, "user_id": owner_id}, "load search")
        return SearchRecord.from_row(rows[0]) if rows else None

    def export_rows(self, search_id: str, owner_id: str) -> List[ResultRow]:
        search_uuid = _as_uuid(search_id)
        if search_uuid is None:
            return []
        rows = self._fetch(_EXPORT_ROWS, {"search_id": search_uuid, "user_id": owner_id}, "export results")
        return [
            ResultRow(
                search_id=str(row["search_id"]),
                owner_id=row["user_id"],
                external_place_id=row.get("place_id"),
                name=row.get("name"),
                phone=row.get("phone"),
                address=row.get("address"),
                created_at=row.get("created_at"),
            )
            for row in rows
        ]
