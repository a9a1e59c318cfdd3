"""Search orchestration: credit check, provider fetch, persistence and debit."""

import logging
import math
from typing import Any, List, Optional

from scraping_flow.core.credits import CreditLedger
from scraping_flow.core.errors import (
    DebitFailed,
    InsufficientCredits,
    InvalidQuantity,
    InvalidQuery,
    InvariantViolation,
    SearchNotFound,
)
from scraping_flow.core.notifications import NotificationSink
from scraping_flow.core.store import ResultStore
from scraping_flow.etl.transform import to_export_rows, to_result_rows
from scraping_flow.models import (
    DEFAULT_LANGUAGE_CODE,
    MAX_RESULTS,
    MIN_RESULTS,
    ExportRow,
    SearchRecord,
    SearchRequest,
)

logger = logging.getLogger(__name__)


def normalize_requested_count(requested_count: Any) -> int:
    """Default a missing count to the maximum and floor fractional ones.

    Anything outside ``[MIN_RESULTS, MAX_RESULTS]`` is rejected, not clamped.
    """
    if requested_count is None or requested_count == "":
        return MAX_RESULTS
    if isinstance(requested_count, bool):
        raise InvalidQuantity(_quantity_message())
    try:
        value = float(requested_count)
    except (TypeError, ValueError) as exc:
        raise InvalidQuantity(_quantity_message()) from exc
    if not math.isfinite(value):
        raise InvalidQuantity(_quantity_message())
    count = math.floor(value)
    if count < MIN_RESULTS or count > MAX_RESULTS:
        raise InvalidQuantity(_quantity_message())
    return count


def _quantity_message() -> str:
    return f"Invalid quantity. Choose between {MIN_RESULTS} and {MAX_RESULTS} results."


def build_search_request(
    owner_id: str,
    query_text: Any,
    language_code: Optional[str] = None,
    requested_count: Any = None,
    default_language_code: str = DEFAULT_LANGUAGE_CODE,
) -> SearchRequest:
    count = normalize_requested_count(requested_count)
    if not isinstance(query_text, str) or not query_text.strip():
        raise InvalidQuery("textQuery is required.")
    language = (language_code or "").strip() or default_language_code
    return SearchRequest(
        owner_id=owner_id,
        query_text=query_text.strip(),
        language_code=language,
        requested_count=count,
    )


class SearchOrchestrator:
    """Runs one search end to end and charges only for delivered results."""

    def __init__(
        self,
        provider,
        ledger: CreditLedger,
        store: ResultStore,
        notifications: Optional[NotificationSink] = None,
        default_language_code: str = DEFAULT_LANGUAGE_CODE,
    ) -> None:
        self.provider = provider
        self.ledger = ledger
        self.store = store
        self.notifications = notifications
        self.default_language_code = default_language_code

    def create_search(
        self,
        owner_id: str,
        query_text: Any,
        language_code: Optional[str] = None,
        requested_count: Any = None,
    ) -> SearchRecord:
        request = build_search_request(
            owner_id,
            query_text,
            language_code,
            requested_count,
            default_language_code=self.default_language_code,
        )

        balance = self.ledger.check_balance(owner_id)
        if balance < request.requested_count:
            logger.info(
                "Rejected search for %s: requested=%d balance=%d", owner_id, request.requested_count, balance
            )
            raise InsufficientCredits(
                f"Insufficient credits. Required: {request.requested_count}, available: {balance}"
            )

        logger.info(
            "Running search for %s: query=%s language=%s requested=%d",
            owner_id,
            request.query_text,
            request.language_code,
            request.requested_count,
        )
        places = self.provider.fetch_up_to(request.query_text, request.language_code, request.requested_count)
        if len(places) > request.requested_count:
            raise InvariantViolation(
                f"Provider returned {len(places)} places for a request of {request.requested_count}"
            )

        record = self.store.persist(request, to_result_rows(places, owner_id))

        try:
            new_balance = self.ledger.debit(owner_id, record.result_count)
        except DebitFailed as exc:
            logger.warning("Debit of %d failed for %s (%s); removing search %s", record.result_count, owner_id, exc, record.id)
            self._compensate(record)
            raise InsufficientCredits(
                "Insufficient credits at debit time or the balance update failed. Check your balance and try again."
            ) from exc

        self._notify(owner_id, new_balance)
        logger.info("Search %s completed: results=%d balance=%d", record.id, record.result_count, new_balance)
        return record

    def _compensate(self, record: SearchRecord) -> None:
        try:
            self.store.compensate(record.id)
        except Exception:  # noqa: BLE001
            logger.exception(
                "Compensation failed; search %s for %s is orphaned without a debit", record.id, record.owner_id
            )

    def _notify(self, owner_id: str, balance: int) -> None:
        if self.notifications is None:
            return
        try:
            self.notifications.emit(owner_id, balance)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Balance notification for %s failed: %s", owner_id, exc)

    def list_searches(self, owner_id: str) -> List[SearchRecord]:
        return self.store.list_by_owner(owner_id)

    def get_search(self, search_id: str, owner_id: str) -> Optional[SearchRecord]:
        return self.store.get_by_id(search_id, owner_id)

    def export_results(self, search_id: str, owner_id: str) -> List[ExportRow]:
        if self.store.get_by_id(search_id, owner_id) is None:
            raise SearchNotFound("Search not found.")
        return to_export_rows(self.store.export_rows(search_id, owner_id))

    def get_balance(self, owner_id: str) -> int:
        return self.ledger.check_balance(owner_id)
