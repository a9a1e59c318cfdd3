"""Error taxonomy for the search workflow.

Each error carries the HTTP status and machine-readable ``status`` string the
API layer renders, so the orchestrator is the only place that decides which
one a caller sees.
"""

from typing import Optional

MIGRATION_HINT = "Run the schema migrations: python -m scraping_flow.jobs.run_migration"


class ScrapingFlowError(RuntimeError):
    """Base class for caller-visible failures."""

    status_code = 500
    status = "internal_error"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.__class__.__doc__)
        self.message = message or self.__class__.__doc__


class InvalidQuantity(ScrapingFlowError):
    """Requested result count is outside the allowed range."""

    status_code = 400
    status = "validation_error"


class InvalidQuery(ScrapingFlowError):
    """Search text is required."""

    status_code = 400
    status = "validation_error"


class Unauthorized(ScrapingFlowError):
    """Authentication required."""

    status_code = 401
    status = "unauthorized"


class InsufficientCredits(ScrapingFlowError):
    """Not enough credits for this search."""

    status_code = 402
    status = "insufficient_credits"


class SearchNotFound(ScrapingFlowError):
    """Search not found."""

    status_code = 404
    status = "not_found"


class PersistenceError(ScrapingFlowError):
    """Failed to save the search."""


class InvariantViolation(ScrapingFlowError):
    """Internal consistency check failed."""


class ExternalServiceError(ScrapingFlowError):
    """The place search provider failed."""

    status_code = 502
    status = "external_service_error"

    def __init__(self, message: Optional[str] = None, upstream_status: Optional[int] = None) -> None:
        super().__init__(message)
        self.upstream_status = upstream_status


class SchemaNotReadyError(ScrapingFlowError):
    """Search tables are missing."""

    status_code = 503
    status = "service_unavailable"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or f"Search tables were not found. {MIGRATION_HINT}")


class CreditStoreUnavailable(ScrapingFlowError):
    """Could not verify credits; check the credit store connection."""

    status_code = 503
    status = "service_unavailable"


class DebitFailed(Exception):
    """Conditional debit was not applied.

    Internal signal only: the orchestrator turns it into
    :class:`InsufficientCredits` after compensating.
    """
