"""Per-owner credit balances stored in PostgreSQL (``user_credits``)."""

import logging
import math
from typing import Any

import psycopg2

from scraping_flow.core.db import Database
from scraping_flow.core.errors import CreditStoreUnavailable, DebitFailed

logger = logging.getLogger(__name__)

_SELECT_BALANCE = "SELECT credits FROM user_credits WHERE owner_id = %(owner_id)s"

# Guard and decrement happen in one statement so a balance that dropped after
# check_balance() can never go negative.
_CONDITIONAL_DEBIT = """
UPDATE user_credits
SET credits = credits - %(amount)s,
    updated_at = NOW()
WHERE owner_id = %(owner_id)s
  AND credits >= %(amount)s
RETURNING credits;
"""

_CREDIT = """
INSERT INTO user_credits (owner_id, credits, updated_at)
VALUES (%(owner_id)s, %(amount)s, NOW())
ON CONFLICT (owner_id) DO UPDATE SET
    credits = user_credits.credits + EXCLUDED.credits,
    updated_at = NOW()
RETURNING credits;
"""


def _normalize_balance(raw: Any) -> int:
    if raw is None:
        return 0
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(value) or value < 0:
        return 0
    return int(value)


def normalize_amount(amount: Any) -> int:
    """Floor ``amount`` and clamp it to zero; unusable values become zero."""
    try:
        value = float(amount)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(value):
        return 0
    return max(0, math.floor(value))


class CreditLedger:
    def __init__(self, database: Database) -> None:
        self.database = database

    def check_balance(self, owner_id: str) -> int:
        """Return the owner's balance; unknown owners have zero credits."""
        try:
            with self.database.get_connection() as conn:
                try:
                    with conn.cursor() as cur:
                        cur.execute(_SELECT_BALANCE, {"owner_id": owner_id})
                        row = cur.fetchone()
                finally:
                    conn.rollback()
        except (psycopg2.Error, RuntimeError) as exc:
            logger.error("Failed to read credits for %s: %s", owner_id, exc)
            raise CreditStoreUnavailable() from exc
        return _normalize_balance(row[0] if row else None)

    def debit(self, owner_id: str, amount: Any) -> int:
        """Atomically subtract ``amount`` credits and return the new balance.

        Raises :class:`DebitFailed` when the stored balance is below ``amount``
        at the time of the write, or when the store cannot be reached.
        """
        num = normalize_amount(amount)
        if num == 0:
            try:
                return self.check_balance(owner_id)
            except CreditStoreUnavailable as exc:
                raise DebitFailed(str(exc)) from exc

        try:
            with self.database.get_connection() as conn:
                try:
                    with conn.cursor() as cur:
                        cur.execute(_CONDITIONAL_DEBIT, {"owner_id": owner_id, "amount": num})
                        row = cur.fetchone()
                    if row is None:
                        conn.rollback()
                        logger.error("Debit rejected for %s: balance below %d", owner_id, num)
                        raise DebitFailed(f"balance below {num}")
                    conn.commit()
                except psycopg2.Error:
                    conn.rollback()
                    raise
        except (psycopg2.Error, RuntimeError) as exc:
            logger.error("Debit of %d failed for %s: %s", num, owner_id, exc)
            raise DebitFailed(str(exc)) from exc

        new_balance = _normalize_balance(row[0])
        logger.info("Debited %d credits from %s; balance=%d", num, owner_id, new_balance)
        return new_balance

    def credit(self, owner_id: str, amount: Any) -> int:
        """Add credits to an owner, creating the balance row if needed."""
        num = normalize_amount(amount)
        with self.database.get_connection() as conn:
            try:
                with conn.cursor() as cur:
                    cur.execute(_CREDIT, {"owner_id": owner_id, "amount": num})
                    row = cur.fetchone()
                conn.commit()
            except psycopg2.Error:
                conn.rollback()
                raise
        new_balance = _normalize_balance(row[0])
        logger.info("Credited %d to %s; balance=%d", num, owner_id, new_balance)
        return new_balance
