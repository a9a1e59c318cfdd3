import threading

import pytest

from scraping_flow.core.credits import CreditLedger, normalize_amount
from scraping_flow.core.db import Database
from scraping_flow.core.errors import CreditStoreUnavailable, DebitFailed


@pytest.fixture
def ledger(credits_db):
    return CreditLedger(credits_db)


def test_check_balance_reads_stored_value(ledger, credits_pg):
    credits_pg.credits["owner-1"] = 42
    assert ledger.check_balance("owner-1") == 42


def test_check_balance_unknown_owner_is_zero(ledger):
    assert ledger.check_balance("nobody") == 0


@pytest.mark.parametrize("raw", [None, -5, "abc", float("nan")])
def test_check_balance_normalizes_bad_values(ledger, credits_pg, raw):
    credits_pg.credits["owner-1"] = raw
    assert ledger.check_balance("owner-1") == 0


def test_check_balance_store_failure(ledger, credits_pg):
    credits_pg.fail_when = lambda sql, params: True
    with pytest.raises(CreditStoreUnavailable):
        ledger.check_balance("owner-1")


def test_check_balance_without_dsn():
    with pytest.raises(CreditStoreUnavailable):
        CreditLedger(Database("", name="credits")).check_balance("owner-1")


@pytest.mark.parametrize("amount, expected", [(3.9, 3), (-2, 0), ("4", 4), ("x", 0), (None, 0), (0, 0)])
def test_normalize_amount(amount, expected):
    assert normalize_amount(amount) == expected


def test_debit_uses_single_conditional_update(ledger, credits_pg):
    credits_pg.credits["owner-1"] = 10

    assert ledger.debit("owner-1", 7) == 3

    writes = [sql for sql, _ in credits_pg.statements if not sql.startswith("SELECT")]
    assert len(writes) == 1
    assert writes[0].startswith("UPDATE user_credits")
    assert "credits >= %(amount)s" in writes[0]
    assert credits_pg.credits["owner-1"] == 3


def test_debit_fails_when_balance_too_low(ledger, credits_pg):
    credits_pg.credits["owner-1"] = 2

    with pytest.raises(DebitFailed):
        ledger.debit("owner-1", 5)

    assert credits_pg.credits["owner-1"] == 2


def test_debit_unknown_owner_fails(ledger, credits_pg):
    with pytest.raises(DebitFailed):
        ledger.debit("nobody", 1)
    assert "nobody" not in credits_pg.credits


def test_debit_zero_is_noop(ledger, credits_pg):
    credits_pg.credits["owner-1"] = 8

    assert ledger.debit("owner-1", 0) == 8
    assert ledger.debit("owner-1", 0.6) == 8

    assert not any(sql.startswith("UPDATE") for sql, _ in credits_pg.statements)


def test_debit_floors_amount(ledger, credits_pg):
    credits_pg.credits["owner-1"] = 10
    assert ledger.debit("owner-1", 2.7) == 8


def test_debit_store_failure_is_debit_failed(ledger, credits_pg):
    credits_pg.credits["owner-1"] = 10
    credits_pg.fail_when = lambda sql, params: sql.startswith("UPDATE")

    with pytest.raises(DebitFailed):
        ledger.debit("owner-1", 3)

    assert credits_pg.credits["owner-1"] == 10


def test_concurrent_debits_only_one_succeeds(ledger, credits_pg):
    credits_pg.credits["owner-1"] = 10
    barrier = threading.Barrier(2)
    outcomes = {}

    def worker(amount):
        barrier.wait()
        try:
            outcomes[amount] = ledger.debit("owner-1", amount)
        except DebitFailed:
            outcomes[amount] = "failed"

    threads = [threading.Thread(target=worker, args=(amount,)) for amount in (6, 7)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert list(outcomes.values()).count("failed") == 1
    winner = next(amount for amount, result in outcomes.items() if result != "failed")
    assert credits_pg.credits["owner-1"] == 10 - winner
    assert outcomes[winner] == 10 - winner


def test_credit_creates_and_increments(ledger, credits_pg):
    assert ledger.credit("owner-1", 5) == 5
    assert ledger.credit("owner-1", 3) == 8
    assert credits_pg.credits["owner-1"] == 8
