"""CLI job that applies the SQL migrations and optionally grants credits."""

import argparse
import logging
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from scraping_flow.core.config import get_settings
from scraping_flow.core.credits import CreditLedger
from scraping_flow.core.db import Database

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parents[1] / "migrations"


def list_migrations(target: str, migrations_dir: Path = MIGRATIONS_DIR) -> List[Path]:
    directory = migrations_dir / target
    if not directory.is_dir():
        return []
    return sorted(path for path in directory.iterdir() if path.suffix == ".sql")


def apply_migrations(database: Database, files: Sequence[Path]) -> int:
    """Run each file in its own transaction, stopping at the first failure."""
    applied = 0
    with database.get_connection() as conn:
        for path in files:
            logger.info("Applying %s to %s", path.name, database.name)
            try:
                with conn.cursor() as cur:
                    cur.execute(path.read_text(encoding="utf-8"))
                conn.commit()
            except Exception:
                conn.rollback()
                logger.error("Migration %s failed", path.name)
                raise
            applied += 1
    return applied


def parse_grant(value: str) -> Tuple[str, int]:
    owner_id, sep, amount = value.rpartition(":")
    if not sep or not owner_id:
        raise argparse.ArgumentTypeError("grant must look like OWNER_ID:AMOUNT")
    try:
        credits = int(amount)
    except ValueError as exc:
        raise argparse.ArgumentTypeError("grant amount must be an integer") from exc
    if credits <= 0:
        raise argparse.ArgumentTypeError("grant amount must be positive")
    return owner_id, credits


def run_migration_job(*, targets: Sequence[str], grants: Sequence[Tuple[str, int]] = ()) -> None:
    settings = get_settings()
    dsns = {"results": settings.database_url, "credits": settings.credits_database_url}

    databases = {}
    try:
        for target in targets:
            database = Database(dsns[target], name=target, maxconn=2)
            databases[target] = database
            applied = apply_migrations(database, list_migrations(target))
            logger.info("Applied %d migrations to %s", applied, target)

        if grants:
            credits_db = databases.get("credits") or Database(dsns["credits"], name="credits", maxconn=2)
            databases.setdefault("credits", credits_db)
            ledger = CreditLedger(credits_db)
            for owner_id, amount in grants:
                balance = ledger.credit(owner_id, amount)
                logger.info("Granted %d credits to %s (balance=%d)", amount, owner_id, balance)
    finally:
        for database in databases.values():
            database.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Apply scraping flow database migrations")
    parser.add_argument(
        "--target",
        dest="targets",
        action="append",
        choices=("results", "credits"),
        help="Database to migrate (repeatable); defaults to both",
    )
    parser.add_argument(
        "--grant",
        dest="grants",
        action="append",
        type=parse_grant,
        default=[],
        help="Add credits to an owner after migrating, as OWNER_ID:AMOUNT (repeatable)",
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    args = build_parser().parse_args(argv)
    try:
        run_migration_job(targets=args.targets or ["results", "credits"], grants=args.grants)
    except Exception as exc:  # noqa: BLE001
        logger.error("Migration failed: %s", exc, exc_info=True)
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
