"""CSV rendering of exported search results (spreadsheet friendly)."""

import csv
import io
from typing import Iterable

from scraping_flow.models import ExportRow

CSV_HEADER = ("nome", "telefone", "endereço")
CSV_DELIMITER = ";"
UTF8_BOM = "\ufeff"


def rows_to_csv(rows: Iterable[ExportRow]) -> str:
    """Render rows as ``;``-separated CSV with CRLF endings and a UTF-8 BOM."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, delimiter=CSV_DELIMITER, lineterminator="\r\n", quoting=csv.QUOTE_MINIMAL)
    writer.writerow(CSV_HEADER)
    for row in rows:
        writer.writerow([row.name or "", row.phone or "", row.address or ""])
    # No trailing line break after the last record.
    return UTF8_BOM + buffer.getvalue().rstrip("\r\n")


def export_filename(search_id: str) -> str:
    return f"scraping-{search_id}.csv"
