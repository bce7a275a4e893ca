import io
import logging
from dataclasses import dataclass, field

import pandas as pd

logger = logging.getLogger(__name__)

XLSX_MAGIC = b"PK\x03\x04"


class UnreadableFile(ValueError):
    pass


@dataclass
class Table:
    """Spreadsheet contents as strings: header labels plus data rows in file order."""

    columns: list[str]
    rows: list[dict[str, str]] = field(default_factory=list)


def _is_excel(raw: bytes, filename: str) -> bool:
    name = (filename or "").lower()
    if name.endswith((".xlsx", ".xlsm")):
        return True
    if name.endswith(".csv"):
        return False
    return raw.startswith(XLSX_MAGIC)


def _csv_separator(raw: bytes) -> str:
    # spreadsheet exports in comma-decimal locales use ";"
    header = raw.split(b"\n", 1)[0]
    return ";" if header.count(b";") > header.count(b",") else ","


def _read_frame(raw: bytes, filename: str) -> pd.DataFrame:
    buf = io.BytesIO(raw)
    try:
        if _is_excel(raw, filename):
            return pd.read_excel(buf, dtype=str, keep_default_na=False, engine="openpyxl")
        return pd.read_csv(
            buf,
            dtype=str,
            keep_default_na=False,
            sep=_csv_separator(raw),
            encoding="utf-8-sig",
        )
    except Exception as e:
        raise UnreadableFile(f"Could not read file: {e}") from e


def _clean(value) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and pd.isna(value):
        return ""
    return str(value).strip()


def read_table(raw: bytes, filename: str) -> Table:
    if not raw:
        raise UnreadableFile("File is empty")

    df = _read_frame(raw, filename)
    columns = [str(c).strip() for c in df.columns]
    df.columns = columns

    rows = []
    for record in df.to_dict(orient="records"):
        row = {col: _clean(record.get(col)) for col in columns}
        # fully blank lines are spreadsheet padding, not data
        if any(row.values()):
            rows.append(row)

    logger.debug("read %s: %d columns, %d rows", filename, len(columns), len(rows))
    return Table(columns=columns, rows=rows)


def read_header(raw: bytes, filename: str) -> list[str]:
    return read_table(raw, filename).columns
