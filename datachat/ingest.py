from __future__ import annotations

import io
import json
import logging
from typing import Any

import pandas as pd

from datachat.errors import InputValidationError
from datachat.models import SAMPLE_ROWS, DatasetDescriptor

logger = logging.getLogger(__name__)

MAX_UPLOAD_BYTES = 10 * 1024 * 1024
CSV_ENCODINGS = ("utf-8-sig", "utf-8", "cp1252", "latin-1")


def _decode_csv(content: bytes) -> str:
    for encoding in CSV_ENCODINGS:
        try:
            return content.decode(encoding)
        except UnicodeDecodeError:
            continue
    raise InputValidationError("Could not decode CSV with any supported encoding.")


def _to_json_compatible_rows(df: pd.DataFrame, limit: int) -> list[dict[str, Any]]:
    # to_json maps NaN to null, which keeps the sample JSON-safe.
    return json.loads(df.head(limit).to_json(orient="records", date_format="iso"))


def parse_csv(content: bytes, file_name: str, sample_rows: int = SAMPLE_ROWS) -> DatasetDescriptor:
    """
    Parse raw CSV bytes into a DatasetDescriptor.

    ``rowCount`` counts every data row of the file; only the first
    ``sample_rows`` rows are kept as the sample.
    """
    if not content or not content.strip():
        raise InputValidationError("Uploaded file is empty.")

    text = _decode_csv(content)
    try:
        # pandas renames repeated headers (id, id.1), so check the raw header row first.
        header = pd.read_csv(io.StringIO(text), header=None, nrows=1, dtype=str, keep_default_na=False)
        # Read as strings so IDs, zip codes and the like are passed on verbatim.
        df = pd.read_csv(io.StringIO(text), dtype=str, keep_default_na=False)
    except (pd.errors.ParserError, pd.errors.EmptyDataError) as exc:
        logger.warning("CSV parsing failed for %s: %s", file_name, exc)
        raise InputValidationError(f"CSV parsing failed: {exc}") from exc

    if len(df.columns) == 0:
        raise InputValidationError("CSV has no header row.")

    raw_names = [str(name).strip() for name in header.iloc[0] if str(name).strip()]
    if len(set(raw_names)) != len(raw_names):
        raise InputValidationError("CSV header contains duplicate column names.")

    columns = [str(column).strip() for column in df.columns]
    if len(set(columns)) != len(columns):
        raise InputValidationError("CSV header contains duplicate column names.")
    df.columns = columns

    logger.info("Parsed %s: %d rows, %d columns", file_name, len(df), len(columns))
    return DatasetDescriptor(
        columns=columns,
        row_count=len(df),
        sample=_to_json_compatible_rows(df, sample_rows),
        file_name=file_name,
    )
