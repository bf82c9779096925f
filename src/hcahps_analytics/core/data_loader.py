from __future__ import annotations

import io
import logging
from dataclasses import asdict, dataclass, is_dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

import pandas as pd
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from hcahps_analytics.config import HCAHPS_CSV_PATH, HCAHPS_CSV_URL, HTTP_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

# Canonical (staging) column names used throughout the pipeline
STATE_COL = "state"
MEASURE_ID_COL = "measure_id"
QUESTION_COL = "question"
ANSWER_COL = "answer_description"
PERCENT_RAW_COL = "answer_percent_raw"
FOOTNOTE_COL = "footnote"
START_DATE_COL = "start_date"
END_DATE_COL = "end_date"

RAW_COLUMNS = [
    STATE_COL,
    MEASURE_ID_COL,
    QUESTION_COL,
    ANSWER_COL,
    PERCENT_RAW_COL,
    FOOTNOTE_COL,
    START_DATE_COL,
    END_DATE_COL,
]

# Footnote is the only column a source may omit entirely
OPTIONAL_COLUMNS = {FOOTNOTE_COL}

# Export header -> canonical name. Staging names map onto themselves.
COLUMN_ALIASES: Dict[str, str] = {
    "State": STATE_COL,
    "HCAHPS Measure ID": MEASURE_ID_COL,
    "HCAHPS Question": QUESTION_COL,
    "Survey Question": QUESTION_COL,
    "HCAHPS Answer Description": ANSWER_COL,
    "HCAHPS Answer Percent": PERCENT_RAW_COL,
    "Footnote": FOOTNOTE_COL,
    "Start Date": START_DATE_COL,
    "End Date": END_DATE_COL,
    **{c: c for c in RAW_COLUMNS},
}


class DataLoaderError(Exception):
    """Raised when the raw export cannot be read or is structurally broken."""


@dataclass(frozen=True)
class RawObservation:
    """One row of the state-level survey export, exactly as published."""
    state: str
    measure_id: str
    question: str
    answer_description: str
    answer_percent_raw: Optional[str]
    footnote: Optional[str]
    start_date: str
    end_date: str


def _build_retry_session() -> requests.Session:
    """
    Build a requests Session with conservative retries.
    Public data portals can be slow or transiently flaky.
    """
    session = requests.Session()

    retry = Retry(
        total=5,
        connect=5,
        read=5,
        status=5,
        backoff_factor=0.6,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset({"GET"}),
        raise_on_status=False,
    )

    adapter = HTTPAdapter(max_retries=retry, pool_connections=4, pool_maxsize=4)
    session.mount("https://", adapter)
    session.mount("http://", adapter)

    return session


_SESSION: Optional[requests.Session] = None


def _get_session() -> requests.Session:
    global _SESSION
    if _SESSION is None:
        _SESSION = _build_retry_session()
    return _SESSION


def _read_csv(source: Any) -> pd.DataFrame:
    # Everything stays a string; "Not Available" and blanks are interpreted
    # by the fact cleaner, not by pandas NA detection.
    return pd.read_csv(source, dtype=str, keep_default_na=False, skipinitialspace=False)


# ---------------------------------------------------------------------------
# Column normalization
# ---------------------------------------------------------------------------

def normalize_raw_columns(df: pd.DataFrame) -> pd.DataFrame:
    """
    Rename export headers to the canonical staging names and keep only those.

    Rules:
      - Header matching ignores surrounding whitespace.
      - 'HCAHPS Question' and 'Survey Question' both map to 'question'.
      - A missing Footnote column is filled with empty strings.
      - Any other missing column is fatal (DataLoaderError).
    """
    rename: Dict[str, str] = {}
    for col in df.columns:
        canonical = COLUMN_ALIASES.get(str(col).strip())
        if canonical is not None and canonical not in rename.values():
            rename[col] = canonical

    out = df.rename(columns=rename)

    missing = [c for c in RAW_COLUMNS if c not in out.columns and c not in OPTIONAL_COLUMNS]
    if missing:
        raise DataLoaderError(
            f"Raw data is missing required columns: {missing}. Present columns: {list(df.columns)}"
        )

    out = out[[c for c in RAW_COLUMNS if c in out.columns]].copy()
    if FOOTNOTE_COL not in out.columns:
        out[FOOTNOTE_COL] = ""

    return out[RAW_COLUMNS].reset_index(drop=True)


def frame_from_records(records: Iterable[Union[Mapping[str, Any], RawObservation]]) -> pd.DataFrame:
    """
    Build a raw frame from in-memory rows (mappings keyed by export or
    staging names, or RawObservation instances).
    """
    rows: List[Dict[str, Any]] = []
    for rec in records:
        if is_dataclass(rec):
            rows.append(asdict(rec))
        else:
            rows.append(dict(rec))

    if not rows:
        return pd.DataFrame(columns=RAW_COLUMNS, dtype=str)

    return normalize_raw_columns(pd.DataFrame.from_records(rows))


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------

def load_raw_csv(path: Union[str, Path]) -> pd.DataFrame:
    """Read a local CSV export and normalize its columns."""
    csv_path = Path(path)
    if not csv_path.exists():
        raise DataLoaderError(f"Raw CSV not found: {csv_path}")

    logger.info("Loading raw CSV: %s", csv_path)
    try:
        df = _read_csv(csv_path)
    except (OSError, UnicodeDecodeError, pd.errors.ParserError, pd.errors.EmptyDataError) as exc:
        raise DataLoaderError(f"Could not parse raw CSV {csv_path}: {exc}") from exc

    logger.info("Raw CSV shape: %s rows x %s columns", df.shape[0], df.shape[1])
    return normalize_raw_columns(df)


def load_raw_buffer(buffer: Any) -> pd.DataFrame:
    """Read an in-memory CSV (e.g. an uploaded file) and normalize its columns."""
    try:
        df = _read_csv(buffer)
    except (UnicodeDecodeError, pd.errors.ParserError, pd.errors.EmptyDataError) as exc:
        raise DataLoaderError(f"Uploaded content is not a readable CSV: {exc}") from exc
    return normalize_raw_columns(df)


def fetch_raw_csv(url: str, timeout_seconds: int = HTTP_TIMEOUT_SECONDS) -> pd.DataFrame:
    """
    Download a static CSV export (GET) and normalize its columns.

    This is a one-off batch download; there is no paging or polling.
    """
    if not url or not url.strip():
        raise DataLoaderError("No CSV URL given.")

    logger.info("Downloading raw CSV: %s", url)
    try:
        resp = _get_session().get(url, timeout=timeout_seconds)
    except requests.RequestException as exc:
        raise DataLoaderError(f"HTTP error while downloading raw CSV: {exc}") from exc

    if resp.status_code != 200:
        preview = (resp.text or "")[:200]
        raise DataLoaderError(f"Raw CSV download failed (status={resp.status_code}). Preview: {preview}")

    try:
        df = _read_csv(io.BytesIO(resp.content))
    except (UnicodeDecodeError, pd.errors.ParserError, pd.errors.EmptyDataError) as exc:
        raise DataLoaderError(f"Downloaded content is not a readable CSV: {exc}") from exc

    logger.info("Downloaded CSV shape: %s rows x %s columns", df.shape[0], df.shape[1])
    return normalize_raw_columns(df)


def load_raw_observations(source: Union[str, Path, None] = None) -> pd.DataFrame:
    """
    Load the raw batch from a URL or local path.

    With no source, HCAHPS_CSV_URL is used when configured, otherwise
    HCAHPS_CSV_PATH.
    """
    if source is None:
        source = HCAHPS_CSV_URL or HCAHPS_CSV_PATH

    text = str(source).strip()
    if text.lower().startswith(("http://", "https://")):
        return fetch_raw_csv(text)
    return load_raw_csv(text)
