from __future__ import annotations

import os
from pathlib import Path

# ---------------------------------------------------------------------------
# Project paths
# ---------------------------------------------------------------------------

# Root of the project (repo root)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

# Data directories
DATA_DIR = PROJECT_ROOT / "data"
RAW_DATA_DIR = DATA_DIR / "raw"            # CSV exports of the state-level survey
WAREHOUSE_DIR = DATA_DIR / "warehouse"     # persisted star schema (SQLite)

# ---------------------------------------------------------------------------
# App identity
# ---------------------------------------------------------------------------

APP_NAME = "HCAHPS State Patient Experience Analytics"
APP_VERSION = "0.1.0"

LOG_LEVEL = os.getenv("HCAHPS_LOG_LEVEL", "INFO").strip().upper() or "INFO"

# ---------------------------------------------------------------------------
# Raw data source
#
# The source is the CMS "Patient survey (HCAHPS) - State" export.
#   - HCAHPS_CSV_PATH: local CSV file (default data/raw/hcahps_state.csv)
#   - HCAHPS_CSV_URL:  optional static CSV download; used when set
# ---------------------------------------------------------------------------

HCAHPS_CSV_PATH = Path(
    os.getenv("HCAHPS_CSV_PATH", str(RAW_DATA_DIR / "hcahps_state.csv")).strip()
)
HCAHPS_CSV_URL = os.getenv("HCAHPS_CSV_URL", "").strip()

# Timeout for the one-off CSV download (seconds)
HTTP_TIMEOUT_SECONDS = int(os.getenv("HCAHPS_HTTP_TIMEOUT", "90"))

# ---------------------------------------------------------------------------
# Persisted star schema
# ---------------------------------------------------------------------------

HCAHPS_DB_PATH = Path(
    os.getenv("HCAHPS_DB_PATH", str(WAREHOUSE_DIR / "hcahps_star.db")).strip()
)

# ---------------------------------------------------------------------------
# Analytics defaults
# ---------------------------------------------------------------------------

# "High score" cut-off used by the threshold share questions (Q18/Q19)
HIGH_SCORE_THRESHOLD = float(os.getenv("HCAHPS_HIGH_SCORE_THRESHOLD", "80"))

# Row limit for top/bottom lists (Q4-Q7, Q18/Q19)
DEFAULT_TOP_N = int(os.getenv("HCAHPS_TOP_N", "10"))

# Ranks kept per measure in the partitioned rankings (Q8/Q9)
DEFAULT_PARTITION_K = int(os.getenv("HCAHPS_PARTITION_K", "3"))

# Measure pair compared state by state (Q15)
DEFAULT_GAP_MEASURES = (
    os.getenv("HCAHPS_GAP_MEASURE_1", "H_COMP_1").strip(),
    os.getenv("HCAHPS_GAP_MEASURE_2", "H_COMP_2").strip(),
)

# Question text is truncated to this many characters in measure reports
QUESTION_PREVIEW_CHARS = 90
