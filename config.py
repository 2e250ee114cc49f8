"""Environment variables, cleanup defaults, and log table names."""

import os

from dotenv import load_dotenv

# Load .env from KEEP_ONLY_ENV_FILE (defaults to ./.env)
load_dotenv(os.getenv("KEEP_ONLY_ENV_FILE", ".env"))

# --- Database Connection Vars ---
SQL_SERVER_HOST = os.getenv("SQL_SERVER_HOST", "")
SQL_SERVER_PORT = int(os.getenv("SQL_SERVER_PORT", "1433"))
SQL_SERVER_USER = os.getenv("SQL_SERVER_USER", "")
SQL_SERVER_PASSWORD = os.getenv("SQL_SERVER_PASSWORD", "")

# Database holding the tables to clean up (and the results log)
TARGET_DB = os.getenv("TARGET_DB", "AxDB")

# Schema used when --schema is not given
DEFAULT_SCHEMA = os.getenv("DEFAULT_SCHEMA", "dbo")

# --- ODBC Driver ---
ODBC_DRIVER = os.getenv("ODBC_DRIVER", "ODBC Driver 18 for SQL Server")

# Seconds. 0 = no login timeout.
CONNECTION_TIMEOUT = int(os.getenv("CONNECTION_TIMEOUT", "30"))

# ---------------------------------------------------------------------------
# Cleanup sizing
# ---------------------------------------------------------------------------
# Retained row count above which buffers are durable tables in the target
# database instead of ## temp tables. Large retained sets in tempdb can fill
# it up before the truncate ever runs.
CLEANUP_THRESHOLD = int(os.getenv("CLEANUP_THRESHOLD", "2000000"))
#
# Rows per buffer table. Each copy and each reinsert is one transaction, so
# this also bounds transaction log growth per step.
CLEANUP_BATCH_SIZE = int(os.getenv("CLEANUP_BATCH_SIZE", "5000000"))

# Reinsert is fully logged when TABLOCK cannot be honoured. Warn when the
# available log space is below estimated need times this factor.
LOG_SPACE_HEADROOM = float(os.getenv("LOG_SPACE_HEADROOM", "1.5"))

# --- Log tables ---
# One row per invocation: counts + elapsed time.
RESULTS_LOG_TABLE = os.getenv("RESULTS_LOG_TABLE", "DBCleanupResultsLog")
# Python logging records (SqlServerLogHandler).
PIPELINE_LOG_TABLE = os.getenv("PIPELINE_LOG_TABLE", "DBCleanupPipelineLog")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
