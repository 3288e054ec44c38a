"""
PulseCheck - Configuration
Central configuration loaded from environment variables.
The spreadsheet is the ledger: survey tabs, the Groups tab, and all answers.
"""
import os
from dotenv import load_dotenv

load_dotenv()

# ── Ledger (Google Sheets) ───────────────────────────────────────
LEDGER_BACKEND = os.getenv("LEDGER_BACKEND", "sheets")  # "sheets" or "memory"
GOOGLE_SHEET_ID = os.getenv("GOOGLE_SHEET_ID", "")
GOOGLE_CREDENTIALS_JSON = os.getenv("GOOGLE_CREDENTIALS_JSON", "")
SHEETS_BASE_URL = os.getenv("SHEETS_BASE_URL", "https://sheets.googleapis.com/v4")
SHEETS_SCOPES = ["https://www.googleapis.com/auth/spreadsheets"]

# ── Messaging (Slack) ────────────────────────────────────────────
SLACK_BOT_TOKEN = os.getenv("SLACK_BOT_TOKEN", "")
SLACK_BASE_URL = os.getenv("SLACK_BASE_URL", "https://slack.com/api")

# ── App ──────────────────────────────────────────────────────────
APP_HOST = os.getenv("APP_HOST", "0.0.0.0")
APP_PORT = int(os.getenv("APP_PORT", "3000"))
DEBUG = os.getenv("DEBUG", "false").lower() == "true"

# ── Scheduler ────────────────────────────────────────────────────
SCHEDULER_ENABLED = os.getenv("SCHEDULER_ENABLED", "true").lower() == "true"
SWEEP_INTERVAL_SECONDS = int(os.getenv("SWEEP_INTERVAL_SECONDS", "3600"))  # Hourly
REMOTE_CALL_TIMEOUT_SECONDS = float(os.getenv("REMOTE_CALL_TIMEOUT_SECONDS", "20"))
HTTP_TIMEOUT_SECONDS = float(os.getenv("HTTP_TIMEOUT_SECONDS", "30"))
IDEMPOTENCY_TTL_SECONDS = int(os.getenv("IDEMPOTENCY_TTL_SECONDS", "300"))

MS_PER_HOUR = 60 * 60 * 1000
FIRST_NAME_TOKEN = "[firstName]"

# ── Survey Tab Layout (1-based rows) ─────────────────────────────
# Column A holds the label, column B the value, for rows 1-6.
ROW_CREATOR = 1
ROW_RECIPIENTS = 2
ROW_REMINDER_MESSAGE = 3
ROW_REMINDER_HOURS = 4
ROW_LAST_REMINDER = 5
ROW_DEFINITION = 6
ROW_HEADER = 7
FIRST_DATA_ROW = 8

METADATA_LABELS = [
    "Creator",
    "Recipients",
    "Reminder Message",
    "Reminder Hours",
    "Last Reminder",
    "Definition",
]

# Leading header cells before the first question column
FIXED_HEADERS = ["User", "Timestamp"]
FIXED_COLUMN_COUNT = len(FIXED_HEADERS)

DEFAULT_REMINDER_MESSAGE = "Hi [firstName], friendly reminder to finish the survey!"
DEFAULT_REMINDER_HOURS = 24

# ── Groups Tab ───────────────────────────────────────────────────
GROUPS_TABLE = "Groups"
GROUP_HEADERS = ["Name", "Creator", "Members", "Created At"]
GROUP_MEMBER_DELIMITER = ","

# Tabs that are never surveys
RESERVED_TABLES = {GROUPS_TABLE, "Templates", "Sheet1"}
