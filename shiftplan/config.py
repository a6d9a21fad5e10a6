"""
Configuration settings for the ShiftPlan coordination core.
This file contains all project-specific variables that can be customized per deployment.
"""
import os

# Project Configuration
PROJECT_NAME = "ShiftPlan"
PROJECT_DESCRIPTION = "Shared ramp shift plan with single-admin optimistic sync"

# Stage Configuration
STAGES = {
    "DEV": "dev",
    "GAMMA": "gamma",
    "PROD": "prod"
}

# Environment Variables
ENV_VARS = {
    "STAGE": "STAGE",
    "REDIS_URL": "REDIS_URL",
    "PLAN_DOCUMENT_PATH": "PLAN_DOCUMENT_PATH",
    "LOG_LEVEL": "LOG_LEVEL"
}

DEFAULT_REDIS_URL = "redis://localhost:6379/0"
DEFAULT_PLAN_DOCUMENT = "appState/main"
STATS_ARCHIVE_COLLECTION = "statsArchive"

# Sync protocol
STALENESS_THRESHOLD_MS = 5000  # remote newer by more than this is a conflict
RESUBSCRIBE_BACKOFF_SECONDS = 5
AUTOSAVE_INTERVAL_SECONDS = 15

# Bounded history
HISTORY_LIMIT = 10
CHANGE_LOG_LIMIT = 10

# Day rollover: labels below these minute-of-day values belong to the next calendar day.
# Import tables run to the next afternoon; manual edits only roll "just past midnight".
IMPORT_ROLLOVER_MINUTES = 900  # 15:00
EDIT_ROLLOVER_MINUTES = 360  # 06:00

MINUTES_PER_DAY = 1440

# Schedule import
HEADER_SCAN_ROWS = 25
HEADER_MARKERS = ("FLIGHT NO", "AIRLINE")

# Reporting
REPORT_BUFFER_MINUTES = 60
BREAK_GAP_MINUTES = 30
UPCOMING_WINDOW_MINUTES = 60

# Shift presets (window start/end in minutes; end may exceed a day)
SHIFT_PRESETS = {
    "day": (480, 1200),
    "night": (1200, 1920),
    "all": (0, 1439)
}
DEFAULT_SHIFT_MODE = "day"

DEFAULT_STAFF = ["AHMET Y.", "MEHMET K.", "AYŞE D.", "FATMA S.", "CAN B."]

# Logging Configuration
LOG_LEVELS = {
    "DEBUG": "DEBUG",
    "INFO": "INFO",
    "WARNING": "WARNING",
    "ERROR": "ERROR",
    "CRITICAL": "CRITICAL"
}

DEFAULT_LOG_LEVEL = LOG_LEVELS["INFO"]


def get_stage() -> str:
    return os.environ.get(ENV_VARS["STAGE"], STAGES["DEV"])

def get_redis_url() -> str:
    return os.environ.get(ENV_VARS["REDIS_URL"], DEFAULT_REDIS_URL)

def get_plan_document_path() -> str:
    return os.environ.get(ENV_VARS["PLAN_DOCUMENT_PATH"], DEFAULT_PLAN_DOCUMENT)

def get_stats_archive_path(day: str) -> str:
    return f"{STATS_ARCHIVE_COLLECTION}/{day}"

def get_log_level() -> str:
    level = os.environ.get(ENV_VARS["LOG_LEVEL"], DEFAULT_LOG_LEVEL).upper()
    return LOG_LEVELS.get(level, DEFAULT_LOG_LEVEL)
