"""Shared constants for storyloop."""

import re

# Exit codes
EXIT_SUCCESS = 0
EXIT_ERROR = 1
EXIT_CONFIG_ERROR = 2
EXIT_LOCK_TIMEOUT = 3
EXIT_PERSISTENCE_ERROR = 4
EXIT_NOT_INITIALIZED = 5

# Loop directory layout (relative to project root)
LOOP_DIR_NAME = ".storyloop"
STATE_FILE = "state.json"
PRD_FILE = "prd.json"
HISTORY_DIR = "history"
ACTIVITY_DIR = "activity"
LOGS_DIR = "logs"
PROGRESS_FILE = "progress.txt"
CONTINUE_REQUEST_FILE = "continue.request"
PAUSE_REQUEST_FILE = "pause.request"
PROMPT_OVERRIDES_DIR = "prompts"  # Project copies of bundled prompt templates
SETTINGS_FILE = "storyloop.yaml"

# Iteration record files: iteration-000001.json
ITERATION_FILE_PATTERN = re.compile(r'^iteration-(\d+)\.json$')

# Iteration outcomes
OUTCOME_SUCCESS = "success"
OUTCOME_PARTIAL = "partial"
OUTCOME_FAILED = "failed"

# Canonical quality checks, in gate order
CANONICAL_CHECKS = ("type_check", "lint", "tests", "coverage_met")
