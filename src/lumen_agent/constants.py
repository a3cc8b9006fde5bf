"""Constants for the lumen execution engine."""

import os

# Loop defaults
DEFAULT_MAX_ITERATIONS = 50
DEFAULT_MAX_CONSECUTIVE_FAILURES = 3
DEFAULT_TIMEOUT_MS = 60000

# How much history is replayed into oracle prompts
RESULT_PREVIEW_CHARS = 200
STEP_PROMPT_FAILURES = 3
MAX_VERIFICATION_ISSUES = 10

# Oracle defaults
DEFAULT_ORACLE_MODEL = "openai/gpt-4o-mini"
DEFAULT_ORACLE_TIMEOUT_S = float(os.getenv("LUMEN_ORACLE_TIMEOUT_S", "30"))

# Environment variable names
ENV_MAX_ITERATIONS = "LUMEN_MAX_ITERATIONS"
ENV_MAX_CONSECUTIVE_FAILURES = "LUMEN_MAX_CONSECUTIVE_FAILURES"
ENV_TIMEOUT_MS = "LUMEN_TIMEOUT_MS"
ENV_DRY_RUN = "LUMEN_DRY_RUN"
ENV_AUTO_APPROVE = "LUMEN_AUTO_APPROVE"
ENV_ALLOW_DANGEROUS = "LUMEN_ALLOW_DANGEROUS"
ENV_VERIFY = "LUMEN_VERIFY"
ENV_ORACLE_MODEL = "LUMEN_ORACLE_MODEL"
ENV_TRACING = "LUMEN_TRACING"
ENV_DEBUG = "LUMEN_DEBUG"

DEFAULT_REPORTS_DIR = "execution/reports"
