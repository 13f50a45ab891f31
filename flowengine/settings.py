"""Engine runtime settings: tunable parameters for workflow execution.

All values read from environment variables with sensible defaults.
Import from here instead of hardcoding; per-engine overrides go through
flowengine/config.py (EngineConfig).
"""

from __future__ import annotations

import os
import sys


def _int(key: str, default: int) -> int:
    return int(os.getenv(key, str(default)))


def _float(key: str, default: float) -> float:
    return float(os.getenv(key, str(default)))


def _str(key: str, default: str) -> str:
    return os.getenv(key, default)


# =====================================================================
# Failure model (retry / circuit breaker)
# =====================================================================

# Consecutive failed attempts before a step's breaker opens
CIRCUIT_FAILURE_THRESHOLD = _int("CIRCUIT_FAILURE_THRESHOLD", 5)

# Time an open breaker waits before admitting a half-open trial call (ms)
CIRCUIT_RECOVERY_TIMEOUT_MS = _int("CIRCUIT_RECOVERY_TIMEOUT_MS", 60000)


# =====================================================================
# Control-flow steps
# =====================================================================

# Upper bound for loop steps without an explicit maxIterations
LOOP_MAX_ITERATIONS = _int("LOOP_MAX_ITERATIONS", 1000)

# Longest suspension a wait step may request (ms)
WAIT_MAX_MS = _int("WAIT_MAX_MS", 3600000)

# Default branch concurrency for parallel steps
PARALLEL_MAX_CONCURRENCY = _int("PARALLEL_MAX_CONCURRENCY", 8)


# =====================================================================
# Expressions & custom steps
# =====================================================================

# Maximum expression length to prevent abuse
EXPRESSION_MAX_LENGTH = _int("EXPRESSION_MAX_LENGTH", 500)

# Maximum length of strings/lists produced by repetition (e.g. "a" * n)
EXPRESSION_MAX_SEQUENCE = _int("EXPRESSION_MAX_SEQUENCE", 10000)

# Restricted script runner budget
SCRIPT_MAX_STATEMENTS = _int("SCRIPT_MAX_STATEMENTS", 200)
SCRIPT_TIMEOUT_MS = _int("SCRIPT_TIMEOUT_MS", 1000)

# Subprocess runner limits
CUSTOM_STEP_TIMEOUT_MS = _int("CUSTOM_STEP_TIMEOUT_MS", 5000)
CUSTOM_STEP_MEMORY_MB = _int("CUSTOM_STEP_MEMORY_MB", 256)
CUSTOM_STEP_INTERPRETER = _str("CUSTOM_STEP_INTERPRETER", sys.executable or "python3")


# =====================================================================
# Authentication / HTTP
# =====================================================================

# OAuth2 tokens are treated as expired this many seconds early
OAUTH_TOKEN_EXPIRY_SKEW_S = _int("OAUTH_TOKEN_EXPIRY_SKEW_S", 300)

HTTP_TIMEOUT = _float("HTTP_TIMEOUT", 30.0)


# =====================================================================
# Logging
# =====================================================================

LOG_LEVEL = _str("LOG_LEVEL", "INFO")

# Empty means console only
LOG_DIR = _str("LOG_DIR", "")
