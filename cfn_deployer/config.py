"""config.py — Central configuration — environment variables, tuning constants, logging.

Values are read once at import time. Tests override individual constants with
``unittest.mock.patch.object`` on the module that consumes them.
"""
from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, Tuple


def _normalize_api_keys(*raw_values: str) -> tuple[str, ...]:
    """Return deduplicated, non-empty key values from scalar/csv env sources."""
    keys: list[str] = []
    seen: set[str] = set()
    for raw in raw_values:
        if not raw:
            continue
        for part in str(raw).split(","):
            key = part.strip()
            if not key or key in seen:
                continue
            seen.add(key)
            keys.append(key)
    return tuple(keys)


def _int_tuple(raw: str, default: Tuple[int, ...]) -> Tuple[int, ...]:
    values = tuple(int(part.strip()) for part in raw.split(",") if part.strip())
    return values or default


def _env_flag(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).strip().lower() == "true"


def _json_env(name: str) -> Dict[str, Any]:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logging.getLogger().warning("[WARNING] %s is not valid JSON; ignoring", name)
        return {}
    return parsed if isinstance(parsed, dict) else {}


__all__ = [
    "ARTIFACT_PREFIX",
    "ARTIFACT_READY_MARKER",
    "ATTEMPTS_LOCK_KEY_INDEX",
    "ATTEMPTS_TABLE",
    "ATTEMPT_DEADLINE_SECONDS",
    "BUILDS_TABLE",
    "DEFAULT_PARAMETERS",
    "DEPLOY_REGION",
    "DISABLE_PARAMETER_STORE",
    "FANOUT_MAX_WORKERS",
    "INTERNAL_API_KEYS",
    "LOCKS_TABLE",
    "LOCK_MAX_ATTEMPTS",
    "LOCK_RENEW_MARGIN_SECONDS",
    "LOCK_RETRY_BACKOFF_SECONDS",
    "LOCK_TTL_SECONDS",
    "LOCK_WAITER_TTL_SECONDS",
    "MAX_SQS_DELAY_SECONDS",
    "MAX_TRANSIENT_ERRORS",
    "OPERATION_TIMEOUT_SECONDS",
    "ORCHESTRATION_QUEUE_URL",
    "PARAMETER_CACHE_TTL_SECONDS",
    "PARAMETER_STORE_PREFIX",
    "POLL_INITIAL_SECONDS",
    "POLL_MAX_SECONDS",
    "STACK_SET_ADMIN_ROLE_ARN",
    "STACK_SET_CAPABILITIES",
    "STACK_SET_EXECUTION_ROLE_NAME",
    "TARGETS_TABLE",
    "TEMPLATE_OBJECT_NAME",
    "TRANSIENT_RETRY_BACKOFF_SECONDS",
    "logger",
]

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

DEPLOY_REGION = os.environ.get("DEPLOY_REGION", "us-west-2")

BUILDS_TABLE = os.environ.get("BUILDS_TABLE", "cfn-deployer-builds")
TARGETS_TABLE = os.environ.get("TARGETS_TABLE", "cfn-deployer-targets")
LOCKS_TABLE = os.environ.get("LOCKS_TABLE", "cfn-deployer-locks")
ATTEMPTS_TABLE = os.environ.get("ATTEMPTS_TABLE", "cfn-deployer-attempts")
ATTEMPTS_LOCK_KEY_INDEX = os.environ.get("ATTEMPTS_LOCK_KEY_INDEX", "lock-key-index")

ORCHESTRATION_QUEUE_URL = os.environ.get("ORCHESTRATION_QUEUE_URL", "")
MAX_SQS_DELAY_SECONDS = 900

ARTIFACT_PREFIX = os.environ.get("ARTIFACT_PREFIX", "artifacts").strip("/")
ARTIFACT_READY_MARKER = os.environ.get("ARTIFACT_READY_MARKER", "manifest.json")
TEMPLATE_OBJECT_NAME = os.environ.get("TEMPLATE_OBJECT_NAME", "template.yaml")

LOCK_TTL_SECONDS = int(os.environ.get("LOCK_TTL_SECONDS", "900"))
LOCK_RENEW_MARGIN_SECONDS = int(os.environ.get("LOCK_RENEW_MARGIN_SECONDS", "300"))
LOCK_RETRY_BACKOFF_SECONDS = _int_tuple(
    os.environ.get("LOCK_RETRY_BACKOFF_SECONDS", "15,30,60,120,300"),
    (15, 30, 60, 120, 300),
)
LOCK_MAX_ATTEMPTS = int(os.environ.get("LOCK_MAX_ATTEMPTS", "20"))
LOCK_WAITER_TTL_SECONDS = int(os.environ.get("LOCK_WAITER_TTL_SECONDS", "900"))

POLL_INITIAL_SECONDS = int(os.environ.get("POLL_INITIAL_SECONDS", "10"))
POLL_MAX_SECONDS = int(os.environ.get("POLL_MAX_SECONDS", "120"))
OPERATION_TIMEOUT_SECONDS = int(os.environ.get("OPERATION_TIMEOUT_SECONDS", "3600"))
ATTEMPT_DEADLINE_SECONDS = int(os.environ.get("ATTEMPT_DEADLINE_SECONDS", "7200"))
MAX_TRANSIENT_ERRORS = int(os.environ.get("MAX_TRANSIENT_ERRORS", "5"))
TRANSIENT_RETRY_BACKOFF_SECONDS = _int_tuple(
    os.environ.get("TRANSIENT_RETRY_BACKOFF_SECONDS", "5,15,45,120"),
    (5, 15, 45, 120),
)
FANOUT_MAX_WORKERS = int(os.environ.get("FANOUT_MAX_WORKERS", "8"))

STACK_SET_ADMIN_ROLE_ARN = os.environ.get("STACK_SET_ADMIN_ROLE_ARN", "")
STACK_SET_EXECUTION_ROLE_NAME = os.environ.get(
    "STACK_SET_EXECUTION_ROLE_NAME", "AWSCloudFormationStackSetExecutionRole"
)
STACK_SET_CAPABILITIES = tuple(
    part.strip()
    for part in os.environ.get("STACK_SET_CAPABILITIES", "CAPABILITY_NAMED_IAM").split(",")
    if part.strip()
)

PARAMETER_STORE_PREFIX = os.environ.get("PARAMETER_STORE_PREFIX", "/cfn-deployer/parameters").rstrip("/")
PARAMETER_CACHE_TTL_SECONDS = float(os.environ.get("PARAMETER_CACHE_TTL_SECONDS", "300"))
# Offline/local escape hatch: skip SSM and use DEFAULT_PARAMETERS_JSON instead.
DISABLE_PARAMETER_STORE = _env_flag("DISABLE_PARAMETER_STORE")
DEFAULT_PARAMETERS = _json_env("DEFAULT_PARAMETERS_JSON")

INTERNAL_API_KEYS = _normalize_api_keys(os.environ.get("INTERNAL_API_KEYS", ""))

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger()
logger.setLevel(logging.INFO)
