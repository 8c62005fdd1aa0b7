"""handlers.py — Lambda entry points.

intake_handler
    S3 / EventBridge "Object Created" notifications for artifact ready markers.

orchestrator_handler
    SQS messages ``{"run_id": ..., "trigger": ..., "seq": ...}``; each advances
    one DeploymentAttempt. Returns the partial-batch response so only failed
    messages are redelivered.

config_handler
    API Gateway proxy routes (all require ``X-Deployer-Internal-Key``):

        GET   /targets/{environment}               list target profiles
        PUT   /targets/{environment}/{label}       create/replace a target
        POST  /targets/{environment}/default       set the default profile
        GET   /attempts/{run_id}                   one DeploymentAttempt
        GET   /history/{environment}/{label}       recent attempts (?limit=N)
        GET   /locks/{environment}/{label}         lock state and queue
"""
from __future__ import annotations

import json
import re
from typing import Any, Dict, List

from botocore.exceptions import BotoCoreError, ClientError

from cfn_deployer import intake, locks, orchestrator, persistence, registry
from cfn_deployer.config import logger
from cfn_deployer.errors import InvalidConfiguration, NotConfigured
from cfn_deployer.http_utils import _authorize_internal, _error, _json_body, _path_method, _response

__all__ = ["config_handler", "intake_handler", "orchestrator_handler"]

_NAME = r"[A-Za-z0-9][A-Za-z0-9_.-]*"
_TARGETS_PATTERN = re.compile(rf"/targets/(?P<environment>{_NAME})/?$")
_TARGET_DEFAULT_PATTERN = re.compile(rf"/targets/(?P<environment>{_NAME})/default/?$")
_TARGET_PATTERN = re.compile(rf"/targets/(?P<environment>{_NAME})/(?P<label>{_NAME})/?$")
_ATTEMPT_PATTERN = re.compile(r"/attempts/(?P<run_id>[A-Za-z0-9-]+)/?$")
_HISTORY_PATTERN = re.compile(rf"/history/(?P<environment>{_NAME})/(?P<label>{_NAME})/?$")
_LOCK_PATTERN = re.compile(rf"/locks/(?P<environment>{_NAME})/(?P<label>{_NAME})/?$")
_MAX_HISTORY = 50


# ---------------------------------------------------------------------------
# Artifact intake
# ---------------------------------------------------------------------------


def intake_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    logger.info("[START] intake: %s", event.get("detail-type") or f"{len(event.get('Records') or [])} S3 record(s)")
    try:
        run_ids = intake.handle_artifact_event(event)
    except Exception as exc:
        logger.error("[ERROR] Artifact intake failed: %s", exc, exc_info=True)
        raise
    logger.info("[END] intake: %d attempt(s) submitted", len(run_ids))
    return {"run_ids": run_ids}


# ---------------------------------------------------------------------------
# Orchestration queue
# ---------------------------------------------------------------------------


def orchestrator_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    records = event.get("Records") or []
    logger.info("[START] orchestrator: received %d SQS message(s)", len(records))
    failures: List[Dict[str, str]] = []
    for record in records:
        message_id = record.get("messageId", "")
        try:
            body = json.loads(record.get("body") or "{}")
        except (json.JSONDecodeError, TypeError):
            logger.warning("[WARNING] Dropping unparseable message %s", message_id)
            continue
        run_id = body.get("run_id") if isinstance(body, dict) else None
        if not run_id:
            logger.warning("[WARNING] Dropping message %s without run_id", message_id)
            continue
        seq = body.get("seq")
        try:
            orchestrator.advance(run_id, seq=int(seq) if seq is not None else None)
        except Exception as exc:
            logger.error("[ERROR] Advance failed for %s: %s", run_id, exc, exc_info=True)
            failures.append({"itemIdentifier": message_id})
    logger.info("[END] orchestrator: %d failure(s)", len(failures))
    return {"batchItemFailures": failures}


# ---------------------------------------------------------------------------
# Configuration API
# ---------------------------------------------------------------------------


def _handle_list_targets(environment: str) -> Dict[str, Any]:
    targets = registry.list_targets(environment)
    return _response(200, {"success": True, "environment": environment, "count": len(targets), "targets": targets})


def _handle_put_target(environment: str, label: str, body: Dict[str, Any]) -> Dict[str, Any]:
    target = registry.set_target(
        environment,
        label,
        accounts=body.get("accounts") or [],
        regions=body.get("regions") or [],
        downstream_environment=body.get("downstream_environment"),
        make_default=bool(body.get("default")),
    )
    return _response(200, {"success": True, "target": target})


def _handle_set_default(environment: str, body: Dict[str, Any]) -> Dict[str, Any]:
    label = str(body.get("target_label") or "").strip()
    if not label:
        return _error(400, "target_label is required")
    target = registry.set_default(environment, label)
    return _response(200, {"success": True, "target": target})


def _handle_get_attempt(run_id: str) -> Dict[str, Any]:
    attempt = persistence.get_attempt(run_id)
    if not attempt:
        return _error(404, f"Attempt '{run_id}' not found")
    return _response(200, {"success": True, "attempt": attempt})


def _handle_history(environment: str, label: str, qs: Dict[str, Any]) -> Dict[str, Any]:
    try:
        limit = min(max(int(qs.get("limit", "10")), 1), _MAX_HISTORY)
    except (TypeError, ValueError):
        return _error(400, "limit must be an integer")
    key = locks.lock_key(environment, label)
    attempts = persistence.list_attempts(key, limit=limit)
    return _response(200, {"success": True, "lock_key": key, "count": len(attempts), "attempts": attempts})


def _handle_get_lock(environment: str, label: str) -> Dict[str, Any]:
    key = locks.lock_key(environment, label)
    record = locks.describe(key)
    if not record:
        return _error(404, f"No lock record for '{key}'")
    return _response(200, {"success": True, "lock": record})


def config_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    method, path = _path_method(event)
    logger.info("config: %s %s", method, path)

    auth_error = _authorize_internal(event)
    if auth_error:
        return auth_error

    try:
        body = _json_body(event) if method in ("PUT", "POST") else {}
    except ValueError as exc:
        return _error(400, str(exc))
    qs = event.get("queryStringParameters") or {}

    try:
        if method == "POST":
            m = _TARGET_DEFAULT_PATTERN.search(path)
            if m:
                return _handle_set_default(m.group("environment"), body)

        if method == "GET":
            m = _TARGETS_PATTERN.search(path)
            if m:
                return _handle_list_targets(m.group("environment"))

        if method == "PUT":
            m = _TARGET_PATTERN.search(path)
            if m:
                return _handle_put_target(m.group("environment"), m.group("label"), body)

        if method == "GET":
            m = _ATTEMPT_PATTERN.search(path)
            if m:
                return _handle_get_attempt(m.group("run_id"))
            m = _HISTORY_PATTERN.search(path)
            if m:
                return _handle_history(m.group("environment"), m.group("label"), qs)
            m = _LOCK_PATTERN.search(path)
            if m:
                return _handle_get_lock(m.group("environment"), m.group("label"))

        return _error(404, f"Route not found: {method} {path}")

    except InvalidConfiguration as exc:
        return _error(400, str(exc), code="INVALID_CONFIGURATION")
    except NotConfigured as exc:
        return _error(404, str(exc), code="NOT_CONFIGURED")
    except (ClientError, BotoCoreError) as exc:
        logger.error("AWS error: %s", exc, exc_info=True)
        return _error(500, "Internal service error")
    except Exception as exc:
        logger.error("Unexpected error: %s", exc, exc_info=True)
        return _error(500, "Internal service error")
