"""fanout.py — StackSet fan-out: one create-or-update operation per (account, region).

``execute`` never waits. Each call issues operations for pairs that have not
been issued yet, polls pairs whose next poll is due, records what changed
and returns a FanOutResult. While any pair is still running the caller is
expected to reschedule itself ``next_poll_in`` seconds later and call
``execute`` again with the same deployment id.

Operation ids are derived from (deployment id, account, region), so an issue
that reached CloudFormation but whose response was lost is detected as
``OperationIdAlreadyExistsException`` on the next call and simply resumed.
Pairs already recorded as in-progress or terminal are never re-issued.
"""
from __future__ import annotations

import re
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from botocore.exceptions import BotoCoreError, ClientError

from cfn_deployer import persistence
from cfn_deployer.aws_clients import _get_cloudformation
from cfn_deployer.config import (
    DEPLOY_REGION,
    FANOUT_MAX_WORKERS,
    MAX_TRANSIENT_ERRORS,
    OPERATION_TIMEOUT_SECONDS,
    POLL_INITIAL_SECONDS,
    POLL_MAX_SECONDS,
    STACK_SET_ADMIN_ROLE_ARN,
    STACK_SET_CAPABILITIES,
    STACK_SET_EXECUTION_ROLE_NAME,
    TEMPLATE_OBJECT_NAME,
    TRANSIENT_RETRY_BACKOFF_SECONDS,
    logger,
)
from cfn_deployer.errors import TransientAwsError, _error_code, _is_transient
from cfn_deployer.parameters import split_artifact_ref, to_cloudformation
from cfn_deployer.serialization import _unix_now

__all__ = [
    "FanOutResult",
    "OP_FAILED",
    "OP_IN_PROGRESS",
    "OP_PENDING",
    "OP_SUCCEEDED",
    "OP_TIMED_OUT",
    "OUTCOME_FAILED",
    "OUTCOME_IN_PROGRESS",
    "OUTCOME_SUCCEEDED",
    "execute",
    "operation_id",
    "pair_key",
    "stack_set_name",
    "template_url",
]

OP_PENDING = "pending"
OP_IN_PROGRESS = "in-progress"
OP_SUCCEEDED = "succeeded"
OP_FAILED = "failed"
OP_TIMED_OUT = "timed-out"
_TERMINAL_OPS = {OP_SUCCEEDED, OP_FAILED, OP_TIMED_OUT}

OUTCOME_IN_PROGRESS = "in-progress"
OUTCOME_SUCCEEDED = "succeeded"
OUTCOME_FAILED = "failed"

# CloudFormation operation status -> StackSetOperation status
_CFN_STATUS = {
    "SUCCEEDED": OP_SUCCEEDED,
    "FAILED": OP_FAILED,
    "STOPPED": OP_FAILED,
    "RUNNING": OP_IN_PROGRESS,
    "QUEUED": OP_IN_PROGRESS,
    "STOPPING": OP_IN_PROGRESS,
}
# Issue-time conflicts that clear up on their own.
_RETRYABLE_ISSUE_CODES = {"OperationInProgressException", "StaleRequestException"}
_OPERATION_ID_NAMESPACE = uuid.UUID("6f1f7a4e-0c55-4d0e-9a55-2f1d8c4b7e10")


@dataclass
class FanOutResult:
    deployment_id: str
    outcome: str
    operations: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    next_poll_in: Optional[int] = None

    def operation(self, account: str, region: str) -> Optional[Dict[str, Any]]:
        return self.operations.get(pair_key(account, region))


def pair_key(account: str, region: str) -> str:
    return f"{account}#{region}"


def operation_id(deployment_id: str, account: str, region: str) -> str:
    return "op-" + uuid.uuid5(_OPERATION_ID_NAMESPACE, f"{deployment_id}|{account}|{region}").hex


def stack_set_name(repository: str, target_label: str) -> str:
    raw = f"{repository}-{target_label}"
    name = re.sub(r"[^A-Za-z0-9-]+", "-", raw).strip("-")
    if not name or not name[0].isalpha():
        name = f"ss-{name}"
    return name[:128]


def template_url(artifact_ref: str) -> str:
    bucket, prefix = split_artifact_ref(artifact_ref)
    return f"https://{bucket}.s3.{DEPLOY_REGION}.amazonaws.com/{prefix}/{TEMPLATE_OBJECT_NAME}"


def _poll_interval(poll_count: int) -> int:
    return min(POLL_MAX_SECONDS, POLL_INITIAL_SECONDS * (2 ** max(0, poll_count)))


def _transient_backoff(count: int) -> int:
    idx = max(0, min(count - 1, len(TRANSIENT_RETRY_BACKOFF_SECONDS) - 1))
    return TRANSIENT_RETRY_BACKOFF_SECONDS[idx]


def _describe_error(exc: BaseException) -> str:
    code = _error_code(exc)
    return f"{code}: {exc}" if code else str(exc)


def _new_operation(deployment_id: str, account: str, region: str) -> Dict[str, Any]:
    return {
        "account": account,
        "region": region,
        "operation_id": operation_id(deployment_id, account, region),
        "action": None,
        "status": OP_PENDING,
        "issued_epoch": None,
        "last_polled_epoch": None,
        "next_poll_epoch": 0,
        "poll_count": 0,
        "transient_errors": 0,
        "error": None,
    }


def _record_transient(op: Dict[str, Any], exc: BaseException, now_epoch: int) -> Dict[str, Any]:
    op["transient_errors"] = int(op.get("transient_errors") or 0) + 1
    if op["transient_errors"] > MAX_TRANSIENT_ERRORS:
        op["status"] = OP_FAILED
        op["error"] = f"TransientRetriesExhausted: {_describe_error(exc)}"
        return op
    op["next_poll_epoch"] = now_epoch + _transient_backoff(op["transient_errors"])
    logger.warning(
        "[WARNING] Transient error on %s/%s (%d/%d): %s",
        op["account"], op["region"], op["transient_errors"], MAX_TRANSIENT_ERRORS, exc,
    )
    return op


# ---------------------------------------------------------------------------
# Stack set setup
# ---------------------------------------------------------------------------


def _ensure_stack_set(cfn, name: str, url: str, cfn_params: List[Dict[str, str]]) -> bool:
    """Create the stack set if missing. Returns True if it was created by this call."""
    try:
        cfn.describe_stack_set(StackSetName=name)
        return False
    except ClientError as exc:
        if _error_code(exc) != "StackSetNotFoundException":
            raise
    kwargs: Dict[str, Any] = {
        "StackSetName": name,
        "TemplateURL": url,
        "Parameters": cfn_params,
        "Capabilities": list(STACK_SET_CAPABILITIES),
        "PermissionModel": "SELF_MANAGED",
        "ManagedExecution": {"Active": True},
        "ExecutionRoleName": STACK_SET_EXECUTION_ROLE_NAME,
    }
    if STACK_SET_ADMIN_ROLE_ARN:
        kwargs["AdministrationRoleARN"] = STACK_SET_ADMIN_ROLE_ARN
    try:
        cfn.create_stack_set(**kwargs)
    except ClientError as exc:
        if _error_code(exc) != "NameAlreadyExistsException":
            raise
        return False
    logger.info("[SUCCESS] Created stack set %s", name)
    return True


def _existing_instances(cfn, name: str) -> Set[Tuple[str, str]]:
    found: Set[Tuple[str, str]] = set()
    paginator = cfn.get_paginator("list_stack_instances")
    for page in paginator.paginate(StackSetName=name):
        for summary in page.get("Summaries", []):
            found.add((str(summary.get("Account")), str(summary.get("Region"))))
    return found


# ---------------------------------------------------------------------------
# Per-pair issue / poll
# ---------------------------------------------------------------------------


def _issue(
    cfn,
    op: Dict[str, Any],
    *,
    name: str,
    url: str,
    cfn_params: List[Dict[str, str]],
    instance_exists: bool,
    now_epoch: int,
) -> Dict[str, Any]:
    op = dict(op)
    action = "update" if instance_exists else "create"
    try:
        if instance_exists:
            kwargs: Dict[str, Any] = {
                "StackSetName": name,
                "TemplateURL": url,
                "Parameters": cfn_params,
                "Capabilities": list(STACK_SET_CAPABILITIES),
                "Accounts": [op["account"]],
                "Regions": [op["region"]],
                "OperationId": op["operation_id"],
                "ExecutionRoleName": STACK_SET_EXECUTION_ROLE_NAME,
            }
            if STACK_SET_ADMIN_ROLE_ARN:
                kwargs["AdministrationRoleARN"] = STACK_SET_ADMIN_ROLE_ARN
            cfn.update_stack_set(**kwargs)
        else:
            cfn.create_stack_instances(
                StackSetName=name,
                Accounts=[op["account"]],
                Regions=[op["region"]],
                ParameterOverrides=cfn_params,
                OperationId=op["operation_id"],
            )
    except ClientError as exc:
        code = _error_code(exc)
        if code == "OperationIdAlreadyExistsException":
            logger.info("[SKIP] Operation %s already issued; resuming", op["operation_id"])
        elif _is_transient(exc) or code in _RETRYABLE_ISSUE_CODES:
            return _record_transient(op, exc, now_epoch)
        else:
            logger.error("[ERROR] Issue failed for %s/%s: %s", op["account"], op["region"], exc)
            op["status"] = OP_FAILED
            op["error"] = _describe_error(exc)
            return op
    except BotoCoreError as exc:
        return _record_transient(op, exc, now_epoch)

    op["action"] = action
    op["status"] = OP_IN_PROGRESS
    op["issued_epoch"] = now_epoch
    op["poll_count"] = 0
    op["next_poll_epoch"] = now_epoch + _poll_interval(0)
    logger.info(
        "[INFO] Issued %s for %s/%s (operation %s)", action, op["account"], op["region"], op["operation_id"]
    )
    return op


def _failure_detail(cfn, name: str, op: Dict[str, Any], fallback: str) -> str:
    try:
        resp = cfn.list_stack_set_operation_results(StackSetName=name, OperationId=op["operation_id"])
    except (BotoCoreError, ClientError) as exc:
        logger.warning("[WARNING] Could not read results for %s: %s", op["operation_id"], exc)
        return fallback
    reasons = [
        str(s.get("StatusReason") or s.get("Status") or "")
        for s in resp.get("Summaries", [])
        if s.get("Account") == op["account"] and s.get("Region") == op["region"]
    ]
    return "; ".join(r for r in reasons if r) or fallback


def _poll(cfn, op: Dict[str, Any], *, name: str, now_epoch: int) -> Dict[str, Any]:
    op = dict(op)
    try:
        resp = cfn.describe_stack_set_operation(StackSetName=name, OperationId=op["operation_id"])
    except (BotoCoreError, ClientError) as exc:
        if _is_transient(exc):
            return _record_transient(op, exc, now_epoch)
        op["status"] = OP_FAILED
        op["error"] = _describe_error(exc)
        return op

    detail = resp.get("StackSetOperation") or {}
    cfn_status = str(detail.get("Status") or "RUNNING")
    op["last_polled_epoch"] = now_epoch
    op["poll_count"] = int(op.get("poll_count") or 0) + 1
    status = _CFN_STATUS.get(cfn_status, OP_IN_PROGRESS)
    if status == OP_FAILED:
        op["error"] = _failure_detail(
            cfn, name, op, str(detail.get("StatusReason") or f"Operation {cfn_status}")
        )
        logger.error("[ERROR] %s/%s failed: %s", op["account"], op["region"], op["error"])
    elif status == OP_SUCCEEDED:
        logger.info("[SUCCESS] %s/%s succeeded", op["account"], op["region"])
    else:
        op["next_poll_epoch"] = now_epoch + _poll_interval(op["poll_count"])
    op["status"] = status
    return op


def _timed_out(op: Dict[str, Any], now_epoch: int, deadline_epoch: Optional[int]) -> Optional[str]:
    if deadline_epoch is not None and now_epoch >= int(deadline_epoch):
        return "Attempt deadline passed before the operation finished"
    issued = op.get("issued_epoch")
    if issued is not None and now_epoch - int(issued) >= OPERATION_TIMEOUT_SECONDS:
        return f"Operation did not finish within {OPERATION_TIMEOUT_SECONDS}s"
    return None


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def _aggregate(operations: Dict[str, Dict[str, Any]], now_epoch: int) -> Tuple[str, Optional[int]]:
    statuses = [op.get("status") for op in operations.values()]
    if all(s in _TERMINAL_OPS for s in statuses):
        if all(s == OP_SUCCEEDED for s in statuses):
            return OUTCOME_SUCCEEDED, None
        return OUTCOME_FAILED, None
    due = [
        int(op.get("next_poll_epoch") or 0)
        for op in operations.values()
        if op.get("status") not in _TERMINAL_OPS
    ]
    return OUTCOME_IN_PROGRESS, max(1, min(due) - now_epoch)


def execute(
    deployment_id: str,
    accounts: Sequence[str],
    regions: Sequence[str],
    template: str,
    parameters: Dict[str, str],
    *,
    stack_set_name: str,
    deadline_epoch: Optional[int] = None,
    now: Optional[int] = None,
) -> FanOutResult:
    """Advance every (account, region) pair of ``deployment_id`` as far as it can go right now."""
    now_epoch = int(now) if now is not None else _unix_now()
    name = stack_set_name
    stored = persistence.load_operations(deployment_id)

    operations: Dict[str, Dict[str, Any]] = {}
    for account in accounts:
        for region in regions:
            key = pair_key(account, region)
            operations[key] = dict(stored.get(key) or _new_operation(deployment_id, account, region))

    changed: Dict[str, Dict[str, Any]] = {}
    for key, op in operations.items():
        if op.get("status") in _TERMINAL_OPS:
            continue
        reason = _timed_out(op, now_epoch, deadline_epoch)
        if reason:
            op["status"] = OP_TIMED_OUT
            op["error"] = reason
            changed[key] = op
            logger.warning("[WARNING] %s/%s timed out: %s", op["account"], op["region"], reason)

    to_issue = [
        key for key, op in operations.items()
        if op.get("status") == OP_PENDING and int(op.get("next_poll_epoch") or 0) <= now_epoch
    ]
    to_poll = [
        key for key, op in operations.items()
        if op.get("status") == OP_IN_PROGRESS and int(op.get("next_poll_epoch") or 0) <= now_epoch
    ]

    if to_issue or to_poll:
        cfn = _get_cloudformation()
        cfn_params = to_cloudformation(parameters)
        existing: Set[Tuple[str, str]] = set()
        if to_issue:
            try:
                created = _ensure_stack_set(cfn, name, template, cfn_params)
                if not created:
                    existing = _existing_instances(cfn, name)
            except (BotoCoreError, ClientError) as exc:
                if _is_transient(exc):
                    raise TransientAwsError(f"Stack set {name} setup failed: {exc}") from exc
                logger.error("[ERROR] Stack set %s setup failed: %s", name, exc)
                for key in to_issue:
                    operations[key]["status"] = OP_FAILED
                    operations[key]["error"] = _describe_error(exc)
                    changed[key] = operations[key]
                to_issue = []

        work = len(to_issue) + len(to_poll)
        if work:
            with ThreadPoolExecutor(max_workers=max(1, min(work, FANOUT_MAX_WORKERS))) as pool:
                futures = {}
                for key in to_issue:
                    op = operations[key]
                    futures[pool.submit(
                        _issue,
                        cfn,
                        op,
                        name=name,
                        url=template,
                        cfn_params=cfn_params,
                        instance_exists=(op["account"], op["region"]) in existing,
                        now_epoch=now_epoch,
                    )] = key
                for key in to_poll:
                    futures[pool.submit(_poll, cfn, operations[key], name=name, now_epoch=now_epoch)] = key
                for future in as_completed(futures):
                    key = futures[future]
                    operations[key] = future.result()
                    changed[key] = operations[key]

    for key in sorted(changed):
        persistence.record_operation(deployment_id, key, changed[key])

    outcome, next_poll_in = _aggregate(operations, now_epoch)
    logger.info(
        "[INFO] Fan-out %s: %s (%d pair(s), %d updated, next poll in %s)",
        deployment_id, outcome, len(operations), len(changed), next_poll_in,
    )
    return FanOutResult(
        deployment_id=deployment_id,
        outcome=outcome,
        operations=operations,
        next_poll_in=next_poll_in,
    )
