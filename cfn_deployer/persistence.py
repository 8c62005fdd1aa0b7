"""persistence.py — DynamoDB persistence for builds, attempts, operations and promotions.

Every mutation is a conditional write keyed on the expected current state:
creates use ``attribute_not_exists``, attempt updates compare-and-swap on
``version`` and refuse to touch a terminal attempt, and the operation /
promotion sub-documents are written through path-scoped updates so they never
clobber each other.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError

from cfn_deployer.aws_clients import _get_ddb
from cfn_deployer.config import (
    ATTEMPTS_LOCK_KEY_INDEX,
    ATTEMPTS_TABLE,
    BUILDS_TABLE,
    LOCKS_TABLE,
    TARGETS_TABLE,
    logger,
)
from cfn_deployer.errors import ConcurrentModification
from cfn_deployer.serialization import _deserialize, _serialize, _serialize_item

__all__ = [
    "build_key",
    "claim_promotion",
    "create_attempt",
    "create_tables",
    "get_attempt",
    "list_attempts",
    "list_builds",
    "load_operations",
    "put_build",
    "record_operation",
    "save_attempt",
    "update_promotion",
]

# Attributes written by their own owners, never by save_attempt.
_ATTEMPT_OWNED_ELSEWHERE = {"run_id", "operations", "promotion", "version"}
_TERMINAL_PHASE_VALUES = ("completed", "failed")

# ---------------------------------------------------------------------------
# Table provisioning
# ---------------------------------------------------------------------------


def create_tables() -> None:
    """Create the four tables (on-demand billing). Existing tables are left alone."""
    ddb = _get_ddb()
    definitions = [
        {
            "TableName": BUILDS_TABLE,
            "KeySchema": [
                {"AttributeName": "build_key", "KeyType": "HASH"},
                {"AttributeName": "version", "KeyType": "RANGE"},
            ],
            "AttributeDefinitions": [
                {"AttributeName": "build_key", "AttributeType": "S"},
                {"AttributeName": "version", "AttributeType": "S"},
            ],
        },
        {
            "TableName": TARGETS_TABLE,
            "KeySchema": [
                {"AttributeName": "environment", "KeyType": "HASH"},
                {"AttributeName": "target_label", "KeyType": "RANGE"},
            ],
            "AttributeDefinitions": [
                {"AttributeName": "environment", "AttributeType": "S"},
                {"AttributeName": "target_label", "AttributeType": "S"},
            ],
        },
        {
            "TableName": LOCKS_TABLE,
            "KeySchema": [{"AttributeName": "lock_key", "KeyType": "HASH"}],
            "AttributeDefinitions": [{"AttributeName": "lock_key", "AttributeType": "S"}],
        },
        {
            "TableName": ATTEMPTS_TABLE,
            "KeySchema": [{"AttributeName": "run_id", "KeyType": "HASH"}],
            "AttributeDefinitions": [
                {"AttributeName": "run_id", "AttributeType": "S"},
                {"AttributeName": "lock_key", "AttributeType": "S"},
                {"AttributeName": "created_epoch", "AttributeType": "N"},
            ],
            "GlobalSecondaryIndexes": [
                {
                    "IndexName": ATTEMPTS_LOCK_KEY_INDEX,
                    "KeySchema": [
                        {"AttributeName": "lock_key", "KeyType": "HASH"},
                        {"AttributeName": "created_epoch", "KeyType": "RANGE"},
                    ],
                    "Projection": {"ProjectionType": "ALL"},
                }
            ],
        },
    ]
    for definition in definitions:
        try:
            ddb.create_table(BillingMode="PAY_PER_REQUEST", **definition)
            logger.info("[INFO] Created table %s", definition["TableName"])
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") != "ResourceInUseException":
                raise
            logger.info("[SKIP] Table %s already exists", definition["TableName"])


# ---------------------------------------------------------------------------
# Generic conditional-write helpers
# ---------------------------------------------------------------------------


def _is_conditional_failure(exc: ClientError) -> bool:
    return exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


def _without_none(item: Dict[str, Any]) -> Dict[str, Any]:
    # GSI key attributes may not be NULL; absent attributes are simply skipped.
    return {k: v for k, v in item.items() if v is not None}


def _get(table: str, key: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    resp = _get_ddb().get_item(
        TableName=table,
        Key={k: _serialize(v) for k, v in key.items()},
        ConsistentRead=True,
    )
    raw = resp.get("Item")
    if not raw:
        return None
    return _deserialize(raw)


def _put_if_absent(table: str, item: Dict[str, Any], key_attr: str) -> bool:
    """Create ``item``; False if an item with the same key already exists."""
    try:
        _get_ddb().put_item(
            TableName=table,
            Item=_serialize_item(_without_none(item)),
            ConditionExpression="attribute_not_exists(#pk)",
            ExpressionAttributeNames={"#pk": key_attr},
        )
        return True
    except ClientError as exc:
        if _is_conditional_failure(exc):
            return False
        raise


def _put_if_version(table: str, item: Dict[str, Any], expected_version: int) -> bool:
    """Replace ``item`` only if the stored version still equals ``expected_version``."""
    try:
        _get_ddb().put_item(
            TableName=table,
            Item=_serialize_item(_without_none(item)),
            ConditionExpression="#v = :expected",
            ExpressionAttributeNames={"#v": "version"},
            ExpressionAttributeValues={":expected": _serialize(int(expected_version))},
        )
        return True
    except ClientError as exc:
        if _is_conditional_failure(exc):
            return False
        raise


def _query_all(**kwargs: Any) -> List[Dict[str, Any]]:
    ddb = _get_ddb()
    results: List[Dict[str, Any]] = []
    while True:
        resp = ddb.query(**kwargs)
        results.extend(_deserialize(item) for item in resp.get("Items", []))
        if "LastEvaluatedKey" not in resp:
            break
        kwargs["ExclusiveStartKey"] = resp["LastEvaluatedKey"]
    return results


# ---------------------------------------------------------------------------
# Builds
# ---------------------------------------------------------------------------


def build_key(repository: str, environment: str) -> str:
    return f"{repository}#{environment}"


def put_build(build: Dict[str, Any]) -> bool:
    item = dict(build)
    item["build_key"] = build_key(build["repository"], build["environment"])
    return _put_if_absent(BUILDS_TABLE, item, "build_key")


def list_builds(repository: str, environment: str) -> List[Dict[str, Any]]:
    items = _query_all(
        TableName=BUILDS_TABLE,
        KeyConditionExpression="build_key = :bk",
        ExpressionAttributeValues={":bk": _serialize(build_key(repository, environment))},
        ConsistentRead=True,
    )
    return sorted(items, key=lambda b: b.get("created_at", ""))


# ---------------------------------------------------------------------------
# Deployment attempts
# ---------------------------------------------------------------------------


def create_attempt(attempt: Dict[str, Any]) -> bool:
    item = dict(attempt)
    item.setdefault("operations", {})
    item["version"] = int(item.get("version") or 1)
    return _put_if_absent(ATTEMPTS_TABLE, item, "run_id")


def get_attempt(run_id: str) -> Optional[Dict[str, Any]]:
    return _get(ATTEMPTS_TABLE, {"run_id": run_id})


def save_attempt(attempt: Dict[str, Any]) -> Dict[str, Any]:
    """Persist the orchestrator-owned fields of ``attempt`` (compare-and-swap on version).

    Fields set to None are removed from the stored item. Raises
    ConcurrentModification if another writer advanced the attempt first, or
    if the stored attempt is already terminal.
    """
    expected = int(attempt.get("version") or 0)
    fields = {
        k: v for k, v in attempt.items()
        if k not in _ATTEMPT_OWNED_ELSEWHERE and v is not None
    }
    removals = sorted(
        k for k, v in attempt.items()
        if k not in _ATTEMPT_OWNED_ELSEWHERE and v is None
    )
    names: Dict[str, str] = {"#v": "version", "#ph": "phase"}
    values: Dict[str, Any] = {
        ":expected": _serialize(expected),
        ":next": _serialize(expected + 1),
        ":completed": _serialize(_TERMINAL_PHASE_VALUES[0]),
        ":failed": _serialize(_TERMINAL_PHASE_VALUES[1]),
    }
    assignments = ["#v = :next"]
    for idx, (field, value) in enumerate(sorted(fields.items())):
        names[f"#f{idx}"] = field
        values[f":f{idx}"] = _serialize(value)
        assignments.append(f"#f{idx} = :f{idx}")
    expression = "SET " + ", ".join(assignments)
    if removals:
        for idx, field in enumerate(removals):
            names[f"#r{idx}"] = field
        expression += " REMOVE " + ", ".join(f"#r{idx}" for idx in range(len(removals)))

    try:
        _get_ddb().update_item(
            TableName=ATTEMPTS_TABLE,
            Key={"run_id": _serialize(attempt["run_id"])},
            UpdateExpression=expression,
            ConditionExpression="#v = :expected AND NOT (#ph IN (:completed, :failed))",
            ExpressionAttributeNames=names,
            ExpressionAttributeValues=values,
        )
    except ClientError as exc:
        if _is_conditional_failure(exc):
            raise ConcurrentModification(
                f"Attempt {attempt['run_id']} changed since version {expected}"
            ) from exc
        raise
    attempt["version"] = expected + 1
    return attempt


def load_operations(run_id: str) -> Dict[str, Dict[str, Any]]:
    resp = _get_ddb().get_item(
        TableName=ATTEMPTS_TABLE,
        Key={"run_id": _serialize(run_id)},
        ProjectionExpression="#ops",
        ExpressionAttributeNames={"#ops": "operations"},
        ConsistentRead=True,
    )
    raw = resp.get("Item")
    if not raw:
        return {}
    return dict(_deserialize(raw).get("operations") or {})


def record_operation(run_id: str, pair_key: str, operation: Dict[str, Any]) -> None:
    """Write one StackSetOperation under ``operations.<pair_key>``."""
    _get_ddb().update_item(
        TableName=ATTEMPTS_TABLE,
        Key={"run_id": _serialize(run_id)},
        UpdateExpression="SET #ops.#pair = :op",
        ConditionExpression="attribute_exists(run_id)",
        ExpressionAttributeNames={"#ops": "operations", "#pair": pair_key},
        ExpressionAttributeValues={":op": _serialize(_without_none(operation))},
    )


def claim_promotion(run_id: str, marker: Dict[str, Any]) -> bool:
    """Claim the promotion slot for ``run_id``; False if it was already claimed."""
    try:
        _get_ddb().update_item(
            TableName=ATTEMPTS_TABLE,
            Key={"run_id": _serialize(run_id)},
            UpdateExpression="SET #promo = :marker",
            ConditionExpression="attribute_exists(run_id) AND attribute_not_exists(#promo)",
            ExpressionAttributeNames={"#promo": "promotion"},
            ExpressionAttributeValues={":marker": _serialize(_without_none(marker))},
        )
        return True
    except ClientError as exc:
        if _is_conditional_failure(exc):
            return False
        raise


def update_promotion(run_id: str, fields: Dict[str, Any]) -> None:
    fields = _without_none(fields)
    if not fields:
        return
    names: Dict[str, str] = {"#promo": "promotion"}
    values: Dict[str, Any] = {}
    assignments = []
    for idx, (field, value) in enumerate(sorted(fields.items())):
        names[f"#p{idx}"] = field
        values[f":p{idx}"] = _serialize(value)
        assignments.append(f"#promo.#p{idx} = :p{idx}")
    _get_ddb().update_item(
        TableName=ATTEMPTS_TABLE,
        Key={"run_id": _serialize(run_id)},
        UpdateExpression="SET " + ", ".join(assignments),
        ConditionExpression="attribute_exists(#promo)",
        ExpressionAttributeNames=names,
        ExpressionAttributeValues=values,
    )


def list_attempts(lock_key: str, limit: int = 10) -> List[Dict[str, Any]]:
    """Most recent attempts for a lock key, newest first."""
    resp = _get_ddb().query(
        TableName=ATTEMPTS_TABLE,
        IndexName=ATTEMPTS_LOCK_KEY_INDEX,
        KeyConditionExpression="lock_key = :lk",
        ExpressionAttributeValues={":lk": _serialize(lock_key)},
        ScanIndexForward=False,
        Limit=max(1, int(limit)),
    )
    return [_deserialize(item) for item in resp.get("Items", [])]

