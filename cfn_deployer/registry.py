"""registry.py — Target registry: environment -> accounts, regions, downstream environment.

Targets live in the targets table keyed by (environment, target_label). The
default profile for an environment is a pointer item with the reserved label
``#default``, so an environment can never carry two defaults. The orchestrator
and the promotion scheduler only read from here; writes come from the config
API.
"""
from __future__ import annotations

import re
from typing import Any, Dict, List, Optional, Sequence

from cfn_deployer.aws_clients import _get_ddb
from cfn_deployer.config import TARGETS_TABLE, logger
from cfn_deployer.errors import InvalidConfiguration, NotConfigured
from cfn_deployer.persistence import _get, _put_if_absent, _query_all
from cfn_deployer.serialization import _now_z, _serialize, _serialize_item

__all__ = [
    "DEFAULT_POINTER_LABEL",
    "get_target",
    "list_targets",
    "resolve",
    "set_default",
    "set_target",
]

DEFAULT_POINTER_LABEL = "#default"
_LABEL_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,63}$")
_MAX_CHAIN_LENGTH = 32


def _validate_label(value: Any, field: str) -> str:
    label = str(value or "").strip()
    if not label:
        raise InvalidConfiguration(f"{field} is required")
    if not _LABEL_PATTERN.match(label):
        raise InvalidConfiguration(f"{field} '{label}' must match {_LABEL_PATTERN.pattern}")
    return label


def _ordered_unique(values: Any, field: str) -> List[str]:
    if isinstance(values, str) or not isinstance(values, Sequence):
        raise InvalidConfiguration(f"{field} must be a list of strings")
    out: List[str] = []
    for raw in values:
        if not isinstance(raw, str) or not raw.strip():
            raise InvalidConfiguration(f"{field} entries must be non-empty strings")
        value = raw.strip()
        if value not in out:
            out.append(value)
    if not out:
        raise InvalidConfiguration(f"{field} must not be empty")
    return out


def _default_label(environment: str) -> Optional[str]:
    pointer = _get(TARGETS_TABLE, {"environment": environment, "target_label": DEFAULT_POINTER_LABEL})
    if not pointer:
        return None
    return pointer.get("default_label") or None


def get_target(environment: str, target_label: str) -> Optional[Dict[str, Any]]:
    if target_label == DEFAULT_POINTER_LABEL:
        return None
    return _get(TARGETS_TABLE, {"environment": environment, "target_label": target_label})


def resolve(environment: str) -> Dict[str, Any]:
    """Return the default Target for ``environment``; NotConfigured if there is none."""
    label = _default_label(environment)
    if not label:
        raise NotConfigured(f"No default target configured for environment '{environment}'")
    target = get_target(environment, label)
    if not target:
        raise NotConfigured(
            f"Default target '{label}' for environment '{environment}' no longer exists"
        )
    target["is_default"] = True
    return target


def list_targets(environment: str) -> List[Dict[str, Any]]:
    """All target profiles for ``environment``, ordered by label."""
    items = _query_all(
        TableName=TARGETS_TABLE,
        KeyConditionExpression="#env = :env",
        ExpressionAttributeNames={"#env": "environment"},
        ExpressionAttributeValues={":env": _serialize(environment)},
        ConsistentRead=True,
    )
    default_label = None
    targets = []
    for item in items:
        if item.get("target_label") == DEFAULT_POINTER_LABEL:
            default_label = item.get("default_label")
            continue
        targets.append(item)
    for target in targets:
        target["is_default"] = target.get("target_label") == default_label
    return sorted(targets, key=lambda t: t.get("target_label", ""))


def _reject_promotion_cycle(environment: str, downstream: Optional[str]) -> None:
    """Follow default-target downstream pointers from ``downstream``; reject a return to ``environment``."""
    seen = {environment}
    current = downstream
    hops = 0
    while current:
        if current in seen:
            if current == environment:
                raise InvalidConfiguration(
                    f"downstream_environment '{downstream}' would create a promotion cycle "
                    f"back to '{environment}'"
                )
            # A pre-existing loop that does not include us; stop walking.
            logger.warning("[WARNING] Existing promotion loop detected at '%s'", current)
            return
        seen.add(current)
        hops += 1
        if hops > _MAX_CHAIN_LENGTH:
            raise InvalidConfiguration(f"Promotion chain from '{environment}' is too long")
        label = _default_label(current)
        if not label:
            return
        target = get_target(current, label)
        if not target:
            return
        current = target.get("downstream_environment") or None


def _write_default_pointer(environment: str, target_label: str, *, only_if_absent: bool) -> bool:
    pointer = {
        "environment": environment,
        "target_label": DEFAULT_POINTER_LABEL,
        "default_label": target_label,
        "updated_at": _now_z(),
    }
    if only_if_absent:
        return _put_if_absent(TARGETS_TABLE, pointer, "target_label")
    _get_ddb().put_item(TableName=TARGETS_TABLE, Item=_serialize_item(pointer))
    return True


def set_target(
    environment: str,
    target_label: Optional[str] = None,
    *,
    accounts: Sequence[str],
    regions: Sequence[str],
    downstream_environment: Optional[str] = None,
    make_default: bool = False,
) -> Dict[str, Any]:
    """Create or replace a target profile.

    ``target_label`` defaults to the environment name (single-account mode).
    The first target written for an environment becomes its default.
    """
    environment = _validate_label(environment, "environment")
    label = _validate_label(target_label or environment, "target_label")
    account_ids = _ordered_unique(accounts, "accounts")
    region_names = _ordered_unique(regions, "regions")

    downstream = str(downstream_environment or "").strip() or None
    if downstream is not None:
        downstream = _validate_label(downstream, "downstream_environment")
        if downstream == environment:
            raise InvalidConfiguration(
                f"downstream_environment must differ from environment '{environment}'"
            )
        _reject_promotion_cycle(environment, downstream)

    target = {
        "environment": environment,
        "target_label": label,
        "accounts": account_ids,
        "regions": region_names,
        "downstream_environment": downstream,
        "updated_at": _now_z(),
    }
    item = {k: v for k, v in target.items() if v is not None}
    _get_ddb().put_item(TableName=TARGETS_TABLE, Item=_serialize_item(item))

    if make_default:
        _write_default_pointer(environment, label, only_if_absent=False)
        is_default = True
    else:
        created = _write_default_pointer(environment, label, only_if_absent=True)
        is_default = created or _default_label(environment) == label

    logger.info(
        "[INFO] Target %s/%s set: %d account(s) x %d region(s), downstream=%s, default=%s",
        environment, label, len(account_ids), len(region_names), downstream, is_default,
    )
    target["is_default"] = is_default
    return target


def set_default(environment: str, target_label: str) -> Dict[str, Any]:
    """Make an existing target the default profile for ``environment``."""
    environment = _validate_label(environment, "environment")
    label = _validate_label(target_label, "target_label")
    target = get_target(environment, label)
    if not target:
        raise NotConfigured(f"Target '{label}' is not configured for environment '{environment}'")
    _reject_promotion_cycle(environment, target.get("downstream_environment") or None)
    _write_default_pointer(environment, label, only_if_absent=False)
    logger.info("[INFO] Default target for %s set to %s", environment, label)
    target["is_default"] = True
    return target
