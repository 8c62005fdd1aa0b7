"""intake.py — Build Ingest: artifact arrival -> Build record -> DeploymentAttempt.

An upload is complete when its ready marker lands at

    <ARTIFACT_PREFIX>/<repository>/<environment>/<version>/<ARTIFACT_READY_MARKER>

Both direct S3 notifications and EventBridge "Object Created" events are
accepted. Re-delivered events are harmless: the Build write is conditional
and the attempt's run id is derived from the build identity, so a second
delivery finds the existing attempt instead of creating another one.
"""
from __future__ import annotations

import re
from typing import Any, Dict, Iterator, List, Optional, Tuple
from urllib.parse import unquote_plus

from cfn_deployer import locks, persistence, registry
from cfn_deployer.config import ARTIFACT_PREFIX, ARTIFACT_READY_MARKER, logger
from cfn_deployer.dispatch import get_default_scheduler
from cfn_deployer.errors import MalformedBuild, NotConfigured
from cfn_deployer.lifecycle import Phase, new_attempt, run_id_for
from cfn_deployer.parameters import split_artifact_ref
from cfn_deployer.serialization import _iso_from_epoch, _unix_now

__all__ = [
    "build_idempotency_key",
    "handle_artifact_event",
    "new_build",
    "parse_artifact_key",
    "record_build",
    "submit",
    "validate_build",
]

_VERSION_PATTERN = re.compile(r"^\d+\.[0-9A-Za-z]+$")
_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


def parse_artifact_key(key: str) -> Dict[str, str]:
    """Split a ready-marker key into repository / environment / version / artifact prefix."""
    key = unquote_plus(str(key or "")).strip("/")
    parts = key.split("/")
    root = [p for p in ARTIFACT_PREFIX.split("/") if p]
    if len(parts) != len(root) + 4 or parts[: len(root)] != root:
        raise MalformedBuild(f"Key '{key}' is not under {ARTIFACT_PREFIX}/<repo>/<env>/<version>/")
    repository, environment, version, marker = parts[len(root):]
    if marker != ARTIFACT_READY_MARKER:
        raise MalformedBuild(f"Key '{key}' is not a {ARTIFACT_READY_MARKER} marker")
    return {
        "repository": repository,
        "environment": environment,
        "version": version,
        "artifact_prefix": "/".join(parts[:-1]),
    }


def validate_build(build: Dict[str, Any]) -> Dict[str, Any]:
    for field in ("repository", "environment"):
        value = str(build.get(field) or "")
        if not _NAME_PATTERN.match(value):
            raise MalformedBuild(f"Build {field} '{value}' is invalid")
    version = str(build.get("version") or "")
    if not _VERSION_PATTERN.match(version):
        raise MalformedBuild(
            f"Build version '{version}' must be <build-number>.<content-hash>, e.g. 5.abc123"
        )
    split_artifact_ref(build.get("artifact_ref", ""))
    return build


def new_build(
    repository: str,
    environment: str,
    version: str,
    artifact_ref: str,
    *,
    created_at: Optional[str] = None,
    promoted_from: Optional[str] = None,
    now: Optional[int] = None,
) -> Dict[str, Any]:
    build = {
        "repository": repository,
        "environment": environment,
        "version": version,
        "artifact_ref": artifact_ref,
        "created_at": created_at or _iso_from_epoch(now if now is not None else _unix_now()),
    }
    if promoted_from:
        build["promoted_from"] = promoted_from
    return validate_build(build)


def build_idempotency_key(build: Dict[str, Any]) -> str:
    return f"build:{build['repository']}#{build['environment']}#{build['version']}"


def record_build(build: Dict[str, Any]) -> bool:
    """Store the Build. False when that (repository, environment, version) already exists."""
    created = persistence.put_build(build)
    if created:
        logger.info(
            "[SUCCESS] Recorded build %s/%s %s", build["repository"], build["environment"], build["version"]
        )
    else:
        logger.info(
            "[SKIP] Build %s/%s %s already recorded", build["repository"], build["environment"], build["version"]
        )
    return created


def _queue_key(build: Dict[str, Any]) -> Optional[str]:
    environment = build.get("environment")
    if not environment:
        return None
    try:
        target = registry.resolve(environment)
    except NotConfigured:
        # Fails in pending with NotConfigured; nothing to queue for.
        return None
    return locks.lock_key(target["environment"], target["target_label"])


def _join_queue(attempt: Dict[str, Any], now_epoch: int) -> None:
    key = attempt.get("lock_key")
    if key:
        locks.enqueue(key, attempt["run_id"], priority=attempt.get("created_epoch"), now=now_epoch)


def submit(
    build: Dict[str, Any],
    *,
    idempotency_key: Optional[str] = None,
    scheduler=None,
    now: Optional[int] = None,
) -> str:
    """Create the DeploymentAttempt for ``build``, queue it for its target's lock, and schedule its first advance.

    The queue ticket is taken here rather than on the first advance so lock
    order follows submission order even when SQS delivers a later attempt's
    message first.

    With an idempotency key the run id is deterministic; a repeated submit
    returns the existing run id. If that attempt is still pending it is
    queued and scheduled again with its current seq.
    """
    now_epoch = int(now) if now is not None else _unix_now()
    run_id = run_id_for(idempotency_key)
    attempt = new_attempt(build, run_id=run_id, now=now_epoch, idempotency_key=idempotency_key)
    key = _queue_key(build)
    if key:
        attempt["lock_key"] = key
    if not persistence.create_attempt(attempt):
        existing = persistence.get_attempt(run_id) or {}
        if existing.get("phase") == Phase.PENDING.value:
            # Created earlier but possibly never queued or scheduled; a repeat message is dropped as stale.
            _join_queue(existing, now_epoch)
            (scheduler or get_default_scheduler()).schedule(
                run_id, 0, trigger="resubmitted", seq=int(existing.get("schedule_seq") or 0)
            )
        logger.info("[SKIP] Attempt %s already exists for key %s", run_id, idempotency_key)
        return run_id
    _join_queue(attempt, now_epoch)
    (scheduler or get_default_scheduler()).schedule(run_id, 0, trigger="submitted", seq=0)
    logger.info(
        "[START] Attempt %s submitted for %s/%s %s",
        run_id, build["repository"], build["environment"], build["version"],
    )
    return run_id


def _object_refs(event: Dict[str, Any]) -> Iterator[Tuple[str, str]]:
    if event.get("detail-type") == "Object Created":
        detail = event.get("detail") or {}
        yield (detail.get("bucket") or {}).get("name", ""), (detail.get("object") or {}).get("key", "")
        return
    for record in event.get("Records") or []:
        s3 = record.get("s3") or {}
        yield (s3.get("bucket") or {}).get("name", ""), (s3.get("object") or {}).get("key", "")


def handle_artifact_event(event: Dict[str, Any], *, scheduler=None, now: Optional[int] = None) -> List[str]:
    """Turn every ready-marker object in ``event`` into a Build and a submitted attempt."""
    run_ids: List[str] = []
    for bucket, key in _object_refs(event):
        if not bucket or not key:
            logger.warning("[WARNING] Skipping event record without bucket/key")
            continue
        if not unquote_plus(key).endswith("/" + ARTIFACT_READY_MARKER):
            logger.info("[SKIP] %s is not a ready marker", key)
            continue
        try:
            parsed = parse_artifact_key(key)
            build = new_build(
                parsed["repository"],
                parsed["environment"],
                parsed["version"],
                f"s3://{bucket}/{parsed['artifact_prefix']}",
                now=now,
            )
        except MalformedBuild as exc:
            logger.error("[ERROR] Rejected artifact s3://%s/%s: %s", bucket, key, exc)
            continue
        record_build(build)
        run_ids.append(
            submit(build, idempotency_key=build_idempotency_key(build), scheduler=scheduler, now=now)
        )
    return run_ids
