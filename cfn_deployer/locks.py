"""locks.py — Leased mutual exclusion per (environment, target label).

One item per lock key in the locks table. Every write is conditional: a new
record is created with ``attribute_not_exists`` and an existing one is
replaced only if its ``version`` is unchanged since it was read. Lease
renewal and release are conditioned on the holder's fingerprint, so a run
whose lease was reclaimed finds out instead of overwriting the new holder.

Waiting runs leave a ticket in the record's ``waiters`` map. Intake puts the
ticket in place when an attempt is submitted (``enqueue``), before its first
advance is even delivered. Each ticket keeps the priority and the arrival
number it was first given, and a free lock is granted only to the oldest live
ticket (priority, then arrival number), so a later build cannot overtake an
earlier one whose message happens to arrive second.
"""
from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional, Union

from botocore.exceptions import ClientError

from cfn_deployer.aws_clients import _get_ddb
from cfn_deployer.config import LOCK_TTL_SECONDS, LOCK_WAITER_TTL_SECONDS, LOCKS_TABLE, logger
from cfn_deployer.errors import ConcurrentModification, LockLost
from cfn_deployer.persistence import _get, _is_conditional_failure, _put_if_absent, _put_if_version
from cfn_deployer.serialization import _emit_structured_observability, _serialize, _unix_now

__all__ = [
    "LockBusy",
    "LockHandle",
    "STATUS_EXPIRED",
    "STATUS_HELD",
    "STATUS_RELEASED",
    "acquire",
    "describe",
    "enqueue",
    "lock_key",
    "release",
    "release_held_by",
    "renew",
    "withdraw",
]

STATUS_HELD = "held"
STATUS_RELEASED = "released"
STATUS_EXPIRED = "expired"

_CAS_RETRIES = 5


@dataclass(frozen=True)
class LockHandle:
    key: str
    holder: str
    fingerprint: str
    acquired_epoch: int
    expires_epoch: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LockHandle":
        return cls(
            key=str(data["key"]),
            holder=str(data["holder"]),
            fingerprint=str(data["fingerprint"]),
            acquired_epoch=int(data["acquired_epoch"]),
            expires_epoch=int(data["expires_epoch"]),
        )


@dataclass(frozen=True)
class LockBusy:
    """Returned instead of a handle while another run holds (or is ahead for) the key."""

    key: str
    holder: Optional[str]
    expires_epoch: int
    position: int


def lock_key(environment: str, target_label: str) -> str:
    return f"{environment}#{target_label}"


def _now_epoch(now: Optional[int]) -> int:
    return int(now) if now is not None else _unix_now()


def _derived_status(record: Optional[Dict[str, Any]], now_epoch: int) -> Optional[str]:
    if not record:
        return None
    status = record.get("status") or STATUS_RELEASED
    if status == STATUS_HELD and int(record.get("expires_epoch") or 0) <= now_epoch:
        return STATUS_EXPIRED
    return status


def _handle_from(record: Dict[str, Any]) -> LockHandle:
    return LockHandle(
        key=record["lock_key"],
        holder=record["holder"],
        fingerprint=record["fingerprint"],
        acquired_epoch=int(record["acquired_epoch"]),
        expires_epoch=int(record["expires_epoch"]),
    )


def _live_waiters(record: Optional[Dict[str, Any]], now_epoch: int) -> Dict[str, Dict[str, Any]]:
    waiters = (record or {}).get("waiters") or {}
    return {
        run_id: ticket
        for run_id, ticket in waiters.items()
        if int(ticket.get("expires_epoch") or 0) > now_epoch
    }


def _queue_order(waiters: Dict[str, Dict[str, Any]]) -> list:
    return [
        run_id
        for run_id, _ in sorted(
            waiters.items(),
            key=lambda kv: (float(kv[1].get("priority") or 0), int(kv[1].get("number") or 0), kv[0]),
        )
    ]


def _take_ticket(
    record: Dict[str, Any],
    waiters: Dict[str, Dict[str, Any]],
    run_id: str,
    priority: Optional[float],
    now_epoch: int,
) -> None:
    """Create or refresh ``run_id``'s ticket. Priority and arrival number stick from the first call."""
    ticket = waiters.get(run_id)
    if ticket is None:
        number = int(record.get("next_ticket") or 0) + 1
        record["next_ticket"] = number
        ticket = {"priority": priority if priority is not None else now_epoch, "number": number}
    waiters[run_id] = {
        "priority": ticket.get("priority"),
        "number": int(ticket.get("number") or 0),
        "expires_epoch": now_epoch + LOCK_WAITER_TTL_SECONDS,
    }


def _write(record: Dict[str, Any], previous: Optional[Dict[str, Any]]) -> bool:
    if previous is None:
        record["version"] = 1
        return _put_if_absent(LOCKS_TABLE, record, "lock_key")
    expected = int(previous.get("version") or 0)
    record["version"] = expected + 1
    return _put_if_version(LOCKS_TABLE, record, expected)


def acquire(
    key: str,
    run_id: str,
    ttl: int = LOCK_TTL_SECONDS,
    *,
    priority: Optional[float] = None,
    now: Optional[int] = None,
) -> Union[LockHandle, LockBusy]:
    """Try to take the lease on ``key`` for ``run_id``.

    Returns a LockHandle when the lock was free, released or expired and the
    caller is first in the queue. Otherwise the caller's queue ticket is
    recorded (or refreshed) and LockBusy is returned. ``priority`` orders the
    queue; callers pass their build arrival time.
    """
    for _ in range(_CAS_RETRIES):
        now_epoch = _now_epoch(now)
        current = _get(LOCKS_TABLE, {"lock_key": key})
        status = _derived_status(current, now_epoch)

        if current and status == STATUS_HELD and current.get("holder") == run_id:
            return _handle_from(current)

        record = dict(current or {"lock_key": key, "status": STATUS_RELEASED})
        waiters = _live_waiters(current, now_epoch)
        _take_ticket(record, waiters, run_id, priority, now_epoch)
        order = _queue_order(waiters)
        free = status in (None, STATUS_RELEASED, STATUS_EXPIRED)

        if free and order[0] == run_id:
            waiters.pop(run_id)
            record = {
                "lock_key": key,
                "holder": run_id,
                "fingerprint": uuid.uuid4().hex,
                "acquired_epoch": now_epoch,
                "expires_epoch": now_epoch + int(ttl),
                "status": STATUS_HELD,
                "waiters": waiters,
                "next_ticket": int(record.get("next_ticket") or 0),
            }
            if not _write(record, current):
                continue
            if status == STATUS_EXPIRED:
                logger.warning(
                    "[WARNING] Reclaimed stale lock %s from %s (expired at %s)",
                    key, current.get("holder"), current.get("expires_epoch"),
                )
            logger.info("[SUCCESS] Lock %s acquired by %s until %s", key, run_id, record["expires_epoch"])
            _emit_structured_observability(
                component="locks",
                event="lock_acquired",
                run_id=run_id,
                lock_key=key,
                extra={"reclaimed": status == STATUS_EXPIRED},
            )
            return _handle_from(record)

        record["waiters"] = waiters
        if not _write(record, current):
            continue
        holder = current.get("holder") if current and status == STATUS_HELD else None
        busy = LockBusy(
            key=key,
            holder=holder,
            expires_epoch=int(current.get("expires_epoch") or 0) if holder else 0,
            position=order.index(run_id),
        )
        logger.info(
            "[INFO] Lock %s busy for %s (holder=%s, ahead=%d)", key, run_id, holder, busy.position
        )
        return busy

    raise ConcurrentModification(f"Lock {key} kept changing during acquire by {run_id}")


def renew(handle: LockHandle, ttl: int = LOCK_TTL_SECONDS, *, now: Optional[int] = None) -> LockHandle:
    """Extend the lease; LockLost if the key is no longer held under this fingerprint."""
    now_epoch = _now_epoch(now)
    expires = now_epoch + int(ttl)
    try:
        _get_ddb().update_item(
            TableName=LOCKS_TABLE,
            Key={"lock_key": _serialize(handle.key)},
            UpdateExpression="SET expires_epoch = :exp, renewed_epoch = :now, #v = #v + :one",
            ConditionExpression="fingerprint = :fp AND #st = :held",
            ExpressionAttributeNames={"#v": "version", "#st": "status"},
            ExpressionAttributeValues={
                ":exp": _serialize(expires),
                ":now": _serialize(now_epoch),
                ":one": _serialize(1),
                ":fp": _serialize(handle.fingerprint),
                ":held": _serialize(STATUS_HELD),
            },
        )
    except ClientError as exc:
        if _is_conditional_failure(exc):
            logger.error("[ERROR] Lock %s lost by %s", handle.key, handle.holder)
            raise LockLost(f"Lock {handle.key} is no longer held by {handle.holder}") from exc
        raise
    logger.info("[INFO] Lock %s renewed by %s until %s", handle.key, handle.holder, expires)
    return LockHandle(
        key=handle.key,
        holder=handle.holder,
        fingerprint=handle.fingerprint,
        acquired_epoch=handle.acquired_epoch,
        expires_epoch=expires,
    )


def release(handle: LockHandle, *, now: Optional[int] = None) -> bool:
    """Mark the lock released. Returns False if it was already released or reclaimed."""
    now_epoch = _now_epoch(now)
    try:
        _get_ddb().update_item(
            TableName=LOCKS_TABLE,
            Key={"lock_key": _serialize(handle.key)},
            UpdateExpression="SET #st = :released, released_epoch = :now, #v = #v + :one",
            ConditionExpression="fingerprint = :fp AND #st = :held",
            ExpressionAttributeNames={"#v": "version", "#st": "status"},
            ExpressionAttributeValues={
                ":released": _serialize(STATUS_RELEASED),
                ":now": _serialize(now_epoch),
                ":one": _serialize(1),
                ":fp": _serialize(handle.fingerprint),
                ":held": _serialize(STATUS_HELD),
            },
        )
    except ClientError as exc:
        if _is_conditional_failure(exc):
            logger.info("[SKIP] Lock %s already released or reclaimed", handle.key)
            return False
        raise
    logger.info("[SUCCESS] Lock %s released by %s", handle.key, handle.holder)
    _emit_structured_observability(
        component="locks", event="lock_released", run_id=handle.holder, lock_key=handle.key
    )
    return True


def release_held_by(key: str, run_id: str, *, now: Optional[int] = None) -> bool:
    """Release ``key`` if ``run_id`` holds it, for a holder whose handle was never stored."""
    now_epoch = _now_epoch(now)
    try:
        _get_ddb().update_item(
            TableName=LOCKS_TABLE,
            Key={"lock_key": _serialize(key)},
            UpdateExpression="SET #st = :released, released_epoch = :now, #v = #v + :one",
            ConditionExpression="holder = :rid AND #st = :held",
            ExpressionAttributeNames={"#v": "version", "#st": "status"},
            ExpressionAttributeValues={
                ":released": _serialize(STATUS_RELEASED),
                ":now": _serialize(now_epoch),
                ":one": _serialize(1),
                ":rid": _serialize(run_id),
                ":held": _serialize(STATUS_HELD),
            },
        )
    except ClientError as exc:
        if _is_conditional_failure(exc):
            return False
        raise
    logger.warning("[WARNING] Lock %s released by holder id for %s (no stored handle)", key, run_id)
    _emit_structured_observability(
        component="locks", event="lock_released", run_id=run_id, lock_key=key
    )
    return True


def enqueue(key: str, run_id: str, *, priority: Optional[float] = None, now: Optional[int] = None) -> int:
    """Put ``run_id`` in line for ``key`` without trying to take it. Returns its queue position."""
    for _ in range(_CAS_RETRIES):
        now_epoch = _now_epoch(now)
        current = _get(LOCKS_TABLE, {"lock_key": key})
        if current and _derived_status(current, now_epoch) == STATUS_HELD and current.get("holder") == run_id:
            return 0
        record = dict(current or {"lock_key": key, "status": STATUS_RELEASED})
        waiters = _live_waiters(current, now_epoch)
        _take_ticket(record, waiters, run_id, priority, now_epoch)
        record["waiters"] = waiters
        if not _write(record, current):
            continue
        position = _queue_order(waiters).index(run_id)
        logger.info(
            "[INFO] %s queued for lock %s (ticket %s, ahead=%d)",
            run_id, key, waiters[run_id]["number"], position,
        )
        return position
    raise ConcurrentModification(f"Lock {key} kept changing while queueing {run_id}")


def withdraw(key: str, run_id: str) -> None:
    """Drop ``run_id``'s queue ticket so it no longer blocks later runs."""
    try:
        _get_ddb().update_item(
            TableName=LOCKS_TABLE,
            Key={"lock_key": _serialize(key)},
            UpdateExpression="SET #v = #v + :one REMOVE #w.#rid",
            ConditionExpression="attribute_exists(#w)",
            ExpressionAttributeNames={"#w": "waiters", "#rid": run_id, "#v": "version"},
            ExpressionAttributeValues={":one": _serialize(1)},
        )
    except ClientError as exc:
        if not _is_conditional_failure(exc):
            raise
    logger.info("[INFO] Withdrew %s from lock queue %s", run_id, key)


def describe(key: str, *, now: Optional[int] = None) -> Optional[Dict[str, Any]]:
    """The lock record with derived status and queue order, or None."""
    now_epoch = _now_epoch(now)
    record = _get(LOCKS_TABLE, {"lock_key": key})
    if not record:
        return None
    record.pop("fingerprint", None)
    record["status"] = _derived_status(record, now_epoch)
    record["queue"] = _queue_order(_live_waiters(record, now_epoch))
    return record
