"""lifecycle.py — DeploymentAttempt phases, the transition table, and new attempt records.

Pending -> Locking -> Deploying -> Verifying -> (Promoting ->) Completed,
and Failed from any non-terminal phase. ``next_phase`` is pure;
``apply_transition`` mutates the in-memory attempt and appends the audit
entry, and the orchestrator persists it afterwards.
"""
from __future__ import annotations

import uuid
from enum import Enum
from typing import Any, Dict, Optional

from cfn_deployer.config import ATTEMPT_DEADLINE_SECONDS
from cfn_deployer.errors import InvalidTransition
from cfn_deployer.serialization import _emit_structured_observability, _iso_from_epoch, _unix_now

__all__ = [
    "Event",
    "OUTCOME_ABORTED",
    "OUTCOME_FAILED",
    "OUTCOME_SUCCEEDED",
    "Phase",
    "TERMINAL_PHASES",
    "apply_transition",
    "new_attempt",
    "next_phase",
    "run_id_for",
]


class Phase(str, Enum):
    PENDING = "pending"
    LOCKING = "locking"
    DEPLOYING = "deploying"
    VERIFYING = "verifying"
    PROMOTING = "promoting"
    COMPLETED = "completed"
    FAILED = "failed"


class Event(str, Enum):
    BUILD_ACCEPTED = "build_accepted"
    LOCK_ACQUIRED = "lock_acquired"
    FANOUT_FINISHED = "fanout_finished"
    VERIFIED = "verified"
    VERIFIED_WITH_DOWNSTREAM = "verified_with_downstream"
    PROMOTION_HANDED_OFF = "promotion_handed_off"
    FAIL = "fail"


OUTCOME_SUCCEEDED = "succeeded"
OUTCOME_FAILED = "failed"
OUTCOME_ABORTED = "aborted"

TERMINAL_PHASES = frozenset({Phase.COMPLETED, Phase.FAILED})

_TRANSITIONS = {
    (Phase.PENDING, Event.BUILD_ACCEPTED): Phase.LOCKING,
    (Phase.LOCKING, Event.LOCK_ACQUIRED): Phase.DEPLOYING,
    (Phase.DEPLOYING, Event.FANOUT_FINISHED): Phase.VERIFYING,
    (Phase.VERIFYING, Event.VERIFIED): Phase.COMPLETED,
    (Phase.VERIFYING, Event.VERIFIED_WITH_DOWNSTREAM): Phase.PROMOTING,
    (Phase.PROMOTING, Event.PROMOTION_HANDED_OFF): Phase.COMPLETED,
}

_RUN_ID_NAMESPACE = uuid.UUID("0b5e1c52-8f0e-4a8e-b2b4-3c7d8d6a9f21")


def next_phase(phase: Phase, event: Event) -> Phase:
    phase = Phase(phase)
    event = Event(event)
    if phase in TERMINAL_PHASES:
        raise InvalidTransition(f"{phase.value} is terminal; cannot apply {event.value}")
    if event is Event.FAIL:
        return Phase.FAILED
    try:
        return _TRANSITIONS[(phase, event)]
    except KeyError:
        raise InvalidTransition(f"Invalid transition {phase.value} --{event.value}-->") from None


def apply_transition(
    attempt: Dict[str, Any],
    event: Event,
    reason: str,
    *,
    now: Optional[int] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    now_epoch = int(now) if now is not None else _unix_now()
    prev = Phase(attempt["phase"])
    nxt = next_phase(prev, event)

    transition = {
        "timestamp": _iso_from_epoch(now_epoch),
        "epoch": now_epoch,
        "from": prev.value,
        "to": nxt.value,
        "event": Event(event).value,
        "reason": reason,
    }
    if extra:
        transition["meta"] = extra

    history = list(attempt.get("phase_history") or [])
    history.append(transition)
    attempt["phase_history"] = history
    attempt["phase"] = nxt.value
    attempt["updated_epoch"] = now_epoch

    _emit_structured_observability(
        component="orchestrator",
        event=f"phase_{nxt.value}",
        run_id=attempt.get("run_id"),
        lock_key=attempt.get("lock_key"),
        error_code=attempt.get("reason") if nxt is Phase.FAILED else None,
        extra={"from": prev.value, "transition_reason": reason},
    )
    return attempt


def run_id_for(idempotency_key: Optional[str] = None) -> str:
    """Deterministic run id for an idempotency key, random otherwise."""
    if idempotency_key:
        return "run-" + uuid.uuid5(_RUN_ID_NAMESPACE, idempotency_key).hex
    return "run-" + uuid.uuid4().hex


def new_attempt(
    build: Dict[str, Any],
    *,
    run_id: str,
    now: Optional[int] = None,
    idempotency_key: Optional[str] = None,
) -> Dict[str, Any]:
    now_epoch = int(now) if now is not None else _unix_now()
    return {
        "run_id": run_id,
        "idempotency_key": idempotency_key,
        "build": dict(build),
        "environment": build.get("environment"),
        "phase": Phase.PENDING.value,
        "phase_history": [],
        "lock_attempts": 0,
        "schedule_seq": 0,
        "transient_errors": 0,
        "created_epoch": now_epoch,
        "deadline_epoch": now_epoch + ATTEMPT_DEADLINE_SECONDS,
        "started_at": _iso_from_epoch(now_epoch),
        "updated_epoch": now_epoch,
    }
