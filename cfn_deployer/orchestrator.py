"""orchestrator.py — Deployment Orchestrator: drives one DeploymentAttempt through its phases.

Each ``advance`` call loads the attempt, runs phases back to back until the
attempt has to wait (lock busy, operations still running, transient error
backoff) or reaches a terminal phase, and persists the attempt after every
transition. Waiting means scheduling another advance and returning; nothing
here sleeps.

Scheduled advances carry the attempt's ``schedule_seq``. A message whose seq
is behind the stored one is stale and dropped, and two deliveries of the
same seq race on the attempt's version so only one continues.

Throttling, service-side and connection errors from any phase are counted
on the stored attempt and retried on the transient backoff schedule until
MAX_TRANSIENT_ERRORS is spent. Any other unexpected exception aborts the
attempt.

Terminal phases record outcome and completion time. The lock is released
only once that terminal state is stored, by handle or, when the handle was
never stored, by holder id.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from cfn_deployer import fanout, locks, persistence, promotion, registry
from cfn_deployer.config import (
    LOCK_MAX_ATTEMPTS,
    LOCK_RENEW_MARGIN_SECONDS,
    LOCK_RETRY_BACKOFF_SECONDS,
    LOCK_TTL_SECONDS,
    MAX_TRANSIENT_ERRORS,
    TRANSIENT_RETRY_BACKOFF_SECONDS,
    logger,
)
from cfn_deployer.dispatch import get_default_scheduler
from cfn_deployer.errors import (
    REASON_DEADLINE_EXCEEDED,
    REASON_LOCK_LOST,
    REASON_LOCK_TIMEOUT,
    REASON_MALFORMED_BUILD,
    REASON_NOT_CONFIGURED,
    REASON_OPERATION_FAILED,
    REASON_OPERATION_TIMED_OUT,
    REASON_TRANSIENT_EXHAUSTED,
    REASON_UNEXPECTED,
    ConcurrentModification,
    DeployerError,
    LockLost,
    MalformedBuild,
    NotConfigured,
    _is_transient,
)
from cfn_deployer.intake import validate_build
from cfn_deployer.lifecycle import (
    OUTCOME_ABORTED,
    OUTCOME_FAILED,
    OUTCOME_SUCCEEDED,
    TERMINAL_PHASES,
    Event,
    Phase,
    apply_transition,
)
from cfn_deployer.parameters import resolve_parameters
from cfn_deployer.serialization import _iso_from_epoch, _unix_now

__all__ = ["advance"]

_WAIT = "wait"
_CONTINUE = "continue"


def _backoff(schedule, count: int) -> int:
    idx = max(0, min(count - 1, len(schedule) - 1))
    return schedule[idx]


class _Run:
    """One advance of one attempt."""

    def __init__(self, attempt: Dict[str, Any], now_epoch: int, scheduler):
        self.attempt = attempt
        self.now = now_epoch
        self.scheduler = scheduler
        self.run_id = attempt["run_id"]

    # -- persistence / scheduling -------------------------------------------

    def _save(self) -> None:
        persistence.save_attempt(self.attempt)

    def _wait(self, delay: int, trigger: str) -> str:
        delay = max(1, int(delay))
        seq = int(self.attempt.get("schedule_seq") or 0) + 1
        self.attempt["next_advance_epoch"] = self.now + delay
        self.scheduler.schedule(self.run_id, delay, trigger=trigger, seq=seq)
        self.attempt["schedule_seq"] = seq
        self._save()
        return _WAIT

    def _transition(self, event: Event, reason: str, extra: Optional[Dict[str, Any]] = None) -> str:
        apply_transition(self.attempt, event, reason, now=self.now, extra=extra)
        if event is not Event.FAIL:
            self.attempt["transient_errors"] = 0
        if Phase(self.attempt["phase"]) in TERMINAL_PHASES:
            self._finalize()
            return _WAIT
        self._save()
        return _CONTINUE

    def fail(self, reason: str, detail: str, *, outcome: str = OUTCOME_FAILED) -> str:
        self.attempt["outcome"] = outcome
        self.attempt["reason"] = reason
        self.attempt["detail"] = detail
        logger.error("[ERROR] Attempt %s failed: %s: %s", self.run_id, reason, detail)
        return self._transition(Event.FAIL, reason)

    def _finalize(self) -> None:
        self.attempt["completed_at"] = _iso_from_epoch(self.now)
        self.attempt["completed_epoch"] = self.now
        # A failed save leaves the lease to expire on its own.
        self._save()
        if _release_lock(self.attempt, self.now):
            _wake_next_waiter(self.attempt, self.now, self.scheduler)
        logger.info(
            "[END] Attempt %s %s (outcome=%s, reason=%s)",
            self.run_id, self.attempt["phase"], self.attempt.get("outcome"), self.attempt.get("reason"),
        )

    # -- phases --------------------------------------------------------------

    def pending(self) -> str:
        build = self.attempt.get("build") or {}
        try:
            validate_build(build)
        except MalformedBuild as exc:
            return self.fail(REASON_MALFORMED_BUILD, str(exc))
        try:
            target = registry.resolve(build["environment"])
        except NotConfigured as exc:
            return self.fail(REASON_NOT_CONFIGURED, str(exc))

        self.attempt["target"] = {
            "environment": target["environment"],
            "target_label": target["target_label"],
            "accounts": list(target["accounts"]),
            "regions": list(target["regions"]),
            "downstream_environment": target.get("downstream_environment"),
        }
        key = locks.lock_key(target["environment"], target["target_label"])
        queued_for = self.attempt.get("lock_key")
        if queued_for and queued_for != key:
            # Default target changed after submit.
            locks.withdraw(queued_for, self.run_id)
        self.attempt["lock_key"] = key
        self.attempt["stack_set_name"] = fanout.stack_set_name(build["repository"], target["target_label"])
        return self._transition(
            Event.BUILD_ACCEPTED, f"target {target['target_label']} resolved"
        )

    def locking(self) -> str:
        key = self.attempt["lock_key"]
        if self.now >= int(self.attempt["deadline_epoch"]):
            return self.fail(REASON_LOCK_TIMEOUT, "Attempt deadline passed while waiting for the lock")

        try:
            result = locks.acquire(
                key, self.run_id, LOCK_TTL_SECONDS, priority=self.attempt.get("created_epoch"), now=self.now
            )
        except ConcurrentModification as exc:
            # Heavy contention on the lock record, not on this attempt.
            logger.warning("[WARNING] %s", exc)
            return self._wait(_backoff(LOCK_RETRY_BACKOFF_SECONDS, 1), "lock_retry")
        if isinstance(result, locks.LockHandle):
            self.attempt["lock"] = result.to_dict()
            self.attempt["lock_wait"] = None
            return self._transition(Event.LOCK_ACQUIRED, f"lock {key} acquired")

        self.attempt["lock_attempts"] = int(self.attempt.get("lock_attempts") or 0) + 1
        self.attempt["lock_wait"] = {
            "holder": result.holder,
            "position": result.position,
            "expires_epoch": result.expires_epoch,
        }
        if self.attempt["lock_attempts"] >= LOCK_MAX_ATTEMPTS:
            return self.fail(
                REASON_LOCK_TIMEOUT,
                f"Lock {key} still busy after {self.attempt['lock_attempts']} attempts (holder={result.holder})",
            )
        delay = _backoff(LOCK_RETRY_BACKOFF_SECONDS, self.attempt["lock_attempts"])
        logger.info(
            "[INFO] Attempt %s waiting for lock %s (try %d/%d, retry in %ss)",
            self.run_id, key, self.attempt["lock_attempts"], LOCK_MAX_ATTEMPTS, delay,
        )
        return self._wait(delay, "lock_retry")

    def deploying(self) -> str:
        handle = locks.LockHandle.from_dict(self.attempt["lock"])
        if handle.expires_epoch - self.now <= LOCK_RENEW_MARGIN_SECONDS:
            try:
                handle = locks.renew(handle, LOCK_TTL_SECONDS, now=self.now)
            except LockLost as exc:
                self.attempt["lock"] = None
                return self.fail(REASON_LOCK_LOST, str(exc), outcome=OUTCOME_ABORTED)
            self.attempt["lock"] = handle.to_dict()

        build = self.attempt["build"]
        target = self.attempt["target"]
        try:
            if not self.attempt.get("parameters"):
                self.attempt["parameters"] = resolve_parameters(target["environment"], build)
            result = fanout.execute(
                self.run_id,
                target["accounts"],
                target["regions"],
                fanout.template_url(build["artifact_ref"]),
                self.attempt["parameters"],
                stack_set_name=self.attempt["stack_set_name"],
                deadline_epoch=int(self.attempt["deadline_epoch"]),
                now=self.now,
            )
        except (DeployerError, BotoCoreError, ClientError) as exc:
            if not _is_transient(exc):
                raise
            return self._transient(exc)

        self.attempt["transient_errors"] = 0
        self.attempt["fanout"] = _summarize(result)
        if result.outcome == fanout.OUTCOME_IN_PROGRESS:
            renew_due_in = handle.expires_epoch - LOCK_RENEW_MARGIN_SECONDS - self.now
            return self._wait(min(result.next_poll_in or 1, max(1, renew_due_in)), "poll")
        return self._transition(Event.FANOUT_FINISHED, f"fan-out {result.outcome}")

    def _transient(self, exc: BaseException) -> str:
        count = int(self.attempt.get("transient_errors") or 0) + 1
        self.attempt["transient_errors"] = count
        if self.now >= int(self.attempt["deadline_epoch"]):
            return self.fail(REASON_DEADLINE_EXCEEDED, f"Deadline passed during transient failures: {exc}")
        if count > MAX_TRANSIENT_ERRORS:
            return self.fail(REASON_TRANSIENT_EXHAUSTED, str(exc))
        delay = _backoff(TRANSIENT_RETRY_BACKOFF_SECONDS, count)
        logger.warning(
            "[WARNING] Transient error in %s (%d/%d), retry in %ss: %s",
            self.run_id, count, MAX_TRANSIENT_ERRORS, delay, exc,
        )
        return self._wait(delay, "transient_retry")

    def verifying(self) -> str:
        operations = persistence.load_operations(self.run_id)
        target = self.attempt["target"]
        expected = [
            fanout.pair_key(account, region)
            for account in target["accounts"]
            for region in target["regions"]
        ]
        problems: List[Dict[str, Any]] = []
        for key in expected:
            op = operations.get(key) or {"status": fanout.OP_PENDING}
            if op.get("status") != fanout.OP_SUCCEEDED:
                account, _, region = key.partition("#")
                problems.append(
                    {
                        "account": account,
                        "region": region,
                        "status": op.get("status"),
                        "error": op.get("error"),
                    }
                )

        if not problems:
            self.attempt["outcome"] = OUTCOME_SUCCEEDED
            if target.get("downstream_environment"):
                return self._transition(
                    Event.VERIFIED_WITH_DOWNSTREAM, f"all {len(expected)} pair(s) succeeded"
                )
            return self._transition(Event.VERIFIED, f"all {len(expected)} pair(s) succeeded")

        self.attempt["failed_pairs"] = problems
        hard_failures = [p for p in problems if p["status"] != fanout.OP_TIMED_OUT]
        reason = REASON_OPERATION_FAILED if hard_failures else REASON_OPERATION_TIMED_OUT
        detail = "; ".join(
            f"{p['account']}/{p['region']}: {p['status']}" + (f" ({p['error']})" if p.get("error") else "")
            for p in problems
        )
        return self.fail(reason, detail)

    def promoting(self) -> str:
        try:
            self.attempt["promotion_result"] = promotion.promote(
                self.attempt, now=self.now, scheduler=self.scheduler
            )
        except Exception as exc:
            if _is_transient(exc):
                raise
            logger.error("[ERROR] Promotion for %s failed: %s", self.run_id, exc, exc_info=True)
            self.attempt["promotion_error"] = str(exc)
        return self._transition(Event.PROMOTION_HANDED_OFF, "promotion handed off")


def _summarize(result: fanout.FanOutResult) -> Dict[str, Any]:
    counts: Dict[str, int] = {}
    for op in result.operations.values():
        counts[op.get("status", "")] = counts.get(op.get("status", ""), 0) + 1
    return {"outcome": result.outcome, "pairs": len(result.operations), "status_counts": counts}


def _release_lock(attempt: Dict[str, Any], now_epoch: int) -> bool:
    """Give up the lock and any queue ticket. True when a held lock was released."""
    if attempt.get("lock"):
        return locks.release(locks.LockHandle.from_dict(attempt["lock"]), now=now_epoch)
    key = attempt.get("lock_key")
    if not key:
        return False
    # The lock may have been granted without the handle ever being stored.
    released = locks.release_held_by(key, attempt["run_id"], now=now_epoch)
    locks.withdraw(key, attempt["run_id"])
    return released


def _wake_next_waiter(attempt: Dict[str, Any], now_epoch: int, scheduler) -> None:
    """Schedule the head of the lock queue right away instead of at its next backoff."""
    key = attempt.get("lock_key")
    if not key:
        return
    try:
        record = locks.describe(key, now=now_epoch) or {}
        queue = record.get("queue") or []
        if not queue:
            return
        waiter = persistence.get_attempt(queue[0]) or {}
        if waiter.get("phase") != Phase.LOCKING.value:
            return
        scheduler.schedule(
            queue[0], 0, trigger="lock_released", seq=int(waiter.get("schedule_seq") or 0)
        )
    except (BotoCoreError, ClientError) as exc:
        logger.warning("[WARNING] Could not wake next waiter on %s: %s", key, exc)


_PHASE_STEPS = {
    Phase.PENDING: _Run.pending,
    Phase.LOCKING: _Run.locking,
    Phase.DEPLOYING: _Run.deploying,
    Phase.VERIFYING: _Run.verifying,
    Phase.PROMOTING: _Run.promoting,
}


def _retry_later(run_id: str, exc: BaseException, now_epoch: int, scheduler) -> Optional[Dict[str, Any]]:
    """Count a transient failure against the stored attempt and schedule a retry.

    Anything raised here, another throttle included, reaches the queue handler
    and the message is redelivered.
    """
    attempt = persistence.get_attempt(run_id)
    if not attempt or Phase(attempt["phase"]) in TERMINAL_PHASES:
        return attempt
    run = _Run(attempt, now_epoch, scheduler)
    try:
        run._transient(exc)
    except ConcurrentModification:
        logger.info("[SKIP] Attempt %s changed before its retry was recorded", run_id)
        return None
    return attempt


def _abort(run_id: str, exc: BaseException, now_epoch: int, scheduler) -> Optional[Dict[str, Any]]:
    attempt = persistence.get_attempt(run_id)
    if not attempt or Phase(attempt["phase"]) in TERMINAL_PHASES:
        return attempt
    run = _Run(attempt, now_epoch, scheduler)
    reason = exc.reason if isinstance(exc, DeployerError) else REASON_UNEXPECTED
    try:
        run.fail(reason, f"{type(exc).__name__}: {exc}", outcome=OUTCOME_ABORTED)
    except ConcurrentModification:
        logger.warning("[WARNING] Attempt %s changed while aborting; leaving it to the other run", run_id)
        return None
    return attempt


def advance(
    run_id: str,
    *,
    now: Optional[int] = None,
    scheduler=None,
    seq: Optional[int] = None,
) -> Optional[Dict[str, Any]]:
    """Advance ``run_id`` as far as possible without waiting. Returns the attempt, or None if dropped."""
    now_epoch = int(now) if now is not None else _unix_now()
    scheduler = scheduler or get_default_scheduler()

    attempt = persistence.get_attempt(run_id)
    if not attempt:
        logger.warning("[WARNING] Attempt %s not found", run_id)
        return None
    if Phase(attempt["phase"]) in TERMINAL_PHASES:
        logger.info("[SKIP] Attempt %s already %s", run_id, attempt["phase"])
        return attempt
    if seq is not None and int(seq) < int(attempt.get("schedule_seq") or 0):
        logger.info("[SKIP] Stale advance for %s (seq %s < %s)", run_id, seq, attempt.get("schedule_seq"))
        return attempt

    logger.info("[START] Advancing %s from %s", run_id, attempt["phase"])
    run = _Run(attempt, now_epoch, scheduler)
    try:
        while True:
            phase = Phase(attempt["phase"])
            if phase in TERMINAL_PHASES:
                return attempt
            if _PHASE_STEPS[phase](run) == _WAIT:
                return attempt
    except ConcurrentModification as exc:
        logger.info("[SKIP] %s: %s (duplicate delivery)", run_id, exc)
        return None
    except Exception as exc:
        if _is_transient(exc):
            logger.warning("[WARNING] Transient failure advancing %s from %s: %s", run_id, attempt["phase"], exc)
            return _retry_later(run_id, exc, now_epoch, scheduler)
        logger.error("[ERROR] Unexpected failure advancing %s: %s", run_id, exc, exc_info=True)
        return _abort(run_id, exc, now_epoch, scheduler)
