"""dispatch.py — Poll-and-reschedule substrate for orchestrator advances.

In Lambda, ``SqsScheduler`` puts ``{"run_id", "trigger"}`` on the
orchestration queue with ``DelaySeconds``; the orchestrator handler consumes
it and calls ``orchestrator.advance``. SQS caps the delay at 900 seconds, so
longer waits arrive early and simply re-check and reschedule.

``InlineScheduler`` keeps the same contract in-process against a virtual
clock; ``run_inline`` drains it. Offline runs and the end-to-end tests use it.
"""
from __future__ import annotations

import heapq
import itertools
import json
from typing import Callable, List, Optional, Tuple

from cfn_deployer.aws_clients import _get_sqs
from cfn_deployer import config
from cfn_deployer.config import MAX_SQS_DELAY_SECONDS, logger

__all__ = [
    "InlineScheduler",
    "SqsScheduler",
    "VirtualClock",
    "get_default_scheduler",
    "run_inline",
]


class SqsScheduler:
    def __init__(self, queue_url: Optional[str] = None):
        self.queue_url = queue_url or config.ORCHESTRATION_QUEUE_URL
        if not self.queue_url:
            raise ValueError("ORCHESTRATION_QUEUE_URL is not configured")

    def schedule(
        self, run_id: str, delay_seconds: int = 0, *, trigger: str = "advance", seq: Optional[int] = None
    ) -> None:
        delay = max(0, min(int(delay_seconds), MAX_SQS_DELAY_SECONDS))
        body = {"run_id": run_id, "trigger": trigger}
        if seq is not None:
            body["seq"] = int(seq)
        _get_sqs().send_message(
            QueueUrl=self.queue_url,
            MessageBody=json.dumps(body),
            DelaySeconds=delay,
        )
        logger.info("[INFO] Scheduled %s for %s in %ss", trigger, run_id, delay)


class VirtualClock:
    def __init__(self, start: int = 1_700_000_000):
        self._now = int(start)

    def now(self) -> int:
        return self._now

    def advance_to(self, epoch: int) -> None:
        self._now = max(self._now, int(epoch))

    def tick(self, seconds: int) -> None:
        self._now += int(seconds)


class InlineScheduler:
    """Due-time heap of (epoch, order, run_id, trigger, seq) against a VirtualClock."""

    def __init__(self, clock: Optional[VirtualClock] = None):
        self.clock = clock or VirtualClock()
        self._heap: List[Tuple[int, int, str, str, Optional[int]]] = []
        self._order = itertools.count()
        self.history: List[Tuple[int, str, str]] = []

    def schedule(
        self, run_id: str, delay_seconds: int = 0, *, trigger: str = "advance", seq: Optional[int] = None
    ) -> None:
        due = self.clock.now() + max(0, int(delay_seconds))
        heapq.heappush(self._heap, (due, next(self._order), run_id, trigger, seq))
        self.history.append((due, run_id, trigger))

    def pending(self) -> int:
        return len(self._heap)

    def pop(self) -> Optional[Tuple[int, str, str, Optional[int]]]:
        if not self._heap:
            return None
        due, _, run_id, trigger, seq = heapq.heappop(self._heap)
        return due, run_id, trigger, seq


_inline_scheduler: Optional[InlineScheduler] = None


def get_default_scheduler():
    """SQS when a queue is configured, otherwise the process-wide inline scheduler."""
    global _inline_scheduler
    if config.ORCHESTRATION_QUEUE_URL:
        return SqsScheduler(config.ORCHESTRATION_QUEUE_URL)
    if _inline_scheduler is None:
        logger.warning("[WARNING] ORCHESTRATION_QUEUE_URL not set; using in-process scheduler")
        _inline_scheduler = InlineScheduler()
    return _inline_scheduler


def run_inline(
    scheduler: InlineScheduler,
    *,
    max_steps: int = 1000,
    advance: Optional[Callable] = None,
) -> int:
    """Drain ``scheduler`` in due order, moving its clock forward. Returns the step count."""
    if advance is None:
        from cfn_deployer.orchestrator import advance

    steps = 0
    while scheduler.pending() and steps < max_steps:
        due, run_id, _trigger, seq = scheduler.pop()
        scheduler.clock.advance_to(due)
        advance(run_id, now=scheduler.clock.now(), scheduler=scheduler, seq=seq)
        steps += 1
    if scheduler.pending():
        logger.warning("[WARNING] run_inline stopped after %d steps with work pending", steps)
    return steps
