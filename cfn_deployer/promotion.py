"""promotion.py — Hand a successfully deployed version to the downstream environment.

At most one downstream attempt per source attempt: the promotion slot on the
source attempt is claimed with a conditional write, and the downstream
attempt's run id is derived from ``promote:<source run id>``. A retry that
finds the claim already ``submitted`` is a no-op; one that finds it only
``claimed`` (crash between claim and submit) resubmits, which is itself
idempotent.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

from cfn_deployer import intake, persistence, registry
from cfn_deployer.config import logger
from cfn_deployer.errors import MalformedBuild, NotConfigured, PromotionError
from cfn_deployer.lifecycle import OUTCOME_SUCCEEDED
from cfn_deployer.serialization import _iso_from_epoch, _unix_now

__all__ = ["promote", "promotion_key"]

PROMOTION_CLAIMED = "claimed"
PROMOTION_SUBMITTED = "submitted"
PROMOTION_FAILED = "failed"


def promotion_key(run_id: str) -> str:
    return f"promote:{run_id}"


def promote(attempt: Dict[str, Any], *, now: Optional[int] = None, scheduler=None) -> Dict[str, Any]:
    run_id = attempt["run_id"]
    if attempt.get("outcome") != OUTCOME_SUCCEEDED:
        logger.info("[SKIP] Promotion for %s: attempt outcome is %s", run_id, attempt.get("outcome"))
        return {"status": "skipped", "reason": "attempt did not succeed"}
    downstream = (attempt.get("target") or {}).get("downstream_environment")
    if not downstream:
        logger.info("[SKIP] Promotion for %s: no downstream environment", run_id)
        return {"status": "skipped", "reason": "no downstream environment"}

    now_epoch = int(now) if now is not None else _unix_now()
    key = promotion_key(run_id)
    claimed = persistence.claim_promotion(
        run_id,
        {
            "status": PROMOTION_CLAIMED,
            "idempotency_key": key,
            "downstream_environment": downstream,
            "claimed_at": _iso_from_epoch(now_epoch),
        },
    )
    if not claimed:
        existing = (persistence.get_attempt(run_id) or {}).get("promotion") or {}
        if existing.get("status") == PROMOTION_SUBMITTED:
            logger.info("[SKIP] Promotion for %s already submitted as %s", run_id, existing.get("downstream_run_id"))
            return {**existing, "status": "duplicate"}
        logger.warning("[WARNING] Promotion for %s was claimed but not submitted; resubmitting", run_id)

    build = attempt.get("build") or {}
    try:
        registry.resolve(downstream)
        downstream_build = intake.new_build(
            build.get("repository", ""),
            downstream,
            build.get("version", ""),
            build.get("artifact_ref", ""),
            promoted_from=run_id,
            now=now_epoch,
        )
    except (NotConfigured, MalformedBuild) as exc:
        persistence.update_promotion(run_id, {"status": PROMOTION_FAILED, "error": str(exc)})
        logger.error("[ERROR] Promotion of %s to %s failed: %s", run_id, downstream, exc)
        raise PromotionError(f"Cannot promote {run_id} to '{downstream}': {exc}") from exc

    intake.record_build(downstream_build)
    downstream_run_id = intake.submit(downstream_build, idempotency_key=key, scheduler=scheduler, now=now_epoch)
    result = {
        "status": PROMOTION_SUBMITTED,
        "downstream_environment": downstream,
        "downstream_run_id": downstream_run_id,
        "submitted_at": _iso_from_epoch(now_epoch),
    }
    persistence.update_promotion(run_id, result)
    logger.info(
        "[SUCCESS] Promoted %s %s -> %s as %s",
        build.get("version"), build.get("environment"), downstream, downstream_run_id,
    )
    return result
